import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from storefront.common import (
    DEFAULT_APP_NAME,
    ServiceSettings,
    build_app,
    configure_logging,
    create_schema,
    dispose_engines,
    get_session_factory,
    get_settings,
    resolve_database_url,
)
from storefront.common.kafka import KafkaProducerStub

from .api.addresses import router as addresses_router
from .api.carts import router as carts_router
from .api.health import router as health_router
from .api.orders import router as orders_router
from .api.webhooks import router as webhooks_router
from .errors import install_error_handlers
from .events import OrderEventPublisher
from .gateway import PaymentGateway, StripeCheckoutGateway
from .models import Base
from .pricing import ConfiguredPricing

logger = logging.getLogger(__name__)

SERVICE_NAME = "Shop Service"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./shop_service.db"


def create_app(
    settings: ServiceSettings | None = None,
    *,
    payment_gateway: PaymentGateway | None = None,
) -> FastAPI:
    """Create the Shop Service FastAPI application.

    ``payment_gateway`` replaces the Stripe adapter, which is how tests run the
    checkout flow without a processor.
    """

    resolved_settings = settings or get_settings()
    if resolved_settings.app_name == DEFAULT_APP_NAME:
        resolved_settings = resolved_settings.model_copy(update={"app_name": SERVICE_NAME})
    configure_logging(resolved_settings)
    database_url = resolve_database_url(resolved_settings, DEFAULT_DATABASE_URL)
    session_factory = get_session_factory(database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        gateway: StripeCheckoutGateway | None = None
        kafka_producer: KafkaProducerStub | None = None
        app.state.session_factory = session_factory
        app.state.pricing = ConfiguredPricing.from_settings(resolved_settings)
        try:
            if resolved_settings.environment == "local":
                await create_schema(database_url, Base.metadata)
            if payment_gateway is not None:
                app.state.payment_gateway = payment_gateway
            elif resolved_settings.payment_secret_key:
                gateway = StripeCheckoutGateway.from_settings(resolved_settings)
                app.state.payment_gateway = gateway
            else:
                logger.warning("No payment secret key configured; checkout and payment webhooks are disabled")
                app.state.payment_gateway = None
            kafka_producer = KafkaProducerStub(bootstrap_servers=resolved_settings.kafka_bootstrap_servers)
            await kafka_producer.connect()
            app.state.order_notifier = OrderEventPublisher(kafka_producer)
            yield
        finally:
            app.state.session_factory = None  # type: ignore[assignment]
            app.state.payment_gateway = None
            app.state.order_notifier = None
            if gateway is not None:
                await gateway.close()
            if kafka_producer is not None:
                await kafka_producer.close()
            await dispose_engines()

    app = build_app(resolved_settings, lifespan=lifespan)
    install_error_handlers(app, resolved_settings)
    app.include_router(health_router)
    app.include_router(carts_router)
    app.include_router(addresses_router)
    app.include_router(orders_router)
    app.include_router(webhooks_router)
    return app


app = create_app()
