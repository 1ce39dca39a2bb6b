"""Dependency helpers for the shop service."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import cast

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.common import ServiceSettings, lifespan_session

from .errors import Forbidden
from .gateway import PaymentGateway
from .pricing import PricingRules
from .repository import AddressRepository, CartRepository, OrderRepository, ProductRepository
from .services import CartService, OrderNotifier, OrderWorkflow

ADMIN_ROLE = "admin"


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    session_factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    async with lifespan_session(session_factory) as session:
        yield session


def get_current_user_id(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> str:
    """Caller identity forwarded by the upstream credential service."""

    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return user_id


def require_admin(
    user_id: str = Depends(get_current_user_id),
    x_user_role: str | None = Header(default=None, alias="X-User-Role"),
) -> str:
    if (x_user_role or "").strip().lower() != ADMIN_ROLE:
        raise Forbidden("Admin access required", user_id=user_id)
    return user_id


def get_address_repository(session: AsyncSession = Depends(get_session)) -> AddressRepository:
    return AddressRepository(session)


def get_cart_service(session: AsyncSession = Depends(get_session)) -> CartService:
    return CartService(CartRepository(session), ProductRepository(session))


def get_payment_gateway(request: Request) -> PaymentGateway:
    gateway = getattr(request.app.state, "payment_gateway", None)
    if gateway is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment gateway is not configured",
        )
    return cast(PaymentGateway, gateway)


def get_order_workflow(
    request: Request,
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> OrderWorkflow:
    settings: ServiceSettings = request.app.state.settings
    pricing: PricingRules = request.app.state.pricing
    notifier = cast(OrderNotifier | None, getattr(request.app.state, "order_notifier", None))
    return OrderWorkflow(
        orders=OrderRepository(session),
        carts=CartRepository(session),
        addresses=AddressRepository(session),
        gateway=gateway,
        pricing=pricing,
        notifier=notifier,
        currency=settings.currency,
        order_number_attempts=settings.order_number_max_attempts,
    )
