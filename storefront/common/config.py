from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_APP_NAME = "storefront-service"
SERVICE_VERSION = "0.1.0"


class ServiceSettings(BaseSettings):
    """Settings shared by the storefront FastAPI services."""

    app_name: str = Field(default=DEFAULT_APP_NAME)
    environment: Literal["local", "dev", "staging", "prod"] = Field(default="local")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    service_host: str = Field(default="0.0.0.0")
    service_port: int = Field(default=8000)
    enable_metrics: bool = Field(default=True)
    enable_tracing: bool = Field(default=False)
    tracing_endpoint: str | None = Field(default=None)
    tracing_protocol: Literal["http/protobuf", "grpc"] = Field(default="http/protobuf")
    tracing_insecure: bool = Field(default=True)
    tracing_sample_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    database_url: str | None = Field(default=None)
    kafka_bootstrap_servers: str | None = Field(default=None)

    # Checkout pricing
    currency: str = Field(default="USD", min_length=3, max_length=3)
    tax_rate: Decimal = Field(default=Decimal("0.10"), ge=Decimal("0"), le=Decimal("1"))
    shipping_flat: Decimal = Field(default=Decimal("10.00"), ge=Decimal("0"))
    order_number_max_attempts: int = Field(default=5, ge=1)

    # Payment processor
    payment_api_base_url: str = Field(default="https://api.stripe.com")
    payment_secret_key: str | None = Field(default=None)
    payment_webhook_secret: str | None = Field(default=None)
    payment_timeout_seconds: float = Field(default=10.0, gt=0.0)
    payment_max_retries: int = Field(default=2, ge=0)
    payment_retry_backoff_seconds: float = Field(default=0.5, ge=0.0)
    payment_webhook_tolerance_seconds: int = Field(default=300, ge=0)
    frontend_url: str = Field(default="http://localhost:3000")

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"), env_prefix="SERVICE_", extra="ignore"
    )

    @property
    def expose_error_details(self) -> bool:
        return self.environment in ("local", "dev")


@lru_cache
def get_settings() -> ServiceSettings:
    """Return cached service settings."""

    return ServiceSettings()
