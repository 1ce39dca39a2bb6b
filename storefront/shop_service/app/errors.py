"""Error taxonomy for the shop service and its HTTP mapping."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from storefront.common import ServiceSettings

logger = logging.getLogger(__name__)


class StorefrontError(Exception):
    """Base exception for every expected failure of the shop service."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "internal_error"
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None, **context: object) -> None:
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)


class EmptyCartError(StorefrontError):
    """Raised when checkout is attempted on a cart without items."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "empty_cart"
    default_message = "Cart is empty"


class Forbidden(StorefrontError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"
    default_message = "Forbidden"


class NotFound(StorefrontError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"
    default_message = "Not found"


class InvalidSignature(StorefrontError):
    """Raised when a webhook payload does not carry a valid gateway signature."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_signature"
    default_message = "Invalid webhook signature"


class InvalidTransition(StorefrontError):
    """Raised for status changes the order lifecycle does not allow."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_transition"
    default_message = "Invalid order status transition"


class PaymentInProgress(StorefrontError):
    """The order's checkout session was already completed and its payment is still settling."""

    status_code = status.HTTP_409_CONFLICT
    code = "payment_in_progress"
    default_message = "Payment for this order is already in progress"


class GatewayError(StorefrontError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "gateway_error"
    default_message = "Payment processor error"


class GatewayUnavailable(GatewayError):
    """The payment processor could not be reached; safe to retry with the same idempotency key."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "gateway_unavailable"
    default_message = "Payment processor unavailable"


class GatewayRejected(GatewayError):
    """The payment processor refused the request; retrying it unchanged will not help."""

    code = "gateway_rejected"
    default_message = "Payment processor rejected the request"


def _error_body(message: str, code: str) -> dict[str, object]:
    return {"success": False, "message": message, "code": code}


def install_error_handlers(app: FastAPI, settings: ServiceSettings) -> None:
    """Translate StorefrontError subclasses (and unexpected errors) into JSON responses."""

    @app.exception_handler(StorefrontError)
    async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
        log_level = logging.WARNING if exc.status_code < 500 else logging.ERROR
        logger.log(
            log_level,
            "%s %s failed with %s: %s context=%s",
            request.method,
            request.url.path,
            exc.code,
            exc.message,
            exc.context,
        )
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc.message, exc.code))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        message = repr(exc) if settings.expose_error_details else StorefrontError.default_message
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body(message, StorefrontError.code),
        )
