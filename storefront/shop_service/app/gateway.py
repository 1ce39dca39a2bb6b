"""Payment processor adapter: checkout sessions and webhook signatures."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

import stripe

from storefront.common import ServiceSettings

from .errors import GatewayError, GatewayRejected, GatewayUnavailable

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Stripe-Signature"

_T = TypeVar("_T")


@dataclass(frozen=True, slots=True)
class CheckoutSession:
    session_id: str
    url: str


@dataclass(frozen=True, slots=True)
class GatewayEvent:
    """The subset of a gateway webhook event the order workflow acts on."""

    event_id: str
    event_type: str
    session_id: str | None
    order_reference: str | None
    payment_status: str | None


class PaymentGateway(Protocol):
    async def create_checkout_session(
        self,
        *,
        order_id: int,
        order_number: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
    ) -> CheckoutSession: ...

    async def expire_checkout_session(self, session_id: str, *, order_id: int) -> bool:
        """Close a session so it can no longer be paid.

        Returns False when the session was already completed by the customer.
        """
        ...

    def verify_webhook_signature(self, payload: bytes, signature: str | None) -> bool: ...


def parse_webhook_event(payload: bytes) -> GatewayEvent:
    """Decode a verified webhook body; raises ValueError when it is not an event object."""

    try:
        document = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError("webhook payload is not valid JSON") from exc
    if not isinstance(document, dict):
        raise ValueError("webhook payload must be a JSON object")

    event_id = document.get("id")
    event_type = document.get("type")
    if not isinstance(event_id, str) or not isinstance(event_type, str):
        raise ValueError("webhook payload is missing id or type")

    data = document.get("data")
    obj: dict[str, Any] = {}
    if isinstance(data, dict) and isinstance(data.get("object"), dict):
        obj = data["object"]
    metadata = obj.get("metadata") if isinstance(obj.get("metadata"), dict) else {}
    reference = metadata.get("orderId") or obj.get("client_reference_id")
    session_id = obj.get("id")

    return GatewayEvent(
        event_id=event_id,
        event_type=event_type,
        session_id=session_id if isinstance(session_id, str) else None,
        order_reference=str(reference) if reference is not None else None,
        payment_status=obj.get("payment_status"),
    )


def translate_stripe_error(exc: stripe.StripeError) -> GatewayError:
    """Map SDK errors onto retryable (unavailable) and final (rejected) gateway errors."""

    if isinstance(exc, stripe.APIConnectionError):
        return GatewayUnavailable("Payment processor unreachable")
    if isinstance(exc, stripe.RateLimitError):
        return GatewayUnavailable("Payment processor is rate limiting requests")
    status_code = exc.http_status or 0
    if isinstance(exc, stripe.APIError) and status_code >= 500:
        return GatewayUnavailable(f"Payment processor returned {status_code}")
    return GatewayRejected(
        exc.user_message or f"Payment processor rejected the request ({exc.__class__.__name__})",
        http_status=status_code,
        stripe_code=exc.code,
    )


class StripeCheckoutGateway:
    """Checkout sessions through the Stripe SDK.

    The SDK's own network retries are disabled; calls are retried here on
    ``GatewayUnavailable`` with exponential backoff, and session creation reuses
    the caller's idempotency key on every attempt so the processor creates at
    most one session per key.
    """

    def __init__(
        self,
        *,
        client: stripe.StripeClient,
        webhook_secret: str | None,
        success_url: str,
        cancel_url: str,
        tolerance_seconds: int = 300,
        max_retries: int = 2,
        backoff_seconds: float = 0.5,
        http_client: stripe.HTTPClient | None = None,
    ) -> None:
        self._client = client
        self._http_client = http_client
        self._webhook_secret = webhook_secret
        self._success_url = success_url
        self._cancel_url = cancel_url
        self._tolerance_seconds = tolerance_seconds
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds

    @classmethod
    def from_settings(cls, settings: ServiceSettings) -> StripeCheckoutGateway:
        if not settings.payment_secret_key:
            raise ValueError("payment_secret_key is required for the Stripe gateway")
        http_client = stripe.HTTPXClient(timeout=settings.payment_timeout_seconds)
        client = stripe.StripeClient(
            settings.payment_secret_key,
            base_addresses={"api": settings.payment_api_base_url},
            max_network_retries=0,
            http_client=http_client,
        )
        frontend = settings.frontend_url.rstrip("/")
        return cls(
            client=client,
            http_client=http_client,
            webhook_secret=settings.payment_webhook_secret,
            success_url=f"{frontend}/orders?success=true",
            cancel_url=f"{frontend}/cart?cancelled=true",
            tolerance_seconds=settings.payment_webhook_tolerance_seconds,
            max_retries=settings.payment_max_retries,
            backoff_seconds=settings.payment_retry_backoff_seconds,
        )

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.close_async()

    async def _call(self, description: str, operation: Callable[[], Awaitable[_T]]) -> _T:
        attempt = 0
        while True:
            try:
                return await operation()
            except stripe.StripeError as exc:
                error = translate_stripe_error(exc)
                if not isinstance(error, GatewayUnavailable) or attempt >= self._max_retries:
                    if isinstance(error, GatewayRejected):
                        logger.error("%s rejected by payment processor: %s", description, error.message)
                    raise error from exc
                delay = self._backoff_seconds * (2**attempt)
                attempt += 1
                logger.warning(
                    "%s failed (%s); retry %d/%d in %.2fs",
                    description,
                    error.message,
                    attempt,
                    self._max_retries,
                    delay,
                )
                await asyncio.sleep(delay)

    async def create_checkout_session(
        self,
        *,
        order_id: int,
        order_number: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
    ) -> CheckoutSession:
        params: dict[str, Any] = {
            "mode": "payment",
            "success_url": self._success_url,
            "cancel_url": self._cancel_url,
            "client_reference_id": str(order_id),
            "metadata": {"orderId": str(order_id), "orderNumber": order_number},
            "line_items": [
                {
                    "quantity": 1,
                    "price_data": {
                        "currency": currency.lower(),
                        "unit_amount": amount_cents,
                        "product_data": {"name": f"Order {order_number}"},
                    },
                }
            ],
        }
        sessions = self._client.v1.checkout.sessions
        session = await self._call(
            f"Checkout session for order {order_id}",
            lambda: sessions.create_async(params=params, options={"idempotency_key": idempotency_key}),
        )
        session_id = getattr(session, "id", None)
        url = getattr(session, "url", None)
        if not isinstance(session_id, str) or not isinstance(url, str):
            raise GatewayRejected("Checkout session response is missing id or url", order_id=order_id)
        return CheckoutSession(session_id=session_id, url=url)

    async def expire_checkout_session(self, session_id: str, *, order_id: int) -> bool:
        sessions = self._client.v1.checkout.sessions
        try:
            await self._call(
                f"Expiring checkout session {session_id} of order {order_id}",
                lambda: sessions.expire_async(session_id),
            )
        except GatewayRejected:
            # Only open sessions can be expired; look at which terminal state this one is in.
            session = await self._call(
                f"Checkout session {session_id} lookup",
                lambda: sessions.retrieve_async(session_id),
            )
            status = getattr(session, "status", None)
            if status != "expired":
                logger.warning(
                    "Checkout session %s of order %s is %s and cannot be expired",
                    session_id,
                    order_id,
                    status,
                )
                return False
        return True

    def verify_webhook_signature(self, payload: bytes, signature: str | None) -> bool:
        if not self._webhook_secret or not signature:
            return False
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self._webhook_secret,
                tolerance=self._tolerance_seconds,
            )
        except (stripe.SignatureVerificationError, ValueError):
            return False
        return True
