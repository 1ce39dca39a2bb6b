"""Service layer: cart operations and the order/payment workflow."""

from __future__ import annotations

import hashlib
import json
import logging
import secrets
import string
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from .errors import (
    EmptyCartError,
    Forbidden,
    GatewayError,
    InvalidSignature,
    InvalidTransition,
    NotFound,
    PaymentInProgress,
)
from .gateway import GatewayEvent, PaymentGateway, parse_webhook_event
from .lifecycle import OrderStatus, PaymentStatus, check_payment_transition, is_open_checkout, plan_transition
from .metrics import (
    CHECKOUT_SESSIONS_TOTAL,
    ORDER_TRANSITIONS_TOTAL,
    ORDERS_CREATED_TOTAL,
    ORDERS_REUSED_TOTAL,
    PAYMENT_WEBHOOKS_TOTAL,
    event_type_label,
)
from .models import Address, Cart, CartItem, Order
from .pricing import PricedLine, PricingRules
from .repository import AddressRepository, CartRepository, OrderConflict, OrderRepository, ProductRepository

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED_EVENTS = frozenset(
    {"checkout.session.completed", "checkout.session.async_payment_succeeded"}
)
PAYMENT_FAILED_EVENTS = frozenset(
    {"checkout.session.async_payment_failed", "checkout.session.expired"}
)
# Completed sessions for delayed payment methods report "unpaid" until the money settles.
_UNSETTLED_PAYMENT_STATUSES = frozenset({"unpaid"})

_ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


class OrderNotifier(Protocol):
    async def order_confirmed(self, order: Order) -> None: ...

    async def status_changed(self, order: Order, previous_status: str) -> None: ...


def generate_order_number() -> str:
    suffix = "".join(secrets.choice(_ORDER_NUMBER_ALPHABET) for _ in range(6))
    return f"ORD-{datetime.now(timezone.utc):%Y%m%d}-{suffix}"


def session_idempotency_key(order: Order) -> str:
    return f"order-{order.id}-session-{order.session_attempt}"


def cart_fingerprint(items: list[CartItem], *, billing_address_id: int, shipping_address_id: int) -> str:
    """Digest of everything that determines what an order built from this cart charges and ships."""

    document = {
        "lines": sorted(
            (
                [item.product_id, item.quantity, item.unit_price_cents, item.customizations or {}]
                for item in items
            ),
            key=lambda line: line[0],
        ),
        "billing": billing_address_id,
        "shipping": shipping_address_id,
    }
    encoded = json.dumps(document, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode()).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CartService:
    """Cart operations scoped to the authenticated user."""

    def __init__(self, carts: CartRepository, products: ProductRepository) -> None:
        self.carts = carts
        self.products = products

    async def get_cart(self, user_id: str) -> Cart:
        return await self.carts.get_or_create_cart(user_id=user_id)

    async def add_item(
        self,
        user_id: str,
        *,
        product_id: int,
        quantity: int,
        customizations: dict[str, Any] | None,
    ) -> Cart:
        product = await self.products.get_active_product(product_id)
        if product is None:
            raise NotFound("Product not found", product_id=product_id)
        cart = await self.carts.get_or_create_cart(user_id=user_id)
        return await self.carts.add_item(
            cart,
            product=product,
            quantity=quantity,
            customizations=customizations,
        )

    async def update_item(
        self,
        user_id: str,
        item_id: int,
        *,
        quantity: int,
        customizations: dict[str, Any] | None,
    ) -> Cart:
        cart = await self.carts.get_or_create_cart(user_id=user_id)
        item = await self.carts.get_item(cart=cart, item_id=item_id)
        if item is None:
            raise NotFound("Cart item not found", cart_id=cart.id, item_id=item_id)
        return await self.carts.update_item(cart, item, quantity=quantity, customizations=customizations)

    async def remove_item(self, user_id: str, item_id: int) -> Cart:
        cart = await self.carts.get_or_create_cart(user_id=user_id)
        item = await self.carts.get_item(cart=cart, item_id=item_id)
        if item is None:
            logger.debug("Cart %s has no item %s; nothing to remove", cart.id, item_id)
            return cart
        return await self.carts.remove_item(cart, item)

    async def clear_cart(self, user_id: str) -> Cart:
        cart = await self.carts.get_or_create_cart(user_id=user_id)
        if cart.items:
            await self.carts.clear_cart(cart_id=cart.id)
            await self.carts.session.refresh(cart, attribute_names=["items", "updated_at"])
        return cart


@dataclass(slots=True)
class CheckoutResult:
    order: Order
    checkout_url: str | None
    created: bool


@dataclass(frozen=True, slots=True)
class WebhookOutcome:
    event_id: str | None
    event_type: str | None
    outcome: str
    order_id: int | None = None


class OrderWorkflow:
    """Cart → order → checkout session → webhook → fulfillment.

    The workflow commits at the points where later steps must not be able to
    undo earlier ones: after the order row exists (before the gateway call) and
    after a payment transition (before notifications go out).
    """

    def __init__(
        self,
        *,
        orders: OrderRepository,
        carts: CartRepository,
        addresses: AddressRepository,
        gateway: PaymentGateway,
        pricing: PricingRules,
        notifier: OrderNotifier | None = None,
        currency: str = "USD",
        order_number_attempts: int = 5,
        order_number_factory: Callable[[], str] = generate_order_number,
    ) -> None:
        self.orders = orders
        self.carts = carts
        self.addresses = addresses
        self.gateway = gateway
        self.pricing = pricing
        self.notifier = notifier
        self.currency = currency
        self.order_number_attempts = order_number_attempts
        self.order_number_factory = order_number_factory

    # Checkout -------------------------------------------------------------------------------

    async def create_order(
        self,
        user_id: str,
        *,
        billing_address_id: int,
        shipping_address_id: int,
        notes: str | None = None,
        idempotency_key: str | None = None,
    ) -> CheckoutResult:
        order, created = await self._ensure_order(
            user_id,
            billing_address_id=billing_address_id,
            shipping_address_id=shipping_address_id,
            notes=notes,
            idempotency_key=idempotency_key,
        )
        if not is_open_checkout(order.status, order.payment_status):
            # Replay of a request whose order has already moved on.
            return CheckoutResult(order=order, checkout_url=order.checkout_url, created=False)

        order = await self._ensure_session(order)
        return CheckoutResult(order=order, checkout_url=order.checkout_url, created=created)

    async def ensure_checkout_session(self, user_id: str, order_id: int) -> CheckoutResult:
        """Create or regenerate the checkout session of an open order."""

        order = await self.get_order(user_id, order_id)
        if not is_open_checkout(order.status, order.payment_status):
            raise InvalidTransition(
                f"Order {order.order_number} is {order.status}/{order.payment_status} and cannot be paid",
                order_id=order.id,
            )
        order = await self._ensure_session(order)
        return CheckoutResult(order=order, checkout_url=order.checkout_url, created=False)

    async def _ensure_order(
        self,
        user_id: str,
        *,
        billing_address_id: int,
        shipping_address_id: int,
        notes: str | None,
        idempotency_key: str | None,
    ) -> tuple[Order, bool]:
        for attempt in range(1, self.order_number_attempts + 1):
            try:
                order, created = await self._materialize(
                    user_id,
                    billing_address_id=billing_address_id,
                    shipping_address_id=shipping_address_id,
                    notes=notes,
                    idempotency_key=idempotency_key,
                )
            except OrderConflict as exc:
                # The failed flush poisoned the transaction; the next pass re-reads everything.
                await self.orders.session.rollback()
                logger.warning(
                    "Order insert for user %s conflicted on %s (attempt %d/%d)",
                    user_id,
                    exc.field,
                    attempt,
                    self.order_number_attempts,
                )
                if attempt == self.order_number_attempts:
                    raise
                continue

            # Make the order durable before talking to the gateway so a failed
            # session request leaves a retryable pending order behind.
            await self.orders.session.commit()
            return order, created
        raise ValueError("order_number_attempts must be at least 1")

    async def _materialize(
        self,
        user_id: str,
        *,
        billing_address_id: int,
        shipping_address_id: int,
        notes: str | None,
        idempotency_key: str | None,
    ) -> tuple[Order, bool]:
        if idempotency_key:
            replay = await self.orders.get_by_idempotency_key(user_id=user_id, idempotency_key=idempotency_key)
            if replay is not None:
                logger.info("Reusing order %s for idempotency key %s", replay.order_number, idempotency_key)
                ORDERS_REUSED_TOTAL.inc()
                return replay, False

        cart = await self.carts.get_cart(user_id=user_id)
        if cart is None or not cart.items:
            raise EmptyCartError(user_id=user_id, cart_id=cart.id if cart else None)

        await self._require_owned_address(user_id, billing_address_id, "billing")
        await self._require_owned_address(user_id, shipping_address_id, "shipping")

        fingerprint = cart_fingerprint(
            cart.items,
            billing_address_id=billing_address_id,
            shipping_address_id=shipping_address_id,
        )
        open_order = await self.orders.get_open_checkout(cart_id=cart.id)
        if open_order is not None:
            if open_order.cart_fingerprint == fingerprint:
                logger.info("Reusing open order %s for cart %s", open_order.order_number, cart.id)
                ORDERS_REUSED_TOTAL.inc()
                return open_order, False
            await self._cancel_stale_checkout(open_order, cart)

        lines = [
            PricedLine(product_id=item.product_id, quantity=item.quantity, unit_price_cents=item.unit_price_cents)
            for item in cart.items
        ]
        quote = self.pricing.quote(user_id=user_id, lines=lines)
        order = await self.orders.create_order(
            user_id=user_id,
            order_number=self.order_number_factory(),
            currency=self.currency,
            quote=quote,
            lines=[
                {
                    "product_id": item.product_id,
                    "product_name": item.product.name,
                    "quantity": item.quantity,
                    "unit_price_cents": item.unit_price_cents,
                    "customizations": dict(item.customizations) if item.customizations else None,
                }
                for item in cart.items
            ],
            billing_address_id=billing_address_id,
            shipping_address_id=shipping_address_id,
            notes=notes,
            source_cart_id=cart.id,
            idempotency_key=idempotency_key,
            cart_fingerprint=fingerprint,
        )
        await self.orders.add_event(order, event_type="created", payload=str(order.total_cents))
        ORDERS_CREATED_TOTAL.inc()
        logger.info(
            "Created order %s (id=%s) for user %s from cart %s total=%d",
            order.order_number,
            order.id,
            user_id,
            cart.id,
            order.total_cents,
        )
        return order, True

    async def _cancel_stale_checkout(self, order: Order, cart: Cart) -> None:
        plan = plan_transition(order.status, OrderStatus.CANCELLED, order.payment_status)
        await self._close_checkout_session(order)
        applied = await self.orders.apply_transition(order, plan, plan.values(now=_utcnow()))
        if applied:
            await self.orders.add_event(order, event_type="cancelled", payload="superseded")
            ORDER_TRANSITIONS_TOTAL.labels(from_status=plan.source.value, to_status=plan.target.value).inc()
            logger.info("Cancelled order %s: cart %s changed since checkout started", order.order_number, cart.id)

    async def _close_checkout_session(self, order: Order) -> None:
        """Expire the order's open checkout session before the order is cancelled.

        A session the customer already completed cannot be expired; its payment
        is on the way, so the cancellation is refused instead.
        """

        if not order.payment_session_id or order.payment_status != PaymentStatus.PENDING.value:
            return
        session_id = order.payment_session_id
        if not await self.gateway.expire_checkout_session(session_id, order_id=order.id):
            raise PaymentInProgress(
                f"Checkout for order {order.order_number} was completed; waiting for payment confirmation",
                order_id=order.id,
                session_id=session_id,
            )
        await self.orders.add_event(order, event_type="checkout_session_expired", payload=session_id)
        logger.info("Expired checkout session %s of order %s", session_id, order.order_number)

    async def _require_owned_address(self, user_id: str, address_id: int, role: str) -> Address:
        address = await self.addresses.get_address(address_id)
        if address is None:
            raise NotFound(f"{role.capitalize()} address not found", address_id=address_id)
        if address.user_id != user_id:
            raise Forbidden(f"{role.capitalize()} address does not belong to the user", address_id=address_id)
        return address

    async def _ensure_session(self, order: Order) -> Order:
        if order.payment_status == PaymentStatus.FAILED.value:
            if not await self.orders.restart_checkout(order):
                raise InvalidTransition("Order payment changed concurrently", order_id=order.id)
            order = await self._reload(order.id)
            await self.orders.add_event(
                order, event_type="checkout_session_regenerated", payload=str(order.session_attempt)
            )
            await self.orders.session.commit()
        elif order.payment_session_id and order.checkout_url:
            CHECKOUT_SESSIONS_TOTAL.labels(outcome="reused").inc()
            return order

        idempotency_key = session_idempotency_key(order)
        try:
            session = await self.gateway.create_checkout_session(
                order_id=order.id,
                order_number=order.order_number,
                amount_cents=order.total_cents,
                currency=order.currency,
                idempotency_key=idempotency_key,
            )
        except GatewayError as exc:
            CHECKOUT_SESSIONS_TOTAL.labels(outcome=exc.code).inc()
            exc.context.setdefault("order_id", order.id)
            logger.error(
                "Checkout session for order %s (key=%s) failed: %s",
                order.order_number,
                idempotency_key,
                exc.message,
            )
            raise

        order = await self.orders.attach_checkout_session(order, session_id=session.session_id, url=session.url)
        await self.orders.add_event(order, event_type="checkout_session_created", payload=session.session_id)
        CHECKOUT_SESSIONS_TOTAL.labels(outcome="created").inc()
        return order

    # Reads ----------------------------------------------------------------------------------

    async def get_order(self, user_id: str, order_id: int) -> Order:
        order = await self.orders.get_order(order_id)
        if order is None or order.user_id != user_id:
            raise NotFound("Order not found", order_id=order_id)
        return order

    async def list_orders(
        self,
        user_id: str,
        *,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        return await self.orders.list_orders(user_id=user_id, status=status, limit=limit, offset=offset)

    async def _reload(self, order_id: int) -> Order:
        order = await self.orders.get_order(order_id, refresh=True)
        if order is None:
            raise NotFound("Order not found", order_id=order_id)
        return order

    # Payment webhooks -----------------------------------------------------------------------

    async def handle_payment_webhook(self, payload: bytes, signature: str | None) -> WebhookOutcome:
        if not self.gateway.verify_webhook_signature(payload, signature):
            PAYMENT_WEBHOOKS_TOTAL.labels(event_type="unknown", outcome="invalid_signature").inc()
            logger.warning(
                "SECURITY: rejected payment webhook with invalid signature (signature_present=%s, bytes=%d)",
                bool(signature),
                len(payload),
            )
            raise InvalidSignature()

        try:
            event = parse_webhook_event(payload)
        except ValueError as exc:
            logger.error("Acknowledging signed but malformed payment webhook: %s", exc)
            return self._count(WebhookOutcome(event_id=None, event_type=None, outcome="malformed"))

        if event.event_type not in PAYMENT_SUCCEEDED_EVENTS | PAYMENT_FAILED_EVENTS:
            logger.debug("Ignoring payment webhook %s of type %s", event.event_id, event.event_type)
            return self._count(WebhookOutcome(event.event_id, event.event_type, "ignored"))

        order = await self._resolve_order(event)
        if order is None:
            logger.warning(
                "Payment webhook %s (%s) references unknown order ref=%s session=%s",
                event.event_id,
                event.event_type,
                event.order_reference,
                event.session_id,
            )
            return self._count(WebhookOutcome(event.event_id, event.event_type, "order_not_found"))

        order_id = order.id
        claimed = await self.orders.claim_webhook_event(
            event_id=event.event_id,
            event_type=event.event_type,
            order_id=order_id,
        )
        if not claimed:
            logger.info("Payment webhook %s already processed", event.event_id)
            return self._count(WebhookOutcome(event.event_id, event.event_type, "duplicate", order_id))

        if event.event_type in PAYMENT_FAILED_EVENTS:
            return await self._apply_payment_failure(event, order)
        if event.payment_status in _UNSETTLED_PAYMENT_STATUSES:
            logger.info("Order %s checkout completed but payment not settled yet", order.order_number)
            return await self._finish(event, order, "awaiting_payment")
        return await self._apply_payment_success(event, order)

    async def _resolve_order(self, event: GatewayEvent) -> Order | None:
        if event.order_reference and event.order_reference.isdigit():
            order = await self.orders.get_order(int(event.order_reference))
            if order is not None:
                return order
        if event.session_id:
            return await self.orders.get_by_session_id(event.session_id)
        return None

    async def _apply_payment_success(self, event: GatewayEvent, order: Order) -> WebhookOutcome:
        if not await self.orders.mark_paid(order.id, paid_at=_utcnow()):
            current = await self._reload(order.id)
            if current.payment_status == PaymentStatus.PAID.value:
                logger.info("Order %s already paid; webhook %s is a redelivery", current.order_number, event.event_id)
                return await self._finish(event, current, "duplicate")
            logger.error(
                "Payment received for order %s in state %s/%s; manual review required",
                current.order_number,
                current.status,
                current.payment_status,
            )
            return await self._finish(event, current, "order_not_payable")

        if order.source_cart_id is not None:
            removed = await self.carts.clear_cart(cart_id=order.source_cart_id)
            logger.info("Cleared %d item(s) from cart %s after payment", removed, order.source_cart_id)
        order = await self._reload(order.id)
        await self.orders.add_event(order, event_type="payment_succeeded", payload=event.event_id)
        outcome = await self._finish(event, order, "paid")
        ORDER_TRANSITIONS_TOTAL.labels(from_status="pending", to_status="processing").inc()

        # Durable before anyone is told about it.
        await self.orders.session.commit()
        logger.info("Order %s paid via session %s", order.order_number, event.session_id)
        await self._notify_confirmed(order)
        return outcome

    async def _apply_payment_failure(self, event: GatewayEvent, order: Order) -> WebhookOutcome:
        check_payment_transition(PaymentStatus.PENDING, PaymentStatus.FAILED)
        if not await self.orders.mark_payment_failed(order.id):
            logger.info(
                "Ignoring %s for order %s in state %s/%s",
                event.event_type,
                order.order_number,
                order.status,
                order.payment_status,
            )
            return await self._finish(event, order, "ignored")
        await self.orders.add_event(order, event_type="payment_failed", payload=event.event_type)
        logger.warning("Payment for order %s failed (%s)", order.order_number, event.event_type)
        return await self._finish(event, order, "payment_failed")

    async def _finish(self, event: GatewayEvent, order: Order, outcome: str) -> WebhookOutcome:
        await self.orders.settle_webhook_event(event_id=event.event_id, outcome=outcome)
        return self._count(WebhookOutcome(event.event_id, event.event_type, outcome, order.id))

    @staticmethod
    def _count(outcome: WebhookOutcome) -> WebhookOutcome:
        PAYMENT_WEBHOOKS_TOTAL.labels(
            event_type=event_type_label(outcome.event_type),
            outcome=outcome.outcome,
        ).inc()
        return outcome

    async def _notify_confirmed(self, order: Order) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.order_confirmed(order)
        except Exception:
            logger.exception("Order confirmation for %s could not be published", order.order_number)

    # Fulfillment ----------------------------------------------------------------------------

    async def update_order_status(
        self,
        order_id: int,
        new_status: str,
        *,
        tracking_number: str | None = None,
    ) -> Order:
        order = await self.orders.get_order(order_id)
        if order is None:
            raise NotFound("Order not found", order_id=order_id)

        previous = order.status
        plan = plan_transition(order.status, new_status, order.payment_status)
        if plan.target is OrderStatus.CANCELLED:
            await self._close_checkout_session(order)
        values = plan.values(now=_utcnow(), tracking_number=tracking_number)
        if not await self.orders.apply_transition(order, plan, values):
            current = await self._reload(order_id)
            raise InvalidTransition(
                f"Order changed to {current.status} while moving it to {plan.target.value}",
                order_id=order_id,
            )

        order = await self._reload(order_id)
        await self.orders.add_event(order, event_type="status_changed", payload=plan.target.value)
        ORDER_TRANSITIONS_TOTAL.labels(from_status=plan.source.value, to_status=plan.target.value).inc()
        await self.orders.session.commit()
        logger.info("Order %s moved %s -> %s", order.order_number, previous, order.status)

        if self.notifier is not None:
            try:
                await self.notifier.status_changed(order, previous)
            except Exception:
                logger.exception("Status change for %s could not be published", order.order_number)
        return order
