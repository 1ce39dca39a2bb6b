"""Prometheus metrics for the shop service."""

from __future__ import annotations

from typing import Final

from prometheus_client import Counter

# Checkout -----------------------------------------------------------------------------------
ORDERS_CREATED_TOTAL: Final = Counter(
    "storefront_orders_created_total",
    "Orders materialised from a cart.",
)

ORDERS_REUSED_TOTAL: Final = Counter(
    "storefront_orders_reused_total",
    "Checkout requests answered with an already open order instead of a new one.",
)

CHECKOUT_SESSIONS_TOTAL: Final = Counter(
    "storefront_checkout_sessions_total",
    "Payment checkout session requests by outcome.",
    labelnames=("outcome",),
)

# Payment webhooks ---------------------------------------------------------------------------
PAYMENT_WEBHOOKS_TOTAL: Final = Counter(
    "storefront_payment_webhooks_total",
    "Payment webhook deliveries by event type and handling outcome.",
    labelnames=("event_type", "outcome"),
)

# Lifecycle ----------------------------------------------------------------------------------
ORDER_TRANSITIONS_TOTAL: Final = Counter(
    "storefront_order_transitions_total",
    "Applied order status transitions.",
    labelnames=("from_status", "to_status"),
)

_KNOWN_EVENT_PREFIXES: Final = ("checkout.session.", "payment_intent.", "charge.")


def event_type_label(event_type: str | None) -> str:
    """Return a bounded label value for gateway event types."""

    if not event_type:
        return "unknown"
    if event_type.startswith(_KNOWN_EVENT_PREFIXES):
        return event_type
    return "other"
