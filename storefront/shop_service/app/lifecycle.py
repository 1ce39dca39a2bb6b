"""Order and payment state machines.

Orders move along two independent axes::

    order:    pending -> processing -> shipped -> delivered
                 \\            \\
                  +-> cancelled <+

    payment:  pending -> paid
              pending -> failed -> pending   (only by regenerating the checkout session)

An order may enter ``processing`` only once its payment is ``paid``. Nothing
moves back to ``pending`` on the order axis. ``delivered`` and ``cancelled``
are terminal.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Final

from .errors import InvalidTransition


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


ORDER_TRANSITIONS: Final[dict[OrderStatus, frozenset[OrderStatus]]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

PAYMENT_TRANSITIONS: Final[dict[PaymentStatus, frozenset[PaymentStatus]]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PENDING}),
    PaymentStatus.PAID: frozenset(),
}

TERMINAL_ORDER_STATUSES: Final = frozenset(
    status for status, targets in ORDER_TRANSITIONS.items() if not targets
)

# Timestamp column stamped when an order enters the status.
_STAMPED_COLUMNS: Final[dict[OrderStatus, str]] = {
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


def _order_status(value: str | OrderStatus) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError as exc:
        raise InvalidTransition(f"Unknown order status '{value}'") from exc


def _payment_status(value: str | PaymentStatus) -> PaymentStatus:
    try:
        return PaymentStatus(value)
    except ValueError as exc:
        raise InvalidTransition(f"Unknown payment status '{value}'") from exc


@dataclass(frozen=True, slots=True)
class TransitionPlan:
    """A validated order status change, ready to be applied as a conditional update."""

    source: OrderStatus
    target: OrderStatus
    requires_paid: bool
    stamp_column: str | None
    releases_checkout: bool

    def values(self, *, now: datetime, tracking_number: str | None = None) -> dict[str, Any]:
        values: dict[str, Any] = {"status": self.target.value}
        if self.stamp_column is not None:
            values[self.stamp_column] = now
        if self.releases_checkout:
            values["active_checkout_key"] = None
        if tracking_number is not None and self.target is OrderStatus.SHIPPED:
            values["tracking_number"] = tracking_number
        return values


def plan_transition(
    current: str | OrderStatus,
    target: str | OrderStatus,
    payment_status: str | PaymentStatus,
) -> TransitionPlan:
    """Validate ``current -> target`` and describe the columns it touches.

    Raises InvalidTransition for backward moves, skipped steps, moves out of a
    terminal status, and ``pending -> processing`` on an unpaid order.
    """

    source = _order_status(current)
    destination = _order_status(target)
    payment = _payment_status(payment_status)

    if destination not in ORDER_TRANSITIONS[source]:
        if source in TERMINAL_ORDER_STATUSES:
            raise InvalidTransition(f"Order is already {source.value}")
        raise InvalidTransition(f"Cannot move order from {source.value} to {destination.value}")

    requires_paid = source is OrderStatus.PENDING and destination is OrderStatus.PROCESSING
    if requires_paid and payment is not PaymentStatus.PAID:
        raise InvalidTransition("Order cannot be processed before payment is confirmed")

    return TransitionPlan(
        source=source,
        target=destination,
        requires_paid=requires_paid,
        stamp_column=_STAMPED_COLUMNS.get(destination),
        releases_checkout=destination is OrderStatus.CANCELLED,
    )


def check_payment_transition(current: str | PaymentStatus, target: str | PaymentStatus) -> None:
    source = _payment_status(current)
    destination = _payment_status(target)
    if destination not in PAYMENT_TRANSITIONS[source]:
        raise InvalidTransition(f"Cannot move payment from {source.value} to {destination.value}")


def is_open_checkout(status: str, payment_status: str) -> bool:
    """True while the order still waits for the customer to pay."""

    return status == OrderStatus.PENDING.value and payment_status != PaymentStatus.PAID.value
