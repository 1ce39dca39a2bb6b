from datetime import datetime, timezone

import pytest

from storefront.shop_service.app.errors import InvalidTransition
from storefront.shop_service.app.lifecycle import (
    OrderStatus,
    PaymentStatus,
    TERMINAL_ORDER_STATUSES,
    check_payment_transition,
    is_open_checkout,
    plan_transition,
)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        ("pending", "processing"),
        ("processing", "shipped"),
        ("shipped", "delivered"),
        ("pending", "cancelled"),
        ("processing", "cancelled"),
    ],
)
def test_forward_moves_are_allowed_once_paid(current: str, target: str) -> None:
    plan = plan_transition(current, target, "paid")
    assert (plan.source.value, plan.target.value) == (current, target)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        ("pending", "delivered"),
        ("pending", "shipped"),
        ("shipped", "pending"),
        ("processing", "pending"),
        ("delivered", "cancelled"),
        ("cancelled", "processing"),
        ("shipped", "cancelled"),
    ],
)
def test_illegal_moves_are_rejected(current: str, target: str) -> None:
    with pytest.raises(InvalidTransition):
        plan_transition(current, target, PaymentStatus.PAID)


def test_processing_requires_payment() -> None:
    with pytest.raises(InvalidTransition, match="before payment"):
        plan_transition("pending", "processing", "pending")
    with pytest.raises(InvalidTransition):
        plan_transition("pending", "processing", "failed")

    plan = plan_transition("pending", "processing", "paid")
    assert plan.requires_paid is True
    assert plan.stamp_column is None


def test_unpaid_order_can_still_be_cancelled() -> None:
    plan = plan_transition("pending", "cancelled", "pending")
    now = datetime(2026, 1, 2, tzinfo=timezone.utc)

    assert plan.values(now=now) == {
        "status": "cancelled",
        "cancelled_at": now,
        "active_checkout_key": None,
    }


def test_shipping_stamps_time_and_tracking_number() -> None:
    now = datetime(2026, 1, 3, tzinfo=timezone.utc)
    shipped = plan_transition(OrderStatus.PROCESSING, OrderStatus.SHIPPED, PaymentStatus.PAID)
    assert shipped.values(now=now, tracking_number="TRK-1") == {
        "status": "shipped",
        "shipped_at": now,
        "tracking_number": "TRK-1",
    }

    delivered = plan_transition("shipped", "delivered", "paid")
    assert delivered.values(now=now, tracking_number="ignored") == {"status": "delivered", "delivered_at": now}


def test_unknown_status_is_an_invalid_transition() -> None:
    with pytest.raises(InvalidTransition, match="Unknown order status"):
        plan_transition("pending", "lost", "pending")
    with pytest.raises(InvalidTransition, match="Unknown payment status"):
        plan_transition("pending", "cancelled", "refunded")


def test_terminal_statuses() -> None:
    assert TERMINAL_ORDER_STATUSES == {OrderStatus.DELIVERED, OrderStatus.CANCELLED}
    with pytest.raises(InvalidTransition, match="already delivered"):
        plan_transition("delivered", "shipped", "paid")


def test_payment_axis() -> None:
    check_payment_transition("pending", "paid")
    check_payment_transition("pending", "failed")
    check_payment_transition("failed", "pending")
    for current, target in (("paid", "pending"), ("paid", "failed"), ("failed", "paid")):
        with pytest.raises(InvalidTransition):
            check_payment_transition(current, target)


def test_open_checkout_detection() -> None:
    assert is_open_checkout("pending", "pending")
    assert is_open_checkout("pending", "failed")
    assert not is_open_checkout("pending", "paid")
    assert not is_open_checkout("processing", "paid")
    assert not is_open_checkout("cancelled", "pending")
