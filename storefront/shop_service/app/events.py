"""Order domain events published for downstream notification consumers."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from storefront.common.kafka import KafkaProducerStub

from .models import Order
from .pricing import from_cents

ORDER_CONFIRMED_TOPIC = "orders.order.confirmed.v1"
ORDER_STATUS_CHANGED_TOPIC = "orders.order.status_changed.v1"


def _iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _order_payload(order: Order) -> dict[str, Any]:
    return {
        "id": order.id,
        "orderNumber": order.order_number,
        "userId": order.user_id,
        "status": order.status,
        "paymentStatus": order.payment_status,
        "currency": order.currency,
        "totalAmount": str(from_cents(order.total_cents)),
        "shippingAddressId": order.shipping_address_id,
        "trackingNumber": order.tracking_number,
        "items": [
            {
                "productId": item.product_id,
                "productName": item.product_name,
                "quantity": item.quantity,
                "price": str(from_cents(item.unit_price_cents)),
            }
            for item in order.items
        ],
    }


class OrderEventPublisher:
    """Publishes order lifecycle events; the notification service turns them into emails."""

    def __init__(self, producer: KafkaProducerStub | None) -> None:
        self._producer = producer

    async def _emit(self, topic: str, order: Order, payload: dict[str, Any]) -> None:
        if self._producer is None:
            return
        envelope = {
            "eventType": topic,
            "occurredAt": datetime.now(timezone.utc).isoformat(),
            **payload,
        }
        await self._producer.send(topic, envelope, key=order.order_number)

    async def order_confirmed(self, order: Order) -> None:
        await self._emit(
            ORDER_CONFIRMED_TOPIC,
            order,
            {"order": _order_payload(order), "paidAt": _iso(order.paid_at)},
        )

    async def status_changed(self, order: Order, previous_status: str) -> None:
        await self._emit(
            ORDER_STATUS_CHANGED_TOPIC,
            order,
            {
                "order": _order_payload(order),
                "previousStatus": previous_status,
                "currentStatus": order.status,
            },
        )
