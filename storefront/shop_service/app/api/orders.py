"""API routes for checkout and order lifecycle management."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Path, Query, Response, status

from ..dependencies import get_current_user_id, get_order_workflow, require_admin
from ..models import Order
from ..pricing import from_cents
from ..schemas import (
    CheckoutResponse,
    Envelope,
    OrderCreate,
    OrderEnvelopeData,
    OrderEventResponse,
    OrderListResponse,
    OrderResponse,
    OrderStatusUpdate,
)
from ..services import CheckoutResult, OrderWorkflow

router = APIRouter(prefix="/orders", tags=["orders"])


def _serialize_order(order: Order) -> dict[str, object]:
    return {
        "id": order.id,
        "orderNumber": order.order_number,
        "userId": order.user_id,
        "status": order.status,
        "paymentStatus": order.payment_status,
        "currency": order.currency,
        "subtotal": from_cents(order.subtotal_cents),
        "tax": from_cents(order.tax_cents),
        "shipping": from_cents(order.shipping_cents),
        "discount": from_cents(order.discount_cents),
        "total": from_cents(order.total_cents),
        "billingAddressId": order.billing_address_id,
        "shippingAddressId": order.shipping_address_id,
        "notes": order.notes,
        "trackingNumber": order.tracking_number,
        "items": [
            {
                "id": item.id,
                "productId": item.product_id,
                "productName": item.product_name,
                "quantity": item.quantity,
                "price": from_cents(item.unit_price_cents),
                "customizations": item.customizations,
            }
            for item in order.items
        ],
        "paidAt": order.paid_at,
        "shippedAt": order.shipped_at,
        "deliveredAt": order.delivered_at,
        "cancelledAt": order.cancelled_at,
        "createdAt": order.created_at,
        "updatedAt": order.updated_at,
    }


def _to_response(order: Order) -> OrderResponse:
    return OrderResponse.model_validate(_serialize_order(order))


def _checkout_envelope(result: CheckoutResult) -> Envelope[CheckoutResponse]:
    return Envelope[CheckoutResponse](
        data=CheckoutResponse.model_validate(
            {"order": _to_response(result.order), "checkoutUrl": result.checkout_url}
        )
    )


@router.post("", response_model=Envelope[CheckoutResponse], status_code=status.HTTP_201_CREATED)
async def create_order(
    payload: OrderCreate,
    response: Response,
    user_id: str = Depends(get_current_user_id),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=128),
    workflow: OrderWorkflow = Depends(get_order_workflow),
) -> Envelope[CheckoutResponse]:
    result = await workflow.create_order(
        user_id,
        billing_address_id=payload.billing_address_id,
        shipping_address_id=payload.shipping_address_id,
        notes=payload.notes,
        idempotency_key=(idempotency_key or "").strip() or None,
    )
    if not result.created:
        response.status_code = status.HTTP_200_OK
    return _checkout_envelope(result)


@router.get("", response_model=Envelope[OrderListResponse])
async def list_orders(
    user_id: str = Depends(get_current_user_id),
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    workflow: OrderWorkflow = Depends(get_order_workflow),
) -> Envelope[OrderListResponse]:
    orders, total = await workflow.list_orders(user_id, status=status_filter, limit=limit, offset=offset)
    return Envelope[OrderListResponse](
        data=OrderListResponse(
            items=[_to_response(order) for order in orders],
            total=total,
            limit=limit,
            offset=offset,
        )
    )


@router.get("/{order_id}", response_model=Envelope[OrderEnvelopeData])
async def get_order(
    order_id: int = Path(..., ge=1),
    user_id: str = Depends(get_current_user_id),
    workflow: OrderWorkflow = Depends(get_order_workflow),
) -> Envelope[OrderEnvelopeData]:
    order = await workflow.get_order(user_id, order_id)
    return Envelope[OrderEnvelopeData](data=OrderEnvelopeData(order=_to_response(order)))


@router.get("/{order_id}/events", response_model=Envelope[list[OrderEventResponse]])
async def list_order_events(
    order_id: int = Path(..., ge=1),
    user_id: str = Depends(get_current_user_id),
    workflow: OrderWorkflow = Depends(get_order_workflow),
) -> Envelope[list[OrderEventResponse]]:
    order = await workflow.get_order(user_id, order_id)
    return Envelope[list[OrderEventResponse]](
        data=[OrderEventResponse.model_validate(event) for event in order.events]
    )


@router.post("/{order_id}/checkout-session", response_model=Envelope[CheckoutResponse])
async def ensure_checkout_session(
    order_id: int = Path(..., ge=1),
    user_id: str = Depends(get_current_user_id),
    workflow: OrderWorkflow = Depends(get_order_workflow),
) -> Envelope[CheckoutResponse]:
    result = await workflow.ensure_checkout_session(user_id, order_id)
    return _checkout_envelope(result)


@router.patch("/{order_id}/status", response_model=Envelope[OrderEnvelopeData])
async def update_order_status(
    payload: OrderStatusUpdate,
    order_id: int = Path(..., ge=1),
    _admin: str = Depends(require_admin),
    workflow: OrderWorkflow = Depends(get_order_workflow),
) -> Envelope[OrderEnvelopeData]:
    order = await workflow.update_order_status(
        order_id,
        payload.status.value,
        tracking_number=payload.tracking_number,
    )
    return Envelope[OrderEnvelopeData](data=OrderEnvelopeData(order=_to_response(order)))
