"""Data access helpers for the shop service."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Select, and_, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .lifecycle import OrderStatus, PaymentStatus, TransitionPlan
from .models import (
    Address,
    Cart,
    CartItem,
    Order,
    OrderEvent,
    OrderItem,
    PaymentWebhookEvent,
    Product,
)
from .pricing import PriceQuote

# Unique columns whose violation means "regenerate and retry" versus "someone else won".
_ORDER_NUMBER_MARKERS = ("uq_orders_order_number", "orders.order_number")
_OPEN_CHECKOUT_MARKERS = (
    "uq_orders_active_checkout",
    "orders.active_checkout_key",
    "uq_orders_user_idempotency_key",
    "orders.idempotency_key",
)
_WEBHOOK_EVENT_MARKERS = (
    "uq_payment_webhook_events_event",
    "payment_webhook_events.event_id",
)


class OrderConflict(Exception):
    """An order insert hit a unique constraint. The session must be rolled back."""

    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(f"order conflict on {field}")


def _conflict_field(exc: IntegrityError) -> str | None:
    message = str(exc.orig)
    if any(marker in message for marker in _ORDER_NUMBER_MARKERS):
        return "order_number"
    if any(marker in message for marker in _OPEN_CHECKOUT_MARKERS):
        return "open_checkout"
    if any(marker in message for marker in _WEBHOOK_EVENT_MARKERS):
        return "event_id"
    return None


class ProductRepository:
    """Read-only catalog lookups."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_active_product(self, product_id: int) -> Product | None:
        result = await self.session.execute(
            select(Product).where(Product.id == product_id, Product.is_active.is_(True))
        )
        return result.scalar_one_or_none()


class CartRepository:
    """Persistence helpers for shopping carts."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_cart(self, *, user_id: str) -> Cart | None:
        result = await self.session.execute(
            select(Cart).options(selectinload(Cart.items)).where(Cart.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_or_create_cart(self, *, user_id: str) -> Cart:
        cart = await self.get_cart(user_id=user_id)
        if cart is not None:
            return cart

        cart = Cart(user_id=user_id)
        self.session.add(cart)
        try:
            await self.session.flush()
        except IntegrityError:
            # Another request created the cart first.
            await self.session.rollback()
            existing = await self.get_cart(user_id=user_id)
            if existing is None:
                raise
            return existing
        await self.session.refresh(cart, attribute_names=["created_at", "updated_at", "items"])
        return cart

    async def get_item(self, *, cart: Cart, item_id: int) -> CartItem | None:
        return next((item for item in cart.items if item.id == item_id), None)

    async def add_item(
        self,
        cart: Cart,
        *,
        product: Product,
        quantity: int,
        customizations: dict[str, Any] | None,
    ) -> Cart:
        existing = next((item for item in cart.items if item.product_id == product.id), None)
        if existing is not None:
            existing.quantity += quantity
            existing.customizations = customizations
        else:
            cart.items.append(
                CartItem(
                    product=product,
                    quantity=quantity,
                    unit_price_cents=product.price_cents,
                    customizations=customizations,
                )
            )
        await self._touch(cart)
        return cart

    async def update_item(
        self,
        cart: Cart,
        item: CartItem,
        *,
        quantity: int,
        customizations: dict[str, Any] | None,
    ) -> Cart:
        item.quantity = quantity
        if customizations is not None:
            item.customizations = customizations
        await self._touch(cart)
        return cart

    async def remove_item(self, cart: Cart, item: CartItem) -> Cart:
        cart.items.remove(item)
        await self._touch(cart)
        return cart

    async def clear_cart(self, *, cart_id: int) -> int:
        result = await self.session.execute(
            delete(CartItem).where(CartItem.cart_id == cart_id).execution_options(synchronize_session=False)
        )
        await self.session.execute(
            update(Cart).where(Cart.id == cart_id).values(updated_at=func.now())
        )
        return result.rowcount or 0

    async def _touch(self, cart: Cart) -> None:
        await self.session.flush()
        await self.session.refresh(cart, attribute_names=["items", "updated_at"])


class AddressRepository:
    """Persistence helpers for billing and shipping addresses."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create_address(self, *, user_id: str, fields: dict[str, Any]) -> Address:
        address = Address(user_id=user_id, **fields)
        if address.is_default:
            await self._clear_default(user_id)
        self.session.add(address)
        await self.session.flush()
        await self.session.refresh(address, attribute_names=["created_at", "updated_at"])
        return address

    async def get_address(self, address_id: int) -> Address | None:
        return await self.session.get(Address, address_id)

    async def list_addresses(self, *, user_id: str) -> list[Address]:
        result = await self.session.execute(
            select(Address)
            .where(Address.user_id == user_id)
            .order_by(Address.is_default.desc(), Address.created_at.desc(), Address.id.desc())
        )
        return list(result.scalars())

    async def update_address(self, address: Address, updates: dict[str, Any]) -> Address:
        if updates.get("is_default"):
            await self._clear_default(address.user_id, keep_id=address.id)
        for key, value in updates.items():
            setattr(address, key, value)
        await self.session.flush()
        await self.session.refresh(address, attribute_names=["updated_at"])
        return address

    async def delete_address(self, address: Address) -> None:
        await self.session.delete(address)
        await self.session.flush()

    async def _clear_default(self, user_id: str, keep_id: int | None = None) -> None:
        statement = update(Address).where(Address.user_id == user_id, Address.is_default.is_(True))
        if keep_id is not None:
            statement = statement.where(Address.id != keep_id)
        await self.session.execute(statement.values(is_default=False).execution_options(synchronize_session="fetch"))


class OrderRepository:
    """Persistence helpers for orders.

    Every status change is a single conditional UPDATE guarded on the state it
    expects to leave, so concurrent webhook deliveries and admin actions cannot
    overwrite each other. The boolean result says whether this caller won.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def _select(self) -> Select[tuple[Order]]:
        return select(Order).options(selectinload(Order.items), selectinload(Order.events))

    async def create_order(
        self,
        *,
        user_id: str,
        order_number: str,
        currency: str,
        quote: PriceQuote,
        lines: list[dict[str, Any]],
        billing_address_id: int,
        shipping_address_id: int,
        notes: str | None,
        source_cart_id: int,
        idempotency_key: str | None,
        cart_fingerprint: str,
    ) -> Order:
        order = Order(
            order_number=order_number,
            user_id=user_id,
            status=OrderStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
            currency=currency,
            subtotal_cents=quote.subtotal_cents,
            tax_cents=quote.tax_cents,
            shipping_cents=quote.shipping_cents,
            discount_cents=quote.discount_cents,
            total_cents=quote.total_cents,
            billing_address_id=billing_address_id,
            shipping_address_id=shipping_address_id,
            notes=notes,
            source_cart_id=source_cart_id,
            idempotency_key=idempotency_key,
            cart_fingerprint=cart_fingerprint,
            active_checkout_key=str(source_cart_id),
            session_attempt=1,
            items=[OrderItem(**line) for line in lines],
        )
        self.session.add(order)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            field = _conflict_field(exc)
            if field is None:
                raise
            raise OrderConflict(field) from exc
        await self.session.refresh(order, attribute_names=["items", "events", "created_at", "updated_at"])
        return order

    async def get_order(self, order_id: int, *, refresh: bool = False) -> Order | None:
        statement = self._select().where(Order.id == order_id)
        if refresh:
            statement = statement.execution_options(populate_existing=True)
        result = await self.session.execute(statement)
        return result.scalar_one_or_none()

    async def get_by_idempotency_key(self, *, user_id: str, idempotency_key: str) -> Order | None:
        result = await self.session.execute(
            self._select().where(Order.user_id == user_id, Order.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    async def get_open_checkout(self, *, cart_id: int) -> Order | None:
        result = await self.session.execute(
            self._select().where(Order.active_checkout_key == str(cart_id))
        )
        return result.scalar_one_or_none()

    async def get_by_session_id(self, session_id: str) -> Order | None:
        result = await self.session.execute(self._select().where(Order.payment_session_id == session_id))
        return result.scalar_one_or_none()

    async def list_orders(
        self,
        *,
        user_id: str | None,
        status: str | None,
        limit: int,
        offset: int,
    ) -> tuple[list[Order], int]:
        filters = []
        if user_id is not None:
            filters.append(Order.user_id == user_id)
        if status is not None:
            filters.append(Order.status == status)

        base = select(Order).order_by(Order.created_at.desc(), Order.id.desc())
        count: Select[tuple[int]] = select(func.count(Order.id))
        if filters:
            combined = and_(*filters)
            base = base.where(combined)
            count = count.where(combined)

        total = (await self.session.execute(count)).scalar_one()
        result = await self.session.execute(
            base.options(selectinload(Order.items)).offset(offset).limit(limit)
        )
        return list(result.scalars().unique()), total

    async def attach_checkout_session(self, order: Order, *, session_id: str, url: str) -> Order:
        order.payment_session_id = session_id
        order.checkout_url = url
        await self.session.flush()
        await self.session.refresh(order, attribute_names=["updated_at"])
        return order

    async def _conditional_update(self, order_id: int, conditions: list[Any], values: dict[str, Any]) -> bool:
        result = await self.session.execute(
            update(Order)
            .where(Order.id == order_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_paid(self, order_id: int, *, paid_at: datetime) -> bool:
        return await self._conditional_update(
            order_id,
            [
                Order.status == OrderStatus.PENDING.value,
                Order.payment_status == PaymentStatus.PENDING.value,
            ],
            {
                "payment_status": PaymentStatus.PAID.value,
                "status": OrderStatus.PROCESSING.value,
                "paid_at": paid_at,
                "active_checkout_key": None,
            },
        )

    async def mark_payment_failed(self, order_id: int) -> bool:
        return await self._conditional_update(
            order_id,
            [
                Order.status == OrderStatus.PENDING.value,
                Order.payment_status == PaymentStatus.PENDING.value,
            ],
            {"payment_status": PaymentStatus.FAILED.value},
        )

    async def restart_checkout(self, order: Order) -> bool:
        """Reopen a failed payment with a fresh session attempt."""

        return await self._conditional_update(
            order.id,
            [
                Order.status == OrderStatus.PENDING.value,
                Order.payment_status == PaymentStatus.FAILED.value,
                Order.session_attempt == order.session_attempt,
            ],
            {
                "payment_status": PaymentStatus.PENDING.value,
                "session_attempt": order.session_attempt + 1,
                "payment_session_id": None,
                "checkout_url": None,
            },
        )

    async def apply_transition(self, order: Order, plan: TransitionPlan, values: dict[str, Any]) -> bool:
        conditions = [Order.status == plan.source.value]
        if plan.requires_paid:
            conditions.append(Order.payment_status == PaymentStatus.PAID.value)
        return await self._conditional_update(order.id, conditions, values)

    async def add_event(self, order: Order, *, event_type: str, payload: str) -> OrderEvent:
        entry = OrderEvent(order_id=order.id, type=event_type, payload=payload)
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def claim_webhook_event(self, *, event_id: str, event_type: str, order_id: int) -> bool:
        """Insert the ledger row for ``event_id``; False when another delivery already holds it.

        A lost claim rolls the session back, so callers must not touch instances
        loaded earlier in the transaction afterwards.
        """

        self.session.add(
            PaymentWebhookEvent(event_id=event_id, event_type=event_type, order_id=order_id, outcome="received")
        )
        try:
            await self.session.flush()
        except IntegrityError as exc:
            if _conflict_field(exc) != "event_id":
                raise
            await self.session.rollback()
            return False
        return True

    async def settle_webhook_event(self, *, event_id: str, outcome: str) -> None:
        await self.session.execute(
            update(PaymentWebhookEvent)
            .where(PaymentWebhookEvent.event_id == event_id)
            .values(outcome=outcome)
            .execution_options(synchronize_session=False)
        )
