"""Pydantic schemas for the shop service."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator

from .lifecycle import OrderStatus

DataT = TypeVar("DataT")


class Envelope(BaseModel, Generic[DataT]):
    success: bool = True
    data: DataT


class WebhookAck(BaseModel):
    success: bool = True
    received: bool = True


# Cart -------------------------------------------------------------------------------------


class CartItemCreate(BaseModel):
    product_id: PositiveInt = Field(alias="productId")
    quantity: PositiveInt = 1
    customizations: dict[str, Any] | None = None

    model_config = ConfigDict(populate_by_name=True)


class CartItemUpdate(BaseModel):
    quantity: PositiveInt
    customizations: dict[str, Any] | None = None


class CartItemResponse(BaseModel):
    id: PositiveInt
    product_id: PositiveInt = Field(alias="productId")
    product_name: str = Field(alias="productName")
    quantity: PositiveInt
    price: Decimal
    line_total: Decimal = Field(alias="lineTotal")
    customizations: dict[str, Any] | None = None
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class CartResponse(BaseModel):
    id: PositiveInt
    user_id: str = Field(alias="userId")
    items: list[CartItemResponse]
    total_items: int = Field(alias="totalItems")
    subtotal: Decimal
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


# Addresses --------------------------------------------------------------------------------


class AddressBase(BaseModel):
    first_name: str = Field(min_length=1, max_length=100, alias="firstName")
    last_name: str = Field(min_length=1, max_length=100, alias="lastName")
    company: str | None = Field(default=None, max_length=255)
    address_line1: str = Field(min_length=1, max_length=255, alias="addressLine1")
    address_line2: str | None = Field(default=None, max_length=255, alias="addressLine2")
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(min_length=1, max_length=100)
    postal_code: str = Field(min_length=1, max_length=20, alias="postalCode")
    country: str = Field(min_length=2, max_length=2)
    phone: str | None = Field(default=None, max_length=32)
    is_default: bool = Field(default=False, alias="isDefault")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("country")
    @classmethod
    def _normalize_country(cls, value: str) -> str:
        return value.strip().upper()


class AddressCreate(AddressBase):
    pass


class AddressUpdate(BaseModel):
    first_name: str | None = Field(default=None, min_length=1, max_length=100, alias="firstName")
    last_name: str | None = Field(default=None, min_length=1, max_length=100, alias="lastName")
    company: str | None = Field(default=None, max_length=255)
    address_line1: str | None = Field(default=None, min_length=1, max_length=255, alias="addressLine1")
    address_line2: str | None = Field(default=None, max_length=255, alias="addressLine2")
    city: str | None = Field(default=None, min_length=1, max_length=100)
    state: str | None = Field(default=None, min_length=1, max_length=100)
    postal_code: str | None = Field(default=None, min_length=1, max_length=20, alias="postalCode")
    country: str | None = Field(default=None, min_length=2, max_length=2)
    phone: str | None = Field(default=None, max_length=32)
    is_default: bool | None = Field(default=None, alias="isDefault")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("country")
    @classmethod
    def _normalize_country(cls, value: str | None) -> str | None:
        return value.strip().upper() if value is not None else None


class AddressResponse(AddressBase):
    id: PositiveInt
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


# Orders -----------------------------------------------------------------------------------


class OrderCreate(BaseModel):
    billing_address_id: PositiveInt = Field(alias="billingAddressId")
    shipping_address_id: PositiveInt = Field(alias="shippingAddressId")
    notes: str | None = Field(default=None, max_length=2000)

    model_config = ConfigDict(populate_by_name=True)


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    tracking_number: str | None = Field(default=None, min_length=1, max_length=100, alias="trackingNumber")

    model_config = ConfigDict(populate_by_name=True)


class OrderItemResponse(BaseModel):
    id: PositiveInt
    product_id: PositiveInt = Field(alias="productId")
    product_name: str = Field(alias="productName")
    quantity: PositiveInt
    price: Decimal
    customizations: dict[str, Any] | None = None

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class OrderResponse(BaseModel):
    id: PositiveInt
    order_number: str = Field(alias="orderNumber")
    user_id: str = Field(alias="userId")
    status: str
    payment_status: str = Field(alias="paymentStatus")
    currency: str
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal
    total: Decimal
    billing_address_id: int | None = Field(alias="billingAddressId")
    shipping_address_id: int | None = Field(alias="shippingAddressId")
    notes: str | None = None
    tracking_number: str | None = Field(default=None, alias="trackingNumber")
    items: list[OrderItemResponse]
    paid_at: datetime | None = Field(default=None, alias="paidAt")
    shipped_at: datetime | None = Field(default=None, alias="shippedAt")
    delivered_at: datetime | None = Field(default=None, alias="deliveredAt")
    cancelled_at: datetime | None = Field(default=None, alias="cancelledAt")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class CheckoutResponse(BaseModel):
    order: OrderResponse
    checkout_url: str | None = Field(alias="checkoutUrl")

    model_config = ConfigDict(populate_by_name=True)


class OrderEnvelopeData(BaseModel):
    order: OrderResponse


class OrderListResponse(BaseModel):
    items: list[OrderResponse]
    total: int
    limit: int
    offset: int


class OrderEventResponse(BaseModel):
    id: PositiveInt
    type: str
    payload: str | None = None
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)
