"""API routes for the caller's shopping cart."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Path, status

from ..dependencies import get_cart_service, get_current_user_id
from ..models import Cart
from ..pricing import from_cents
from ..schemas import CartItemCreate, CartItemUpdate, CartResponse, Envelope
from ..services import CartService

router = APIRouter(prefix="/cart", tags=["cart"])


def _serialize_cart(cart: Cart) -> dict[str, object]:
    subtotal_cents = sum(item.unit_price_cents * item.quantity for item in cart.items)
    return {
        "id": cart.id,
        "userId": cart.user_id,
        "items": [
            {
                "id": item.id,
                "productId": item.product_id,
                "productName": item.product.name,
                "quantity": item.quantity,
                "price": from_cents(item.unit_price_cents),
                "lineTotal": from_cents(item.unit_price_cents * item.quantity),
                "customizations": item.customizations,
                "createdAt": item.created_at,
            }
            for item in cart.items
        ],
        "totalItems": sum(item.quantity for item in cart.items),
        "subtotal": from_cents(subtotal_cents),
        "updatedAt": cart.updated_at,
    }


def _envelope(cart: Cart) -> Envelope[CartResponse]:
    return Envelope[CartResponse](data=CartResponse.model_validate(_serialize_cart(cart)))


@router.get("", response_model=Envelope[CartResponse])
async def get_cart(
    user_id: str = Depends(get_current_user_id),
    service: CartService = Depends(get_cart_service),
) -> Envelope[CartResponse]:
    return _envelope(await service.get_cart(user_id))


@router.post("/items", response_model=Envelope[CartResponse], status_code=status.HTTP_201_CREATED)
async def add_item(
    payload: CartItemCreate,
    user_id: str = Depends(get_current_user_id),
    service: CartService = Depends(get_cart_service),
) -> Envelope[CartResponse]:
    cart = await service.add_item(
        user_id,
        product_id=payload.product_id,
        quantity=payload.quantity,
        customizations=payload.customizations,
    )
    return _envelope(cart)


@router.patch("/items/{item_id}", response_model=Envelope[CartResponse])
async def update_item(
    payload: CartItemUpdate,
    item_id: int = Path(..., ge=1),
    user_id: str = Depends(get_current_user_id),
    service: CartService = Depends(get_cart_service),
) -> Envelope[CartResponse]:
    cart = await service.update_item(
        user_id,
        item_id,
        quantity=payload.quantity,
        customizations=payload.customizations,
    )
    return _envelope(cart)


@router.delete("/items/{item_id}", response_model=Envelope[CartResponse])
async def remove_item(
    item_id: int = Path(..., ge=1),
    user_id: str = Depends(get_current_user_id),
    service: CartService = Depends(get_cart_service),
) -> Envelope[CartResponse]:
    return _envelope(await service.remove_item(user_id, item_id))


@router.delete("", response_model=Envelope[CartResponse])
async def clear_cart(
    user_id: str = Depends(get_current_user_id),
    service: CartService = Depends(get_cart_service),
) -> Envelope[CartResponse]:
    return _envelope(await service.clear_cart(user_id))
