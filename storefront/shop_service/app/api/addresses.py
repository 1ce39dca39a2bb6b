"""API routes for billing and shipping addresses."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Path, Response, status

from ..dependencies import get_address_repository, get_current_user_id
from ..errors import NotFound
from ..models import Address
from ..repository import AddressRepository
from ..schemas import AddressCreate, AddressResponse, AddressUpdate, Envelope

router = APIRouter(prefix="/addresses", tags=["addresses"])

_CLEARABLE_FIELDS = frozenset({"company", "address_line2", "phone"})


async def _owned_address(repository: AddressRepository, user_id: str, address_id: int) -> Address:
    address = await repository.get_address(address_id)
    # Other users' addresses are indistinguishable from missing ones here.
    if address is None or address.user_id != user_id:
        raise NotFound("Address not found", address_id=address_id)
    return address


@router.get("", response_model=Envelope[list[AddressResponse]])
async def list_addresses(
    user_id: str = Depends(get_current_user_id),
    repository: AddressRepository = Depends(get_address_repository),
) -> Envelope[list[AddressResponse]]:
    addresses = await repository.list_addresses(user_id=user_id)
    return Envelope[list[AddressResponse]](
        data=[AddressResponse.model_validate(address) for address in addresses]
    )


@router.post("", response_model=Envelope[AddressResponse], status_code=status.HTTP_201_CREATED)
async def create_address(
    payload: AddressCreate,
    user_id: str = Depends(get_current_user_id),
    repository: AddressRepository = Depends(get_address_repository),
) -> Envelope[AddressResponse]:
    address = await repository.create_address(user_id=user_id, fields=payload.model_dump())
    return Envelope[AddressResponse](data=AddressResponse.model_validate(address))


@router.get("/{address_id}", response_model=Envelope[AddressResponse])
async def get_address(
    address_id: int = Path(..., ge=1),
    user_id: str = Depends(get_current_user_id),
    repository: AddressRepository = Depends(get_address_repository),
) -> Envelope[AddressResponse]:
    address = await _owned_address(repository, user_id, address_id)
    return Envelope[AddressResponse](data=AddressResponse.model_validate(address))


@router.patch("/{address_id}", response_model=Envelope[AddressResponse])
async def update_address(
    payload: AddressUpdate,
    address_id: int = Path(..., ge=1),
    user_id: str = Depends(get_current_user_id),
    repository: AddressRepository = Depends(get_address_repository),
) -> Envelope[AddressResponse]:
    address = await _owned_address(repository, user_id, address_id)
    updates = {
        key: value
        for key, value in payload.model_dump(exclude_unset=True).items()
        if value is not None or key in _CLEARABLE_FIELDS
    }
    address = await repository.update_address(address, updates)
    return Envelope[AddressResponse](data=AddressResponse.model_validate(address))


@router.delete("/{address_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_address(
    address_id: int = Path(..., ge=1),
    user_id: str = Depends(get_current_user_id),
    repository: AddressRepository = Depends(get_address_repository),
) -> Response:
    address = await _owned_address(repository, user_id, address_id)
    await repository.delete_address(address)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
