"""
Order endpoints — checkout and order reads.
"""

import logging
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from domain.enums import ShipmentProvider
from domain.responses import success_response, serialize_order
from services import order_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/orders", tags=["orders"])


class CartItem(BaseModel):
    item_id: int = Field(..., gt=0, alias="itemId")
    quantity: int = Field(1, ge=1, le=50)


class AddressIn(BaseModel):
    consignee_name: str = Field(..., min_length=1, max_length=100, alias="consigneeName")
    phone: str = Field(..., min_length=10, max_length=20)
    address_line: str = Field(..., min_length=1, max_length=300, alias="addressLine")
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=1, max_length=100)
    postal_code: str = Field(..., pattern=r"^\d{6}$", alias="postalCode")


class CheckoutRequest(BaseModel):
    customer_ref: str = Field(..., min_length=1, max_length=100, alias="customerRef")
    items: list[CartItem] = Field(..., min_length=1)
    address: AddressIn
    shipment_provider: Optional[ShipmentProvider] = Field(default=None, alias="shipmentProvider")


@router.post("", status_code=status.HTTP_201_CREATED)
async def checkout(body: CheckoutRequest, db: AsyncSession = Depends(get_db)):
    """Create a pending order. Payment is collected through /payments."""
    order = await order_service.create_order(
        db,
        customer_ref=body.customer_ref,
        items=[item.model_dump() for item in body.items],
        address=body.address.model_dump(),
        shipment_provider=body.shipment_provider,
    )
    await db.commit()
    return success_response(serialize_order(order))


@router.get("/{order_id}")
async def get_order(order_id: int, db: AsyncSession = Depends(get_db)):
    order = await order_service.get_order(db, order_id)
    return success_response(serialize_order(order, include_payments=True))
