"""
Payment endpoints — gateway order creation, checkout verify, gateway webhook.

Webhooks:
    - signature is checked over the raw body; a bad or missing one is a 401
    - once authenticated the webhook is always acknowledged with 200, even
      when processing fails, so the gateway does not hammer us with retries
      for events we already logged
"""

import json
import logging
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Callable, Optional

from database import get_db
from deps import shipment_dispatcher
from domain.responses import success_response
from services import payment_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/payments", tags=["payments"])


class VerifyRequest(BaseModel):
    gateway_order_id: str = Field(..., min_length=1, max_length=64, alias="gatewayOrderId")
    payment_id: str = Field(..., min_length=1, max_length=64, alias="paymentId")
    signature: str = Field("", max_length=256)


@router.post("/orders/{order_id}/gateway-order")
async def create_gateway_order(order_id: int, db: AsyncSession = Depends(get_db)):
    """Open the gateway order the checkout widget pays against."""
    data = await payment_service.create_gateway_order(db, order_id)
    await db.commit()
    return success_response(data)


@router.post("/verify")
async def verify_payment(
    body: VerifyRequest,
    db: AsyncSession = Depends(get_db),
    dispatch: Callable[[int], None] = Depends(shipment_dispatcher),
):
    """Client-side confirmation after checkout, force-checked with the gateway."""
    result = await payment_service.verify_checkout_payment(
        db,
        gateway_order_id=body.gateway_order_id,
        payment_id=body.payment_id,
        signature=body.signature,
        dispatch_shipment=dispatch,
    )
    await db.commit()
    return success_response(result)


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    x_signature: Optional[str] = Header(None, alias="X-Razorpay-Signature"),
    db: AsyncSession = Depends(get_db),
    dispatch: Callable[[int], None] = Depends(shipment_dispatcher),
):
    payload = await request.body()
    if not payment_service.verify_webhook_signature(payload, x_signature or ""):
        logger.warning("Payment webhook rejected: invalid signature")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        event = json.loads(payload)
    except ValueError:
        logger.warning("Payment webhook body is not valid JSON")
        return {"status": "ignored", "reason": "invalid_json"}

    try:
        result = await payment_service.process_webhook(db, event, dispatch_shipment=dispatch)
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.error(f"Payment webhook processing failed: {e}", exc_info=True)
        return {"status": "error", "reason": "processing_failed"}

    return result
