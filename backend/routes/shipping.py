"""
Shipping endpoints — serviceability, quotes, tracking, carrier webhook.
"""

import logging
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from database import get_db
from domain.responses import success_response
from services import carrier_client, delivery_service, shipment_service
from utils.validators import validated_postal_code

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/shipping", tags=["shipping"])


class RateRequest(BaseModel):
    postal_code: str = Field(..., pattern=r"^\d{6}$", alias="postalCode")
    weight_grams: int = Field(..., gt=0, le=100_000, alias="weightGrams")


def _webhook_token(signature: Optional[str], authorization: Optional[str]) -> Optional[str]:
    if signature:
        return signature
    if authorization:
        parts = authorization.split(" ", 1)
        return parts[1].strip() if len(parts) == 2 else authorization.strip()
    return None


@router.get("/serviceability/{postal_code}")
async def serviceability(postal_code: str = Depends(validated_postal_code)):
    data = await carrier_client.check_serviceability(postal_code)
    data["provider"] = delivery_service.resolve_provider(postal_code).value
    return success_response(data)


@router.post("/rate")
async def rate(body: RateRequest):
    """Carrier forward rate for a parcel."""
    return success_response(await carrier_client.calculate_rate(body.postal_code, body.weight_grams))


@router.get("/quote")
async def quote(
    postal_code: str = Query(..., pattern=r"^\d{6}$", alias="postalCode"),
    weight_grams: int = Query(..., gt=0, le=100_000, alias="weightGrams"),
):
    """Delivery quote for checkout: provider (CARRIER / SELF_HANDLED) and charge."""
    return success_response(await delivery_service.get_delivery_quote(postal_code, weight_grams))


@router.get("/orders/{order_id}/tracking")
async def tracking(order_id: int, db: AsyncSession = Depends(get_db)):
    return success_response(await shipment_service.get_tracking(db, order_id))


@router.post("/webhook")
async def carrier_webhook(
    request: Request,
    x_signature: Optional[str] = Header(None, alias="X-Carrier-Signature"),
    authorization: Optional[str] = Header(None, alias="Authorization"),
    db: AsyncSession = Depends(get_db),
):
    """
    Carrier status push.

    Unauthenticated pushes get a 401. Authenticated ones are always
    acknowledged with 200; rejected or failed updates are logged.
    """
    if not shipment_service.verify_carrier_webhook(_webhook_token(x_signature, authorization)):
        raise HTTPException(status_code=401, detail="Invalid webhook credentials")

    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Carrier webhook body is not valid JSON")
        return {"status": "ignored", "reason": "invalid_json"}
    if not isinstance(payload, dict):
        return {"status": "ignored", "reason": "invalid_payload"}

    try:
        result = await shipment_service.process_carrier_webhook(db, payload)
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.error(f"Carrier webhook processing failed: {e}", exc_info=True)
        return {"status": "error", "reason": "processing_failed"}

    return result
