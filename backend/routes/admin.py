"""
Admin endpoints — signal overrides, manual payment reconciliation,
shipment creation / retries, intervention queue.

All routes require an admin JWT (see middleware/auth.py). Admin signal
updates go through the same lifecycle rules as webhooks: on CARRIER orders
an admin may change payment only; delivery belongs to the carrier.
"""

import logging
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Callable, Optional

from database import get_db
from db_models import Order
from deps import Pagination, pagination_params, shipment_dispatcher
from domain.enums import DeliverySignal, LifecycleStatus, PaymentSignal, UpdateSource
from domain.responses import paginated_response, serialize_order, success_response
from middleware.auth import require_admin
from services import order_service, payment_service, shipment_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


class SignalUpdateRequest(BaseModel):
    delivery_signal: Optional[DeliverySignal] = Field(default=None, alias="deliverySignal")
    payment_signal: Optional[PaymentSignal] = Field(default=None, alias="paymentSignal")


class ReconcileRequest(BaseModel):
    payment_id: Optional[str] = Field(default=None, max_length=64, alias="paymentId")


class CreateShipmentRequest(BaseModel):
    force: bool = False


@router.get("/orders")
async def list_orders(
    lifecycle_status: Optional[LifecycleStatus] = Query(None, alias="status"),
    page: Pagination = Depends(pagination_params),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(Order)
    count_stmt = select(func.count(Order.id))
    if lifecycle_status is not None:
        stmt = stmt.where(Order.lifecycle_status == lifecycle_status.value)
        count_stmt = count_stmt.where(Order.lifecycle_status == lifecycle_status.value)

    total = (await db.execute(count_stmt)).scalar_one()
    res = await db.execute(
        stmt.order_by(Order.created_at.desc()).limit(page["limit"]).offset(page["offset"])
    )
    orders = res.scalars().all()
    return paginated_response(
        [serialize_order(o) for o in orders],
        limit=page["limit"],
        offset=page["offset"],
        total=total,
    )


@router.patch("/orders/{order_id}/signals")
async def update_signals(
    order_id: int,
    body: SignalUpdateRequest,
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    dispatch: Callable[[int], None] = Depends(shipment_dispatcher),
):
    result = await order_service.apply_signal_update(
        db, order_id,
        source=UpdateSource.ADMIN,
        delivery_signal=body.delivery_signal,
        payment_signal=body.payment_signal,
        dispatch_shipment=dispatch,
    )
    await db.commit()
    logger.info(f"Admin {admin} updated signals on order {order_id}: {sorted(result.changes)}")

    data = serialize_order(result.order)
    data["changes"] = sorted(result.changes)
    if result.resolution is not None:
        data["resolution"] = {
            "handled": result.resolution.handled,
            "restocked": result.resolution.restocked,
            "logisticsLoss": result.resolution.logistics_loss,
        }
    return success_response(data)


@router.post("/orders/{order_id}/confirm-payment")
async def reconcile_payment(
    order_id: int,
    body: ReconcileRequest,
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    dispatch: Callable[[int], None] = Depends(shipment_dispatcher),
):
    """Pull the payment state from the gateway and apply it."""
    result = await payment_service.reconcile_manually(
        db, order_id, payment_id=body.payment_id, dispatch_shipment=dispatch
    )
    await db.commit()
    logger.info(f"Admin {admin} reconciled payment for order {order_id}: {result['status']}")
    return success_response(result)


@router.post("/shipments/{order_id}/create")
async def create_shipment(
    order_id: int,
    body: CreateShipmentRequest,
    db: AsyncSession = Depends(get_db),
):
    """Create the carrier shipment now. force=true ignores the attempt cap."""
    outcome = await shipment_service.create_shipment(db, order_id, force=body.force)
    return success_response({
        "status": outcome.status,
        "trackingNumber": outcome.tracking_number,
        "reason": outcome.reason,
        "order": serialize_order(outcome.order),
    })


@router.post("/shipments/retry")
async def retry_shipments(db: AsyncSession = Depends(get_db)):
    summary = await shipment_service.retry_failed_shipments(db)
    return success_response(summary)


@router.get("/shipments/intervention")
async def intervention_queue(db: AsyncSession = Depends(get_db)):
    orders = await shipment_service.get_orders_needing_intervention(db)
    return success_response([serialize_order(o) for o in orders], meta={"count": len(orders)})


@router.get("/shipments/sweeper")
async def sweeper_status():
    return success_response(shipment_service.get_sweeper_status())
