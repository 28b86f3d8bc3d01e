"""
Shipment service — carrier shipment creation, retries, carrier webhooks.

Pipeline:
    1. Payment confirmed on a CARRIER order → create_shipment() in the background
    2. The attempt is claimed (shipment_attempts += 1) and committed before
       the carrier is called, so a crash mid-call still counts the attempt
    3. Success → delivery SHIPMENT_CREATED + tracking number, atomically
       Failure → last_shipment_error recorded, order left for the sweep
    4. retry_failed_shipments() re-attempts until MAX_SHIPMENT_ATTEMPTS;
       orders past the cap surface in get_orders_needing_intervention()

Carrier webhooks are authoritative for delivery state on CARRIER orders and
enter through process_carrier_webhook().
"""
import asyncio
import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import async_session
from db_models import Order
from domain.constants import map_carrier_status
from domain.enums import (
    DeliverySignal,
    LifecycleStatus,
    PaymentSignal,
    ShipmentProvider,
    UpdateSource,
)
from domain.errors import (
    DomainError,
    ExternalServiceError,
    InvalidTransitionError,
    InvariantViolationError,
)
from services import carrier_client, order_service

logger = logging.getLogger(__name__)

SHIPMENT_SWEEP_BATCH_SIZE = 25

_sweep_task: Optional[asyncio.Task] = None
_is_running: bool = False
_last_sweep: Optional[dict] = None


@dataclass
class ShipmentOutcome:
    order: Order
    status: str  # created | failed | skipped
    tracking_number: Optional[str] = None
    reason: Optional[str] = None


# ════════════════════════════════════════════════════════════════════
# Preconditions + Request
# ════════════════════════════════════════════════════════════════════


def shipment_block_reason(order: Order, *, ignore_attempt_cap: bool = False) -> str | None:
    """Why a carrier shipment may not be created for `order` right now (None if it may)."""
    if order.shipment_provider != ShipmentProvider.CARRIER.value:
        return "self_handled"
    if order.tracking_number:
        return "already_shipped"
    if order.payment_signal != PaymentSignal.PAID.value:
        return "not_paid"
    if order.lifecycle_status != LifecycleStatus.CONFIRMED.value:
        return "not_confirmed"
    if not ignore_attempt_cap and order.shipment_attempts >= settings.max_shipment_attempts:
        return "max_attempts_reached"
    return None


def build_shipment_request(order: Order) -> carrier_client.ShipmentRequest:
    return carrier_client.ShipmentRequest(
        order_id=order.id,
        consignee_name=order.consignee_name,
        address_line=order.address_line,
        city=order.city,
        state=order.state,
        postal_code=order.postal_code,
        phone=order.phone,
        total_amount=order.grand_total,
        total_weight_grams=order.total_weight_grams,
        total_quantity=sum(line.quantity for line in order.items),
        items_description=", ".join(f"{line.name} x{line.quantity}" for line in order.items),
    )


# ════════════════════════════════════════════════════════════════════
# Creation
# ════════════════════════════════════════════════════════════════════


async def create_shipment(db: AsyncSession, order_id: int, *, force: bool = False) -> ShipmentOutcome:
    """
    Create the carrier shipment for a confirmed order.

    Commits: once after claiming the attempt, once after recording the
    outcome. force=True (admin) bypasses the attempt cap.
    """
    order = await order_service.get_order(db, order_id, fresh=True)
    reason = shipment_block_reason(order, ignore_attempt_cap=force)
    if reason:
        logger.info(f"Shipment for order {order_id} skipped: {reason}")
        return ShipmentOutcome(order=order, status="skipped", reason=reason)

    request = build_shipment_request(order)
    # Reject malformed consignee data before an attempt is spent on it
    carrier_client.build_shipment_payload(request)

    claim = (
        update(Order)
        .where(
            Order.id == order_id,
            Order.version == order.version,
            Order.tracking_number.is_(None),
        )
        .values(
            shipment_attempts=Order.shipment_attempts + 1,
            version=Order.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    res = await db.execute(claim)
    if res.rowcount == 0:
        logger.info(f"Shipment for order {order_id} skipped: claimed concurrently")
        return ShipmentOutcome(order=order, status="skipped", reason="concurrent_attempt")
    await db.commit()

    attempt = order.shipment_attempts + 1
    try:
        created = await carrier_client.create_shipment(request)
    except DomainError as e:
        error = e.reason if isinstance(e, ExternalServiceError) else e.message
        await db.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(last_shipment_error=error[:500], version=Order.version + 1)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        logger.warning(
            f"Shipment creation failed for order {order_id} "
            f"(attempt {attempt}/{settings.max_shipment_attempts}): {error}"
        )
        order = await order_service.get_order(db, order_id, fresh=True)
        return ShipmentOutcome(order=order, status="failed", reason=error)

    try:
        result = await order_service.apply_signal_update(
            db, order_id,
            source=UpdateSource.WEBHOOK,
            delivery_signal=DeliverySignal.SHIPMENT_CREATED,
            extra_fields={
                "tracking_number": created.tracking_number,
                "expected_delivery_date": created.expected_delivery_date,
                "last_shipment_error": None,
            },
        )
    except DomainError as e:
        await db.rollback()
        logger.error(
            f"Carrier waybill {created.tracking_number} issued for order {order_id} "
            f"but could not be recorded: {e.message}. Manual intervention required."
        )
        raise
    await db.commit()

    logger.info(f"Shipment created for order {order_id}: {created.tracking_number}")
    return ShipmentOutcome(order=result.order, status="created", tracking_number=created.tracking_number)


async def create_shipment_in_background(order_id: int) -> None:
    """Background-task entry point: owns its session, never raises."""
    async with async_session() as db:
        try:
            await create_shipment(db, order_id)
        except Exception as e:
            await db.rollback()
            logger.error(f"Background shipment creation failed for order {order_id}: {e}")


# ════════════════════════════════════════════════════════════════════
# Retry Sweep
# ════════════════════════════════════════════════════════════════════


def _awaiting_shipment():
    return (
        Order.payment_signal == PaymentSignal.PAID.value,
        Order.lifecycle_status == LifecycleStatus.CONFIRMED.value,
        Order.shipment_provider == ShipmentProvider.CARRIER.value,
        Order.tracking_number.is_(None),
    )


async def retry_failed_shipments(db: AsyncSession, *, limit: int = SHIPMENT_SWEEP_BATCH_SIZE) -> dict:
    """
    Re-attempt shipment creation for confirmed CARRIER orders without a waybill.

    Returns:
        dict: {total, success, failed, skipped}
    """
    res = await db.execute(
        select(Order.id)
        .where(*_awaiting_shipment(), Order.shipment_attempts < settings.max_shipment_attempts)
        .order_by(Order.id)
        .limit(limit)
    )
    order_ids = [row[0] for row in res.all()]

    summary = {"total": len(order_ids), "success": 0, "failed": 0, "skipped": 0}
    for order_id in order_ids:
        try:
            outcome = await create_shipment(db, order_id)
        except Exception as e:
            await db.rollback()
            logger.error(f"Shipment retry errored for order {order_id}: {e}")
            summary["failed"] += 1
            continue

        if outcome.status == "created":
            summary["success"] += 1
        elif outcome.status == "failed":
            summary["failed"] += 1
        else:
            summary["skipped"] += 1

    if order_ids:
        logger.info(f"Shipment retry sweep: {summary}")
    return summary


async def get_orders_needing_intervention(db: AsyncSession) -> list[Order]:
    """Confirmed CARRIER orders that exhausted their shipment attempts."""
    res = await db.execute(
        select(Order)
        .where(*_awaiting_shipment(), Order.shipment_attempts >= settings.max_shipment_attempts)
        .order_by(Order.created_at)
    )
    return res.scalars().all()


# ════════════════════════════════════════════════════════════════════
# Carrier Webhook + Tracking
# ════════════════════════════════════════════════════════════════════


def verify_carrier_webhook(token: str | None) -> bool:
    """Shared-secret check for carrier pushes. FAILS CLOSED when no secret is configured."""
    if not settings.carrier_webhook_secret:
        logger.error(
            "CARRIER_WEBHOOK_SECRET not configured — rejecting webhook. "
            "Set CARRIER_WEBHOOK_SECRET in .env to accept carrier webhooks."
        )
        return False
    if not token:
        logger.warning("Carrier webhook received without credentials")
        return False
    return hmac.compare_digest(token.encode("utf-8"), settings.carrier_webhook_secret.encode("utf-8"))


def _extract_scan(payload: dict) -> tuple[str | None, str | None]:
    """Accept the carrier's nested `Shipment` scan push or a flat {waybill, status}."""
    shipment = payload.get("Shipment")
    if isinstance(shipment, dict):
        status = shipment.get("Status")
        raw = status.get("Status") if isinstance(status, dict) else status
        return shipment.get("AWB") or shipment.get("Waybill"), raw
    return payload.get("waybill") or payload.get("awb"), payload.get("status")


async def process_carrier_webhook(db: AsyncSession, payload: dict) -> dict:
    """
    Apply a carrier status push to the matching order.

    Unknown waybills, SELF_HANDLED orders, unmapped statuses and updates the
    lifecycle rules reject are acknowledged and ignored.
    """
    waybill, raw_status = _extract_scan(payload)
    logger.info(f"Carrier webhook: waybill={waybill} status={raw_status}")

    if not waybill:
        return {"status": "ignored", "reason": "missing_waybill"}

    order = await order_service.get_order_by_tracking_number(db, waybill)
    if not order:
        logger.warning(f"Carrier webhook for unknown waybill: {waybill}")
        return {"status": "ignored", "reason": "unknown_shipment"}

    if order.shipment_provider != ShipmentProvider.CARRIER.value:
        return {"status": "ignored", "reason": "self_handled"}

    signal = map_carrier_status(raw_status)
    if signal is None:
        logger.info(f"Unmapped carrier status '{raw_status}' for order {order.id}, ignoring")
        return {"status": "ignored", "reason": "unmapped_status"}

    try:
        result = await order_service.apply_signal_update(
            db, order.id, source=UpdateSource.WEBHOOK, delivery_signal=signal
        )
    except (InvalidTransitionError, InvariantViolationError) as e:
        logger.warning(f"Carrier update for order {order.id} rejected: {e.message}")
        return {"status": "ignored", "reason": "rejected", "detail": e.message}

    return {
        "status": "updated" if result.changes else "unchanged",
        "orderId": order.id,
        "deliverySignal": result.order.delivery_signal,
        "lifecycleStatus": result.order.lifecycle_status,
    }


async def get_tracking(db: AsyncSession, order_id: int) -> dict:
    """Stored delivery state, plus a live carrier lookup when a waybill exists."""
    order = await order_service.get_order(db, order_id)
    tracking = {
        "orderId": order.id,
        "provider": order.shipment_provider,
        "deliverySignal": order.delivery_signal,
        "lifecycleStatus": order.lifecycle_status,
        "trackingNumber": order.tracking_number,
        "expectedDeliveryDate": order.expected_delivery_date,
        "live": None,
    }
    if order.tracking_number:
        try:
            tracking["live"] = await carrier_client.track_shipment(order.tracking_number)
        except ExternalServiceError as e:
            logger.warning(f"Live tracking unavailable for order {order.id}: {e.reason}")
    return tracking


# ════════════════════════════════════════════════════════════════════
# Periodic Sweep: Start / Stop / Status
# ════════════════════════════════════════════════════════════════════


async def _sweep_loop():
    global _last_sweep

    interval = settings.shipment_sweep_interval_seconds
    logger.info(f"Shipment sweep started (every {interval}s, max {settings.max_shipment_attempts} attempts)")

    while _is_running:
        try:
            await asyncio.sleep(interval)
            async with async_session() as db:
                _last_sweep = await retry_failed_shipments(db)
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error(f"Shipment sweep error: {e}")


async def start_sweeper():
    global _sweep_task, _is_running

    if _sweep_task and not _sweep_task.done():
        logger.warning("Shipment sweep already running")
        return

    _is_running = True
    _sweep_task = asyncio.create_task(_sweep_loop())


async def stop_sweeper():
    global _sweep_task, _is_running
    _is_running = False

    if _sweep_task and not _sweep_task.done():
        _sweep_task.cancel()
        try:
            await _sweep_task
        except asyncio.CancelledError:
            pass

    _sweep_task = None
    logger.info("Shipment sweep stopped")


def get_sweeper_status() -> dict:
    return {
        "running": _is_running,
        "intervalSeconds": settings.shipment_sweep_interval_seconds,
        "maxShipmentAttempts": settings.max_shipment_attempts,
        "lastSweep": _last_sweep,
    }
