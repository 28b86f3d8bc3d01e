"""
Payment service — the payment confirmation processor and its entry points.

Every path that learns a payment succeeded (gateway webhook, client-side
verify, manual reconciliation, admin override) ends in confirm_payment(),
which is idempotent: stock is committed once, the shipment is dispatched
once, and a second confirmation of the same order is a successful no-op.

Entry points:
    process_webhook()         payment.captured / payment.failed / payment.authorized
    verify_checkout_payment() signature check plus a gateway force-check
    reconcile_manually()      admin pulls the truth from the gateway
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db_models import Order, PaymentAttempt
from domain.constants import MINOR_UNITS_PER_MAJOR
from domain.enums import (
    GatewayEvent,
    LifecycleStatus,
    PaymentSignal,
    PaymentSource,
    ShipmentProvider,
)
from domain.errors import ConflictError, NotFoundError, StaleWriteError, ValidationError
from domain.lifecycle import OrderState, check_invariants, derive_status
from services import gateway_client, inventory_service, order_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentDetails:
    """What the gateway told us about one payment."""
    payment_id: Optional[str] = None
    gateway_order_id: Optional[str] = None
    amount_minor: Optional[int] = None
    method: Optional[str] = None
    signature_verified: bool = False
    error_code: Optional[str] = None
    error_description: Optional[str] = None

    @classmethod
    def from_entity(cls, entity: dict, *, signature_verified: bool = False) -> "PaymentDetails":
        return cls(
            payment_id=entity.get("id"),
            gateway_order_id=entity.get("order_id"),
            amount_minor=entity.get("amount"),
            method=entity.get("method"),
            signature_verified=signature_verified,
            error_code=entity.get("error_code"),
            error_description=entity.get("error_description"),
        )


@dataclass
class ConfirmationResult:
    order: Order
    already_confirmed: bool = False
    shipment_dispatched: bool = False


# ════════════════════════════════════════════════════════════════════
# Signature Verification
# ════════════════════════════════════════════════════════════════════


def verify_webhook_signature(payload: bytes, signature: str) -> bool:
    """
    Verify the gateway's HMAC-SHA256 webhook signature over the raw body.

    FAILS CLOSED when the webhook secret is not configured.
    """
    if not settings.gateway_webhook_secret:
        logger.error(
            "GATEWAY_WEBHOOK_SECRET not configured — rejecting webhook. "
            "Set GATEWAY_WEBHOOK_SECRET in .env to accept payment webhooks."
        )
        return False

    if not signature:
        logger.warning("Payment webhook received without signature header")
        return False

    expected = hmac.new(
        settings.gateway_webhook_secret.encode("utf-8"),
        payload,
        hashlib.sha256,
    ).hexdigest()

    return hmac.compare_digest(expected, signature)


def verify_checkout_signature(gateway_order_id: str, payment_id: str, signature: str) -> bool:
    """Checkout handler signature: HMAC-SHA256(key_secret, "<order_id>|<payment_id>")."""
    if not settings.gateway_key_secret or not signature:
        return False

    expected = hmac.new(
        settings.gateway_key_secret.encode("utf-8"),
        f"{gateway_order_id}|{payment_id}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()

    return hmac.compare_digest(expected, signature)


# ════════════════════════════════════════════════════════════════════
# Confirmation Processor
# ════════════════════════════════════════════════════════════════════


def _amount_minor(order: Order) -> int:
    return int(round(order.grand_total * MINOR_UNITS_PER_MAJOR))


async def _record_attempt(
    db: AsyncSession,
    order: Order,
    *,
    status: PaymentSignal,
    source: PaymentSource,
    payment: PaymentDetails | None,
) -> PaymentAttempt:
    payment = payment or PaymentDetails()
    attempt = PaymentAttempt(
        order_id=order.id,
        attempt_number=len(order.payment_attempts) + 1,
        gateway_order_id=payment.gateway_order_id or order.gateway_order_id,
        gateway_payment_id=payment.payment_id,
        amount_minor=payment.amount_minor,
        method=payment.method,
        status=status.value,
        source=source.value,
        signature_verified=payment.signature_verified,
        error_code=payment.error_code,
        error_description=payment.error_description,
    )
    db.add(attempt)
    await db.flush()
    return attempt


def _failure_already_recorded(order: Order, payment: PaymentDetails | None) -> bool:
    if payment is None or not payment.payment_id:
        return False
    return any(
        a.gateway_payment_id == payment.payment_id and a.status == PaymentSignal.FAILED.value
        for a in order.payment_attempts
    )


async def confirm_payment(
    db: AsyncSession,
    order_id: int,
    *,
    source: PaymentSource | str,
    payment: PaymentDetails | None = None,
    dispatch_shipment: Callable[[int], Any] | None = None,
) -> ConfirmationResult:
    """
    Confirm an order's payment exactly once.

    1. already paid                    → success, no side effects
    2. cancelled                       → ConflictError
    3. amount below the order total    → ValidationError
    4. stock check (first commit only) → InsufficientStockError
    5. conditional write of paid + derived status + stock_committed
    6. stock decrement (first commit only; caller rolls back on shortfall)
    7. payment attempt row
    8. CARRIER orders without a waybill → dispatch_shipment(order_id)

    dispatch_shipment is a plain callable (e.g. BackgroundTasks.add_task
    bound to the order); its failures are logged, never raised, because the
    retry sweep picks up orders without a shipment.
    """
    source = PaymentSource(source)
    order = await order_service.get_order(db, order_id, fresh=True)

    for attempt in range(1, settings.order_write_retries + 1):
        if order.payment_signal == PaymentSignal.PAID.value:
            logger.info(f"Order {order_id} already confirmed, ignoring {source.value} confirmation")
            return ConfirmationResult(order=order, already_confirmed=True)

        if (
            order.payment_signal == PaymentSignal.CANCELLED.value
            or order.lifecycle_status == LifecycleStatus.CANCELLED.value
        ):
            raise ConflictError(
                f"Order {order_id} is cancelled and cannot be confirmed",
                details={"order_id": order_id},
            )

        if payment is not None and payment.amount_minor is not None:
            expected_minor = _amount_minor(order)
            if payment.amount_minor < expected_minor:
                raise ValidationError(
                    f"Paid {payment.amount_minor} is less than order total {expected_minor}",
                    field="amount",
                )

        commit_stock = not order.stock_committed
        if commit_stock:
            await inventory_service.ensure_available(db, order)

        state = OrderState.from_order(order)
        status = derive_status(state.delivery_signal, PaymentSignal.PAID)
        fields: dict[str, Any] = {
            "payment_signal": PaymentSignal.PAID.value,
            "lifecycle_status": status.value,
            "stock_committed": True,
        }
        if order.confirmed_at is None:
            fields["confirmed_at"] = datetime.utcnow()
        check_invariants(state, state.merged(fields))

        try:
            order = await order_service.persist_order_fields(db, order, fields)
            break
        except StaleWriteError:
            logger.info(f"Order {order_id} changed during confirmation (attempt {attempt}), re-reading")
            order = await order_service.get_order(db, order_id, fresh=True)
    else:
        raise ConflictError(
            f"Order {order_id} is being updated concurrently, try again",
            details={"order_id": order_id},
        )

    if commit_stock:
        await inventory_service.decrement_for_order(db, order)

    await _record_attempt(db, order, status=PaymentSignal.PAID, source=source, payment=payment)
    order = await order_service.get_order(db, order_id, fresh=True)

    logger.info(f"Payment confirmed for order {order_id} via {source.value}")

    dispatched = False
    if (
        order.shipment_provider == ShipmentProvider.CARRIER.value
        and not order.tracking_number
        and dispatch_shipment is not None
    ):
        try:
            dispatch_shipment(order.id)
            dispatched = True
        except Exception as e:
            logger.error(f"Shipment dispatch failed for order {order_id}: {e}")

    return ConfirmationResult(order=order, shipment_dispatched=dispatched)


async def record_payment_failure(
    db: AsyncSession,
    order_id: int,
    *,
    source: PaymentSource | str,
    payment: PaymentDetails | None = None,
) -> Order:
    """
    Record a failed payment attempt and move payment_signal to failed.

    A late failure for an order that is already paid or cancelled is
    recorded in the attempt history but leaves the signals alone. A
    redelivered failure for a payment already recorded as failed is a no-op.
    """
    source = PaymentSource(source)
    order = await order_service.get_order(db, order_id, fresh=True)
    if _failure_already_recorded(order, payment):
        logger.info(f"Failure of payment {payment.payment_id} already recorded for order {order_id}")
        return order
    await _record_attempt(db, order, status=PaymentSignal.FAILED, source=source, payment=payment)

    for attempt in range(1, settings.order_write_retries + 1):
        if order.payment_signal in (
            PaymentSignal.PAID.value,
            PaymentSignal.FAILED.value,
            PaymentSignal.CANCELLED.value,
        ) or order.lifecycle_status == LifecycleStatus.CANCELLED.value:
            break

        fields = {
            "payment_signal": PaymentSignal.FAILED.value,
            "lifecycle_status": derive_status(order.delivery_signal, PaymentSignal.FAILED).value,
        }
        try:
            order = await order_service.persist_order_fields(db, order, fields)
            logger.warning(f"Payment failed for order {order_id} via {source.value}")
            break
        except StaleWriteError:
            order = await order_service.get_order(db, order_id, fresh=True)
    else:
        raise ConflictError(
            f"Order {order_id} is being updated concurrently, try again",
            details={"order_id": order_id},
        )

    return await order_service.get_order(db, order_id, fresh=True)


# ════════════════════════════════════════════════════════════════════
# Gateway Order
# ════════════════════════════════════════════════════════════════════


async def create_gateway_order(db: AsyncSession, order_id: int) -> dict:
    """
    Open (or reuse) the gateway order the customer pays against.

    Returns:
        dict: {gatewayOrderId, amount, currency, keyId}
    """
    order = await order_service.get_order(db, order_id, fresh=True)
    if order.payment_signal == PaymentSignal.PAID.value:
        raise ConflictError(f"Order {order_id} is already paid")
    if order.lifecycle_status == LifecycleStatus.CANCELLED.value:
        raise ConflictError(f"Order {order_id} is cancelled")

    amount_minor = _amount_minor(order)
    if not order.gateway_order_id:
        gateway_order = await gateway_client.create_gateway_order(
            amount_minor,
            order.currency,
            receipt=f"order_{order.id}",
            notes={"order_id": str(order.id)},
        )
        order = await order_service.persist_order_fields(
            db, order, {"gateway_order_id": gateway_order["id"]}
        )
        logger.info(f"Gateway order {order.gateway_order_id} opened for order {order_id}")

    return {
        "gatewayOrderId": order.gateway_order_id,
        "amount": amount_minor,
        "currency": order.currency,
        "keyId": settings.gateway_key_id,
    }


# ════════════════════════════════════════════════════════════════════
# Entry Points
# ════════════════════════════════════════════════════════════════════


async def process_webhook(
    db: AsyncSession,
    event: dict,
    *,
    dispatch_shipment: Callable[[int], Any] | None = None,
) -> dict:
    """
    Process a verified gateway webhook event.

        payment.captured   → confirmation processor
        payment.failed     → failure recorded
        payment.authorized → ignored (capture follows)
    """
    event_type = event.get("event", "")
    entity = ((event.get("payload") or {}).get("payment") or {}).get("entity") or {}
    gateway_order_id = entity.get("order_id")

    logger.info(f"Payment webhook: event={event_type} gateway_order={gateway_order_id}")

    order = (
        await order_service.get_order_by_gateway_id(db, gateway_order_id)
        if gateway_order_id else None
    )
    if not order:
        logger.warning(f"Payment webhook for unknown gateway order: {gateway_order_id}")
        return {"status": "ignored", "reason": "unknown_order"}

    details = PaymentDetails.from_entity(entity, signature_verified=True)

    if event_type == GatewayEvent.PAYMENT_CAPTURED.value:
        result = await confirm_payment(
            db, order.id,
            source=PaymentSource.WEBHOOK,
            payment=details,
            dispatch_shipment=dispatch_shipment,
        )
        return {
            "status": "already_confirmed" if result.already_confirmed else "confirmed",
            "orderId": order.id,
        }

    if event_type == GatewayEvent.PAYMENT_FAILED.value:
        await record_payment_failure(db, order.id, source=PaymentSource.WEBHOOK, payment=details)
        return {"status": "failed", "orderId": order.id}

    if event_type == GatewayEvent.PAYMENT_AUTHORIZED.value:
        logger.debug(f"Payment authorized for order {order.id}, waiting for capture")
        return {"status": "ignored", "reason": "authorized"}

    logger.debug(f"Payment webhook event ignored: {event_type}")
    return {"status": "ignored", "reason": f"unhandled_event_{event_type}"}


async def verify_checkout_payment(
    db: AsyncSession,
    *,
    gateway_order_id: str,
    payment_id: str,
    signature: str,
    dispatch_shipment: Callable[[int], Any] | None = None,
) -> dict:
    """
    Confirm a payment reported by the checkout client.

    The payment is always force-checked with the gateway: its status and
    amount decide the outcome. The checkout signature is recorded on the
    attempt; a mismatch is logged but a captured payment still confirms, so
    a mangled client callback lands the order in the right state.
    """
    order = await order_service.get_order_by_gateway_id(db, gateway_order_id)
    if not order:
        raise NotFoundError("Order", gateway_order_id)

    if order.payment_signal == PaymentSignal.PAID.value:
        return {"status": "confirmed", "alreadyConfirmed": True, "orderId": order.id}

    signature_ok = verify_checkout_signature(gateway_order_id, payment_id, signature)
    if not signature_ok:
        logger.warning(f"Checkout signature mismatch for order {order.id}, relying on gateway status")

    entity = await gateway_client.fetch_payment(payment_id)
    if entity.get("order_id") != gateway_order_id:
        raise ValidationError("Payment does not belong to this order", field="payment_id")

    return await _apply_gateway_payment(
        db, order, entity,
        source=PaymentSource.VERIFY,
        dispatch_shipment=dispatch_shipment,
        signature_verified=signature_ok,
    )


async def reconcile_manually(
    db: AsyncSession,
    order_id: int,
    *,
    payment_id: str | None = None,
    dispatch_shipment: Callable[[int], Any] | None = None,
) -> dict:
    """
    Pull the payment state from the gateway and apply it.

    With `payment_id` that payment is checked; otherwise the gateway order's
    payments are scanned for a captured one.
    """
    order = await order_service.get_order(db, order_id, fresh=True)
    if order.payment_signal == PaymentSignal.PAID.value:
        return {"status": "confirmed", "alreadyConfirmed": True, "orderId": order.id}

    if payment_id:
        entity = await gateway_client.fetch_payment(payment_id)
        if order.gateway_order_id and entity.get("order_id") != order.gateway_order_id:
            raise ValidationError("Payment does not belong to this order", field="payment_id")
    else:
        if not order.gateway_order_id:
            raise ValidationError("Order has no gateway order to reconcile", field="payment_id")
        payments = await gateway_client.fetch_order_payments(order.gateway_order_id)
        if not payments:
            return {"status": "pending", "orderId": order.id}
        captured = [p for p in payments if p.get("status") == "captured"]
        entity = captured[0] if captured else payments[0]

    return await _apply_gateway_payment(
        db, order, entity, source=PaymentSource.MANUAL, dispatch_shipment=dispatch_shipment
    )


async def _apply_gateway_payment(
    db: AsyncSession,
    order: Order,
    entity: dict,
    *,
    source: PaymentSource,
    dispatch_shipment: Callable[[int], Any] | None,
    signature_verified: bool = False,
) -> dict:
    status = entity.get("status")
    details = PaymentDetails.from_entity(entity, signature_verified=signature_verified)

    if status == "captured":
        result = await confirm_payment(
            db, order.id, source=source, payment=details, dispatch_shipment=dispatch_shipment
        )
        return {"status": "confirmed", "alreadyConfirmed": result.already_confirmed, "orderId": order.id}

    if status == "failed":
        await record_payment_failure(db, order.id, source=source, payment=details)
        return {"status": "failed", "orderId": order.id}

    return {"status": "pending", "gatewayStatus": status, "orderId": order.id}
