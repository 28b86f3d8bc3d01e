"""
Order service — checkout, reads, and the single write path for order signals.

Every order mutation goes through persist_order_fields(), a conditional
UPDATE keyed on the version that was read. A lost race raises
StaleWriteError; apply_signal_update() re-reads and re-plans a bounded
number of times before giving up with ConflictError.

Callers own the transaction: functions here flush but never commit.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db_models import Item, Order, OrderItem
from domain.enums import (
    DeliverySignal,
    LifecycleStatus,
    PaymentSignal,
    PaymentSource,
    ShipmentProvider,
    UpdateSource,
)
from domain.errors import (
    ConflictError,
    ForbiddenError,
    InsufficientStockError,
    NotFoundError,
    StaleWriteError,
    ValidationError,
)
from domain.lifecycle import OrderState, SignalUpdate, get_update_permissions, plan_signal_update
from services import delivery_service, resolution_service
from utils.validators import is_valid_postal_code

logger = logging.getLogger(__name__)

# Columns only the lifecycle rules may write
_PROTECTED_FIELDS = frozenset({
    "payment_signal", "delivery_signal", "lifecycle_status", "version",
    "stock_committed", "restock_handled", "cancel_handled",
})

_ADDRESS_FIELDS = ("consignee_name", "phone", "address_line", "city", "state", "postal_code")


@dataclass
class SignalUpdateResult:
    order: Order
    changes: dict[str, Any] = field(default_factory=dict)
    resolution: Optional["resolution_service.ResolutionResult"] = None


# ════════════════════════════════════════════════════════════════════
# Reads
# ════════════════════════════════════════════════════════════════════


async def get_order(db: AsyncSession, order_id: int, *, fresh: bool = False) -> Order:
    """
    Load an order with its lines and payment attempts.

    fresh=True overwrites any copy already in the session identity map,
    which is required after Core UPDATEs.
    """
    stmt = select(Order).where(Order.id == order_id)
    if fresh:
        stmt = stmt.execution_options(populate_existing=True)
    res = await db.execute(stmt)
    order = res.scalar_one_or_none()
    if not order:
        raise NotFoundError("Order", str(order_id))
    return order


async def get_order_by_gateway_id(db: AsyncSession, gateway_order_id: str) -> Order | None:
    res = await db.execute(
        select(Order)
        .where(Order.gateway_order_id == gateway_order_id)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def get_order_by_tracking_number(db: AsyncSession, tracking_number: str) -> Order | None:
    res = await db.execute(
        select(Order)
        .where(Order.tracking_number == tracking_number)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


# ════════════════════════════════════════════════════════════════════
# Checkout
# ════════════════════════════════════════════════════════════════════


async def create_order(
    db: AsyncSession,
    *,
    customer_ref: str,
    items: list[dict],
    address: dict,
    shipment_provider: ShipmentProvider | str | None = None,
) -> Order:
    """
    Create a pending order.

    items: [{item_id:int, quantity:int}]
    address: {consignee_name, phone, address_line, city, state, postal_code}

    Prices and weights are snapshotted onto the order lines. The fulfilment
    provider is chosen from the destination postal code and never changes;
    a `shipment_provider` picked by the client must match it.
    Stock is checked here but only committed when payment is confirmed.
    """
    if not items:
        raise ValidationError("Cart is empty", field="items")

    missing = [name for name in _ADDRESS_FIELDS if not address.get(name)]
    if missing:
        raise ValidationError(f"Missing address field(s): {', '.join(missing)}", field="address")
    postal_code = str(address["postal_code"]).strip()
    if not is_valid_postal_code(postal_code):
        raise ValidationError("Valid 6-digit postal code required", field="postal_code")
    if shipment_provider is not None:
        delivery_service.validate_provider(postal_code, shipment_provider)

    requested: dict[int, int] = {}
    for entry in items:
        qty = int(entry.get("quantity", 0))
        if qty < 1:
            raise ValidationError("Quantity must be at least 1", field="quantity")
        item_id = int(entry["item_id"])
        requested[item_id] = requested.get(item_id, 0) + qty

    res = await db.execute(select(Item).where(Item.id.in_(list(requested))))
    catalog = {item.id: item for item in res.scalars().all()}

    lines: list[OrderItem] = []
    subtotal = 0.0
    total_weight = 0
    for item_id, qty in requested.items():
        item = catalog.get(item_id)
        if not item or not item.active:
            raise NotFoundError("Item", str(item_id))
        if item.stock_qty < qty:
            raise InsufficientStockError(item_id, qty, item.stock_qty)

        unit_price = item.effective_price
        subtotal += unit_price * qty
        total_weight += (item.weight_grams or 0) * qty
        lines.append(OrderItem(
            item_id=item.id,
            name=item.name,
            quantity=qty,
            unit_price=unit_price,
            unit_weight_grams=item.weight_grams or 0,
        ))

    quote = await delivery_service.get_delivery_quote(postal_code, total_weight)
    if not quote["serviceable"]:
        raise ValidationError(f"Delivery is not available to {postal_code}", field="postal_code")

    subtotal = round(subtotal, 2)
    tax = round(subtotal * settings.tax_rate_percent / 100, 2)
    shipping_charge = round(float(quote["charge"]), 2)

    order = Order(
        customer_ref=customer_ref,
        currency=settings.currency,
        subtotal=subtotal,
        tax=tax,
        shipping_charge=shipping_charge,
        grand_total=round(subtotal + tax + shipping_charge, 2),
        total_weight_grams=total_weight,
        payment_signal=PaymentSignal.PENDING.value,
        delivery_signal=DeliverySignal.PENDING.value,
        lifecycle_status=LifecycleStatus.PENDING.value,
        shipment_provider=quote["provider"],
        consignee_name=address["consignee_name"],
        phone=address["phone"],
        address_line=address["address_line"],
        city=address["city"],
        state=address["state"],
        postal_code=postal_code,
        items=lines,
        payment_attempts=[],
    )
    db.add(order)
    await db.flush()

    logger.info(
        f"Order {order.id} created for {customer_ref}: "
        f"{order.grand_total} {order.currency} via {order.shipment_provider}"
    )
    return order


# ════════════════════════════════════════════════════════════════════
# Conditional Writes
# ════════════════════════════════════════════════════════════════════


async def persist_order_fields(db: AsyncSession, order: Order, fields: dict[str, Any]) -> Order:
    """
    Write `fields` iff the row still carries the version `order` was read at.

    Raises:
        StaleWriteError: another writer got there first
    Returns:
        The refreshed order.
    """
    expected = order.version
    res = await db.execute(
        update(Order)
        .where(Order.id == order.id, Order.version == expected)
        .values(**fields, version=expected + 1, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        raise StaleWriteError(order.id, expected)
    return await get_order(db, order.id, fresh=True)


async def apply_signal_update(
    db: AsyncSession,
    order_id: int,
    *,
    source: UpdateSource | str,
    delivery_signal: DeliverySignal | str | None = None,
    payment_signal: PaymentSignal | str | None = None,
    extra_fields: dict[str, Any] | None = None,
    dispatch_shipment: Callable[[int], Any] | None = None,
) -> SignalUpdateResult:
    """
    Apply a requested signal change to an order.

    A change of payment to `paid` is routed through the payment confirmation
    processor so stock and shipment side effects happen exactly once.
    Entering RTO or PRE_PICKUP_CANCEL triggers the matching resolver after
    the signal is persisted.

    Raises:
        ForbiddenError, InvalidTransitionError, InvariantViolationError,
        ConflictError (retries exhausted), NotFoundError
    """
    source = UpdateSource(source)
    extra_fields = dict(extra_fields or {})
    protected = _PROTECTED_FIELDS.intersection(extra_fields)
    if protected:
        raise ValidationError(f"Cannot set {', '.join(sorted(protected))} directly")

    order = await get_order(db, order_id, fresh=True)
    changes: dict[str, Any] = {}

    if payment_signal is not None and PaymentSignal(payment_signal) is PaymentSignal.PAID:
        if order.payment_signal != PaymentSignal.PAID.value:
            if not get_update_permissions(order.shipment_provider, source).can_update_payment:
                raise ForbiddenError(
                    f"{source.value} cannot update payment_signal for {order.shipment_provider} orders"
                )
            from services import payment_service

            confirmation = await payment_service.confirm_payment(
                db, order_id, source=PaymentSource.ADMIN, dispatch_shipment=dispatch_shipment
            )
            order = confirmation.order
            changes.update(
                payment_signal=order.payment_signal,
                lifecycle_status=order.lifecycle_status,
            )
        payment_signal = None

    request = SignalUpdate(
        delivery_signal=delivery_signal,
        payment_signal=payment_signal,
        extra_fields=extra_fields,
    )

    for attempt in range(1, settings.order_write_retries + 1):
        fields = plan_signal_update(OrderState.from_order(order), request, source)
        if not fields:
            break
        try:
            order = await persist_order_fields(db, order, fields)
            changes.update(fields)
            break
        except StaleWriteError:
            logger.info(f"Order {order_id} changed underneath update (attempt {attempt}), re-reading")
            order = await get_order(db, order_id, fresh=True)
    else:
        raise ConflictError(
            f"Order {order_id} is being updated concurrently, try again",
            details={"order_id": order_id},
        )

    if changes:
        logger.info(f"Order {order_id} updated by {source.value}: {sorted(changes)}")

    resolution = None
    if order.delivery_signal == DeliverySignal.RTO.value and not order.restock_handled:
        resolution = await resolution_service.resolve_rto(db, order_id)
    elif order.delivery_signal == DeliverySignal.PRE_PICKUP_CANCEL.value and not order.cancel_handled:
        resolution = await resolution_service.resolve_pre_pickup_cancel(db, order_id)
    if resolution is not None and resolution.handled:
        order = await get_order(db, order_id, fresh=True)

    return SignalUpdateResult(order=order, changes=changes, resolution=resolution)
