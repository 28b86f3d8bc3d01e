"""
Resolution service — one-shot side effects for terminal delivery states.

    resolve_rto()                 restock + logistics loss, exactly once
    resolve_pre_pickup_cancel()   restock, exactly once, never after an RTO restock

Each resolver opens with a conditional UPDATE that flips its flag
false→true. Only the caller whose UPDATE matched a row performs the side
effects; everyone else gets handled=False. This holds across processes,
not just within one.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db_models import Order
from domain.enums import DeliverySignal
from services import inventory_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolutionResult:
    handled: bool
    restocked: bool = False
    logistics_loss: Optional[float] = None


async def _load(db: AsyncSession, order_id: int) -> Order:
    res = await db.execute(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    )
    return res.scalar_one()


async def resolve_rto(db: AsyncSession, order_id: int) -> ResolutionResult:
    """
    Resolve a return-to-origin.

    Claims restock_handled, records the logistics loss (forward shipping
    charge × multiplier, covering both legs) and puts committed stock back.
    """
    res = await db.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.delivery_signal == DeliverySignal.RTO.value,
            Order.restock_handled == False,  # noqa: E712
        )
        .values(
            restock_handled=True,
            logistics_loss=Order.shipping_charge * settings.rto_logistics_loss_multiplier,
            version=Order.version + 1,
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        logger.info(f"RTO for order {order_id} already resolved")
        return ResolutionResult(handled=False)

    order = await _load(db, order_id)
    restocked = False
    if order.stock_committed:
        await inventory_service.restock_for_order(db, order)
        restocked = True

    logger.info(
        f"RTO resolved for order {order_id}: restocked={restocked}, "
        f"logistics_loss={order.logistics_loss}"
    )
    return ResolutionResult(handled=True, restocked=restocked, logistics_loss=order.logistics_loss)


async def resolve_pre_pickup_cancel(db: AsyncSession, order_id: int) -> ResolutionResult:
    """
    Resolve a cancellation made before the parcel left us.

    Claims cancel_handled, then separately claims restock_handled so stock
    that an earlier RTO already returned is not returned twice.
    """
    res = await db.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.delivery_signal == DeliverySignal.PRE_PICKUP_CANCEL.value,
            Order.cancel_handled == False,  # noqa: E712
        )
        .values(cancel_handled=True, version=Order.version + 1, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        logger.info(f"Cancellation for order {order_id} already resolved")
        return ResolutionResult(handled=False)

    res = await db.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.restock_handled == False,  # noqa: E712
            Order.stock_committed == True,  # noqa: E712
        )
        .values(restock_handled=True, version=Order.version + 1)
        .execution_options(synchronize_session=False)
    )
    restocked = res.rowcount == 1

    order = await _load(db, order_id)
    if restocked:
        await inventory_service.restock_for_order(db, order)

    logger.info(f"Pre-pickup cancel resolved for order {order_id}: restocked={restocked}")
    return ResolutionResult(handled=True, restocked=restocked)
