"""
Inventory service — stock checks, guarded decrements and restocks.

Every decrement is a conditional UPDATE (`stock_qty >= quantity`) so stock
can never go negative, even when two confirmations race.
"""
import logging
from collections import defaultdict

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db_models import Item, Order
from domain.errors import InsufficientStockError

logger = logging.getLogger(__name__)


def _quantities(order: Order) -> dict[int, int]:
    """Aggregate line quantities per item (an item may appear on several lines)."""
    totals: dict[int, int] = defaultdict(int)
    for line in order.items:
        totals[line.item_id] += line.quantity
    return dict(totals)


async def ensure_available(db: AsyncSession, order: Order) -> None:
    """Raise InsufficientStockError if any line of `order` exceeds current stock."""
    quantities = _quantities(order)
    if not quantities:
        return

    res = await db.execute(
        select(Item.id, Item.stock_qty).where(Item.id.in_(list(quantities)))
    )
    available = {row.id: row.stock_qty for row in res}

    for item_id, qty in quantities.items():
        stock = available.get(item_id, 0)
        if stock < qty:
            raise InsufficientStockError(item_id, qty, stock)


async def decrement_for_order(db: AsyncSession, order: Order) -> None:
    """
    Decrement stock for every line of `order`.

    Raises InsufficientStockError on the first failed guard. Decrements
    already issued stay pending in the transaction; the caller rolls back.
    """
    order_id = order.id
    for item_id, qty in _quantities(order).items():
        res = await db.execute(
            update(Item)
            .where(Item.id == item_id, Item.stock_qty >= qty)
            .values(stock_qty=Item.stock_qty - qty)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            logger.warning(f"Stock decrement refused for item {item_id} (order {order_id})")
            raise InsufficientStockError(item_id, qty)

    logger.info(f"Stock committed for order {order_id}")


async def restock_for_order(db: AsyncSession, order: Order) -> None:
    """Return every line of `order` to stock. Callers guarantee this runs once."""
    for item_id, qty in _quantities(order).items():
        await db.execute(
            update(Item)
            .where(Item.id == item_id)
            .values(stock_qty=Item.stock_qty + qty)
            .execution_options(synchronize_session=False)
        )
    logger.info(f"Stock restored for order {order.id}")
