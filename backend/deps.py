"""
Shared FastAPI dependencies.

Routers import common dependencies from here (pagination, shipment dispatch).
"""

from __future__ import annotations

from typing import Callable, TypedDict

from fastapi import BackgroundTasks, Query

from services import shipment_service


class Pagination(TypedDict):
    limit: int
    offset: int


def pagination_params(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0, le=100_000),
) -> Pagination:
    return {"limit": limit, "offset": offset}


def shipment_dispatcher(background_tasks: BackgroundTasks) -> Callable[[int], None]:
    """
    Dispatch callable handed to the payment confirmation processor.

    Shipment creation runs after the response is sent, in its own session,
    so the confirming transaction is committed before the carrier is called.
    """
    def dispatch(order_id: int) -> None:
        background_tasks.add_task(shipment_service.create_shipment_in_background, order_id)

    return dispatch
