"""
Payment gateway client (Razorpay-compatible REST API).

Only the calls the order core needs:
    - create_gateway_order(): open a gateway order for checkout
    - fetch_payment():        force-check a payment's status (verify fallback)
    - fetch_order_payments(): list payments for manual reconciliation
"""
import logging

import httpx

from config import settings
from domain.errors import ExternalServiceError

logger = logging.getLogger(__name__)

SERVICE = "gateway"


def _get_auth() -> tuple[str, str]:
    if not settings.gateway_key_id or not settings.gateway_key_secret:
        raise ExternalServiceError(
            SERVICE, "GATEWAY_KEY_ID and GATEWAY_KEY_SECRET must be set in .env"
        )
    return settings.gateway_key_id, settings.gateway_key_secret


async def create_gateway_order(amount_minor: int, currency: str, receipt: str, notes: dict | None = None) -> dict:
    """
    Create a gateway order.

    Args:
        amount_minor: amount in minor units (paise)
        currency: ISO currency code
        receipt: our reference, echoed back by the gateway
        notes: free-form key/values stored with the gateway order

    Returns:
        dict: the gateway order entity (id, amount, currency, status, ...)
    """
    try:
        async with httpx.AsyncClient(timeout=settings.gateway_timeout_seconds) as client:
            response = await client.post(
                f"{settings.gateway_base_url}/orders",
                auth=_get_auth(),
                json={
                    "amount": amount_minor,
                    "currency": currency,
                    "receipt": receipt,
                    "notes": notes or {},
                },
            )
            response.raise_for_status()
            return response.json()
    except httpx.HTTPError as e:
        logger.error(f"Gateway order creation failed for receipt {receipt}: {e}")
        raise ExternalServiceError(SERVICE, "order creation failed") from e


async def fetch_payment(payment_id: str) -> dict:
    """Fetch a payment entity by id (status: created | authorized | captured | failed | refunded)."""
    try:
        async with httpx.AsyncClient(timeout=settings.gateway_timeout_seconds) as client:
            response = await client.get(
                f"{settings.gateway_base_url}/payments/{payment_id}",
                auth=_get_auth(),
            )
            response.raise_for_status()
            return response.json()
    except httpx.HTTPError as e:
        logger.error(f"Gateway payment fetch failed for {payment_id}: {e}")
        raise ExternalServiceError(SERVICE, "payment fetch failed") from e


async def fetch_order_payments(gateway_order_id: str) -> list[dict]:
    """All payment entities made against a gateway order, newest first."""
    try:
        async with httpx.AsyncClient(timeout=settings.gateway_timeout_seconds) as client:
            response = await client.get(
                f"{settings.gateway_base_url}/orders/{gateway_order_id}/payments",
                auth=_get_auth(),
            )
            response.raise_for_status()
            return response.json().get("items", [])
    except httpx.HTTPError as e:
        logger.error(f"Gateway payment listing failed for {gateway_order_id}: {e}")
        raise ExternalServiceError(SERVICE, "payment listing failed") from e
