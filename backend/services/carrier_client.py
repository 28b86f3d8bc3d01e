"""
Carrier Client — outbound calls to the shipping carrier (Delhivery-compatible API).

Handles:
    1. Serviceability + rate queries keyed by destination postal code
    2. Shipment creation (form-encoded `format=json&data=<json>` payload)
    3. Tracking lookups

When CARRIER_USE_LIVE_API is false every call is answered locally with
mock data (MOCK… waybills) so the full order flow runs without credentials.

Every live call carries a bounded timeout; transport errors and non-2xx
answers surface as ExternalServiceError so callers can record and retry.
"""
import json
import logging
import math
import random
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

import httpx

from config import settings
from domain.constants import DEFAULT_PARCEL_WEIGHT_GRAMS, map_carrier_status
from domain.errors import ExternalServiceError, ValidationError
from utils.validators import is_valid_postal_code, normalize_phone

logger = logging.getLogger(__name__)

SERVICE = "carrier"

# Mock answers for a few postal codes that are never serviceable
_MOCK_UNSERVICEABLE = frozenset({"000000", "999999", "123456"})


@dataclass(frozen=True)
class ShipmentRequest:
    order_id: int
    consignee_name: str
    address_line: str
    city: str
    state: str
    postal_code: str
    phone: str
    total_amount: float
    total_weight_grams: int
    total_quantity: int
    items_description: str
    payment_mode: str = "Prepaid"


@dataclass(frozen=True)
class ShipmentCreated:
    tracking_number: str
    expected_delivery_date: Optional[str] = None


def _get_headers() -> dict:
    return {
        "Authorization": f"Token {settings.carrier_token}",
        "Accept": "application/json",
        "User-Agent": "order-lifecycle-api/1.0",
    }


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.carrier_base_url,
        headers=_get_headers(),
        timeout=settings.carrier_timeout_seconds,
    )


def _weight_kg(weight_grams: int | float | None) -> int:
    grams = weight_grams or DEFAULT_PARCEL_WEIGHT_GRAMS
    return max(1, math.ceil(grams / 1000))


# ════════════════════════════════════════════════════════════════════
# Serviceability + Rates
# ════════════════════════════════════════════════════════════════════


async def check_serviceability(postal_code: str) -> dict:
    """Return {serviceable, city, state} for a destination postal code."""
    if not is_valid_postal_code(postal_code):
        raise ValidationError("Valid 6-digit postal code required", field="postal_code")

    if not settings.carrier_use_live_api:
        if postal_code in _MOCK_UNSERVICEABLE:
            return {"serviceable": False, "city": None, "state": None}
        return {"serviceable": True, "city": "Mock City", "state": "Mock State"}

    try:
        async with _client() as client:
            response = await client.get(
                "/c/api/pin-codes/json/",
                params={"filter_codes": postal_code},
            )
            response.raise_for_status()
            data = response.json()
    except httpx.HTTPError as e:
        logger.warning(f"Carrier serviceability check failed for {postal_code}: {e}")
        raise ExternalServiceError(SERVICE, "serviceability check failed") from e

    codes = data.get("delivery_codes") or []
    if not codes:
        return {"serviceable": False, "city": None, "state": None}
    postal = codes[0].get("postal_code", {})
    return {
        "serviceable": True,
        "city": postal.get("city"),
        "state": postal.get("state_code"),
    }


async def calculate_rate(delivery_postal_code: str, weight_grams: int, pickup_postal_code: str | None = None) -> dict:
    """
    Forward shipping rate for a parcel.

    Returns:
        dict: {rate, currency, breakdown}
    """
    if not is_valid_postal_code(delivery_postal_code) or not weight_grams or weight_grams <= 0:
        raise ValidationError("Valid delivery postal code and weight required")

    kg = _weight_kg(weight_grams)

    if not settings.carrier_use_live_api:
        base_rate = 50
        weight_rate = kg * 15
        fuel_surcharge = round((base_rate + weight_rate) * 0.1)
        total = base_rate + weight_rate + fuel_surcharge
        return {
            "rate": float(total),
            "currency": settings.currency,
            "breakdown": {
                "baseRate": base_rate,
                "weightRate": weight_rate,
                "fuelSurcharge": fuel_surcharge,
                "total": total,
            },
        }

    try:
        async with _client() as client:
            response = await client.get(
                "/api/kinko/v1/invoice/charges/.json",
                params={
                    "md": "S",
                    "ss": "Delivered",
                    "d_pin": delivery_postal_code,
                    "o_pin": pickup_postal_code or settings.pickup_postal_code,
                    "cgm": kg * 1000,
                },
            )
            response.raise_for_status()
            data = response.json()
    except httpx.HTTPError as e:
        logger.warning(f"Carrier rate query failed for {delivery_postal_code}: {e}")
        raise ExternalServiceError(SERVICE, "rate calculation failed") from e

    rate_data = data[0] if isinstance(data, list) and data else None
    if not rate_data or rate_data.get("total_amount") is None:
        raise ExternalServiceError(SERVICE, "no rate data received")

    return {
        "rate": float(rate_data["total_amount"]),
        "currency": settings.currency,
        "breakdown": rate_data,
    }


# ════════════════════════════════════════════════════════════════════
# Shipment Creation
# ════════════════════════════════════════════════════════════════════


def build_shipment_payload(request: ShipmentRequest) -> dict:
    """
    Build the carrier's shipment-creation document.

    Raises ValidationError when a consignee field the carrier requires is empty.
    """
    required = {
        "consignee_name": request.consignee_name,
        "address_line": request.address_line,
        "postal_code": request.postal_code,
        "city": request.city,
        "state": request.state,
        "phone": request.phone,
    }
    missing = [name for name, value in required.items() if not value]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}")

    return {
        "shipments": [{
            "name": request.consignee_name[:50],
            "add": request.address_line[:200],
            "pin": request.postal_code,
            "city": request.city[:50],
            "state": request.state[:50],
            "country": "India",
            "phone": normalize_phone(request.phone),
            "order": str(request.order_id)[:50],
            "payment_mode": request.payment_mode,
            "return_pin": settings.return_postal_code or settings.pickup_postal_code,
            "return_city": settings.return_city,
            "return_phone": settings.return_phone,
            "return_add": settings.return_address,
            "return_state": settings.return_state,
            "products_desc": (request.items_description or "Items")[:300],
            "cod_amount": 0,
            "order_date": date.today().isoformat(),
            "total_amount": round(request.total_amount),
            "seller_add": settings.seller_address,
            "seller_name": settings.seller_name,
            "seller_inv": f"INV-{request.order_id}",
            "quantity": request.total_quantity or 1,
            "waybill": "",
            "shipment_width": 15,
            "shipment_height": 10,
            "shipment_length": 20,
            "weight": _weight_kg(request.total_weight_grams),
            "seller_gst_tin": settings.seller_gst,
            "shipping_mode": "Surface",
            "address_type": "home",
        }],
        "pickup_location": {"name": settings.seller_name},
    }


def _mock_create_shipment() -> ShipmentCreated:
    waybill = f"MOCK{str(int(time.time() * 1000))[-8:]}{random.randint(0, 999):03d}"
    eta = (datetime.utcnow() + timedelta(days=3)).date().isoformat()
    return ShipmentCreated(tracking_number=waybill, expected_delivery_date=eta)


async def create_shipment(request: ShipmentRequest) -> ShipmentCreated:
    """
    Create a shipment with the carrier.

    Raises:
        ExternalServiceError on any carrier failure (retryable)
        ValidationError when the request cannot be built
    """
    if request.postal_code in settings.self_delivery_postal_code_set:
        raise ValidationError("Destination is served by self delivery", field="postal_code")

    payload = build_shipment_payload(request)

    if not settings.carrier_use_live_api:
        created = _mock_create_shipment()
        logger.info(f"Mock shipment created for order {request.order_id}: {created.tracking_number}")
        return created

    try:
        async with _client() as client:
            response = await client.post(
                "/api/cmu/create.json",
                content=f"format=json&data={json.dumps(payload)}",
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            response.raise_for_status()
            data = response.json()
    except httpx.TimeoutException as e:
        raise ExternalServiceError(SERVICE, "shipment creation timed out") from e
    except httpx.HTTPError as e:
        raise ExternalServiceError(SERVICE, f"shipment creation failed: {e}") from e

    packages = data.get("packages") or []
    package = packages[0] if packages else {}
    waybill = package.get("waybill")
    if not waybill:
        remarks = package.get("remarks") or data.get("rmk") or "no waybill received"
        raise ExternalServiceError(SERVICE, str(remarks))

    logger.info(f"Carrier shipment created for order {request.order_id}: {waybill}")
    return ShipmentCreated(
        tracking_number=waybill,
        expected_delivery_date=package.get("expected_delivery_date"),
    )


# ════════════════════════════════════════════════════════════════════
# Tracking
# ════════════════════════════════════════════════════════════════════


async def track_shipment(tracking_number: str) -> dict:
    """Live tracking payload: {status, rawStatus, location, expectedDelivery, history}."""
    if not tracking_number:
        raise ValidationError("Tracking number is required")

    if not settings.carrier_use_live_api:
        return {
            "status": "SHIPMENT_CREATED",
            "rawStatus": "Manifested",
            "location": "Origin Hub",
            "expectedDelivery": None,
            "history": [],
        }

    try:
        async with _client() as client:
            response = await client.get("/api/v1/packages/json/", params={"waybill": tracking_number})
            response.raise_for_status()
            data = response.json()
    except httpx.HTTPError as e:
        raise ExternalServiceError(SERVICE, f"tracking failed: {e}") from e

    shipments = data.get("ShipmentData") or []
    if not shipments:
        raise ExternalServiceError(SERVICE, "shipment not found")

    shipment = shipments[0].get("Shipment", {})
    raw_status = (shipment.get("Status") or {}).get("Status")
    mapped = map_carrier_status(raw_status)
    return {
        "status": mapped.value if mapped else None,
        "rawStatus": raw_status,
        "location": (shipment.get("Status") or {}).get("StatusLocation"),
        "expectedDelivery": shipment.get("ExpectedDeliveryDate"),
        "history": shipment.get("Scans") or [],
    }
