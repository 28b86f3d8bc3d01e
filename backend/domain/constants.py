"""
Domain constants used across services/routers.
"""

from domain.enums import DeliverySignal

# Carrier status vocabulary → delivery signal. Keys are normalised with
# normalize_carrier_status(); anything missing here is ignored, not guessed.
CARRIER_STATUS_MAP: dict[str, DeliverySignal] = {
    "manifested": DeliverySignal.SHIPMENT_CREATED,
    "shipped": DeliverySignal.SHIPMENT_CREATED,
    "dispatched": DeliverySignal.SHIPMENT_CREATED,
    "in transit": DeliverySignal.IN_TRANSIT,
    "pending": DeliverySignal.IN_TRANSIT,
    "out for delivery": DeliverySignal.OUT_FOR_DELIVERY,
    "delivered": DeliverySignal.DELIVERED,
    "rto initiated": DeliverySignal.RTO,
    "rto in transit": DeliverySignal.RTO,
    "rto delivered": DeliverySignal.RTO,
    "returned": DeliverySignal.RTO,
    "cancelled": DeliverySignal.RTO,
    "lost": DeliverySignal.RTO,
    "damaged": DeliverySignal.RTO,
}


def normalize_carrier_status(raw: str | None) -> str:
    """'RTO-Delivered' / 'RTO Delivered' / ' rto delivered ' → 'rto delivered'."""
    if not raw:
        return ""
    return " ".join(raw.replace("-", " ").replace("_", " ").split()).casefold()


def map_carrier_status(raw: str | None) -> DeliverySignal | None:
    return CARRIER_STATUS_MAP.get(normalize_carrier_status(raw))


# Gateway amounts are in minor units (paise)
MINOR_UNITS_PER_MAJOR = 100

# Fallback parcel weight when an order carries no item weights (grams)
DEFAULT_PARCEL_WEIGHT_GRAMS = 500
