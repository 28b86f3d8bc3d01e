"""
Delivery service — fulfilment provider selection and delivery quotes.

Destinations inside the self-delivery area are served by our own riders
(SELF_HANDLED); everything else ships through the carrier (CARRIER).
The provider is fixed at checkout and never changes afterwards.
"""
import logging
import math

from config import settings
from domain.constants import DEFAULT_PARCEL_WEIGHT_GRAMS
from domain.enums import ShipmentProvider
from domain.errors import ValidationError
from services import carrier_client
from utils.validators import is_valid_postal_code

logger = logging.getLogger(__name__)


def is_self_delivery_area(postal_code: str | None) -> bool:
    if not postal_code:
        return False
    return str(postal_code).strip() in settings.self_delivery_postal_code_set


def resolve_provider(postal_code: str) -> ShipmentProvider:
    return ShipmentProvider.SELF_HANDLED if is_self_delivery_area(postal_code) else ShipmentProvider.CARRIER


def validate_provider(postal_code: str, provider: ShipmentProvider | str) -> None:
    """Raise ValidationError if `provider` does not match the destination's service area."""
    expected = resolve_provider(postal_code)
    if ShipmentProvider(provider) is not expected:
        raise ValidationError(
            f"{postal_code} must be fulfilled by {expected.value}",
            field="shipment_provider",
        )


def self_delivery_charge(weight_grams: int | None) -> float:
    """Base charge covers the first kg; each started kg after that adds the per-kg rate."""
    kg = max(1, math.ceil((weight_grams or DEFAULT_PARCEL_WEIGHT_GRAMS) / 1000))
    return settings.self_delivery_base_charge + (kg - 1) * settings.self_delivery_per_kg_charge


async def get_delivery_quote(postal_code: str, weight_grams: int) -> dict:
    """
    Quote delivery to a destination.

    Returns:
        dict: {
            provider: CARRIER | SELF_HANDLED,
            charge: float,
            serviceable: bool,
        }
    """
    if not is_valid_postal_code(postal_code):
        raise ValidationError("Valid 6-digit postal code required", field="postal_code")

    provider = resolve_provider(postal_code)
    if provider is ShipmentProvider.SELF_HANDLED:
        return {
            "provider": provider.value,
            "charge": self_delivery_charge(weight_grams),
            "serviceable": True,
        }

    serviceability = await carrier_client.check_serviceability(postal_code)
    if not serviceability["serviceable"]:
        return {"provider": provider.value, "charge": None, "serviceable": False}

    rate = await carrier_client.calculate_rate(postal_code, weight_grams)
    return {"provider": provider.value, "charge": rate["rate"], "serviceable": True}
