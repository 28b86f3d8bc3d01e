"""
Input validation utilities for the Order Lifecycle API.

Reusable validators for postal codes and phone numbers.
"""
import re

from fastapi import HTTPException, Path

_POSTAL_CODE_RE = re.compile(r"^\d{6}$")


def is_valid_postal_code(postal_code: str | None) -> bool:
    return bool(postal_code) and bool(_POSTAL_CODE_RE.match(str(postal_code)))


def validate_postal_code(postal_code: str) -> str:
    """
    Validate a 6-digit postal code.

    Raises:
        HTTPException(400) if the postal code is malformed
    """
    if not is_valid_postal_code(postal_code):
        raise HTTPException(status_code=400, detail="Valid 6-digit postal code required")
    return str(postal_code)


def normalize_phone(phone: str | None, max_digits: int = 10) -> str:
    """Keep digits only; carriers reject formatted numbers. Keeps the last `max_digits`."""
    digits = re.sub(r"[^0-9]", "", phone or "")
    return digits[-max_digits:] if len(digits) > max_digits else digits


def validated_postal_code(postal_code: str = Path(..., description="6-digit postal code")) -> str:
    """FastAPI dependency for validating postal code path parameters."""
    return validate_postal_code(postal_code)
