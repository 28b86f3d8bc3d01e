"""
Admin authentication helpers.

Admin endpoints take a short-lived HS256 JWT:
    Authorization: Bearer <jwt>   (claims: iss, sub, role, iat, exp)

Tokens are issued out of band (see issue_access_token) and must carry
role == "admin".
"""
import logging
from datetime import datetime, timezone, timedelta
from fastapi import HTTPException, Header
from typing import Optional

import jwt

from config import settings

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


def decode_access_token(token: str) -> dict:
    if not settings.jwt_secret:
        raise HTTPException(
            status_code=500,
            detail="Server auth misconfigured (JWT secret missing).",
        )
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            issuer=settings.jwt_issuer,
            options={"require": ["exp", "iat", "iss", "sub"]},
        )
        return payload
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Access token expired.")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid access token.")


def issue_access_token(*, subject: str, role: str = ADMIN_ROLE) -> str:
    now = _now_utc()
    exp = now.replace(microsecond=0) + timedelta(minutes=settings.jwt_access_ttl_minutes)
    payload = {
        "iss": settings.jwt_issuer,
        "sub": subject,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }
    if not settings.jwt_secret:
        raise HTTPException(
            status_code=500,
            detail="Server auth misconfigured (JWT secret missing).",
        )
    return jwt.encode(payload, settings.jwt_secret, algorithm="HS256")


async def require_admin(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> str:
    """Dependency for admin routes. Returns the token subject."""
    token = _parse_bearer_token(authorization)
    if not token:
        raise HTTPException(
            status_code=401,
            detail="Authentication required. Provide Authorization: Bearer <token>.",
        )
    payload = decode_access_token(token)
    if payload.get("role") != ADMIN_ROLE:
        logger.warning(f"Non-admin token used on admin route (sub={payload.get('sub')})")
        raise HTTPException(status_code=403, detail="Admin role required for this endpoint.")
    return payload["sub"]
