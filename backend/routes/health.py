"""
Health check endpoint.
"""
from datetime import datetime, timezone
import logging

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from config import settings
from database import ping_db

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Health check — verifies database connectivity."""
    try:
        await ping_db()
        return {
            "status": "healthy",
            "database_connected": True,
            "carrier_mode": "live" if settings.carrier_use_live_api else "mock",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "unhealthy",
                "database_connected": False,
                "error": "database unavailable",
            },
        )
