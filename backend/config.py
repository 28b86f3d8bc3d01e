"""
Configuration management for the Order Lifecycle API.

Loads settings from .env via pydantic-settings.

Security notes:
    - validate_production_settings() enforces strict CORS in production
    - Webhook secrets are required in production (webhooks fail closed without them)
    - CARRIER_USE_LIVE_API=false switches the carrier client to mock waybills
"""
import logging

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

logger = logging.getLogger(__name__)

# Postal codes served by our own riders (self-handled delivery area)
_DEFAULT_SELF_DELIVERY_POSTAL_CODES = ",".join(
    [f"2730{n:02d}" for n in range(1, 21)] + [f"2734{n:02d}" for n in range(1, 11)]
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # ── Database ────────────────────────────────────────────────────
    database_url: str = "sqlite:///./data/orders.db"

    # ── Application ─────────────────────────────────────────────────
    environment: str = "development"
    currency: str = "INR"
    tax_rate_percent: float = 0.0

    # ── Admin Auth (JWT) ────────────────────────────────────────────
    jwt_secret: str = ""
    jwt_issuer: str = "order-lifecycle-api"
    jwt_access_ttl_minutes: int = 60

    # ── Payment Gateway (Razorpay-compatible) ───────────────────────
    gateway_base_url: str = "https://api.razorpay.com/v1"
    gateway_key_id: str = ""
    gateway_key_secret: str = ""
    gateway_webhook_secret: str = ""
    gateway_timeout_seconds: float = 10.0

    # ── Carrier (Delhivery-compatible) ──────────────────────────────
    carrier_base_url: str = "https://track.delhivery.com"
    carrier_token: str = ""
    carrier_webhook_secret: str = ""
    carrier_use_live_api: bool = False
    carrier_timeout_seconds: float = 15.0
    pickup_postal_code: str = "273002"
    return_postal_code: str = ""
    return_city: str = "Gorakhpur"
    return_state: str = "Uttar Pradesh"
    return_phone: str = "9999999999"
    return_address: str = "Return Address"
    seller_name: str = "Storefront"
    seller_address: str = "Seller Address"
    seller_gst: str = ""

    # ── Self Delivery ───────────────────────────────────────────────
    self_delivery_postal_codes: str = _DEFAULT_SELF_DELIVERY_POSTAL_CODES
    self_delivery_base_charge: float = 30.0
    self_delivery_per_kg_charge: float = 10.0   # per kg beyond the first

    # ── Reconciliation ──────────────────────────────────────────────
    max_shipment_attempts: int = 3
    rto_logistics_loss_multiplier: float = 2.0  # forward shipping × N
    order_write_retries: int = 3                # optimistic-concurrency re-reads
    shipment_sweep_interval_seconds: int = 0    # 0 disables the in-process sweep

    # ── CORS ────────────────────────────────────────────────────────
    cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def self_delivery_postal_code_set(self) -> frozenset[str]:
        return frozenset(
            code.strip() for code in self.self_delivery_postal_codes.split(",") if code.strip()
        )

    def validate_production_settings(self):
        """
        Validate settings for production safety.

        Called during app startup.
        """
        if self.environment == "production":
            if "*" in self.cors_origins:
                raise ValueError(
                    "CORS_ORIGINS must not contain '*' in production. "
                    "Set explicit allowed origins."
                )
            if not self.jwt_secret:
                raise ValueError(
                    "JWT_SECRET must be set in production. "
                    "It is used to sign admin access tokens."
                )
            if not self.gateway_key_secret or not self.gateway_webhook_secret:
                raise ValueError(
                    "GATEWAY_KEY_SECRET and GATEWAY_WEBHOOK_SECRET must be set in production."
                )
            if not self.carrier_webhook_secret:
                raise ValueError("CARRIER_WEBHOOK_SECRET must be set in production.")
            if not self.carrier_use_live_api:
                raise ValueError(
                    "CARRIER_USE_LIVE_API must be true in production. "
                    "Mock mode issues fake waybills."
                )
            logger.info("Production settings validated")
        else:
            warnings = []
            if not self.carrier_use_live_api:
                warnings.append("CARRIER_USE_LIVE_API=false (mock waybills)")
            if not self.gateway_webhook_secret:
                warnings.append("GATEWAY_WEBHOOK_SECRET unset (payment webhooks rejected)")
            if not self.carrier_webhook_secret:
                warnings.append("CARRIER_WEBHOOK_SECRET unset (carrier webhooks rejected)")
            if "*" in self.cors_origins:
                warnings.append("CORS_ORIGINS contains '*' (open access)")
            for w in warnings:
                logger.warning(w)


# Global settings instance
settings = Settings()
