"""
Domain enums for the order lifecycle.

Casing follows the wire formats: delivery signals are UPPERCASE (carrier
vocabulary), payment signals and lifecycle statuses are lowercase.
"""

from enum import Enum


class PaymentSignal(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


class DeliverySignal(str, Enum):
    PENDING = "PENDING"
    SHIPMENT_CREATED = "SHIPMENT_CREATED"
    IN_TRANSIT = "IN_TRANSIT"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    RTO = "RTO"
    PRE_PICKUP_CANCEL = "PRE_PICKUP_CANCEL"


class LifecycleStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ShipmentProvider(str, Enum):
    CARRIER = "CARRIER"
    SELF_HANDLED = "SELF_HANDLED"


class UpdateSource(str, Enum):
    """Who is asking to mutate an order's signals."""
    ADMIN = "ADMIN"
    WEBHOOK = "WEBHOOK"


class PaymentSource(str, Enum):
    """Call site that observed a payment outcome (recorded on payment attempts)."""
    WEBHOOK = "webhook"
    VERIFY = "verify"
    MANUAL = "manual"
    ADMIN = "admin"


class GatewayEvent(str, Enum):
    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_AUTHORIZED = "payment.authorized"
