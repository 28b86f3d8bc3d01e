"""
SQLAlchemy ORM models for the Order Lifecycle API.

Tables:
    items             — sellable catalog entries (price, stock, weight)
    orders            — order aggregate: two signals, derived status, idempotency flags
    order_items       — immutable item lines snapshotted at checkout
    payment_attempts  — append-only payment history per order
"""
from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, Float, Boolean, DateTime, Text, ForeignKey, Index,
)
from sqlalchemy.orm import relationship

from database import Base
from domain.enums import DeliverySignal, LifecycleStatus, PaymentSignal


class Item(Base):
    """Catalog item. Only the fields the order core reads live here."""
    __tablename__ = "items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    price = Column(Float, nullable=False)
    discount_price = Column(Float, nullable=True)
    stock_qty = Column(Integer, nullable=False, default=0)
    weight_grams = Column(Integer, nullable=False, default=100)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def effective_price(self) -> float:
        return self.discount_price if self.discount_price is not None else self.price


class Order(Base):
    """
    Order aggregate owned by the reconciliation core.

    payment_signal and delivery_signal are written only by their authoritative
    sources; lifecycle_status is always derived from them. Every write bumps
    `version` and is conditioned on the version last read.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_ref = Column(String(100), nullable=False, index=True)

    # Money (major units)
    currency = Column(String(10), nullable=False, default="INR")
    subtotal = Column(Float, nullable=False, default=0.0)
    tax = Column(Float, nullable=False, default=0.0)
    shipping_charge = Column(Float, nullable=False, default=0.0)
    grand_total = Column(Float, nullable=False, default=0.0)
    total_weight_grams = Column(Integer, nullable=False, default=0)

    # Signals + derived status
    payment_signal = Column(String(20), nullable=False, default=PaymentSignal.PENDING.value, index=True)
    delivery_signal = Column(String(30), nullable=True, default=DeliverySignal.PENDING.value, index=True)
    lifecycle_status = Column(String(20), nullable=False, default=LifecycleStatus.PENDING.value, index=True)

    # Fulfilment
    shipment_provider = Column(String(20), nullable=False)  # CARRIER | SELF_HANDLED
    tracking_number = Column(String(64), nullable=True, unique=True, index=True)
    expected_delivery_date = Column(String(20), nullable=True)
    shipment_attempts = Column(Integer, nullable=False, default=0)
    last_shipment_error = Column(Text, nullable=True)

    # Idempotency flags (flipped false→true by a conditional UPDATE)
    stock_committed = Column(Boolean, nullable=False, default=False)
    restock_handled = Column(Boolean, nullable=False, default=False)
    cancel_handled = Column(Boolean, nullable=False, default=False)
    logistics_loss = Column(Float, nullable=True)

    # Gateway linkage
    gateway_order_id = Column(String(64), nullable=True, unique=True, index=True)

    # Delivery address snapshot
    consignee_name = Column(String(100), nullable=False, default="")
    phone = Column(String(20), nullable=False, default="")
    address_line = Column(String(300), nullable=False, default="")
    city = Column(String(100), nullable=False, default="")
    state = Column(String(100), nullable=False, default="")
    postal_code = Column(String(10), nullable=False)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    confirmed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)

    items = relationship("OrderItem", back_populates="order", lazy="selectin", order_by="OrderItem.id")
    payment_attempts = relationship(
        "PaymentAttempt", back_populates="order", lazy="selectin", order_by="PaymentAttempt.id"
    )

    __table_args__ = (
        # Shipment sweep / intervention queries
        Index("ix_orders_shipment_queue", "payment_signal", "lifecycle_status", "shipment_provider", "shipment_attempts"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False, default="")
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Float, nullable=False, default=0.0)
    unit_weight_grams = Column(Integer, nullable=False, default=0)

    order = relationship("Order", back_populates="items")


class PaymentAttempt(Base):
    """
    Append-only payment history. Rows are inserted, never updated.
    """
    __tablename__ = "payment_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    attempt_number = Column(Integer, nullable=False, default=1)
    gateway_order_id = Column(String(64), nullable=True)
    gateway_payment_id = Column(String(64), nullable=True, index=True)
    amount_minor = Column(Integer, nullable=True)  # paise
    method = Column(String(30), nullable=True)
    status = Column(String(20), nullable=False)    # paid | failed
    source = Column(String(20), nullable=False)    # webhook | verify | manual | admin
    signature_verified = Column(Boolean, nullable=False, default=False)
    error_code = Column(String(100), nullable=True)
    error_description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    order = relationship("Order", back_populates="payment_attempts")
