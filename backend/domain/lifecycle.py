"""
Order lifecycle rules — pure functions, no I/O.

    derive_status()               (delivery, payment) → lifecycle status
    DELIVERY_TRANSITIONS          the delivery state machine
    validate_delivery_transition  edge check with admin-correction capability
    get_update_permissions        which signal a source may mutate
    check_invariants              consistency of a prospective order state
    plan_signal_update            the orchestrator: returns the fields to persist

lifecycle_status is never written by callers; it is always the output of
derive_status() over the two signals it is computed from.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Optional

from domain.enums import (
    DeliverySignal,
    LifecycleStatus,
    PaymentSignal,
    ShipmentProvider,
    UpdateSource,
)
from domain.errors import ForbiddenError, InvalidTransitionError, InvariantViolationError

D = DeliverySignal


# ════════════════════════════════════════════════════════════════════
# Status Derivation
# ════════════════════════════════════════════════════════════════════


def derive_status(delivery: DeliverySignal | str | None, payment: PaymentSignal | str) -> LifecycleStatus:
    """
    Derive the lifecycle status. First match wins:

        PRE_PICKUP_CANCEL            → cancelled
        DELIVERED                    → delivered (payment is irrelevant)
        RTO                          → cancelled
        IN_TRANSIT/OUT_FOR_DELIVERY  → shipped
        payment failed               → failed
        payment paid                 → confirmed
        otherwise                    → pending

    Unknown values raise ValueError from the enum constructors.
    """
    delivery = DeliverySignal(delivery) if delivery is not None else None
    payment = PaymentSignal(payment)

    if delivery is D.PRE_PICKUP_CANCEL:
        return LifecycleStatus.CANCELLED
    if delivery is D.DELIVERED:
        return LifecycleStatus.DELIVERED
    if delivery is D.RTO:
        return LifecycleStatus.CANCELLED
    if delivery in (D.OUT_FOR_DELIVERY, D.IN_TRANSIT):
        return LifecycleStatus.SHIPPED
    if payment is PaymentSignal.FAILED:
        return LifecycleStatus.FAILED
    if payment is PaymentSignal.PAID:
        return LifecycleStatus.CONFIRMED
    return LifecycleStatus.PENDING


# ════════════════════════════════════════════════════════════════════
# Delivery State Machine
# ════════════════════════════════════════════════════════════════════

DELIVERY_TRANSITIONS: dict[Optional[DeliverySignal], frozenset[DeliverySignal]] = {
    None: frozenset({D.PENDING}),
    D.PENDING: frozenset({D.SHIPMENT_CREATED, D.OUT_FOR_DELIVERY, D.PRE_PICKUP_CANCEL}),
    D.SHIPMENT_CREATED: frozenset(
        {D.IN_TRANSIT, D.OUT_FOR_DELIVERY, D.DELIVERED, D.RTO, D.PRE_PICKUP_CANCEL}
    ),
    D.IN_TRANSIT: frozenset({D.OUT_FOR_DELIVERY, D.DELIVERED, D.RTO}),
    D.OUT_FOR_DELIVERY: frozenset({D.DELIVERED, D.RTO, D.PRE_PICKUP_CANCEL, D.PENDING}),
    D.DELIVERED: frozenset({D.OUT_FOR_DELIVERY, D.PRE_PICKUP_CANCEL, D.PENDING}),
    D.RTO: frozenset({D.PRE_PICKUP_CANCEL}),
    D.PRE_PICKUP_CANCEL: frozenset(),
}

# Edges in DELIVERY_TRANSITIONS that only an administrative correction may take
ADMIN_CORRECTION_EDGES: frozenset[tuple[DeliverySignal, DeliverySignal]] = frozenset({
    (D.OUT_FOR_DELIVERY, D.PENDING),
    (D.DELIVERED, D.OUT_FOR_DELIVERY),
    (D.DELIVERED, D.PRE_PICKUP_CANCEL),
    (D.DELIVERED, D.PENDING),
})

# States from which a shipment physically existed (RTO precondition)
SHIPPED_STATES = frozenset({D.SHIPMENT_CREATED, D.IN_TRANSIT, D.OUT_FOR_DELIVERY})


@dataclass(frozen=True)
class TransitionCheck:
    allowed: bool
    edge: tuple[Optional[str], str]
    reason: str | None = None


def validate_delivery_transition(
    current: DeliverySignal | str | None,
    requested: DeliverySignal | str,
    *,
    allow_correction: bool = False,
) -> TransitionCheck:
    """
    Check one edge of the delivery state machine.

    An order's very first delivery signal (no prior state) is always allowed.
    Correction edges need allow_correction=True.
    """
    requested = DeliverySignal(requested)
    current = DeliverySignal(current) if current is not None else None
    edge = (current.value if current else None, requested.value)

    if current is None:
        return TransitionCheck(True, edge)

    if requested not in DELIVERY_TRANSITIONS[current]:
        return TransitionCheck(False, edge, f"{edge[0]} → {edge[1]} is not an edge")

    if (current, requested) in ADMIN_CORRECTION_EDGES and not allow_correction:
        return TransitionCheck(
            False, edge, f"{edge[0]} → {edge[1]} is an administrative correction"
        )

    return TransitionCheck(True, edge)


# ════════════════════════════════════════════════════════════════════
# Permission Gate
# ════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class Permissions:
    can_update_delivery: bool
    can_update_payment: bool


def get_update_permissions(provider: ShipmentProvider | str, source: UpdateSource | str) -> Permissions:
    """
    WEBHOOK               → delivery only (payment webhooks use the confirmation processor)
    ADMIN + CARRIER       → payment only (carrier webhooks own delivery state)
    ADMIN + SELF_HANDLED  → both (no external carrier to defer to)
    """
    provider = ShipmentProvider(provider)
    source = UpdateSource(source)

    if source is UpdateSource.WEBHOOK:
        return Permissions(can_update_delivery=True, can_update_payment=False)
    if source is UpdateSource.ADMIN and provider is ShipmentProvider.CARRIER:
        return Permissions(can_update_delivery=False, can_update_payment=True)
    if source is UpdateSource.ADMIN and provider is ShipmentProvider.SELF_HANDLED:
        return Permissions(can_update_delivery=True, can_update_payment=True)
    return Permissions(can_update_delivery=False, can_update_payment=False)


# ════════════════════════════════════════════════════════════════════
# Order State + Invariants
# ════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class OrderState:
    """Snapshot of the fields the lifecycle rules read."""
    delivery_signal: Optional[DeliverySignal]
    payment_signal: PaymentSignal
    shipment_provider: ShipmentProvider
    tracking_number: Optional[str] = None
    shipment_attempts: int = 0
    lifecycle_status: Optional[LifecycleStatus] = None
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None

    @classmethod
    def from_order(cls, order: Any) -> "OrderState":
        return cls(
            delivery_signal=DeliverySignal(order.delivery_signal) if order.delivery_signal else None,
            payment_signal=PaymentSignal(order.payment_signal),
            shipment_provider=ShipmentProvider(order.shipment_provider),
            tracking_number=order.tracking_number,
            shipment_attempts=order.shipment_attempts or 0,
            lifecycle_status=LifecycleStatus(order.lifecycle_status) if order.lifecycle_status else None,
            confirmed_at=order.confirmed_at,
            cancelled_at=order.cancelled_at,
            delivered_at=order.delivered_at,
        )

    def merged(self, fields: dict[str, Any]) -> "OrderState":
        known = {k: v for k, v in fields.items() if k in self.__dataclass_fields__}
        if "delivery_signal" in known and known["delivery_signal"] is not None:
            known["delivery_signal"] = DeliverySignal(known["delivery_signal"])
        if "payment_signal" in known:
            known["payment_signal"] = PaymentSignal(known["payment_signal"])
        if "lifecycle_status" in known and known["lifecycle_status"] is not None:
            known["lifecycle_status"] = LifecycleStatus(known["lifecycle_status"])
        return replace(self, **known)


def check_invariants(current: OrderState, prospective: OrderState) -> None:
    """Raise InvariantViolationError if `prospective` may not be committed."""
    if prospective.shipment_provider is ShipmentProvider.SELF_HANDLED and prospective.tracking_number:
        raise InvariantViolationError(
            "Self-handled orders cannot carry a carrier tracking number",
            details={"tracking_number": prospective.tracking_number},
        )

    if (
        prospective.delivery_signal is D.DELIVERED
        and prospective.shipment_provider is ShipmentProvider.CARRIER
        and (prospective.shipment_attempts <= 0 or not prospective.tracking_number)
    ):
        raise InvariantViolationError("Carrier order cannot be DELIVERED before a shipment was created")

    entering_rto = prospective.delivery_signal is D.RTO and current.delivery_signal is not D.RTO
    if entering_rto:
        if current.delivery_signal not in SHIPPED_STATES:
            raise InvariantViolationError(
                "RTO is only valid for shipped orders",
                details={"from": current.delivery_signal.value if current.delivery_signal else None},
            )
        if prospective.shipment_provider is ShipmentProvider.CARRIER and not prospective.tracking_number:
            raise InvariantViolationError("RTO requires an existing carrier shipment")

    if prospective.lifecycle_status is not None:
        expected = derive_status(prospective.delivery_signal, prospective.payment_signal)
        if prospective.lifecycle_status is not expected:
            raise InvariantViolationError(
                "Lifecycle status drifted from its signals",
                details={"status": prospective.lifecycle_status.value, "expected": expected.value},
            )


# ════════════════════════════════════════════════════════════════════
# Signal Update Orchestrator
# ════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class SignalUpdate:
    delivery_signal: Optional[DeliverySignal] = None
    payment_signal: Optional[PaymentSignal] = None
    # Non-signal bookkeeping written in the same atomic update (tracking number, attempts)
    extra_fields: dict[str, Any] = field(default_factory=dict)


def plan_signal_update(
    state: OrderState,
    update: SignalUpdate,
    source: UpdateSource | str,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Compute the exact field set to persist for `update`, or raise.

    1. drop requested signals equal to the current value (redelivery is a no-op)
    2. no signal and no extra field left → {}
    3. permission gate → ForbiddenError
    4. transition validator → InvalidTransitionError
    5. invariants on the prospective state → InvariantViolationError
    6. derive lifecycle_status
    7. add timestamps mandated by the new state (each set at most once)

    Enum members are returned as their string values, ready for an UPDATE.
    """
    source = UpdateSource(source)
    delivery = DeliverySignal(update.delivery_signal) if update.delivery_signal is not None else None
    payment = PaymentSignal(update.payment_signal) if update.payment_signal is not None else None

    if delivery is not None and delivery is state.delivery_signal:
        delivery = None
    if payment is not None and payment is state.payment_signal:
        payment = None
    if delivery is None and payment is None and not update.extra_fields:
        return {}

    permissions = get_update_permissions(state.shipment_provider, source)
    if delivery is not None and not permissions.can_update_delivery:
        raise ForbiddenError(
            f"{source.value} cannot update delivery_signal for {state.shipment_provider.value} orders"
        )
    if payment is not None and not permissions.can_update_payment:
        raise ForbiddenError(
            f"{source.value} cannot update payment_signal for {state.shipment_provider.value} orders"
        )

    fields: dict[str, Any] = dict(update.extra_fields)
    if delivery is not None:
        check = validate_delivery_transition(
            state.delivery_signal, delivery, allow_correction=source is UpdateSource.ADMIN
        )
        if not check.allowed:
            raise InvalidTransitionError(check.edge[0], check.edge[1], details={"reason": check.reason})
        fields["delivery_signal"] = delivery
    if payment is not None:
        fields["payment_signal"] = payment

    prospective = state.merged(fields)
    status = derive_status(prospective.delivery_signal, prospective.payment_signal)
    prospective = replace(prospective, lifecycle_status=status)
    check_invariants(state, prospective)

    fields["lifecycle_status"] = status
    now = now or datetime.utcnow()
    if delivery is D.DELIVERED and state.delivered_at is None:
        fields["delivered_at"] = now
    if status is LifecycleStatus.CANCELLED and state.cancelled_at is None:
        fields["cancelled_at"] = now

    return {k: (v.value if isinstance(v, (DeliverySignal, PaymentSignal, LifecycleStatus)) else v)
            for k, v in fields.items()}
