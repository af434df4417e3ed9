"""
Canonical lifecycle transition tables.

Every consumer (services, sweeps, webhook application, display helpers) reads
the same table for a machine; combinations not listed are rejected.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Generic, Mapping, Optional, Type, TypeVar

from app.core.exceptions import InvalidTransitionException
from app.models.booking import BookingStatus, CheckoutStatus
from app.models.damage_claim import DamageClaimStatus
from app.models.overstay import OverstayStatus
from app.models.payment import PaymentAuthorizationStatus
from app.models.storage_extension import ExtensionStatus

S = TypeVar("S", bound=Enum)


@dataclass(frozen=True)
class StateMachine(Generic[S]):
    name: str
    status_enum: Type[S]
    transitions: Mapping[S, FrozenSet[S]]

    def coerce(self, value: "S | str", *, entity_id: Optional[str] = None) -> S:
        """Unknown status strings fail closed as an invalid transition."""
        if isinstance(value, self.status_enum):
            return value
        try:
            return self.status_enum(value)
        except ValueError as exc:
            raise InvalidTransitionException(
                self.name,
                entity_id,
                expected=None,
                actual=_value(value),
            ) from exc

    def allowed_targets(self, current: "S | str") -> FrozenSet[S]:
        return self.transitions.get(self.coerce(current), frozenset())

    def sources_for(self, target: "S | str") -> FrozenSet[S]:
        wanted = self.coerce(target)
        return frozenset(source for source, targets in self.transitions.items() if wanted in targets)

    def can_transition(self, current: "S | str", target: "S | str") -> bool:
        return self.coerce(target) in self.allowed_targets(current)

    def is_terminal(self, current: "S | str") -> bool:
        return not self.allowed_targets(current)

    def require(
        self,
        current: "S | str",
        target: "S | str",
        *,
        entity_id: Optional[str] = None,
    ) -> None:
        """
        Raise InvalidTransitionException unless ``current -> target`` is in the table.

        ``expected`` in the error lists the statuses that may move to ``target``.
        """
        current_status = self.coerce(current, entity_id=entity_id)
        target_status = self.coerce(target, entity_id=entity_id)
        if not self.can_transition(current_status, target_status):
            sources = sorted(source.value for source in self.sources_for(target_status))
            raise InvalidTransitionException(
                self.name,
                entity_id,
                expected=" | ".join(sources) or None,
                actual=current_status.value,
                target=target_status.value,
            )


def _value(status: "Enum | str | None") -> Optional[str]:
    if status is None:
        return None
    return status.value if isinstance(status, Enum) else str(status)


def _table(raw: Dict[S, tuple]) -> Dict[S, FrozenSet[S]]:
    return {source: frozenset(targets) for source, targets in raw.items()}


BOOKING_MACHINE: StateMachine[BookingStatus] = StateMachine(
    name="booking",
    status_enum=BookingStatus,
    transitions=_table(
        {
            BookingStatus.PENDING: (BookingStatus.CONFIRMED, BookingStatus.CANCELLED),
            BookingStatus.CONFIRMED: (
                BookingStatus.COMPLETED,
                BookingStatus.CANCELLED,
                BookingStatus.CANCELLATION_REQUESTED,
            ),
            BookingStatus.CANCELLATION_REQUESTED: (
                BookingStatus.CANCELLED,
                BookingStatus.CONFIRMED,
            ),
        }
    ),
)

PAYMENT_MACHINE: StateMachine[PaymentAuthorizationStatus] = StateMachine(
    name="payment_authorization",
    status_enum=PaymentAuthorizationStatus,
    transitions=_table(
        {
            PaymentAuthorizationStatus.AUTHORIZED_HOLD: (
                PaymentAuthorizationStatus.CAPTURED,
                PaymentAuthorizationStatus.VOIDED,
            ),
            PaymentAuthorizationStatus.CAPTURED: (
                PaymentAuthorizationStatus.PARTIALLY_REFUNDED,
                PaymentAuthorizationStatus.REFUNDED,
            ),
            # Repeated partial refunds stay in partially_refunded
            PaymentAuthorizationStatus.PARTIALLY_REFUNDED: (
                PaymentAuthorizationStatus.PARTIALLY_REFUNDED,
                PaymentAuthorizationStatus.REFUNDED,
            ),
        }
    ),
)

# The only backwards edge is an explicit manager rejection of a checkout request.
CHECKOUT_MACHINE: StateMachine[CheckoutStatus] = StateMachine(
    name="storage_checkout",
    status_enum=CheckoutStatus,
    transitions=_table(
        {
            CheckoutStatus.ACTIVE: (CheckoutStatus.CHECKOUT_REQUESTED,),
            CheckoutStatus.CHECKOUT_REQUESTED: (
                CheckoutStatus.CHECKOUT_APPROVED,
                CheckoutStatus.CHECKOUT_CLAIM_FILED,
                CheckoutStatus.ACTIVE,
            ),
        }
    ),
)

OVERSTAY_MACHINE: StateMachine[OverstayStatus] = StateMachine(
    name="overstay_penalty",
    status_enum=OverstayStatus,
    transitions=_table(
        {
            OverstayStatus.DETECTED: (OverstayStatus.GRACE_PERIOD,),
            # Checkout approved before the grace period ran out closes the episode
            OverstayStatus.GRACE_PERIOD: (OverstayStatus.PENDING_REVIEW, OverstayStatus.RESOLVED),
            # An approved extension covering the overdue days also closes the episode
            OverstayStatus.PENDING_REVIEW: (
                OverstayStatus.PENALTY_APPROVED,
                OverstayStatus.PENALTY_WAIVED,
                OverstayStatus.RESOLVED,
            ),
            OverstayStatus.PENALTY_APPROVED: (OverstayStatus.CHARGE_PENDING,),
            OverstayStatus.CHARGE_PENDING: (
                OverstayStatus.CHARGE_SUCCEEDED,
                OverstayStatus.CHARGE_FAILED,
            ),
            OverstayStatus.CHARGE_SUCCEEDED: (OverstayStatus.RESOLVED,),
            OverstayStatus.CHARGE_FAILED: (OverstayStatus.ESCALATED,),
            OverstayStatus.PENALTY_WAIVED: (OverstayStatus.RESOLVED,),
            # Manual resolution by an admin only
            OverstayStatus.ESCALATED: (OverstayStatus.RESOLVED,),
        }
    ),
)

EXTENSION_MACHINE: StateMachine[ExtensionStatus] = StateMachine(
    name="storage_extension",
    status_enum=ExtensionStatus,
    transitions=_table(
        {
            ExtensionStatus.PENDING: (ExtensionStatus.PAID, ExtensionStatus.REJECTED),
            ExtensionStatus.PAID: (ExtensionStatus.APPROVED, ExtensionStatus.REJECTED),
            ExtensionStatus.APPROVED: (ExtensionStatus.COMPLETED,),
            ExtensionStatus.REJECTED: (ExtensionStatus.REFUNDED,),
        }
    ),
)

DAMAGE_CLAIM_MACHINE: StateMachine[DamageClaimStatus] = StateMachine(
    name="damage_claim",
    status_enum=DamageClaimStatus,
    transitions=_table(
        {
            # A claim left unanswered past the response deadline counts as accepted
            DamageClaimStatus.SUBMITTED: (
                DamageClaimStatus.CHEF_ACCEPTED,
                DamageClaimStatus.UNDER_REVIEW,
                DamageClaimStatus.APPROVED,
            ),
            DamageClaimStatus.CHEF_ACCEPTED: (DamageClaimStatus.APPROVED,),
            DamageClaimStatus.UNDER_REVIEW: (
                DamageClaimStatus.APPROVED,
                DamageClaimStatus.PARTIALLY_APPROVED,
                DamageClaimStatus.REJECTED,
            ),
            DamageClaimStatus.APPROVED: (DamageClaimStatus.CHARGE_PENDING,),
            DamageClaimStatus.PARTIALLY_APPROVED: (DamageClaimStatus.CHARGE_PENDING,),
            DamageClaimStatus.CHARGE_PENDING: (
                DamageClaimStatus.CHARGE_SUCCEEDED,
                DamageClaimStatus.CHARGE_FAILED,
            ),
            DamageClaimStatus.CHARGE_SUCCEEDED: (DamageClaimStatus.RESOLVED,),
            # Retried by a manager or settled off-platform by an admin
            DamageClaimStatus.CHARGE_FAILED: (
                DamageClaimStatus.CHARGE_PENDING,
                DamageClaimStatus.RESOLVED,
            ),
        }
    ),
)

OPEN_CANCELLABLE_BOOKING_STATUSES: FrozenSet[BookingStatus] = frozenset(
    {BookingStatus.PENDING, BookingStatus.CONFIRMED}
)

CAPTURED_PAYMENT_STATUSES: FrozenSet[PaymentAuthorizationStatus] = frozenset(
    {PaymentAuthorizationStatus.CAPTURED, PaymentAuthorizationStatus.PARTIALLY_REFUNDED}
)

MACHINES: Dict[str, StateMachine] = {
    machine.name: machine
    for machine in (
        BOOKING_MACHINE,
        PAYMENT_MACHINE,
        CHECKOUT_MACHINE,
        OVERSTAY_MACHINE,
        EXTENSION_MACHINE,
        DAMAGE_CLAIM_MACHINE,
    )
}


def describe_machine(name: str) -> Dict[str, list[str]]:
    """Serializable view of a table for display surfaces."""
    machine = MACHINES[name]
    return {
        source.value: sorted(target.value for target in targets)
        for source, targets in machine.transitions.items()
    }
