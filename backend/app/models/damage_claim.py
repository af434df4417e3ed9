# backend/app/models/damage_claim.py
"""
Storage damage claim models.

A manager files a claim instead of approving a checkout. The chef accepts or
disputes it before ``chef_response_deadline``; disputes go to an admin. An
approved amount is charged off-session against the chef's saved card.

A storage booking carries at most one claim: filing it moves checkout to
``checkout_claim_filed``, which has no way back.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.types import JSON
import ulid

from ..core.exceptions import InvariantBreachException
from ..database import Base
from .base_enum import enum_check


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class DamageClaimStatus(str, Enum):
    SUBMITTED = "submitted"
    CHEF_ACCEPTED = "chef_accepted"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    PARTIALLY_APPROVED = "partially_approved"
    REJECTED = "rejected"
    CHARGE_PENDING = "charge_pending"
    CHARGE_SUCCEEDED = "charge_succeeded"
    CHARGE_FAILED = "charge_failed"
    RESOLVED = "resolved"


class DamageClaimResolution(str, Enum):
    PAID = "paid"
    MANUAL = "manual"


class DamageClaimDecision(str, Enum):
    APPROVE = "approve"
    PARTIALLY_APPROVE = "partially_approve"
    REJECT = "reject"


class DamageClaim(Base):
    """A manager's claim against a chef for damage found at checkout."""

    __tablename__ = "storage_damage_claims"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    storage_booking_id = Column(String(26), ForeignKey("storage_bookings.id"), nullable=False)
    booking_group_id = Column(String(26), ForeignKey("booking_groups.id"), nullable=False, index=True)
    chef_id = Column(String(26), nullable=False, index=True)
    manager_id = Column(String(26), nullable=False)
    status = Column(String(32), nullable=False, default=DamageClaimStatus.SUBMITTED.value, index=True)

    claim_title = Column(String(200), nullable=False)
    claim_description = Column(Text, nullable=False)
    damage_date = Column(DateTime(timezone=True), nullable=True)
    claimed_amount_cents = Column(Integer, nullable=False)
    approved_amount_cents = Column(Integer, nullable=True)
    final_amount_cents = Column(Integer, nullable=True)
    tax_cents = Column(Integer, nullable=True)
    charged_amount_cents = Column(Integer, nullable=True)

    submitted_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)
    chef_response_deadline = Column(DateTime(timezone=True), nullable=False)
    chef_response = Column(Text, nullable=True)
    chef_responded_at = Column(DateTime(timezone=True), nullable=True)

    reviewer_id = Column(String(26), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    decision_reason = Column(Text, nullable=True)
    reviewer_notes = Column(Text, nullable=True)

    payment_authorization_id = Column(
        String(26), ForeignKey("payment_authorizations.id"), nullable=True
    )
    stripe_payment_intent_id = Column(String(255), nullable=True)
    stripe_charge_id = Column(String(255), nullable=True)
    charge_attempts = Column(Integer, nullable=False, default=0)
    charge_attempted_at = Column(DateTime(timezone=True), nullable=True)
    charge_succeeded_at = Column(DateTime(timezone=True), nullable=True)
    charge_failed_at = Column(DateTime(timezone=True), nullable=True)
    charge_failure_reason = Column(Text, nullable=True)
    refunded_amount_cents = Column(Integer, nullable=False, default=0)

    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolution_type = Column(String(32), nullable=True)
    resolution_notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, onupdate=_now_utc)

    storage_booking = relationship("StorageBooking")
    history = relationship(
        "DamageClaimHistory",
        back_populates="claim",
        order_by="DamageClaimHistory.sequence",
    )

    __table_args__ = (
        UniqueConstraint("storage_booking_id", name="uq_storage_damage_claims_booking"),
        enum_check("status", DamageClaimStatus, "ck_storage_damage_claims_status"),
        enum_check(
            "resolution_type",
            DamageClaimResolution,
            "ck_storage_damage_claims_resolution",
            nullable=True,
        ),
        CheckConstraint("claimed_amount_cents > 0", name="ck_damage_claim_claimed_positive"),
        CheckConstraint(
            "approved_amount_cents IS NULL OR "
            "(approved_amount_cents >= 0 AND approved_amount_cents <= claimed_amount_cents)",
            name="ck_damage_claim_approved_le_claimed",
        ),
    )

    @property
    def is_closed(self) -> bool:
        return self.status in (DamageClaimStatus.RESOLVED.value, DamageClaimStatus.REJECTED.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "storage_booking_id": self.storage_booking_id,
            "status": self.status,
            "claimed_amount_cents": self.claimed_amount_cents,
            "final_amount_cents": self.final_amount_cents,
        }


class DamageClaimHistory(Base):
    """Audit event for one damage claim transition."""

    __tablename__ = "storage_damage_claim_history"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    damage_claim_id = Column(
        String(26), ForeignKey("storage_damage_claims.id"), nullable=False, index=True
    )
    sequence = Column(Integer, nullable=False)
    previous_status = Column(String(32), nullable=True)
    new_status = Column(String(32), nullable=False)
    event_type = Column(String(32), nullable=False)
    event_source = Column(String(16), nullable=False)
    actor_id = Column(String(26), nullable=True)
    description = Column(Text, nullable=True)
    event_metadata = Column(
        "metadata", JSONB(astext_type=Text()).with_variant(JSON(), "sqlite"), nullable=True
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)

    claim = relationship("DamageClaim", back_populates="history")

    __table_args__ = (
        UniqueConstraint("damage_claim_id", "sequence", name="uq_damage_claim_history_sequence"),
    )


@event.listens_for(DamageClaimHistory, "before_update")
def _refuse_history_update(_mapper, _connection, target: DamageClaimHistory) -> None:
    raise InvariantBreachException(
        "Damage claim history is append-only", details={"history_id": target.id}
    )


@event.listens_for(DamageClaimHistory, "before_delete")
def _refuse_history_delete(_mapper, _connection, target: DamageClaimHistory) -> None:
    raise InvariantBreachException(
        "Damage claim history is append-only", details={"history_id": target.id}
    )
