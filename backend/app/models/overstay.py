# backend/app/models/overstay.py
"""
Storage overstay penalty models.

At most one record per storage booking may be open (anything but
``resolved``). ``open_booking_key`` holds the storage booking id while the
record is open and is cleared on resolution, so a plain UNIQUE constraint
enforces the rule on every dialect.

History rows are an append-only audit trail: the ORM refuses to update or
delete them.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
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


class OverstayStatus(str, Enum):
    DETECTED = "detected"
    GRACE_PERIOD = "grace_period"
    PENDING_REVIEW = "pending_review"
    PENALTY_APPROVED = "penalty_approved"
    PENALTY_WAIVED = "penalty_waived"
    CHARGE_PENDING = "charge_pending"
    CHARGE_SUCCEEDED = "charge_succeeded"
    CHARGE_FAILED = "charge_failed"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


class OverstayResolution(str, Enum):
    CHARGED = "charged"
    WAIVED = "waived"
    CHECKED_OUT = "checked_out"
    EXTENDED = "extended"
    MANUAL = "manual"


class OverstayPenaltyRecord(Base):
    """One overstay episode of a storage booking."""

    __tablename__ = "storage_overstay_records"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    storage_booking_id = Column(
        String(26), ForeignKey("storage_bookings.id"), nullable=False, index=True
    )
    open_booking_key = Column(String(26), nullable=True)
    status = Column(String(32), nullable=False, default=OverstayStatus.DETECTED.value, index=True)

    detected_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)
    end_date_snapshot = Column(DateTime(timezone=True), nullable=False)
    grace_period_ends_at = Column(DateTime(timezone=True), nullable=False)

    days_overdue = Column(Integer, nullable=False, default=0)
    daily_rate_cents = Column(Integer, nullable=False)
    penalty_rate = Column(Numeric(5, 4), nullable=False)
    calculated_penalty_cents = Column(Integer, nullable=False, default=0)
    final_penalty_cents = Column(Integer, nullable=True)
    tax_cents = Column(Integer, nullable=True)
    charged_amount_cents = Column(Integer, nullable=True)

    penalty_waived = Column(Boolean, nullable=False, default=False)
    waive_reason = Column(Text, nullable=True)
    manager_notes = Column(Text, nullable=True)
    reviewed_by = Column(String(26), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)

    payment_authorization_id = Column(
        String(26), ForeignKey("payment_authorizations.id"), nullable=True
    )
    stripe_payment_intent_id = Column(String(255), nullable=True)
    stripe_charge_id = Column(String(255), nullable=True)
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
        "OverstayHistory",
        back_populates="record",
        order_by="OverstayHistory.sequence",
    )

    __table_args__ = (
        UniqueConstraint("open_booking_key", name="uq_storage_overstay_records_open_booking"),
        enum_check("status", OverstayStatus, "ck_storage_overstay_records_status"),
        enum_check(
            "resolution_type",
            OverstayResolution,
            "ck_storage_overstay_records_resolution",
            nullable=True,
        ),
        CheckConstraint("calculated_penalty_cents >= 0", name="ck_overstay_calculated"),
        CheckConstraint(
            "final_penalty_cents IS NULL OR "
            "(final_penalty_cents >= 0 AND final_penalty_cents <= calculated_penalty_cents)",
            name="ck_overstay_final_le_calculated",
        ),
    )

    @property
    def is_open(self) -> bool:
        return self.status != OverstayStatus.RESOLVED.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "storage_booking_id": self.storage_booking_id,
            "status": self.status,
            "days_overdue": self.days_overdue,
            "calculated_penalty_cents": self.calculated_penalty_cents,
            "final_penalty_cents": self.final_penalty_cents,
        }


class OverstayHistory(Base):
    """Audit event for one overstay transition."""

    __tablename__ = "storage_overstay_history"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    overstay_record_id = Column(
        String(26), ForeignKey("storage_overstay_records.id"), nullable=False, index=True
    )
    # Monotonic per record; timestamps can tie inside one sweep
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

    record = relationship("OverstayPenaltyRecord", back_populates="history")

    __table_args__ = (
        UniqueConstraint("overstay_record_id", "sequence", name="uq_overstay_history_sequence"),
    )


@event.listens_for(OverstayHistory, "before_update")
def _refuse_history_update(_mapper, _connection, target: OverstayHistory) -> None:
    raise InvariantBreachException(
        "Overstay history is append-only", details={"history_id": target.id}
    )


@event.listens_for(OverstayHistory, "before_delete")
def _refuse_history_delete(_mapper, _connection, target: OverstayHistory) -> None:
    raise InvariantBreachException(
        "Overstay history is append-only", details={"history_id": target.id}
    )
