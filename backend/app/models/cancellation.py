# backend/app/models/cancellation.py
"""Manager-reviewed cancellation requests for bookings whose payment was captured."""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
import ulid

from ..database import Base
from .base_enum import enum_check


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class CancellationOutcome(str, Enum):
    ACCEPTED = "accepted"
    DECLINED = "declined"


class CancellationRequest(Base):
    __tablename__ = "cancellation_requests"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_group_id = Column(
        String(26), ForeignKey("booking_groups.id"), nullable=False, index=True
    )
    # Set when the request targets a single storage add-on rather than the group
    storage_booking_id = Column(
        String(26), ForeignKey("storage_bookings.id"), nullable=True, index=True
    )
    requested_by = Column(String(26), nullable=False)
    reason = Column(Text, nullable=True)
    requested_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)

    outcome = Column(String(16), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by = Column(String(26), nullable=True)
    resolution_notes = Column(Text, nullable=True)
    refund_amount_cents = Column(Integer, nullable=True)

    booking_group = relationship("BookingGroup")
    storage_booking = relationship("StorageBooking")

    __table_args__ = (
        enum_check("outcome", CancellationOutcome, "ck_cancellation_requests_outcome", nullable=True),
        CheckConstraint(
            "(outcome IS NULL AND resolved_at IS NULL) OR "
            "(outcome IS NOT NULL AND resolved_at IS NOT NULL)",
            name="ck_cancellation_requests_resolution",
        ),
    )

    @property
    def is_open(self) -> bool:
        return self.outcome is None
