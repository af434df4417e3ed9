# backend/app/models/storage_extension.py
"""Storage extension requests: a chef asks to keep a unit past its end date."""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
import ulid

from ..database import Base
from .base_enum import enum_check


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class ExtensionStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    APPROVED = "approved"
    COMPLETED = "completed"
    REJECTED = "rejected"
    REFUNDED = "refunded"


class StorageExtension(Base):
    __tablename__ = "storage_extensions"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    storage_booking_id = Column(
        String(26), ForeignKey("storage_bookings.id"), nullable=False, index=True
    )
    chef_id = Column(String(26), nullable=False, index=True)
    status = Column(String(16), nullable=False, default=ExtensionStatus.PENDING.value, index=True)

    previous_end_date = Column(DateTime(timezone=True), nullable=False)
    new_end_date = Column(DateTime(timezone=True), nullable=False)
    extension_days = Column(Integer, nullable=False)
    daily_rate_cents = Column(Integer, nullable=False)
    base_price_cents = Column(Integer, nullable=False)
    tax_cents = Column(Integer, nullable=False, default=0)
    total_price_cents = Column(Integer, nullable=False)

    payment_authorization_id = Column(
        String(26), ForeignKey("payment_authorizations.id"), nullable=True
    )
    rejection_reason = Column(Text, nullable=True)
    reviewed_by = Column(String(26), nullable=True)

    paid_at = Column(DateTime(timezone=True), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, onupdate=_now_utc)

    storage_booking = relationship("StorageBooking")
    payment_authorization = relationship("PaymentAuthorization")

    __table_args__ = (
        enum_check("status", ExtensionStatus, "ck_storage_extensions_status"),
        CheckConstraint("extension_days >= 1", name="ck_storage_extensions_days"),
        CheckConstraint(
            "total_price_cents = base_price_cents + tax_cents",
            name="ck_storage_extensions_total",
        ),
    )
