# backend/app/models/booking.py
"""
Booking ledger models.

A BookingGroup is one kitchen reservation plus the storage and equipment
add-ons checked out with it. Every booking in a group shares the group's
single PaymentAuthorization. Bookings are never deleted; terminal states are
``cancelled`` and ``completed``.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Time,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.types import JSON
import ulid

from ..database import Base
from .base_enum import enum_check


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class BookingStatus(str, Enum):
    """Lifecycle shared by booking groups and their add-ons."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLATION_REQUESTED = "cancellation_requested"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class CheckoutStatus(str, Enum):
    """Storage checkout verification progress."""

    ACTIVE = "active"
    CHECKOUT_REQUESTED = "checkout_requested"
    CHECKOUT_APPROVED = "checkout_approved"
    CHECKOUT_CLAIM_FILED = "checkout_claim_filed"


class BookingGroup(Base):
    """Kitchen reservation and the anchor of its add-ons."""

    __tablename__ = "booking_groups"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    chef_id = Column(String(26), nullable=False, index=True)
    kitchen_id = Column(String(26), ForeignKey("kitchens.id"), nullable=False, index=True)
    location_id = Column(String(26), ForeignKey("locations.id"), nullable=False, index=True)

    booking_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    selected_slots = Column(
        JSONB(astext_type=Text()).with_variant(JSON(), "sqlite"), nullable=False, default=list
    )
    booking_start_utc = Column(DateTime(timezone=True), nullable=False, index=True)

    status = Column(String(32), nullable=False, default=BookingStatus.PENDING.value, index=True)

    payment_authorization_id = Column(
        String(26), ForeignKey("payment_authorizations.id"), nullable=True, index=True
    )
    stripe_customer_id = Column(String(255), nullable=True)
    stripe_payment_method_id = Column(String(255), nullable=True)

    kitchen_price_cents = Column(Integer, nullable=False, default=0)
    subtotal_cents = Column(Integer, nullable=False, default=0)
    service_fee_cents = Column(Integer, nullable=False, default=0)
    tax_cents = Column(Integer, nullable=False, default=0)
    total_price_cents = Column(Integer, nullable=False, default=0)

    special_notes = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, onupdate=_now_utc)

    storage_bookings = relationship(
        "StorageBooking", back_populates="booking_group", order_by="StorageBooking.created_at"
    )
    equipment_bookings = relationship(
        "EquipmentBooking", back_populates="booking_group", order_by="EquipmentBooking.created_at"
    )
    payment_authorization = relationship("PaymentAuthorization")
    location = relationship("Location")
    kitchen = relationship("Kitchen")

    __table_args__ = (
        enum_check("status", BookingStatus, "ck_booking_groups_status"),
        CheckConstraint("total_price_cents >= 0", name="ck_booking_groups_total"),
        CheckConstraint(
            "total_price_cents = subtotal_cents + service_fee_cents + tax_cents",
            name="ck_booking_groups_total_sum",
        ),
    )

    def __repr__(self) -> str:
        return f"<BookingGroup {self.id} chef={self.chef_id} status={self.status}>"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "chef_id": self.chef_id,
            "kitchen_id": self.kitchen_id,
            "location_id": self.location_id,
            "booking_date": self.booking_date.isoformat() if self.booking_date else None,
            "status": self.status,
            "total_price_cents": self.total_price_cents,
        }


class StorageBooking(Base):
    """Storage add-on; carries the checkout verification state."""

    __tablename__ = "storage_bookings"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_group_id = Column(
        String(26), ForeignKey("booking_groups.id"), nullable=False, index=True
    )
    storage_listing_id = Column(
        String(26), ForeignKey("storage_listings.id"), nullable=False, index=True
    )
    chef_id = Column(String(26), nullable=False, index=True)

    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False, index=True)
    daily_rate_cents = Column(Integer, nullable=False)
    total_price_cents = Column(Integer, nullable=False, default=0)

    status = Column(String(32), nullable=False, default=BookingStatus.PENDING.value, index=True)

    checkout_status = Column(
        String(32), nullable=False, default=CheckoutStatus.ACTIVE.value, index=True
    )
    checkout_requested_at = Column(DateTime(timezone=True), nullable=True)
    checkout_review_deadline = Column(DateTime(timezone=True), nullable=True, index=True)
    checkout_notes = Column(Text, nullable=True)
    checkout_photo_urls = Column(
        JSONB(astext_type=Text()).with_variant(JSON(), "sqlite"), nullable=False, default=list
    )
    checkout_approved_at = Column(DateTime(timezone=True), nullable=True)
    checkout_approved_by = Column(String(26), nullable=True)
    checkout_auto_approved = Column(Boolean, nullable=False, default=False)
    checkout_denied_at = Column(DateTime(timezone=True), nullable=True)
    checkout_denied_by = Column(String(26), nullable=True)
    checkout_denial_reason = Column(Text, nullable=True)
    checkout_claim_filed_at = Column(DateTime(timezone=True), nullable=True)
    checkout_claim_notes = Column(Text, nullable=True)

    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, onupdate=_now_utc)

    booking_group = relationship("BookingGroup", back_populates="storage_bookings")
    storage_listing = relationship("StorageListing")

    __table_args__ = (
        enum_check("status", BookingStatus, "ck_storage_bookings_status"),
        enum_check("checkout_status", CheckoutStatus, "ck_storage_bookings_checkout_status"),
        CheckConstraint("end_date > start_date", name="ck_storage_bookings_dates"),
        CheckConstraint("total_price_cents >= 0", name="ck_storage_bookings_total"),
    )

    def __repr__(self) -> str:
        return (
            f"<StorageBooking {self.id} status={self.status} "
            f"checkout={self.checkout_status} end={self.end_date}>"
        )


class EquipmentBooking(Base):
    """Equipment add-on rented for the kitchen session."""

    __tablename__ = "equipment_bookings"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_group_id = Column(
        String(26), ForeignKey("booking_groups.id"), nullable=False, index=True
    )
    equipment_listing_id = Column(
        String(26), ForeignKey("equipment_listings.id"), nullable=False, index=True
    )
    chef_id = Column(String(26), nullable=False, index=True)
    status = Column(String(32), nullable=False, default=BookingStatus.PENDING.value, index=True)
    total_price_cents = Column(Integer, nullable=False, default=0)
    damage_deposit_cents = Column(Integer, nullable=False, default=0)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, onupdate=_now_utc)

    booking_group = relationship("BookingGroup", back_populates="equipment_bookings")
    equipment_listing = relationship("EquipmentListing")

    __table_args__ = (
        enum_check("status", BookingStatus, "ck_equipment_bookings_status"),
        CheckConstraint("total_price_cents >= 0", name="ck_equipment_bookings_total"),
    )
