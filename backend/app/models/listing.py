# backend/app/models/listing.py
"""
Listing reference data consumed by the lifecycle engine.

Rates and policy knobs are owned by the listing/admin surfaces; the booking
core only reads them when pricing, evaluating cancellation windows and
resolving overstay configuration.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship
import ulid

from ..database import Base


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class Location(Base):
    """A facility operated by one manager; hosts kitchens and storage."""

    __tablename__ = "locations"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    name = Column(String(200), nullable=False)
    manager_id = Column(String(26), nullable=False, index=True)
    timezone = Column(String(64), nullable=False, default="America/Toronto")
    cancellation_policy_hours = Column(Integer, nullable=True)
    checkout_review_window_hours = Column(Integer, nullable=True)
    overstay_grace_period_hours = Column(Integer, nullable=True)
    overstay_penalty_rate = Column(Numeric(5, 4), nullable=True)
    overstay_max_penalty_days = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)

    kitchens = relationship("Kitchen", back_populates="location")

    __table_args__ = (
        CheckConstraint(
            "cancellation_policy_hours IS NULL OR cancellation_policy_hours >= 0",
            name="ck_locations_cancellation_hours",
        ),
    )


class Kitchen(Base):
    """Bookable kitchen; storage and equipment listings hang off it."""

    __tablename__ = "kitchens"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    location_id = Column(String(26), ForeignKey("locations.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    hourly_rate_cents = Column(Integer, nullable=False)
    minimum_booking_hours = Column(Integer, nullable=False, default=1)
    tax_rate_percent = Column(Numeric(6, 3), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    location = relationship("Location", back_populates="kitchens")

    __table_args__ = (CheckConstraint("hourly_rate_cents >= 0", name="ck_kitchens_rate"),)


class StorageListing(Base):
    """Rentable storage unit priced per day."""

    __tablename__ = "storage_listings"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    kitchen_id = Column(String(26), ForeignKey("kitchens.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    daily_rate_cents = Column(Integer, nullable=False)
    minimum_booking_days = Column(Integer, nullable=False, default=1)
    # Overstay overrides; NULL falls through to the location, then platform defaults
    overstay_grace_period_hours = Column(Integer, nullable=True)
    overstay_penalty_rate = Column(Numeric(5, 4), nullable=True)
    overstay_max_penalty_days = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    kitchen = relationship("Kitchen")

    __table_args__ = (
        CheckConstraint("daily_rate_cents >= 0", name="ck_storage_listings_rate"),
        CheckConstraint("minimum_booking_days >= 1", name="ck_storage_listings_min_days"),
    )


class EquipmentListing(Base):
    """Equipment rented per kitchen session with a refundable damage deposit."""

    __tablename__ = "equipment_listings"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    kitchen_id = Column(String(26), ForeignKey("kitchens.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    session_rate_cents = Column(Integer, nullable=False, default=0)
    damage_deposit_cents = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    kitchen = relationship("Kitchen")

    __table_args__ = (
        CheckConstraint("session_rate_cents >= 0", name="ck_equipment_listings_rate"),
        CheckConstraint("damage_deposit_cents >= 0", name="ck_equipment_listings_deposit"),
    )
