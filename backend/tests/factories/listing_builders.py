"""Builders for listing reference data and checkout payloads."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session

from app.models.listing import EquipmentListing, Kitchen, Location, StorageListing
from app.schemas.booking import BookingGroupCreate, EquipmentAddonCreate, StorageAddonCreate

CHEF_ID = "01J0000000000000000000CHEF"
OTHER_CHEF_ID = "01J000000000000000000CHEF2"
MANAGER_ID = "01J00000000000000000000MGR"
OTHER_MANAGER_ID = "01J0000000000000000000MGR2"
ADMIN_ID = "01J000000000000000000ADMN"

PAYMENT_METHOD_ID = "pm_card_visa"
CUSTOMER_ID = "cus_test_chef"


@dataclass
class Marketplace:
    location: Location
    kitchen: Kitchen
    storage_listing: StorageListing
    equipment_listing: EquipmentListing


def _persist(db: Session, instance: Any) -> Any:
    db.add(instance)
    db.commit()
    return instance


def create_location(db: Session, **overrides: Any) -> Location:
    fields = {
        "name": "East End Commissary",
        "manager_id": MANAGER_ID,
        "timezone": "UTC",
        "cancellation_policy_hours": 24,
    }
    fields.update(overrides)
    return _persist(db, Location(**fields))


def create_kitchen(db: Session, location: Location, **overrides: Any) -> Kitchen:
    fields = {
        "location_id": location.id,
        "name": "Prep Kitchen A",
        "hourly_rate_cents": 5000,
        "minimum_booking_hours": 1,
        "tax_rate_percent": Decimal("13"),
    }
    fields.update(overrides)
    return _persist(db, Kitchen(**fields))


def create_storage_listing(db: Session, kitchen: Kitchen, **overrides: Any) -> StorageListing:
    fields = {
        "kitchen_id": kitchen.id,
        "name": "Walk-in cooler shelf",
        "daily_rate_cents": 1000,
        "minimum_booking_days": 1,
    }
    fields.update(overrides)
    return _persist(db, StorageListing(**fields))


def create_equipment_listing(db: Session, kitchen: Kitchen, **overrides: Any) -> EquipmentListing:
    fields = {
        "kitchen_id": kitchen.id,
        "name": "Stand mixer",
        "session_rate_cents": 2500,
        "damage_deposit_cents": 10000,
    }
    fields.update(overrides)
    return _persist(db, EquipmentListing(**fields))


def create_marketplace(db: Session, **storage_overrides: Any) -> Marketplace:
    location = create_location(db)
    kitchen = create_kitchen(db, location)
    return Marketplace(
        location=location,
        kitchen=kitchen,
        storage_listing=create_storage_listing(db, kitchen, **storage_overrides),
        equipment_listing=create_equipment_listing(db, kitchen),
    )


def future_booking_date(days_ahead: int = 5) -> date:
    return (datetime.now(timezone.utc) + timedelta(days=days_ahead)).date()


def build_checkout(
    marketplace: Marketplace,
    *,
    booking_date: Optional[date] = None,
    slots: Iterable[str] = ("10:00-12:00",),
    storage_days: Optional[int] = 3,
    with_equipment: bool = True,
    payment_method_id: Optional[str] = PAYMENT_METHOD_ID,
) -> BookingGroupCreate:
    """
    Checkout payload for the marketplace.

    With the defaults the group is priced at 10000 (kitchen) + 3000 (storage)
    + 2500 (equipment) = 15500 before 13% tax, 17515 in total.
    """
    booking_date = booking_date or future_booking_date()
    storage = []
    if storage_days:
        start = datetime.combine(booking_date, time(0, 0), tzinfo=timezone.utc)
        storage.append(
            StorageAddonCreate(
                storage_listing_id=marketplace.storage_listing.id,
                start_date=start,
                end_date=start + timedelta(days=storage_days),
            )
        )
    equipment = (
        [EquipmentAddonCreate(equipment_listing_id=marketplace.equipment_listing.id)]
        if with_equipment
        else []
    )
    return BookingGroupCreate(
        kitchen_id=marketplace.kitchen.id,
        booking_date=booking_date,
        selected_slots=list(slots),
        storage=storage,
        equipment=equipment,
        stripe_customer_id=CUSTOMER_ID,
        stripe_payment_method_id=payment_method_id,
    )
