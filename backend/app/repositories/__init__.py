# backend/app/repositories/__init__.py
"""
Repository layer for the booking core.

Repositories run queries and compare-and-swap status writes; they never
commit. Services obtain them through RepositoryFactory.

Usage:
    from app.repositories import RepositoryFactory

    bookings = RepositoryFactory.create_booking_group_repository(db)
    moved = bookings.compare_and_set(group_id, "pending", "confirmed")
"""

from .base_repository import BaseRepository
from .booking_repository import (
    BookingGroupRepository,
    EquipmentBookingRepository,
    StorageBookingRepository,
)
from .factory import RepositoryFactory

__all__ = [
    "BaseRepository",
    "BookingGroupRepository",
    "EquipmentBookingRepository",
    "RepositoryFactory",
    "StorageBookingRepository",
]
