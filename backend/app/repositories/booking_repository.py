# backend/app/repositories/booking_repository.py
"""
Booking ledger data access.

Groups and their add-ons are read together because every lifecycle command
operates on the whole aggregate.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from ..core.exceptions import RepositoryException
from ..models.booking import (
    BookingGroup,
    BookingStatus,
    CheckoutStatus,
    EquipmentBooking,
    StorageBooking,
)
from ..models.payment import PaymentAuthorization, PaymentAuthorizationStatus
from .base_repository import BaseRepository


class BookingGroupRepository(BaseRepository[BookingGroup]):
    def __init__(self, db: Session):
        super().__init__(db, BookingGroup)

    def get_with_addons(self, group_id: str) -> Optional[BookingGroup]:
        try:
            return (
                self.db.query(BookingGroup)
                .options(
                    selectinload(BookingGroup.storage_bookings),
                    selectinload(BookingGroup.equipment_bookings),
                    selectinload(BookingGroup.payment_authorization),
                )
                .filter(BookingGroup.id == group_id)
                .populate_existing()
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading booking group {group_id}: {str(e)}")
            raise RepositoryException(f"Failed to load booking group: {str(e)}")

    def list_for_chef(self, chef_id: str, *, status: Optional[str] = None) -> List[BookingGroup]:
        query = self._build_query().filter(BookingGroup.chef_id == chef_id)
        if status:
            query = query.filter(BookingGroup.status == status)
        return self._execute_query(query.order_by(BookingGroup.booking_start_utc.desc()))

    def list_for_location(
        self, location_id: str, *, status: Optional[str] = None
    ) -> List[BookingGroup]:
        query = self._build_query().filter(BookingGroup.location_id == location_id)
        if status:
            query = query.filter(BookingGroup.status == status)
        return self._execute_query(query.order_by(BookingGroup.booking_start_utc.asc()))

    def list_pending_with_stale_holds(self, authorized_before: datetime, limit: int) -> List[BookingGroup]:
        """Pending groups whose booking hold was authorized before the cutoff."""
        query = (
            self._build_query()
            .join(
                PaymentAuthorization,
                PaymentAuthorization.id == BookingGroup.payment_authorization_id,
            )
            .filter(
                BookingGroup.status == BookingStatus.PENDING.value,
                PaymentAuthorization.status == PaymentAuthorizationStatus.AUTHORIZED_HOLD.value,
                PaymentAuthorization.authorized_at < authorized_before,
            )
            .order_by(PaymentAuthorization.authorized_at.asc())
            .limit(limit)
        )
        return self._execute_query(query)


class StorageBookingRepository(BaseRepository[StorageBooking]):
    def __init__(self, db: Session):
        super().__init__(db, StorageBooking)

    def list_for_group(self, group_id: str) -> List[StorageBooking]:
        return self._execute_query(
            self._build_query().filter(StorageBooking.booking_group_id == group_id)
        )

    def list_overdue_active(self, now: datetime, limit: int) -> List[StorageBooking]:
        """Confirmed units past their end date that nobody has started checking out."""
        query = (
            self._build_query()
            .filter(
                StorageBooking.status == BookingStatus.CONFIRMED.value,
                StorageBooking.checkout_status == CheckoutStatus.ACTIVE.value,
                StorageBooking.end_date < now,
            )
            .order_by(StorageBooking.end_date.asc())
            .limit(limit)
        )
        return self._execute_query(query)

    def list_expired_checkout_reviews(self, now: datetime, limit: int) -> List[StorageBooking]:
        query = (
            self._build_query()
            .filter(
                StorageBooking.checkout_status == CheckoutStatus.CHECKOUT_REQUESTED.value,
                StorageBooking.checkout_review_deadline <= now,
            )
            .order_by(StorageBooking.checkout_review_deadline.asc())
            .limit(limit)
        )
        return self._execute_query(query)

    def list_checkout_requests_for_location(self, location_id: str) -> List[StorageBooking]:
        query = (
            self._build_query()
            .join(BookingGroup, BookingGroup.id == StorageBooking.booking_group_id)
            .filter(
                BookingGroup.location_id == location_id,
                StorageBooking.checkout_status == CheckoutStatus.CHECKOUT_REQUESTED.value,
            )
            .order_by(StorageBooking.checkout_requested_at.asc())
        )
        return self._execute_query(query)


class EquipmentBookingRepository(BaseRepository[EquipmentBooking]):
    def __init__(self, db: Session):
        super().__init__(db, EquipmentBooking)

    def list_for_group(self, group_id: str) -> List[EquipmentBooking]:
        return self._execute_query(
            self._build_query().filter(EquipmentBooking.booking_group_id == group_id)
        )
