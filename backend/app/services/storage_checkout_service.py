# backend/app/services/storage_checkout_service.py
"""
Checkout Verification Workflow for storage bookings.

A chef asks to check out with photos of the emptied unit; the manager
approves, denies (back to ``active``) or files a damage claim. A request the
manager ignores past its review deadline is approved automatically. The
deadline is stored when the request is made so every sweep tick agrees on it.
"""

from datetime import datetime, timedelta
import logging
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.constants import SWEEP_BATCH_LIMIT
from ..core.exceptions import (
    BookingLockedException,
    DomainException,
    InvalidTransitionException,
    NotFoundException,
    ValidationException,
)
from ..core.timezone_utils import ensure_utc, utc_now
from ..domain.state_machines import CHECKOUT_MACHINE
from ..events.booking_events import CheckoutStatusChanged
from ..events.publisher import EventPublisher
from ..models.booking import BookingStatus, CheckoutStatus, StorageBooking
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .booking_ledger_service import BookingLedgerService

logger = logging.getLogger(__name__)


def _clean_urls(photo_urls: Iterable[str]) -> List[str]:
    cleaned = []
    for url in photo_urls:
        url = (url or "").strip()
        if url and url not in cleaned:
            cleaned.append(url)
    return cleaned


class StorageCheckoutService(BaseService):
    """Chef-initiated, manager-verified release of a storage unit."""

    def __init__(self, db: Session, ledger: BookingLedgerService):
        super().__init__(db)
        self.ledger = ledger
        self.storage_repository = RepositoryFactory.create_storage_booking_repository(db)
        self.listing_repository = RepositoryFactory.create_listing_repository(db)
        self.publisher = EventPublisher(RepositoryFactory.create_event_outbox_repository(db))

    def review_window_hours(self, location_id: str) -> int:
        location = self.listing_repository.get_location(location_id)
        if location is not None and location.checkout_review_window_hours:
            return int(location.checkout_review_window_hours)
        return settings.checkout_review_window_hours

    def list_pending_reviews(self, location_id: str) -> List[StorageBooking]:
        return self.storage_repository.list_checkout_requests_for_location(location_id)

    def _lock(self, storage_booking_id: str) -> StorageBooking:
        booking = self.storage_repository.get_for_update(storage_booking_id)
        if booking is None:
            raise NotFoundException("StorageBooking", storage_booking_id)
        return booking

    def _move(
        self,
        booking: StorageBooking,
        target: CheckoutStatus,
        *,
        now: datetime,
        actor_id: Optional[str] = None,
        auto_approved: bool = False,
        **values,
    ) -> None:
        previous = booking.checkout_status
        CHECKOUT_MACHINE.require(previous, target, entity_id=booking.id)
        if not self.storage_repository.compare_and_set(
            booking.id, previous, target, column="checkout_status", **values
        ):
            current = self.storage_repository.get_for_update(booking.id)
            raise InvalidTransitionException(
                CHECKOUT_MACHINE.name,
                booking.id,
                expected=previous,
                actual=current.checkout_status if current else None,
                target=target.value,
            )
        prometheus_metrics.record_transition(CHECKOUT_MACHINE.name, previous, target.value)
        self.publisher.publish(
            CheckoutStatusChanged(
                storage_booking_id=booking.id,
                previous_status=previous,
                new_status=target.value,
                occurred_at=now,
                actor_id=actor_id,
                auto_approved=auto_approved,
            )
        )
        self.log_operation(
            "checkout_transition",
            storage_booking_id=booking.id,
            previous_status=previous,
            new_status=target.value,
            actor_id=actor_id,
            auto_approved=auto_approved,
        )

    # Chef actions

    @BaseService.measure_operation("request_checkout")
    def request_checkout(
        self,
        storage_booking_id: str,
        chef_id: str,
        *,
        notes: Optional[str] = None,
        photo_urls: Iterable[str] = (),
        now: Optional[datetime] = None,
    ) -> StorageBooking:
        """
        Start checkout for a confirmed storage booking.

        Sets the review deadline to ``now + review_window_hours``; a previous
        denial is cleared.
        """
        now = now or utc_now()
        booking = self.ledger.get_storage_booking(storage_booking_id)
        with self.aggregate_unit(booking.booking_group_id):
            booking = self._lock(storage_booking_id)
            if booking.status != BookingStatus.CONFIRMED.value:
                raise InvalidTransitionException(
                    "storage_booking",
                    booking.id,
                    expected=BookingStatus.CONFIRMED.value,
                    actual=booking.status,
                    target=CheckoutStatus.CHECKOUT_REQUESTED.value,
                )
            urls = _clean_urls(photo_urls)
            if len(urls) > settings.checkout_max_photos:
                raise ValidationException(
                    f"At most {settings.checkout_max_photos} checkout photos are allowed",
                    code="TOO_MANY_PHOTOS",
                    details={"count": len(urls)},
                )
            group = self.ledger.lock_booking_group(booking.booking_group_id)
            deadline = now + timedelta(hours=self.review_window_hours(group.location_id))
            self._move(
                booking,
                CheckoutStatus.CHECKOUT_REQUESTED,
                now=now,
                actor_id=chef_id,
                checkout_requested_at=now,
                checkout_review_deadline=deadline,
                checkout_notes=notes,
                checkout_photo_urls=urls,
                checkout_denied_at=None,
                checkout_denied_by=None,
                checkout_denial_reason=None,
            )
        return booking

    @BaseService.measure_operation("add_checkout_photos")
    def add_checkout_photos(
        self, storage_booking_id: str, photo_urls: Iterable[str]
    ) -> StorageBooking:
        """Append evidence while the request awaits review."""
        booking = self.ledger.get_storage_booking(storage_booking_id)
        with self.aggregate_unit(booking.booking_group_id):
            booking = self._lock(storage_booking_id)
            if booking.checkout_status != CheckoutStatus.CHECKOUT_REQUESTED.value:
                raise InvalidTransitionException(
                    CHECKOUT_MACHINE.name,
                    booking.id,
                    expected=CheckoutStatus.CHECKOUT_REQUESTED.value,
                    actual=booking.checkout_status,
                    target="add_photos",
                )
            merged = _clean_urls([*(booking.checkout_photo_urls or []), *photo_urls])
            if len(merged) > settings.checkout_max_photos:
                raise ValidationException(
                    f"At most {settings.checkout_max_photos} checkout photos are allowed",
                    code="TOO_MANY_PHOTOS",
                    details={"count": len(merged)},
                )
            booking.checkout_photo_urls = merged
            self.storage_repository.flush()
        return booking

    # Manager actions

    @BaseService.measure_operation("approve_checkout")
    def approve_checkout(
        self, storage_booking_id: str, manager_id: str, *, now: Optional[datetime] = None
    ) -> StorageBooking:
        now = now or utc_now()
        booking = self.ledger.get_storage_booking(storage_booking_id)
        with self.aggregate_unit(booking.booking_group_id):
            booking = self._lock(storage_booking_id)
            self._approve(booking, now=now, actor_id=manager_id, auto_approved=False)
        return booking

    def _approve(
        self,
        booking: StorageBooking,
        *,
        now: datetime,
        actor_id: Optional[str],
        auto_approved: bool,
    ) -> None:
        self._move(
            booking,
            CheckoutStatus.CHECKOUT_APPROVED,
            now=now,
            actor_id=actor_id,
            auto_approved=auto_approved,
            checkout_approved_at=now,
            checkout_approved_by=actor_id,
            checkout_auto_approved=auto_approved,
        )
        # Checkout releases the unit
        if booking.status == BookingStatus.CONFIRMED.value:
            self.ledger.transition_addon(
                booking, BookingStatus.COMPLETED, expected=BookingStatus.CONFIRMED, now=now
            )

    @BaseService.measure_operation("deny_checkout")
    def deny_checkout(
        self,
        storage_booking_id: str,
        manager_id: str,
        reason: str,
        *,
        now: Optional[datetime] = None,
    ) -> StorageBooking:
        """Send the unit back to ``active``; the reason stays visible to the chef."""
        now = now or utc_now()
        if not (reason or "").strip():
            raise ValidationException("A denial reason is required", code="REASON_REQUIRED")
        booking = self.ledger.get_storage_booking(storage_booking_id)
        with self.aggregate_unit(booking.booking_group_id):
            booking = self._lock(storage_booking_id)
            self._move(
                booking,
                CheckoutStatus.ACTIVE,
                now=now,
                actor_id=manager_id,
                checkout_denied_at=now,
                checkout_denied_by=manager_id,
                checkout_denial_reason=reason.strip(),
                checkout_review_deadline=None,
            )
        return booking

    def mark_claim_filed(
        self, booking: StorageBooking, manager_id: str, notes: str, *, now: datetime
    ) -> None:
        """
        Close checkout review with a damage claim instead of an approval.

        Runs inside the caller's unit. The booking stays confirmed until the
        claim is settled.
        """
        self._move(
            booking,
            CheckoutStatus.CHECKOUT_CLAIM_FILED,
            now=now,
            actor_id=manager_id,
            checkout_claim_filed_at=now,
            checkout_claim_notes=notes,
            checkout_review_deadline=None,
        )

    # Sweep

    @BaseService.measure_operation("auto_clear_expired_reviews")
    def auto_clear_expired_reviews(
        self, *, now: Optional[datetime] = None, limit: int = SWEEP_BATCH_LIMIT
    ) -> dict:
        """
        Approve every request whose stored review deadline has passed.

        Each booking is cleared in its own unit; one that another actor moved
        first is counted as skipped. Re-running is a no-op.
        """
        now = now or utc_now()
        cleared = skipped = failed = 0
        candidates: List[Tuple[str, str]] = [
            (booking.id, booking.booking_group_id)
            for booking in self.storage_repository.list_expired_checkout_reviews(now, limit)
        ]
        for storage_booking_id, group_id in candidates:
            try:
                with self.aggregate_unit(group_id):
                    booking = self._lock(storage_booking_id)
                    if (
                        booking.checkout_status != CheckoutStatus.CHECKOUT_REQUESTED.value
                        or booking.checkout_review_deadline is None
                        or self._deadline_after(booking, now)
                    ):
                        skipped += 1
                        prometheus_metrics.record_sweep_item("checkout_auto_clear", "skipped")
                        continue
                    self._approve(booking, now=now, actor_id=None, auto_approved=True)
                cleared += 1
                prometheus_metrics.record_sweep_item("checkout_auto_clear", "cleared")
            except (InvalidTransitionException, BookingLockedException) as exc:
                skipped += 1
                prometheus_metrics.record_sweep_item("checkout_auto_clear", "skipped")
                self.logger.warning(
                    "checkout_auto_clear_skipped",
                    extra={"storage_booking_id": storage_booking_id, "error": exc.message},
                )
            except DomainException as exc:
                failed += 1
                prometheus_metrics.record_sweep_item("checkout_auto_clear", "failed")
                self.logger.error(
                    "checkout_auto_clear_failed",
                    extra={"storage_booking_id": storage_booking_id, "error": exc.message},
                )
        return {"cleared": cleared, "skipped": skipped, "failed": failed}

    @staticmethod
    def _deadline_after(booking: StorageBooking, now: datetime) -> bool:
        return ensure_utc(booking.checkout_review_deadline) > ensure_utc(now)
