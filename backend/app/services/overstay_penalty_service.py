# backend/app/services/overstay_penalty_service.py
"""
Overstay Penalty Engine.

Storage still occupied after its end date gets one open penalty record per
episode. The record waits out a grace period, is priced per overdue day, and
is then approved (possibly lowered), waived, charged or escalated by a
manager. Charge failures are never retried automatically.

Every transition appends an OverstayHistory row; that trail is the record of
truth for disputes.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.constants import SWEEP_BATCH_LIMIT
from ..core.enums import ActorSource
from ..core.exceptions import (
    BookingLockedException,
    DomainException,
    InvalidTransitionException,
    InvariantBreachException,
    NotFoundException,
    PaymentFailureException,
    RepositoryException,
    ValidationException,
)
from ..core.timezone_utils import ceil_days_between, ensure_utc, utc_now
from ..domain.state_machines import OVERSTAY_MACHINE
from ..events.booking_events import OverstayPenaltyStatusChanged
from ..events.publisher import EventPublisher
from ..models.booking import BookingStatus, CheckoutStatus, StorageBooking
from ..models.listing import Location, StorageListing
from ..models.overstay import (
    OverstayHistory,
    OverstayPenaltyRecord,
    OverstayResolution,
    OverstayStatus,
)
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .booking_ledger_service import BookingLedgerService
from .payment_authorization_service import PaymentAuthorizationService
from .pricing_service import calculate_tax, overstay_penalty_cents

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OverstayConfig:
    grace_period_hours: int
    penalty_rate: Decimal
    max_penalty_days: int


def resolve_penalty_config(
    listing: Optional[StorageListing], location: Optional[Location]
) -> OverstayConfig:
    """Storage listing overrides win over the location, which wins over platform defaults."""

    def pick(name: str, default: Any) -> Any:
        for source in (listing, location):
            value = getattr(source, name, None) if source is not None else None
            if value is not None:
                return value
        return default

    return OverstayConfig(
        grace_period_hours=int(pick("overstay_grace_period_hours", settings.overstay_grace_period_hours)),
        penalty_rate=Decimal(str(pick("overstay_penalty_rate", settings.overstay_penalty_rate))),
        max_penalty_days=int(pick("overstay_max_penalty_days", settings.overstay_max_penalty_days)),
    )


def days_overdue(grace_period_ends_at: datetime, now: datetime, max_penalty_days: int) -> int:
    """Whole days past the grace period, partial days rounded up, capped."""
    if ensure_utc(now) <= ensure_utc(grace_period_ends_at):
        return 0
    return min(ceil_days_between(grace_period_ends_at, now), max_penalty_days)


@dataclass
class SweepStats:
    detected: int = 0
    advanced: int = 0
    repriced: int = 0
    resolved: int = 0
    skipped: int = 0
    failed: int = 0

    def as_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


class OverstayPenaltyService(BaseService):
    """Detects, prices and settles storage overstays."""

    def __init__(
        self,
        db: Session,
        ledger: BookingLedgerService,
        payment_service: PaymentAuthorizationService,
    ):
        super().__init__(db)
        self.ledger = ledger
        self.payment_service = payment_service
        self.repository = RepositoryFactory.create_overstay_repository(db)
        self.storage_repository = RepositoryFactory.create_storage_booking_repository(db)
        self.listing_repository = RepositoryFactory.create_listing_repository(db)
        self.publisher = EventPublisher(RepositoryFactory.create_event_outbox_repository(db))

    # Queries

    def get_record(self, record_id: str) -> OverstayPenaltyRecord:
        record = self.repository.get_by_id(record_id)
        if record is None:
            raise NotFoundException("OverstayPenaltyRecord", record_id)
        return record

    def get_history(self, record_id: str) -> List[OverstayHistory]:
        self.get_record(record_id)
        return self.repository.list_history(record_id)

    def list_for_location(
        self, location_id: str, statuses: Optional[List[str]] = None
    ) -> List[OverstayPenaltyRecord]:
        return self.repository.list_for_location(location_id, statuses=statuses)

    def list_for_chef(
        self, chef_id: str, statuses: Optional[List[str]] = None
    ) -> List[OverstayPenaltyRecord]:
        return self.repository.list_for_chef(chef_id, statuses=statuses)

    def stats_for_location(self, location_id: str) -> Dict[str, Any]:
        counts = self.repository.status_counts_for_location(location_id)
        open_count = sum(count for status, count in counts.items() if status != OverstayStatus.RESOLVED.value)
        return {
            "location_id": location_id,
            "by_status": counts,
            "open": open_count,
            "pending_review": counts.get(OverstayStatus.PENDING_REVIEW.value, 0),
            "escalated": counts.get(OverstayStatus.ESCALATED.value, 0),
            "collected_cents": self.repository.collected_cents_for_location(location_id),
        }

    def penalty_config_for(self, booking: StorageBooking) -> OverstayConfig:
        listing = self.listing_repository.get_storage_listing(booking.storage_listing_id)
        group = self.ledger.get_booking_group(booking.booking_group_id)
        location = self.listing_repository.get_location(group.location_id)
        return resolve_penalty_config(listing, location)

    def location_id_for(self, record: OverstayPenaltyRecord) -> str:
        booking = self.ledger.get_storage_booking(record.storage_booking_id)
        return self.ledger.get_booking_group(booking.booking_group_id).location_id

    # Guarded transitions

    def _lock(self, record_id: str) -> OverstayPenaltyRecord:
        record = self.repository.get_for_update(record_id)
        if record is None:
            raise NotFoundException("OverstayPenaltyRecord", record_id)
        return record

    def _transition(
        self,
        record: OverstayPenaltyRecord,
        target: OverstayStatus,
        *,
        event_type: str,
        source: ActorSource,
        now: datetime,
        actor_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        **values: Any,
    ) -> None:
        previous = record.status
        OVERSTAY_MACHINE.require(previous, target, entity_id=record.id)
        if target == OverstayStatus.RESOLVED:
            values.setdefault("resolved_at", now)
            values["open_booking_key"] = None
        if not self.repository.compare_and_set(record.id, previous, target, **values):
            current = self.repository.get_for_update(record.id)
            raise InvalidTransitionException(
                OVERSTAY_MACHINE.name,
                record.id,
                expected=previous,
                actual=current.status if current else None,
                target=target.value,
            )
        self.repository.append_history(
            record.id,
            previous_status=previous,
            new_status=target.value,
            event_type=event_type,
            event_source=source.value,
            actor_id=actor_id,
            description=description,
            metadata=metadata,
        )
        prometheus_metrics.record_transition(OVERSTAY_MACHINE.name, previous, target.value)
        self.publisher.publish(
            OverstayPenaltyStatusChanged(
                record_id=record.id,
                storage_booking_id=record.storage_booking_id,
                previous_status=previous,
                new_status=target.value,
                occurred_at=now,
                amounts={
                    "calculated_penalty_cents": record.calculated_penalty_cents,
                    "final_penalty_cents": record.final_penalty_cents,
                    "charged_amount_cents": record.charged_amount_cents,
                },
            )
        )
        self.log_operation(
            "overstay_transition",
            record_id=record.id,
            storage_booking_id=record.storage_booking_id,
            previous_status=previous,
            new_status=target.value,
            source=source.value,
            actor_id=actor_id,
        )

    # Sweep

    @BaseService.measure_operation("run_overstay_sweep")
    def run_overstay_sweep(
        self, *, now: Optional[datetime] = None, limit: int = SWEEP_BATCH_LIMIT
    ) -> Dict[str, int]:
        """
        One scheduler tick: detect new overstays, end elapsed grace periods and
        re-price records awaiting review.

        Each entity is handled in its own unit, so overlapping ticks only ever
        skip work the other one already did.
        """
        now = now or utc_now()
        stats = SweepStats()
        for booking in self.storage_repository.list_overdue_active(now, limit):
            self._sweep_item(
                "overstay_detect", booking.booking_group_id, stats,
                lambda booking_id=booking.id: self._detect_one(booking_id, now, stats),
            )
        for record in self.repository.list_by_status(OverstayStatus.GRACE_PERIOD, limit):
            group_id = self._group_id_for(record)
            self._sweep_item(
                "overstay_grace", group_id, stats,
                lambda record_id=record.id: self._advance_one(record_id, now, stats),
            )
        for record in self.repository.list_by_status(OverstayStatus.PENDING_REVIEW, limit):
            group_id = self._group_id_for(record)
            self._sweep_item(
                "overstay_reprice", group_id, stats,
                lambda record_id=record.id: self._reprice_one(record_id, now, stats),
            )
        self.logger.info("overstay_sweep_complete", extra=stats.as_dict())
        return stats.as_dict()

    def detect_overstays(
        self, *, now: Optional[datetime] = None, limit: int = SWEEP_BATCH_LIMIT
    ) -> Dict[str, int]:
        """Detection only: open a record for every overdue, still-active unit."""
        now = now or utc_now()
        stats = SweepStats()
        for booking in self.storage_repository.list_overdue_active(now, limit):
            self._sweep_item(
                "overstay_detect", booking.booking_group_id, stats,
                lambda booking_id=booking.id: self._detect_one(booking_id, now, stats),
            )
        return stats.as_dict()

    def _group_id_for(self, record: OverstayPenaltyRecord) -> str:
        return self.ledger.get_storage_booking(record.storage_booking_id).booking_group_id

    def _sweep_item(
        self, sweep: str, group_id: str, stats: SweepStats, work: Callable[[], None]
    ) -> None:
        try:
            with self.aggregate_unit(group_id):
                work()
            prometheus_metrics.record_sweep_item(sweep, "processed")
        except (InvalidTransitionException, BookingLockedException) as exc:
            stats.skipped += 1
            prometheus_metrics.record_sweep_item(sweep, "skipped")
            self.logger.warning(f"{sweep}_skipped", extra={"group_id": group_id, "error": exc.message})
        except DomainException as exc:
            stats.failed += 1
            prometheus_metrics.record_sweep_item(sweep, "failed")
            self.logger.error(f"{sweep}_failed", extra={"group_id": group_id, "error": exc.message})

    def _detect_one(self, storage_booking_id: str, now: datetime, stats: SweepStats) -> None:
        booking = self.storage_repository.get_for_update(storage_booking_id)
        if (
            booking is None
            or booking.status != BookingStatus.CONFIRMED.value
            or booking.checkout_status != CheckoutStatus.ACTIVE.value
            or ensure_utc(booking.end_date) >= ensure_utc(now)
            or self.repository.get_open_for_booking(booking.id) is not None
        ):
            stats.skipped += 1
            return
        self.open_record(booking, now=now)
        stats.detected += 1

    def open_record(self, booking: StorageBooking, *, now: datetime) -> OverstayPenaltyRecord:
        """
        Create the ``detected`` record for an overdue booking and start its grace period.

        A second open record for the same booking is an invariant breach.
        """
        if booking.checkout_status != CheckoutStatus.ACTIVE.value:
            raise InvariantBreachException(
                "Overstay records are only opened while checkout is not in progress",
                details={"storage_booking_id": booking.id, "checkout_status": booking.checkout_status},
            )
        config = self.penalty_config_for(booking)
        end_date = ensure_utc(booking.end_date)
        try:
            record = self.repository.create(
                storage_booking_id=booking.id,
                open_booking_key=booking.id,
                status=OverstayStatus.DETECTED.value,
                detected_at=now,
                end_date_snapshot=end_date,
                grace_period_ends_at=end_date + timedelta(hours=config.grace_period_hours),
                daily_rate_cents=booking.daily_rate_cents,
                penalty_rate=config.penalty_rate,
                days_overdue=0,
                calculated_penalty_cents=0,
            )
        except RepositoryException as exc:
            if isinstance(exc.__cause__, IntegrityError):
                self.logger.error(
                    "second_open_overstay_record", extra={"storage_booking_id": booking.id}
                )
                raise InvariantBreachException(
                    "Storage booking already has an open overstay record",
                    details={"storage_booking_id": booking.id},
                ) from exc
            raise
        self.repository.append_history(
            record.id,
            previous_status=None,
            new_status=OverstayStatus.DETECTED.value,
            event_type="detected",
            event_source=ActorSource.SYSTEM.value,
            description="Storage booking is past its end date",
            metadata={
                "end_date": end_date.isoformat(),
                "grace_period_hours": config.grace_period_hours,
                "penalty_rate": str(config.penalty_rate),
                "max_penalty_days": config.max_penalty_days,
            },
        )
        prometheus_metrics.record_transition(OVERSTAY_MACHINE.name, None, OverstayStatus.DETECTED.value)
        self._transition(
            record,
            OverstayStatus.GRACE_PERIOD,
            event_type="grace_started",
            source=ActorSource.SYSTEM,
            now=now,
            description="Grace period started",
        )
        return record

    @staticmethod
    def _checkout_cleared(booking: StorageBooking) -> bool:
        return (
            booking.checkout_status == CheckoutStatus.CHECKOUT_APPROVED.value
            or booking.status in (BookingStatus.COMPLETED.value, BookingStatus.CANCELLED.value)
        )

    @staticmethod
    def _extended(record: OverstayPenaltyRecord, booking: StorageBooking) -> bool:
        return ensure_utc(booking.end_date) > ensure_utc(record.end_date_snapshot)

    @staticmethod
    def _billable_until(booking: StorageBooking, now: datetime) -> datetime:
        """Overdue days stop accruing once the chef asks to check out or the unit is released."""
        now = ensure_utc(now)
        if booking.checkout_status != CheckoutStatus.ACTIVE.value and booking.checkout_requested_at:
            return min(now, ensure_utc(booking.checkout_requested_at))
        if booking.status == BookingStatus.COMPLETED.value and booking.completed_at:
            return min(now, ensure_utc(booking.completed_at))
        if booking.status == BookingStatus.CANCELLED.value and booking.cancelled_at:
            return min(now, ensure_utc(booking.cancelled_at))
        return now

    def _resolve_extended(
        self,
        record: OverstayPenaltyRecord,
        booking: StorageBooking,
        *,
        now: datetime,
        actor_id: Optional[str] = None,
    ) -> None:
        self._transition(
            record,
            OverstayStatus.RESOLVED,
            event_type="extended",
            source=ActorSource.MANAGER if actor_id else ActorSource.SYSTEM,
            now=now,
            actor_id=actor_id,
            description="An approved extension covers the overdue days",
            metadata={
                "end_date": ensure_utc(booking.end_date).isoformat(),
                "previous_end_date": ensure_utc(record.end_date_snapshot).isoformat(),
            },
            resolution_type=OverstayResolution.EXTENDED.value,
        )

    def close_for_extension(
        self, storage_booking_id: str, *, now: datetime, actor_id: Optional[str] = None
    ) -> Optional[OverstayPenaltyRecord]:
        """
        Resolve the open record of a booking whose end date was just extended.

        Runs inside the caller's unit. Records already past manager review are
        left alone; the penalty decision on them stands.
        """
        record = self.repository.get_open_for_booking(storage_booking_id)
        if record is None or record.status not in (
            OverstayStatus.GRACE_PERIOD.value,
            OverstayStatus.PENDING_REVIEW.value,
        ):
            return None
        record = self._lock(record.id)
        booking = self.storage_repository.get_for_update(storage_booking_id)
        if not self._extended(record, booking):
            return None
        self._resolve_extended(record, booking, now=now, actor_id=actor_id)
        return record

    def _advance_one(self, record_id: str, now: datetime, stats: SweepStats) -> None:
        record = self._lock(record_id)
        if record.status != OverstayStatus.GRACE_PERIOD.value:
            stats.skipped += 1
            return
        booking = self.storage_repository.get_for_update(record.storage_booking_id)
        if self._checkout_cleared(booking):
            self._transition(
                record,
                OverstayStatus.RESOLVED,
                event_type="checked_out",
                source=ActorSource.SYSTEM,
                now=now,
                description="Unit was checked out during the grace period",
                resolution_type=OverstayResolution.CHECKED_OUT.value,
            )
            stats.resolved += 1
            return
        if self._extended(record, booking):
            self._resolve_extended(record, booking, now=now)
            stats.resolved += 1
            return
        if ensure_utc(now) < ensure_utc(record.grace_period_ends_at):
            stats.skipped += 1
            return
        if booking.checkout_status == CheckoutStatus.CHECKOUT_REQUESTED.value:
            # Manager review of the checkout decides first
            stats.skipped += 1
            return
        config = self.penalty_config_for(booking)
        days = days_overdue(
            record.grace_period_ends_at, self._billable_until(booking, now), config.max_penalty_days
        )
        calculated = overstay_penalty_cents(record.daily_rate_cents, record.penalty_rate, days)
        self._transition(
            record,
            OverstayStatus.PENDING_REVIEW,
            event_type="grace_expired",
            source=ActorSource.SYSTEM,
            now=now,
            description="Grace period ended; penalty awaits manager review",
            metadata={"days_overdue": days, "calculated_penalty_cents": calculated},
            days_overdue=days,
            calculated_penalty_cents=calculated,
        )
        stats.advanced += 1

    def _reprice_one(self, record_id: str, now: datetime, stats: SweepStats) -> None:
        record = self._lock(record_id)
        if record.status != OverstayStatus.PENDING_REVIEW.value:
            stats.skipped += 1
            return
        booking = self.storage_repository.get_for_update(record.storage_booking_id)
        if self._extended(record, booking):
            self._resolve_extended(record, booking, now=now)
            stats.resolved += 1
            return
        config = self.penalty_config_for(booking)
        days = days_overdue(
            record.grace_period_ends_at, self._billable_until(booking, now), config.max_penalty_days
        )
        if days <= record.days_overdue:
            return
        calculated = overstay_penalty_cents(record.daily_rate_cents, record.penalty_rate, days)
        if not self.repository.compare_and_set(
            record.id,
            OverstayStatus.PENDING_REVIEW,
            OverstayStatus.PENDING_REVIEW,
            guards={"days_overdue": record.days_overdue},
            days_overdue=days,
            calculated_penalty_cents=calculated,
        ):
            stats.skipped += 1
            return
        self.repository.append_history(
            record.id,
            previous_status=OverstayStatus.PENDING_REVIEW.value,
            new_status=OverstayStatus.PENDING_REVIEW.value,
            event_type="repriced",
            event_source=ActorSource.SYSTEM.value,
            metadata={"days_overdue": days, "calculated_penalty_cents": calculated},
        )
        stats.repriced += 1

    # Manager actions

    def _in_record_unit(self, record_id: str):
        record = self.get_record(record_id)
        return self.aggregate_unit(self._group_id_for(record))

    @BaseService.measure_operation("approve_penalty")
    def approve_penalty(
        self,
        record_id: str,
        manager_id: str,
        *,
        final_penalty_cents: Optional[int] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OverstayPenaltyRecord:
        """Approve the calculated penalty, optionally lowered but never raised."""
        now = now or utc_now()
        with self._in_record_unit(record_id):
            record = self._lock(record_id)
            final = record.calculated_penalty_cents if final_penalty_cents is None else final_penalty_cents
            if final < 0 or final > record.calculated_penalty_cents:
                raise ValidationException(
                    "Final penalty must be between 0 and the calculated penalty",
                    code="INVALID_FINAL_PENALTY",
                    details={
                        "final_penalty_cents": final,
                        "calculated_penalty_cents": record.calculated_penalty_cents,
                    },
                )
            self._transition(
                record,
                OverstayStatus.PENALTY_APPROVED,
                event_type="approved",
                source=ActorSource.MANAGER,
                actor_id=manager_id,
                now=now,
                description=notes,
                metadata={"final_penalty_cents": final},
                final_penalty_cents=final,
                manager_notes=notes,
                reviewed_by=manager_id,
                reviewed_at=now,
            )
        return record

    @BaseService.measure_operation("waive_penalty")
    def waive_penalty(
        self,
        record_id: str,
        manager_id: str,
        reason: str,
        *,
        now: Optional[datetime] = None,
    ) -> OverstayPenaltyRecord:
        now = now or utc_now()
        if not (reason or "").strip():
            raise ValidationException("A waive reason is required", code="REASON_REQUIRED")
        with self._in_record_unit(record_id):
            record = self._lock(record_id)
            self._transition(
                record,
                OverstayStatus.PENALTY_WAIVED,
                event_type="waived",
                source=ActorSource.MANAGER,
                actor_id=manager_id,
                now=now,
                description=reason,
                penalty_waived=True,
                waive_reason=reason,
                reviewed_by=manager_id,
                reviewed_at=now,
            )
            self._transition(
                record,
                OverstayStatus.RESOLVED,
                event_type="resolved",
                source=ActorSource.MANAGER,
                actor_id=manager_id,
                now=now,
                resolution_type=OverstayResolution.WAIVED.value,
                resolution_notes=reason,
            )
        return record

    @BaseService.measure_operation("charge_penalty")
    def charge_penalty(
        self, record_id: str, actor_id: str, *, now: Optional[datetime] = None
    ) -> OverstayPenaltyRecord:
        """
        Charge an approved penalty off-session against the chef's saved card.

        A failed charge is recorded and escalated in the same unit; it is not
        retried. A zero final amount resolves without contacting the processor.
        """
        now = now or utc_now()
        with self._in_record_unit(record_id):
            record = self._lock(record_id)
            booking = self.storage_repository.get_by_id(record.storage_booking_id)
            group = self.ledger.lock_booking_group(booking.booking_group_id)
            kitchen = self.listing_repository.get_kitchen(group.kitchen_id)
            final = int(record.final_penalty_cents or 0)
            tax = calculate_tax(final, kitchen.tax_rate_percent if kitchen else None)
            total = final + tax
            self._transition(
                record,
                OverstayStatus.CHARGE_PENDING,
                event_type="charge_attempted",
                source=ActorSource.MANAGER,
                actor_id=actor_id,
                now=now,
                metadata={"final_penalty_cents": final, "tax_cents": tax, "total_cents": total},
                tax_cents=tax,
                charge_attempted_at=now,
            )

            if total <= 0:
                self._charge_succeeded(record, actor_id, now, charged=0)
                return record

            failure: Optional[str] = None
            if not group.stripe_payment_method_id:
                failure = "No saved payment method on file"
            else:
                try:
                    charge = self.payment_service.charge_off_session(
                        total,
                        customer_id=group.stripe_customer_id,
                        payment_method_id=group.stripe_payment_method_id,
                        idempotency_key=f"overstay_penalty:{record.id}",
                        metadata={"overstay_record_id": record.id, "storage_booking_id": booking.id},
                        now=now,
                    )
                except PaymentFailureException as exc:
                    failure = exc.message
            if failure is not None:
                self._charge_failed(record, actor_id, now, failure)
                return record
            self._charge_succeeded(
                record,
                actor_id,
                now,
                charged=total,
                payment_authorization_id=charge.id,
                stripe_payment_intent_id=charge.processor_authorization_id,
                stripe_charge_id=charge.stripe_charge_id,
            )
        return record

    def _charge_succeeded(
        self, record: OverstayPenaltyRecord, actor_id: str, now: datetime, *, charged: int, **values: Any
    ) -> None:
        self._transition(
            record,
            OverstayStatus.CHARGE_SUCCEEDED,
            event_type="charge_succeeded",
            source=ActorSource.SYSTEM,
            actor_id=actor_id,
            now=now,
            metadata={"charged_amount_cents": charged},
            charged_amount_cents=charged,
            charge_succeeded_at=now,
            **values,
        )
        self._transition(
            record,
            OverstayStatus.RESOLVED,
            event_type="resolved",
            source=ActorSource.SYSTEM,
            actor_id=actor_id,
            now=now,
            resolution_type=OverstayResolution.CHARGED.value,
        )

    def _charge_failed(
        self, record: OverstayPenaltyRecord, actor_id: str, now: datetime, reason: str
    ) -> None:
        self.logger.error(
            "overstay_charge_failed", extra={"record_id": record.id, "reason": reason}
        )
        self._transition(
            record,
            OverstayStatus.CHARGE_FAILED,
            event_type="charge_failed",
            source=ActorSource.SYSTEM,
            actor_id=actor_id,
            now=now,
            description=reason,
            charge_failed_at=now,
            charge_failure_reason=reason,
        )
        self._transition(
            record,
            OverstayStatus.ESCALATED,
            event_type="escalated",
            source=ActorSource.SYSTEM,
            now=now,
            description="Charge failed; manual resolution required",
        )

    @BaseService.measure_operation("resolve_escalated")
    def resolve_escalated(
        self,
        record_id: str,
        admin_id: str,
        notes: str,
        *,
        now: Optional[datetime] = None,
    ) -> OverstayPenaltyRecord:
        """Close an escalated record after off-platform handling."""
        now = now or utc_now()
        with self._in_record_unit(record_id):
            record = self._lock(record_id)
            self._transition(
                record,
                OverstayStatus.RESOLVED,
                event_type="manually_resolved",
                source=ActorSource.ADMIN,
                actor_id=admin_id,
                now=now,
                description=notes,
                resolution_type=OverstayResolution.MANUAL.value,
                resolution_notes=notes,
            )
        return record

    @BaseService.measure_operation("refund_penalty")
    def refund_penalty(
        self,
        record_id: str,
        manager_id: str,
        *,
        amount_cents: Optional[int] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OverstayPenaltyRecord:
        """Refund part or all of a charged penalty; the record stays resolved."""
        now = now or utc_now()
        with self._in_record_unit(record_id):
            record = self._lock(record_id)
            if (
                record.status != OverstayStatus.RESOLVED.value
                or record.resolution_type != OverstayResolution.CHARGED.value
                or not record.payment_authorization_id
            ):
                raise InvalidTransitionException(
                    OVERSTAY_MACHINE.name,
                    record.id,
                    expected="resolved (charged)",
                    actual=record.status,
                    target="refund",
                )
            charge = self.payment_service.get_authorization(record.payment_authorization_id)
            amount = charge.refundable_amount_cents if amount_cents is None else amount_cents
            self.payment_service.refund(charge.id, amount, reason=reason or "overstay_penalty_refund", now=now)
            previous_refunded = int(record.refunded_amount_cents or 0)
            if not self.repository.compare_and_set(
                record.id,
                OverstayStatus.RESOLVED,
                OverstayStatus.RESOLVED,
                guards={"refunded_amount_cents": previous_refunded},
                refunded_amount_cents=previous_refunded + amount,
            ):
                raise InvalidTransitionException(
                    OVERSTAY_MACHINE.name,
                    record.id,
                    expected=OverstayStatus.RESOLVED.value,
                    actual=record.status,
                    target="refund",
                )
            self.repository.append_history(
                record.id,
                previous_status=OverstayStatus.RESOLVED.value,
                new_status=OverstayStatus.RESOLVED.value,
                event_type="refunded",
                event_source=ActorSource.MANAGER.value,
                actor_id=manager_id,
                description=reason,
                metadata={"amount_cents": amount, "refunded_total_cents": previous_refunded + amount},
            )
        return record

    def preview_penalty(self, record_id: str, *, now: Optional[datetime] = None) -> Tuple[int, int]:
        """Days overdue and calculated penalty if the record were priced now."""
        record = self.get_record(record_id)
        booking = self.ledger.get_storage_booking(record.storage_booking_id)
        config = self.penalty_config_for(booking)
        billable_until = self._billable_until(booking, now or utc_now())
        days = days_overdue(record.grace_period_ends_at, billable_until, config.max_penalty_days)
        return days, overstay_penalty_cents(record.daily_rate_cents, record.penalty_rate, days)
