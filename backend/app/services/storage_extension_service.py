# backend/app/services/storage_extension_service.py
"""
Storage extension requests.

A chef asks to keep a unit past its end date, pays for the extra days up
front, and the manager approves (the end date moves) or rejects (the payment
is refunded). Approved and completed extensions are never modified again.
"""

from datetime import datetime
import logging
from typing import Any, List, Optional

from sqlalchemy.orm import Session

from ..core.exceptions import (
    ConflictException,
    InvalidTransitionException,
    NotFoundException,
    ValidationException,
)
from ..core.timezone_utils import ensure_utc, utc_now
from ..domain.state_machines import EXTENSION_MACHINE
from ..events.booking_events import StorageExtensionStatusChanged
from ..events.publisher import EventPublisher
from ..models.booking import BookingStatus, CheckoutStatus
from ..models.payment import PaymentAuthorizationKind, PaymentAuthorizationStatus
from ..models.storage_extension import ExtensionStatus, StorageExtension
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .booking_ledger_service import BookingLedgerService
from .overstay_penalty_service import OverstayPenaltyService
from .payment_authorization_service import PaymentAuthorizationService
from .pricing_service import extension_price

logger = logging.getLogger(__name__)


class StorageExtensionService(BaseService):
    def __init__(
        self,
        db: Session,
        ledger: BookingLedgerService,
        payment_service: PaymentAuthorizationService,
    ):
        super().__init__(db)
        self.ledger = ledger
        self.payment_service = payment_service
        self.repository = RepositoryFactory.create_storage_extension_repository(db)
        self.storage_repository = RepositoryFactory.create_storage_booking_repository(db)
        self.overstay_repository = RepositoryFactory.create_overstay_repository(db)
        self.overstay_service = OverstayPenaltyService(db, ledger, payment_service)
        self.listing_repository = RepositoryFactory.create_listing_repository(db)
        self.publisher = EventPublisher(RepositoryFactory.create_event_outbox_repository(db))

    def get_extension(self, extension_id: str) -> StorageExtension:
        extension = self.repository.get_by_id(extension_id)
        if extension is None:
            raise NotFoundException("StorageExtension", extension_id)
        return extension

    def list_for_booking(self, storage_booking_id: str) -> List[StorageExtension]:
        return self.repository.list_for_booking(storage_booking_id)

    def _group_id(self, extension: StorageExtension) -> str:
        return self.ledger.get_storage_booking(extension.storage_booking_id).booking_group_id

    def _lock(self, extension_id: str) -> StorageExtension:
        extension = self.repository.get_for_update(extension_id)
        if extension is None:
            raise NotFoundException("StorageExtension", extension_id)
        return extension

    def _transition(
        self, extension: StorageExtension, target: ExtensionStatus, *, now: datetime, **values: Any
    ) -> None:
        previous = extension.status
        EXTENSION_MACHINE.require(previous, target, entity_id=extension.id)
        if not self.repository.compare_and_set(extension.id, previous, target, **values):
            current = self.repository.get_for_update(extension.id)
            raise InvalidTransitionException(
                EXTENSION_MACHINE.name,
                extension.id,
                expected=previous,
                actual=current.status if current else None,
                target=target.value,
            )
        prometheus_metrics.record_transition(EXTENSION_MACHINE.name, previous, target.value)
        self.publisher.publish(
            StorageExtensionStatusChanged(
                extension_id=extension.id,
                storage_booking_id=extension.storage_booking_id,
                previous_status=previous,
                new_status=target.value,
                occurred_at=now,
            )
        )
        self.log_operation(
            "storage_extension_transition",
            extension_id=extension.id,
            previous_status=previous,
            new_status=target.value,
        )

    @BaseService.measure_operation("request_extension")
    def request_extension(
        self,
        storage_booking_id: str,
        chef_id: str,
        new_end_date: datetime,
        *,
        now: Optional[datetime] = None,
    ) -> StorageExtension:
        """
        Price and record an extension of a confirmed storage booking.

        Raises BelowMinimumException when the extra days are fewer than the
        listing minimum.
        """
        now = now or utc_now()
        booking = self.ledger.get_storage_booking(storage_booking_id)
        with self.aggregate_unit(booking.booking_group_id):
            booking = self.storage_repository.get_for_update(storage_booking_id)
            if (
                booking.status != BookingStatus.CONFIRMED.value
                or booking.checkout_status != CheckoutStatus.ACTIVE.value
            ):
                raise InvalidTransitionException(
                    "storage_booking",
                    booking.id,
                    expected=f"{BookingStatus.CONFIRMED.value}/{CheckoutStatus.ACTIVE.value}",
                    actual=f"{booking.status}/{booking.checkout_status}",
                    target="extend",
                )
            if self.repository.get_open_for_booking(booking.id) is not None:
                raise ConflictException(
                    "An extension for this storage booking is already in progress",
                    code="EXTENSION_IN_PROGRESS",
                    details={"storage_booking_id": booking.id},
                )
            if self.overstay_repository.get_open_for_booking(booking.id) is not None:
                raise ConflictException(
                    "Storage booking has an open overstay penalty; resolve it before extending",
                    code="OVERSTAY_OPEN",
                    details={"storage_booking_id": booking.id},
                )
            listing = self.listing_repository.get_storage_listing(booking.storage_listing_id)
            group = self.ledger.get_booking_group(booking.booking_group_id)
            kitchen = self.listing_repository.get_kitchen(group.kitchen_id)
            price = extension_price(
                booking.daily_rate_cents,
                booking.end_date,
                new_end_date,
                listing.minimum_booking_days if listing else 1,
                kitchen.tax_rate_percent if kitchen else None,
            )
            extension = self.repository.create(
                storage_booking_id=booking.id,
                chef_id=chef_id,
                status=ExtensionStatus.PENDING.value,
                previous_end_date=ensure_utc(booking.end_date),
                new_end_date=ensure_utc(new_end_date),
                extension_days=price.extension_days,
                daily_rate_cents=booking.daily_rate_cents,
                base_price_cents=price.base_price_cents,
                tax_cents=price.tax_cents,
                total_price_cents=price.total_price_cents,
            )
            self.publisher.publish(
                StorageExtensionStatusChanged(
                    extension_id=extension.id,
                    storage_booking_id=booking.id,
                    previous_status=None,
                    new_status=ExtensionStatus.PENDING.value,
                    occurred_at=now,
                )
            )
        return extension

    @BaseService.measure_operation("pay_extension")
    def pay_extension(
        self, extension_id: str, *, now: Optional[datetime] = None
    ) -> StorageExtension:
        """Charge the extension total against the group's saved payment method."""
        now = now or utc_now()
        extension = self.get_extension(extension_id)
        with self.aggregate_unit(self._group_id(extension)):
            extension = self._lock(extension_id)
            EXTENSION_MACHINE.require(extension.status, ExtensionStatus.PAID, entity_id=extension.id)
            booking = self.storage_repository.get_by_id(extension.storage_booking_id)
            group = self.ledger.get_booking_group(booking.booking_group_id)
            if not group.stripe_payment_method_id:
                raise ValidationException(
                    "A saved payment method is required to pay for the extension",
                    code="PAYMENT_METHOD_REQUIRED",
                )
            authorization = self.payment_service.authorize(
                extension.total_price_cents,
                idempotency_key=f"storage_extension:{extension.id}",
                kind=PaymentAuthorizationKind.STORAGE_EXTENSION,
                customer_id=group.stripe_customer_id,
                payment_method_id=group.stripe_payment_method_id,
                metadata={"storage_extension_id": extension.id, "storage_booking_id": booking.id},
                now=now,
            )
            self.payment_service.capture(authorization.id, now=now)
            self._transition(
                extension,
                ExtensionStatus.PAID,
                now=now,
                payment_authorization_id=authorization.id,
                paid_at=now,
            )
        return extension

    @BaseService.measure_operation("approve_extension")
    def approve_extension(
        self, extension_id: str, manager_id: str, *, now: Optional[datetime] = None
    ) -> StorageExtension:
        """
        Move the booking's end date and grow its total, then complete the extension.

        Fails if the booking's end date changed since the extension was priced.
        """
        now = now or utc_now()
        extension = self.get_extension(extension_id)
        with self.aggregate_unit(self._group_id(extension)):
            extension = self._lock(extension_id)
            booking = self.storage_repository.get_for_update(extension.storage_booking_id)
            self._transition(
                extension,
                ExtensionStatus.APPROVED,
                now=now,
                reviewed_by=manager_id,
                approved_at=now,
            )
            if not self.storage_repository.compare_and_set(
                booking.id,
                extension.previous_end_date,
                extension.new_end_date,
                column="end_date",
                guards={"status": BookingStatus.CONFIRMED.value},
                total_price_cents=booking.total_price_cents + extension.base_price_cents,
            ):
                raise InvalidTransitionException(
                    "storage_booking",
                    booking.id,
                    expected=ensure_utc(extension.previous_end_date).isoformat(),
                    actual=ensure_utc(booking.end_date).isoformat(),
                    target="extend",
                )
            self._transition(extension, ExtensionStatus.COMPLETED, now=now, completed_at=now)
            self.overstay_service.close_for_extension(booking.id, now=now, actor_id=manager_id)
        return extension

    @BaseService.measure_operation("reject_extension")
    def reject_extension(
        self,
        extension_id: str,
        manager_id: str,
        reason: str,
        *,
        now: Optional[datetime] = None,
    ) -> StorageExtension:
        """Reject a request; a paid extension is refunded in full in the same unit."""
        now = now or utc_now()
        extension = self.get_extension(extension_id)
        with self.aggregate_unit(self._group_id(extension)):
            extension = self._lock(extension_id)
            self._transition(
                extension,
                ExtensionStatus.REJECTED,
                now=now,
                reviewed_by=manager_id,
                rejection_reason=reason,
                rejected_at=now,
            )
            if extension.payment_authorization_id:
                payment = self.payment_service.get_authorization(extension.payment_authorization_id)
                if payment.status == PaymentAuthorizationStatus.AUTHORIZED_HOLD.value:
                    self.payment_service.void(payment.id, now=now)
                elif payment.refundable_amount_cents > 0:
                    self.payment_service.refund(
                        payment.id, payment.refundable_amount_cents, reason="extension_rejected", now=now
                    )
                self._transition(extension, ExtensionStatus.REFUNDED, now=now, refunded_at=now)
        return extension
