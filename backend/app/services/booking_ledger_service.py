# backend/app/services/booking_ledger_service.py
"""
Booking Ledger Service for the KitchenHub booking core.

The ledger is the source of truth for booking groups and their add-ons.
Every status write is a compare-and-swap against the status the caller
observed; add-ons follow their group through confirmation and cancellation.
"""

from datetime import datetime
import logging
from typing import Any, Iterable, List, Optional, Union

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import RoleName
from ..core.exceptions import (
    ForbiddenException,
    InvalidTransitionException,
    NotFoundException,
    ValidationException,
)
from ..core.timezone_utils import ensure_utc, local_to_utc, utc_now
from ..domain.state_machines import BOOKING_MACHINE
from ..events.booking_events import AddonStatusChanged, BookingGroupStatusChanged
from ..events.publisher import EventPublisher
from ..models.booking import BookingGroup, BookingStatus, EquipmentBooking, StorageBooking
from ..models.payment import PaymentAuthorizationKind, PaymentAuthorizationStatus
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..schemas.booking import (
    AddonAttach,
    BookingGroupCreate,
    EquipmentAddonCreate,
    StorageAddonCreate,
)
from .base import BaseService
from .payment_authorization_service import PaymentAuthorizationService
from .pricing_service import (
    calculate_tax,
    combined_booking_total,
    equipment_rental_price,
    kitchen_slot_price,
    service_fee,
    storage_booking_price,
)

logger = logging.getLogger(__name__)

Addon = Union[StorageBooking, EquipmentBooking]

# Add-on statuses that follow a group into the given target
_CASCADE_SOURCES = {
    BookingStatus.CONFIRMED: (BookingStatus.PENDING,),
    BookingStatus.CANCELLED: (
        BookingStatus.PENDING,
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLATION_REQUESTED,
    ),
}


class BookingLedgerService(BaseService):
    """
    Service layer for booking group lifecycle.

    ``checkout_booking_group``, ``attach_addon``, ``transition`` and the
    manager actions own their unit of work. ``transition_group`` and
    ``transition_addon`` are for other services already inside a unit.
    """

    def __init__(self, db: Session, payment_service: PaymentAuthorizationService):
        super().__init__(db)
        self.payment_service = payment_service
        self.group_repository = RepositoryFactory.create_booking_group_repository(db)
        self.storage_repository = RepositoryFactory.create_storage_booking_repository(db)
        self.equipment_repository = RepositoryFactory.create_equipment_booking_repository(db)
        self.listing_repository = RepositoryFactory.create_listing_repository(db)
        self.publisher = EventPublisher(RepositoryFactory.create_event_outbox_repository(db))

    # Queries

    def get_booking_group(self, group_id: str) -> BookingGroup:
        group = self.group_repository.get_with_addons(group_id)
        if group is None:
            raise NotFoundException("BookingGroup", group_id)
        return group

    def lock_booking_group(self, group_id: str) -> BookingGroup:
        """Re-read a group for update inside the caller's unit."""
        group = self.group_repository.get_for_update(group_id)
        if group is None:
            raise NotFoundException("BookingGroup", group_id)
        return group

    def get_storage_booking(self, storage_booking_id: str) -> StorageBooking:
        booking = self.storage_repository.get_by_id(storage_booking_id)
        if booking is None:
            raise NotFoundException("StorageBooking", storage_booking_id)
        return booking

    def list_for_chef(self, chef_id: str, status: Optional[str] = None) -> List[BookingGroup]:
        return self.group_repository.list_for_chef(chef_id, status=status)

    def list_for_location(self, location_id: str, status: Optional[str] = None) -> List[BookingGroup]:
        return self.group_repository.list_for_location(location_id, status=status)

    def check_group_access(
        self,
        group: BookingGroup,
        actor_id: str,
        role: Union[RoleName, str],
        *,
        allow_chef: bool = True,
        allow_manager: bool = True,
    ) -> None:
        """Admins see everything; chefs their own groups; managers their locations' groups."""
        role = RoleName(role)
        if role == RoleName.ADMIN:
            return
        if role == RoleName.CHEF and allow_chef and group.chef_id == actor_id:
            return
        if role == RoleName.MANAGER and allow_manager:
            location = self.listing_repository.get_location(group.location_id)
            if location is not None and location.manager_id == actor_id:
                return
        raise ForbiddenException(
            "You do not have access to this booking",
            code="BOOKING_ACCESS_DENIED",
            details={"booking_group_id": group.id},
        )

    def check_location_access(
        self, location_id: str, actor_id: str, role: Union[RoleName, str]
    ) -> None:
        """Location-wide views are for that location's manager and admins."""
        role = RoleName(role)
        if role == RoleName.ADMIN:
            return
        if role == RoleName.MANAGER:
            location = self.listing_repository.get_location(location_id)
            if location is not None and location.manager_id == actor_id:
                return
        raise ForbiddenException(
            "You do not manage this location",
            code="LOCATION_ACCESS_DENIED",
            details={"location_id": location_id},
        )

    # Checkout

    @BaseService.measure_operation("create_booking_group")
    def create_booking_group(
        self, chef_id: str, data: BookingGroupCreate, *, now: Optional[datetime] = None
    ) -> BookingGroup:
        """Create a pending group with its add-ons but without a payment hold."""
        with self.transaction():
            group = self._create_group(chef_id, data, now or utc_now())
        return self.get_booking_group(group.id)

    @BaseService.measure_operation("checkout_booking_group")
    def checkout_booking_group(
        self, chef_id: str, data: BookingGroupCreate, *, now: Optional[datetime] = None
    ) -> BookingGroup:
        """
        Price, create and authorize a booking group in one unit.

        The hold covers the grand total of the kitchen session and every
        add-on. A processor failure rolls the whole group back.
        """
        now = now or utc_now()
        with self.transaction():
            group = self._create_group(chef_id, data, now)
            if group.total_price_cents > 0:
                self._authorize_hold(group, now)
        self.log_operation(
            "checkout_booking_group",
            booking_group_id=group.id,
            chef_id=chef_id,
            total_price_cents=group.total_price_cents,
        )
        return self.get_booking_group(group.id)

    @BaseService.measure_operation("attach_addon")
    def attach_addon(
        self, group_id: str, data: AddonAttach, *, now: Optional[datetime] = None
    ) -> Addon:
        """
        Link one more add-on to a pending group.

        The group keeps a single authorization: an existing hold is replaced by
        one covering the new total.
        """
        now = now or utc_now()
        with self.aggregate_unit(group_id):
            group = self.lock_booking_group(group_id)
            if group.status != BookingStatus.PENDING.value:
                raise InvalidTransitionException(
                    "booking",
                    group.id,
                    expected=BookingStatus.PENDING.value,
                    actual=group.status,
                    target="attach_addon",
                )
            addon = self._attach(group, data.storage or data.equipment)
            self._reprice(group)
            if group.payment_authorization_id:
                hold = self.payment_service.get_authorization(group.payment_authorization_id)
                if hold.authorized_amount_cents != group.total_price_cents:
                    if hold.status == PaymentAuthorizationStatus.AUTHORIZED_HOLD.value:
                        self.payment_service.void(hold.id, now=now)
                    self._authorize_hold(group, now)
        return addon

    def _create_group(self, chef_id: str, data: BookingGroupCreate, now: datetime) -> BookingGroup:
        kitchen = self.listing_repository.get_kitchen(data.kitchen_id)
        if kitchen is None or not kitchen.is_active:
            raise NotFoundException("Kitchen", data.kitchen_id)
        location = self.listing_repository.get_location(kitchen.location_id)
        if location is None:
            raise NotFoundException("Location", kitchen.location_id)

        slot_price = kitchen_slot_price(
            kitchen.hourly_rate_cents, data.selected_slots, kitchen.minimum_booking_hours or 1
        )
        booking_start_utc = local_to_utc(data.booking_date, slot_price.start_time, location.timezone)
        if booking_start_utc <= now:
            raise ValidationException(
                "Cannot book a kitchen session that has already started",
                code="BOOKING_IN_PAST",
                details={"booking_start_utc": booking_start_utc.isoformat()},
            )

        totals = self._totals(slot_price.base_price_cents, [], [], kitchen.tax_rate_percent)
        group = self.group_repository.create(
            chef_id=chef_id,
            kitchen_id=kitchen.id,
            location_id=location.id,
            booking_date=data.booking_date,
            start_time=slot_price.start_time,
            end_time=slot_price.end_time,
            selected_slots=list(data.selected_slots),
            booking_start_utc=booking_start_utc,
            status=BookingStatus.PENDING.value,
            stripe_customer_id=data.stripe_customer_id,
            stripe_payment_method_id=data.stripe_payment_method_id,
            kitchen_price_cents=slot_price.base_price_cents,
            special_notes=data.special_notes,
            **totals,
        )
        for addon in [*data.storage, *data.equipment]:
            self._attach(group, addon)
        self._reprice(group)
        self.publisher.publish(
            BookingGroupStatusChanged(
                booking_group_id=group.id,
                previous_status=None,
                new_status=BookingStatus.PENDING.value,
                occurred_at=now,
                actor_id=chef_id,
            )
        )
        return group

    def _attach(
        self, group: BookingGroup, addon: Union[StorageAddonCreate, EquipmentAddonCreate]
    ) -> Addon:
        if isinstance(addon, StorageAddonCreate):
            listing = self.listing_repository.get_storage_listing(addon.storage_listing_id)
            if listing is None or not listing.is_active:
                raise NotFoundException("StorageListing", addon.storage_listing_id)
            if listing.kitchen_id != group.kitchen_id:
                raise ValidationException(
                    "Storage listing does not belong to the booked kitchen",
                    code="ADDON_KITCHEN_MISMATCH",
                    details={"storage_listing_id": listing.id, "kitchen_id": group.kitchen_id},
                )
            price = storage_booking_price(
                listing.daily_rate_cents,
                addon.start_date,
                addon.end_date,
                listing.minimum_booking_days,
            )
            created: Addon = self.storage_repository.create(
                booking_group_id=group.id,
                storage_listing_id=listing.id,
                chef_id=group.chef_id,
                start_date=ensure_utc(addon.start_date),
                end_date=ensure_utc(addon.end_date),
                daily_rate_cents=listing.daily_rate_cents,
                total_price_cents=price.base_price_cents,
                status=group.status,
            )
        else:
            equipment = self.listing_repository.get_equipment_listing(addon.equipment_listing_id)
            if equipment is None or not equipment.is_active:
                raise NotFoundException("EquipmentListing", addon.equipment_listing_id)
            if equipment.kitchen_id != group.kitchen_id:
                raise ValidationException(
                    "Equipment listing does not belong to the booked kitchen",
                    code="ADDON_KITCHEN_MISMATCH",
                    details={"equipment_listing_id": equipment.id, "kitchen_id": group.kitchen_id},
                )
            rental = equipment_rental_price(equipment.session_rate_cents, equipment.damage_deposit_cents)
            created = self.equipment_repository.create(
                booking_group_id=group.id,
                equipment_listing_id=equipment.id,
                chef_id=group.chef_id,
                status=group.status,
                total_price_cents=rental.rental_cents,
                damage_deposit_cents=rental.damage_deposit_cents,
            )
        self.db.expire(group, ["storage_bookings", "equipment_bookings"])
        return created

    def _authorize_hold(self, group: BookingGroup, now: datetime) -> None:
        if not group.stripe_payment_method_id:
            raise ValidationException(
                "A saved payment method is required to place the booking hold",
                code="PAYMENT_METHOD_REQUIRED",
                details={"booking_group_id": group.id},
            )
        hold = self.payment_service.authorize(
            group.total_price_cents,
            idempotency_key=f"booking_hold:{group.id}:{group.total_price_cents}",
            kind=PaymentAuthorizationKind.BOOKING_HOLD,
            customer_id=group.stripe_customer_id,
            payment_method_id=group.stripe_payment_method_id,
            metadata={"booking_group_id": group.id, "chef_id": group.chef_id},
            now=now,
        )
        group.payment_authorization_id = hold.id
        self.group_repository.flush()

    # Pricing

    @staticmethod
    def _totals(
        kitchen_base_cents: int,
        storage_base_cents: Iterable[int],
        equipment_base_cents: Iterable[int],
        tax_rate_percent: Any,
    ) -> dict:
        combined = combined_booking_total(
            kitchen_base_cents, storage_base_cents, equipment_base_cents, tax_rate_percent
        )
        fee = service_fee(combined.subtotal_cents, settings.service_fee_rate)
        return {
            "subtotal_cents": combined.subtotal_cents,
            "service_fee_cents": fee,
            "tax_cents": combined.tax_cents,
            "total_price_cents": combined.grand_total_cents + fee,
        }

    def _active_addon_prices(self, group: BookingGroup) -> tuple[List[int], List[int]]:
        cancelled = BookingStatus.CANCELLED.value
        storage = [
            booking.total_price_cents
            for booking in self.storage_repository.list_for_group(group.id)
            if booking.status != cancelled
        ]
        equipment = [
            booking.total_price_cents
            for booking in self.equipment_repository.list_for_group(group.id)
            if booking.status != cancelled
        ]
        return storage, equipment

    def _reprice(self, group: BookingGroup) -> None:
        kitchen = self.listing_repository.get_kitchen(group.kitchen_id)
        storage, equipment = self._active_addon_prices(group)
        for key, value in self._totals(
            group.kitchen_price_cents, storage, equipment, kitchen.tax_rate_percent if kitchen else None
        ).items():
            setattr(group, key, value)
        self.group_repository.flush()

    def capturable_amount_cents(self, group: BookingGroup) -> int:
        """
        Amount to capture on approval.

        Cancelled add-ons are excluded; the result never exceeds the hold.
        """
        kitchen = self.listing_repository.get_kitchen(group.kitchen_id)
        storage, equipment = self._active_addon_prices(group)
        total = self._totals(
            group.kitchen_price_cents, storage, equipment, kitchen.tax_rate_percent if kitchen else None
        )["total_price_cents"]
        if group.payment_authorization_id is None:
            return 0
        hold = self.payment_service.get_authorization(group.payment_authorization_id)
        return min(total, hold.authorized_amount_cents)

    def addon_share_cents(self, group: BookingGroup, addon: Addon) -> int:
        """An add-on's base price plus its share of tax, for partial refunds."""
        kitchen = self.listing_repository.get_kitchen(group.kitchen_id)
        return addon.total_price_cents + calculate_tax(
            addon.total_price_cents, kitchen.tax_rate_percent if kitchen else None
        )

    # Guarded transitions

    @BaseService.measure_operation("transition_booking_group")
    def transition(
        self,
        group_id: str,
        from_status: Union[BookingStatus, str],
        to_status: Union[BookingStatus, str],
        *,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> BookingGroup:
        """
        Move a group from ``from_status`` to ``to_status``.

        Fails with InvalidTransitionException when the stored status differs
        from ``from_status`` (including a retry of an already-applied change)
        or when the pair is not in the booking table.
        """
        with self.aggregate_unit(group_id):
            group = self.lock_booking_group(group_id)
            self.transition_group(
                group, to_status, expected=from_status, actor_id=actor_id, reason=reason
            )
        return self.get_booking_group(group_id)

    def transition_group(
        self,
        group: BookingGroup,
        target: Union[BookingStatus, str],
        *,
        expected: Union[BookingStatus, str, None] = None,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
        cascade: bool = True,
        **values: Any,
    ) -> None:
        """Compare-and-swap a group's status inside the caller's unit and cascade to add-ons."""
        now = now or utc_now()
        target = BOOKING_MACHINE.coerce(target, entity_id=group.id)
        expected_status = BOOKING_MACHINE.coerce(
            expected if expected is not None else group.status, entity_id=group.id
        )
        if group.status != expected_status.value:
            raise InvalidTransitionException(
                BOOKING_MACHINE.name,
                group.id,
                expected=expected_status.value,
                actual=group.status,
                target=target.value,
            )
        BOOKING_MACHINE.require(expected_status, target, entity_id=group.id)

        values.update(self._timestamps(target, now))
        if target == BookingStatus.CANCELLED and reason and "rejection_reason" not in values:
            values.setdefault("cancellation_reason", reason)
        if not self.group_repository.compare_and_set(group.id, expected_status, target, **values):
            current = self.group_repository.get_for_update(group.id)
            raise InvalidTransitionException(
                BOOKING_MACHINE.name,
                group.id,
                expected=expected_status.value,
                actual=current.status if current else None,
                target=target.value,
            )

        prometheus_metrics.record_transition(BOOKING_MACHINE.name, expected_status.value, target.value)
        self.publisher.publish(
            BookingGroupStatusChanged(
                booking_group_id=group.id,
                previous_status=expected_status.value,
                new_status=target.value,
                occurred_at=now,
                actor_id=actor_id,
                reason=reason,
            )
        )
        self.log_operation(
            "booking_group_transition",
            booking_group_id=group.id,
            previous_status=expected_status.value,
            new_status=target.value,
            actor_id=actor_id,
        )

        if not cascade:
            return
        sources = _CASCADE_SOURCES.get(target)
        if target == BookingStatus.COMPLETED:
            # Storage outlives the kitchen session and is released by checkout
            for equipment in self.equipment_repository.list_for_group(group.id):
                if equipment.status == BookingStatus.CONFIRMED.value:
                    self.transition_addon(equipment, target, now=now)
        elif sources:
            source_values = {status.value for status in sources}
            addons: List[Addon] = [
                *self.storage_repository.list_for_group(group.id),
                *self.equipment_repository.list_for_group(group.id),
            ]
            for addon in addons:
                if addon.status in source_values:
                    self.transition_addon(addon, target, now=now)

    def transition_addon(
        self,
        addon: Addon,
        target: Union[BookingStatus, str],
        *,
        expected: Union[BookingStatus, str, None] = None,
        now: Optional[datetime] = None,
        **values: Any,
    ) -> None:
        """Compare-and-swap one add-on's status inside the caller's unit."""
        now = now or utc_now()
        target = BOOKING_MACHINE.coerce(target, entity_id=addon.id)
        expected_status = BOOKING_MACHINE.coerce(
            expected if expected is not None else addon.status, entity_id=addon.id
        )
        BOOKING_MACHINE.require(expected_status, target, entity_id=addon.id)
        repository = (
            self.storage_repository if isinstance(addon, StorageBooking) else self.equipment_repository
        )
        if target == BookingStatus.CANCELLED:
            values.setdefault("cancelled_at", now)
        elif target == BookingStatus.COMPLETED and isinstance(addon, StorageBooking):
            values.setdefault("completed_at", now)
        if not repository.compare_and_set(addon.id, expected_status, target, **values):
            current = repository.get_for_update(addon.id)
            raise InvalidTransitionException(
                BOOKING_MACHINE.name,
                addon.id,
                expected=expected_status.value,
                actual=current.status if current else None,
                target=target.value,
            )
        booking_type = "storage" if isinstance(addon, StorageBooking) else "equipment"
        prometheus_metrics.record_transition(f"{booking_type}_booking", expected_status.value, target.value)
        self.publisher.publish(
            AddonStatusChanged(
                booking_id=addon.id,
                booking_type=booking_type,
                booking_group_id=addon.booking_group_id,
                previous_status=expected_status.value,
                new_status=target.value,
                occurred_at=now,
            )
        )

    @staticmethod
    def _timestamps(target: BookingStatus, now: datetime) -> dict:
        if target == BookingStatus.CONFIRMED:
            return {"confirmed_at": now}
        if target == BookingStatus.CANCELLED:
            return {"cancelled_at": now}
        if target == BookingStatus.COMPLETED:
            return {"completed_at": now}
        return {}

    # Manager actions

    @BaseService.measure_operation("approve_booking_group")
    def approve_booking_group(
        self, group_id: str, manager_id: str, *, now: Optional[datetime] = None
    ) -> BookingGroup:
        """
        Confirm a pending group and capture its hold.

        The capture covers every add-on that is not cancelled. The status
        write happens first so a concurrent approval fails before money moves.
        """
        now = now or utc_now()
        with self.aggregate_unit(group_id):
            group = self.lock_booking_group(group_id)
            self.transition_group(
                group,
                BookingStatus.CONFIRMED,
                expected=BookingStatus.PENDING,
                actor_id=manager_id,
                now=now,
            )
            if group.payment_authorization_id:
                hold = self.payment_service.get_authorization(group.payment_authorization_id)
                if hold.status == PaymentAuthorizationStatus.AUTHORIZED_HOLD.value:
                    amount = self.capturable_amount_cents(group)
                    if amount > 0:
                        self.payment_service.capture(hold.id, amount, now=now)
                    else:
                        self.payment_service.void(hold.id, now=now)
        return self.get_booking_group(group_id)

    @BaseService.measure_operation("reject_booking_group")
    def reject_booking_group(
        self, group_id: str, manager_id: str, reason: str, *, now: Optional[datetime] = None
    ) -> BookingGroup:
        """Cancel a pending group on the manager's behalf and release its hold."""
        now = now or utc_now()
        with self.aggregate_unit(group_id):
            group = self.lock_booking_group(group_id)
            self.transition_group(
                group,
                BookingStatus.CANCELLED,
                expected=BookingStatus.PENDING,
                actor_id=manager_id,
                reason=reason,
                now=now,
                rejection_reason=reason,
            )
            self.release_hold(group, now)
        return self.get_booking_group(group_id)

    @BaseService.measure_operation("complete_booking_group")
    def complete_booking_group(
        self, group_id: str, actor_id: str, *, now: Optional[datetime] = None
    ) -> BookingGroup:
        with self.aggregate_unit(group_id):
            group = self.lock_booking_group(group_id)
            self.transition_group(
                group,
                BookingStatus.COMPLETED,
                expected=BookingStatus.CONFIRMED,
                actor_id=actor_id,
                now=now,
            )
        return self.get_booking_group(group_id)

    def release_hold(self, group: BookingGroup, now: datetime) -> Optional[str]:
        """Void the group's hold if it is still uncaptured; returns the action taken."""
        if not group.payment_authorization_id:
            return None
        hold = self.payment_service.get_authorization(group.payment_authorization_id)
        if hold.status != PaymentAuthorizationStatus.AUTHORIZED_HOLD.value:
            return None
        self.payment_service.void(hold.id, now=now)
        return "voided"
