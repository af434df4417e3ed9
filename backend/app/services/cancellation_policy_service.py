# backend/app/services/cancellation_policy_service.py
"""
Cancellation Policy Engine.

Decides whether a cancellation is self-service ("immediate") or needs a
manager ("request"), then drives the ledger and payment transitions.

Order of checks:
1. A booking that already started cannot be cancelled.
2. Inside the location's cancellation window the request is refused, unless
   the request tier applies and the platform lets it bypass the window.
3. The tier is "request" only for confirmed bookings whose money was captured.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
import logging
from typing import List, Optional, Union

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import (
    AlreadyStartedException,
    ConflictException,
    InvalidTransitionException,
    NotFoundException,
    PolicyViolationException,
    ValidationException,
)
from ..core.timezone_utils import hours_between, utc_now
from ..domain.state_machines import (
    BOOKING_MACHINE,
    CAPTURED_PAYMENT_STATUSES,
    OPEN_CANCELLABLE_BOOKING_STATUSES,
)
from ..events.booking_events import CancellationRequested
from ..events.publisher import EventPublisher
from ..models.booking import BookingGroup, BookingStatus, StorageBooking
from ..models.cancellation import CancellationOutcome, CancellationRequest
from ..models.payment import PaymentAuthorization, PaymentAuthorizationStatus
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .booking_ledger_service import BookingLedgerService
from .payment_authorization_service import PaymentAuthorizationService

logger = logging.getLogger(__name__)


class CancellationTier(str, Enum):
    IMMEDIATE = "immediate"
    REQUEST = "request"


@dataclass(frozen=True)
class CancellationDecision:
    tier: CancellationTier
    allowed: bool
    hours_until_start: float
    policy_hours: int
    within_window: bool
    reason_code: Optional[str] = None


@dataclass(frozen=True)
class CancellationResult:
    tier: CancellationTier
    booking_group_id: str
    status: str
    storage_booking_id: Optional[str] = None
    payment_action: Optional[str] = None
    refunded_cents: int = 0
    cancellation_request: Optional[CancellationRequest] = None


def select_tier(
    booking_status: Union[BookingStatus, str],
    payment_status: Union[PaymentAuthorizationStatus, str, None],
) -> CancellationTier:
    """``request`` iff the booking is confirmed and its payment was captured."""
    captured = {status.value for status in CAPTURED_PAYMENT_STATUSES}
    payment_value = payment_status.value if isinstance(payment_status, Enum) else payment_status
    if BOOKING_MACHINE.coerce(booking_status) == BookingStatus.CONFIRMED and payment_value in captured:
        return CancellationTier.REQUEST
    return CancellationTier.IMMEDIATE


def evaluate_cancellation(
    *,
    booking_status: Union[BookingStatus, str],
    payment_status: Union[PaymentAuthorizationStatus, str, None],
    starts_at: datetime,
    now: datetime,
    policy_hours: int,
    request_tier_bypasses_window: bool = False,
) -> CancellationDecision:
    """Pure policy evaluation; no side effects."""
    hours_until_start = hours_between(now, starts_at)
    tier = select_tier(booking_status, payment_status)
    within_window = hours_until_start < policy_hours
    if hours_until_start < 0:
        return CancellationDecision(
            tier, False, hours_until_start, policy_hours, within_window, "ALREADY_STARTED"
        )
    if within_window and not (tier == CancellationTier.REQUEST and request_tier_bypasses_window):
        return CancellationDecision(
            tier, False, hours_until_start, policy_hours, within_window, "POLICY_VIOLATION"
        )
    return CancellationDecision(tier, True, hours_until_start, policy_hours, within_window)


def enforce_decision(decision: CancellationDecision, entity_id: str) -> None:
    """Raise the policy error a refused decision stands for."""
    if decision.allowed:
        return
    if decision.reason_code == "ALREADY_STARTED":
        raise AlreadyStartedException(entity_id, decision.hours_until_start)
    raise PolicyViolationException(
        f"Cancellations must be made at least {decision.policy_hours} hours before the start",
        details={
            "id": entity_id,
            "hours_until_start": round(decision.hours_until_start, 2),
            "policy_hours": decision.policy_hours,
            "tier": decision.tier.value,
        },
    )


class CancellationPolicyService(BaseService):
    """Routes chef cancellations to self-service or manager review."""

    def __init__(
        self,
        db: Session,
        ledger: BookingLedgerService,
        payment_service: PaymentAuthorizationService,
    ):
        super().__init__(db)
        self.ledger = ledger
        self.payment_service = payment_service
        self.repository = RepositoryFactory.create_cancellation_request_repository(db)
        self.listing_repository = RepositoryFactory.create_listing_repository(db)
        self.publisher = EventPublisher(RepositoryFactory.create_event_outbox_repository(db))

    def policy_hours_for(self, location_id: str) -> int:
        location = self.listing_repository.get_location(location_id)
        if location is not None and location.cancellation_policy_hours is not None:
            return int(location.cancellation_policy_hours)
        return settings.default_cancellation_policy_hours

    def _hold(self, group: BookingGroup) -> Optional[PaymentAuthorization]:
        if not group.payment_authorization_id:
            return None
        return self.payment_service.get_authorization(group.payment_authorization_id)

    def _decide(
        self,
        group: BookingGroup,
        status: str,
        starts_at: datetime,
        now: datetime,
    ) -> CancellationDecision:
        hold = self._hold(group)
        return evaluate_cancellation(
            booking_status=status,
            payment_status=hold.status if hold else None,
            starts_at=starts_at,
            now=now,
            policy_hours=self.policy_hours_for(group.location_id),
            request_tier_bypasses_window=settings.cancellation_request_tier_bypasses_window,
        )

    # Previews

    def preview_group_cancellation(
        self, group_id: str, *, now: Optional[datetime] = None
    ) -> CancellationDecision:
        group = self.ledger.get_booking_group(group_id)
        return self._decide(group, group.status, group.booking_start_utc, now or utc_now())

    def preview_storage_cancellation(
        self, storage_booking_id: str, *, now: Optional[datetime] = None
    ) -> CancellationDecision:
        storage = self.ledger.get_storage_booking(storage_booking_id)
        group = self.ledger.get_booking_group(storage.booking_group_id)
        return self._decide(group, storage.status, storage.start_date, now or utc_now())

    # Commands

    @staticmethod
    def _require_cancellable(entity_id: str, status: str) -> None:
        if BOOKING_MACHINE.coerce(status) not in OPEN_CANCELLABLE_BOOKING_STATUSES:
            raise InvalidTransitionException(
                BOOKING_MACHINE.name,
                entity_id,
                expected="pending|confirmed",
                actual=status,
                target=BookingStatus.CANCELLED.value,
            )

    @BaseService.measure_operation("request_group_cancellation")
    def request_group_cancellation(
        self,
        group_id: str,
        actor_id: str,
        reason: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> CancellationResult:
        """Cancel a whole booking group, or open a manager review for it."""
        now = now or utc_now()
        with self.aggregate_unit(group_id):
            group = self.ledger.lock_booking_group(group_id)
            self._require_cancellable(group.id, group.status)
            decision = self._decide(group, group.status, group.booking_start_utc, now)
            enforce_decision(decision, group.id)

            if decision.tier == CancellationTier.REQUEST:
                request = self._open_request(group, None, actor_id, reason, now)
                self.ledger.transition_group(
                    group,
                    BookingStatus.CANCELLATION_REQUESTED,
                    expected=BookingStatus.CONFIRMED,
                    actor_id=actor_id,
                    reason=reason,
                    now=now,
                )
                return CancellationResult(
                    tier=decision.tier,
                    booking_group_id=group.id,
                    status=group.status,
                    cancellation_request=request,
                )

            self.ledger.transition_group(
                group, BookingStatus.CANCELLED, actor_id=actor_id, reason=reason, now=now
            )
            action, refunded = self._settle_group(group, None, now)
            self.log_operation(
                "group_cancelled",
                booking_group_id=group.id,
                actor_id=actor_id,
                payment_action=action,
                refunded_cents=refunded,
            )
            return CancellationResult(
                tier=decision.tier,
                booking_group_id=group.id,
                status=group.status,
                payment_action=action,
                refunded_cents=refunded,
            )

    @BaseService.measure_operation("request_storage_cancellation")
    def request_storage_cancellation(
        self,
        storage_booking_id: str,
        actor_id: str,
        reason: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> CancellationResult:
        """
        Cancel one storage add-on, or open a manager review for it.

        The shared group hold is never voided for a single add-on; the
        cancelled add-on is simply left out of the eventual capture.
        """
        now = now or utc_now()
        storage = self.ledger.get_storage_booking(storage_booking_id)
        group_id = storage.booking_group_id
        with self.aggregate_unit(group_id):
            group = self.ledger.lock_booking_group(group_id)
            storage = self.ledger.storage_repository.get_for_update(storage_booking_id)
            self._require_cancellable(storage.id, storage.status)
            decision = self._decide(group, storage.status, storage.start_date, now)
            enforce_decision(decision, storage.id)

            if decision.tier == CancellationTier.REQUEST:
                request = self._open_request(group, storage, actor_id, reason, now)
                self.ledger.transition_addon(
                    storage,
                    BookingStatus.CANCELLATION_REQUESTED,
                    expected=BookingStatus.CONFIRMED,
                    now=now,
                )
                return CancellationResult(
                    tier=decision.tier,
                    booking_group_id=group.id,
                    storage_booking_id=storage.id,
                    status=storage.status,
                    cancellation_request=request,
                )

            self.ledger.transition_addon(storage, BookingStatus.CANCELLED, now=now)
            action, refunded = self._settle_group(group, storage, now)
            return CancellationResult(
                tier=decision.tier,
                booking_group_id=group.id,
                storage_booking_id=storage.id,
                status=storage.status,
                payment_action=action,
                refunded_cents=refunded,
            )

    def _open_request(
        self,
        group: BookingGroup,
        storage: Optional[StorageBooking],
        actor_id: str,
        reason: Optional[str],
        now: datetime,
    ) -> CancellationRequest:
        storage_id = storage.id if storage else None
        if self.repository.get_open_for_target(group.id, storage_id) is not None:
            raise ConflictException(
                "A cancellation request is already awaiting review",
                code="CANCELLATION_ALREADY_REQUESTED",
                details={"booking_group_id": group.id, "storage_booking_id": storage_id},
            )
        request = self.repository.create(
            booking_group_id=group.id,
            storage_booking_id=storage_id,
            requested_by=actor_id,
            reason=reason,
            requested_at=now,
        )
        self.publisher.publish(
            CancellationRequested(
                request_id=request.id,
                booking_group_id=group.id,
                requested_by=actor_id,
                occurred_at=now,
                storage_booking_id=storage_id,
            )
        )
        return request

    def _settle_group(
        self,
        group: BookingGroup,
        storage: Optional[StorageBooking],
        now: datetime,
        refund_amount_cents: Optional[int] = None,
    ) -> tuple[Optional[str], int]:
        """
        Move money after a cancellation.

        Uncaptured holds are voided when the whole group goes; captured money
        is refunded (the remaining amount for a group, the add-on's share for
        a storage booking, or an explicit manager amount).
        """
        hold = self._hold(group)
        if hold is None:
            return None, 0
        if hold.status == PaymentAuthorizationStatus.AUTHORIZED_HOLD.value:
            if storage is not None:
                return "excluded_from_capture", 0
            self.payment_service.void(hold.id, now=now)
            return "voided", 0
        if hold.status not in {status.value for status in CAPTURED_PAYMENT_STATUSES}:
            return None, 0

        refundable = hold.refundable_amount_cents
        if refund_amount_cents is None:
            amount = refundable
            if storage is not None:
                amount = min(self.ledger.addon_share_cents(group, storage), refundable)
        else:
            amount = refund_amount_cents
            if amount > refundable:
                raise ValidationException(
                    "Refund exceeds the refundable amount",
                    code="REFUND_TOO_LARGE",
                    details={"requested_cents": amount, "refundable_cents": refundable},
                )
        if amount <= 0:
            return None, 0
        self.payment_service.refund(hold.id, amount, reason="cancellation", now=now)
        return "refunded", amount

    @BaseService.measure_operation("resolve_cancellation_request")
    def resolve_cancellation_request(
        self,
        request_id: str,
        manager_id: str,
        outcome: Union[CancellationOutcome, str],
        *,
        notes: Optional[str] = None,
        refund_amount_cents: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> CancellationResult:
        """
        Accept (cancel and refund) or decline (back to confirmed) a request.

        Resolving an already resolved request raises InvalidTransitionException.
        """
        now = now or utc_now()
        outcome = CancellationOutcome(outcome)
        request = self.repository.get_by_id(request_id)
        if request is None:
            raise NotFoundException("CancellationRequest", request_id)

        with self.aggregate_unit(request.booking_group_id):
            request = self.repository.get_for_update(request_id)
            if not request.is_open:
                raise InvalidTransitionException(
                    "cancellation_request",
                    request.id,
                    expected="open",
                    actual=request.outcome,
                    target=outcome.value,
                )
            group = self.ledger.lock_booking_group(request.booking_group_id)
            storage = (
                self.ledger.storage_repository.get_for_update(request.storage_booking_id)
                if request.storage_booking_id
                else None
            )
            action: Optional[str] = None
            refunded = 0
            target = (
                BookingStatus.CANCELLED
                if outcome == CancellationOutcome.ACCEPTED
                else BookingStatus.CONFIRMED
            )
            if storage is not None:
                self.ledger.transition_addon(
                    storage, target, expected=BookingStatus.CANCELLATION_REQUESTED, now=now
                )
            else:
                self.ledger.transition_group(
                    group,
                    target,
                    expected=BookingStatus.CANCELLATION_REQUESTED,
                    actor_id=manager_id,
                    reason=request.reason,
                    now=now,
                )
            if outcome == CancellationOutcome.ACCEPTED:
                action, refunded = self._settle_group(group, storage, now, refund_amount_cents)

            if not self.repository.compare_and_set(
                request.id,
                None,
                outcome,
                column="outcome",
                resolved_at=now,
                resolved_by=manager_id,
                resolution_notes=notes,
                refund_amount_cents=refunded,
            ):
                raise InvalidTransitionException(
                    "cancellation_request",
                    request.id,
                    expected="open",
                    actual="resolved",
                    target=outcome.value,
                )
            self.log_operation(
                "cancellation_request_resolved",
                request_id=request.id,
                outcome=outcome.value,
                manager_id=manager_id,
                refunded_cents=refunded,
            )
            return CancellationResult(
                tier=CancellationTier.REQUEST,
                booking_group_id=group.id,
                storage_booking_id=storage.id if storage else None,
                status=storage.status if storage else group.status,
                payment_action=action,
                refunded_cents=refunded,
                cancellation_request=request,
            )

    def get_request(self, request_id: str) -> CancellationRequest:
        request = self.repository.get_by_id(request_id)
        if request is None:
            raise NotFoundException("CancellationRequest", request_id)
        return request

    def list_open_requests(self, location_id: str) -> List[CancellationRequest]:
        return self.repository.list_open_for_location(location_id)
