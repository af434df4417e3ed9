# backend/app/services/damage_claim_service.py
"""
Damage Claim Workflow for storage checkouts.

A manager who finds damage when reviewing a checkout files a claim instead of
approving it. The chef accepts or disputes the claim before the response
deadline; silence past the deadline counts as acceptance. Disputes are decided
by an admin. Approved amounts are charged off-session against the chef's
saved card, and the storage booking completes once the claim is settled.

Every transition appends a DamageClaimHistory row.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.constants import SWEEP_BATCH_LIMIT
from ..core.enums import ActorSource
from ..core.exceptions import (
    BookingLockedException,
    DomainException,
    ForbiddenException,
    InvalidTransitionException,
    NotFoundException,
    PaymentFailureException,
    ValidationException,
)
from ..core.timezone_utils import ensure_utc, utc_now
from ..domain.state_machines import DAMAGE_CLAIM_MACHINE
from ..events.booking_events import DamageClaimStatusChanged
from ..events.publisher import EventPublisher
from ..models.booking import BookingStatus
from ..models.damage_claim import (
    DamageClaim,
    DamageClaimDecision,
    DamageClaimHistory,
    DamageClaimResolution,
    DamageClaimStatus,
)
from ..models.payment import PaymentAuthorizationKind
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .booking_ledger_service import BookingLedgerService
from .payment_authorization_service import PaymentAuthorizationService
from .pricing_service import calculate_tax
from .storage_checkout_service import StorageCheckoutService

logger = logging.getLogger(__name__)

CHARGEABLE_STATUSES = (
    DamageClaimStatus.APPROVED.value,
    DamageClaimStatus.PARTIALLY_APPROVED.value,
    DamageClaimStatus.CHARGE_FAILED.value,
)


@dataclass
class ExpirySweepStats:
    approved: int = 0
    skipped: int = 0
    failed: int = 0

    def as_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


class DamageClaimService(BaseService):
    """Files, decides and settles storage damage claims."""

    def __init__(
        self,
        db: Session,
        ledger: BookingLedgerService,
        payment_service: PaymentAuthorizationService,
    ):
        super().__init__(db)
        self.ledger = ledger
        self.payment_service = payment_service
        self.checkout_service = StorageCheckoutService(db, ledger)
        self.repository = RepositoryFactory.create_damage_claim_repository(db)
        self.storage_repository = RepositoryFactory.create_storage_booking_repository(db)
        self.listing_repository = RepositoryFactory.create_listing_repository(db)
        self.publisher = EventPublisher(RepositoryFactory.create_event_outbox_repository(db))

    # Queries

    def get_claim(self, claim_id: str) -> DamageClaim:
        claim = self.repository.get_by_id(claim_id)
        if claim is None:
            raise NotFoundException("DamageClaim", claim_id)
        return claim

    def get_history(self, claim_id: str) -> List[DamageClaimHistory]:
        self.get_claim(claim_id)
        return self.repository.list_history(claim_id)

    def list_for_location(
        self, location_id: str, statuses: Optional[List[str]] = None
    ) -> List[DamageClaim]:
        return self.repository.list_for_location(location_id, statuses=statuses)

    def list_for_chef(self, chef_id: str, statuses: Optional[List[str]] = None) -> List[DamageClaim]:
        return self.repository.list_for_chef(chef_id, statuses=statuses)

    # Guarded transitions

    def _lock(self, claim_id: str) -> DamageClaim:
        claim = self.repository.get_for_update(claim_id)
        if claim is None:
            raise NotFoundException("DamageClaim", claim_id)
        return claim

    def _in_claim_unit(self, claim_id: str):
        return self.aggregate_unit(self.get_claim(claim_id).booking_group_id)

    def _transition(
        self,
        claim: DamageClaim,
        target: DamageClaimStatus,
        *,
        event_type: str,
        source: ActorSource,
        now: datetime,
        actor_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        **values: Any,
    ) -> None:
        previous = claim.status
        DAMAGE_CLAIM_MACHINE.require(previous, target, entity_id=claim.id)
        if target == DamageClaimStatus.RESOLVED:
            values.setdefault("resolved_at", now)
        if not self.repository.compare_and_set(claim.id, previous, target, **values):
            current = self.repository.get_for_update(claim.id)
            raise InvalidTransitionException(
                DAMAGE_CLAIM_MACHINE.name,
                claim.id,
                expected=previous,
                actual=current.status if current else None,
                target=target.value,
            )
        self.repository.append_history(
            claim.id,
            previous_status=previous,
            new_status=target.value,
            event_type=event_type,
            event_source=source.value,
            actor_id=actor_id,
            description=description,
            metadata=metadata,
        )
        prometheus_metrics.record_transition(DAMAGE_CLAIM_MACHINE.name, previous, target.value)
        self.publisher.publish(
            DamageClaimStatusChanged(
                claim_id=claim.id,
                storage_booking_id=claim.storage_booking_id,
                previous_status=previous,
                new_status=target.value,
                occurred_at=now,
                amounts={
                    "claimed_amount_cents": claim.claimed_amount_cents,
                    "final_amount_cents": claim.final_amount_cents,
                    "charged_amount_cents": claim.charged_amount_cents,
                },
            )
        )
        self.log_operation(
            "damage_claim_transition",
            claim_id=claim.id,
            storage_booking_id=claim.storage_booking_id,
            previous_status=previous,
            new_status=target.value,
            source=source.value,
            actor_id=actor_id,
        )

    def _release_booking(self, claim: DamageClaim, now: datetime) -> None:
        """A settled claim releases the unit it was filed against."""
        booking = self.storage_repository.get_for_update(claim.storage_booking_id)
        if booking is not None and booking.status == BookingStatus.CONFIRMED.value:
            self.ledger.transition_addon(
                booking, BookingStatus.COMPLETED, expected=BookingStatus.CONFIRMED, now=now
            )

    # Manager actions

    @BaseService.measure_operation("file_damage_claim")
    def file_claim(
        self,
        storage_booking_id: str,
        manager_id: str,
        *,
        title: str,
        description: str,
        claimed_amount_cents: int,
        damage_date: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> DamageClaim:
        """
        File a claim against a checkout awaiting review.

        The checkout moves to ``checkout_claim_filed`` in the same unit and the
        chef gets ``damage_claim_response_hours`` to answer.
        """
        now = now or utc_now()
        title = (title or "").strip()
        description = (description or "").strip()
        if not title or not description:
            raise ValidationException(
                "A claim title and description are required", code="CLAIM_DETAILS_REQUIRED"
            )
        if not (
            settings.damage_claim_min_amount_cents
            <= claimed_amount_cents
            <= settings.damage_claim_max_amount_cents
        ):
            raise ValidationException(
                "Claimed amount is outside the allowed range",
                code="INVALID_CLAIM_AMOUNT",
                details={
                    "claimed_amount_cents": claimed_amount_cents,
                    "min_amount_cents": settings.damage_claim_min_amount_cents,
                    "max_amount_cents": settings.damage_claim_max_amount_cents,
                },
            )
        booking = self.ledger.get_storage_booking(storage_booking_id)
        with self.aggregate_unit(booking.booking_group_id):
            booking = self.storage_repository.get_for_update(storage_booking_id)
            if booking.status != BookingStatus.CONFIRMED.value:
                raise InvalidTransitionException(
                    "storage_booking",
                    booking.id,
                    expected=BookingStatus.CONFIRMED.value,
                    actual=booking.status,
                    target="file_damage_claim",
                )
            self.checkout_service.mark_claim_filed(booking, manager_id, description, now=now)
            deadline = now + timedelta(hours=settings.damage_claim_response_hours)
            claim = self.repository.create(
                storage_booking_id=booking.id,
                booking_group_id=booking.booking_group_id,
                chef_id=booking.chef_id,
                manager_id=manager_id,
                status=DamageClaimStatus.SUBMITTED.value,
                claim_title=title,
                claim_description=description,
                damage_date=damage_date,
                claimed_amount_cents=claimed_amount_cents,
                submitted_at=now,
                chef_response_deadline=deadline,
                refunded_amount_cents=0,
                charge_attempts=0,
            )
            self.repository.append_history(
                claim.id,
                previous_status=None,
                new_status=DamageClaimStatus.SUBMITTED.value,
                event_type="submitted",
                event_source=ActorSource.MANAGER.value,
                actor_id=manager_id,
                description=title,
                metadata={
                    "claimed_amount_cents": claimed_amount_cents,
                    "chef_response_deadline": deadline.isoformat(),
                },
            )
            prometheus_metrics.record_transition(
                DAMAGE_CLAIM_MACHINE.name, None, DamageClaimStatus.SUBMITTED.value
            )
            self.log_operation(
                "damage_claim_filed",
                claim_id=claim.id,
                storage_booking_id=booking.id,
                manager_id=manager_id,
                claimed_amount_cents=claimed_amount_cents,
            )
        return claim

    # Chef actions

    @BaseService.measure_operation("respond_to_damage_claim")
    def respond_to_claim(
        self,
        claim_id: str,
        chef_id: str,
        *,
        accept: bool,
        response: str,
        now: Optional[datetime] = None,
    ) -> DamageClaim:
        """
        Accept or dispute a submitted claim before its deadline.

        Acceptance approves the full claimed amount and charges it right away;
        a dispute goes to an admin.
        """
        now = now or utc_now()
        response = (response or "").strip()
        if not response:
            raise ValidationException("A response is required", code="RESPONSE_REQUIRED")
        with self._in_claim_unit(claim_id):
            claim = self._lock(claim_id)
            if claim.chef_id != chef_id:
                raise ForbiddenException(
                    "Only the chef on the booking can respond to this claim",
                    code="FORBIDDEN",
                    details={"claim_id": claim.id},
                )
            if claim.status == DamageClaimStatus.SUBMITTED.value and ensure_utc(now) > ensure_utc(
                claim.chef_response_deadline
            ):
                raise InvalidTransitionException(
                    DAMAGE_CLAIM_MACHINE.name,
                    claim.id,
                    expected="submitted (before deadline)",
                    actual=claim.status,
                    target="respond",
                )
            if accept:
                self._transition(
                    claim,
                    DamageClaimStatus.CHEF_ACCEPTED,
                    event_type="chef_accepted",
                    source=ActorSource.CHEF,
                    actor_id=chef_id,
                    now=now,
                    description=response,
                    chef_response=response,
                    chef_responded_at=now,
                )
                self._approve_full(claim, now, event_type="accepted", description="Approved on chef acceptance")
                self._charge(claim, chef_id, ActorSource.SYSTEM, now)
            else:
                self._transition(
                    claim,
                    DamageClaimStatus.UNDER_REVIEW,
                    event_type="chef_disputed",
                    source=ActorSource.CHEF,
                    actor_id=chef_id,
                    now=now,
                    description=response,
                    chef_response=response,
                    chef_responded_at=now,
                )
        return claim

    def _approve_full(self, claim: DamageClaim, now: datetime, *, event_type: str, description: str) -> None:
        self._transition(
            claim,
            DamageClaimStatus.APPROVED,
            event_type=event_type,
            source=ActorSource.SYSTEM,
            now=now,
            description=description,
            metadata={"approved_amount_cents": claim.claimed_amount_cents},
            approved_amount_cents=claim.claimed_amount_cents,
            final_amount_cents=claim.claimed_amount_cents,
        )

    # Admin actions

    @BaseService.measure_operation("decide_damage_claim")
    def decide_claim(
        self,
        claim_id: str,
        admin_id: str,
        decision: DamageClaimDecision,
        reason: str,
        *,
        approved_amount_cents: Optional[int] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DamageClaim:
        """
        Decide a disputed claim.

        Approval charges the approved amount immediately; a rejection closes
        the claim and releases the unit.
        """
        now = now or utc_now()
        decision = DamageClaimDecision(decision)
        reason = (reason or "").strip()
        if not reason:
            raise ValidationException("A decision reason is required", code="REASON_REQUIRED")
        with self._in_claim_unit(claim_id):
            claim = self._lock(claim_id)
            if decision == DamageClaimDecision.APPROVE:
                target, amount = DamageClaimStatus.APPROVED, claim.claimed_amount_cents
            elif decision == DamageClaimDecision.PARTIALLY_APPROVE:
                if approved_amount_cents is None or not (
                    0 < approved_amount_cents <= claim.claimed_amount_cents
                ):
                    raise ValidationException(
                        "Approved amount must be positive and at most the claimed amount",
                        code="INVALID_APPROVED_AMOUNT",
                        details={
                            "approved_amount_cents": approved_amount_cents,
                            "claimed_amount_cents": claim.claimed_amount_cents,
                        },
                    )
                target, amount = DamageClaimStatus.PARTIALLY_APPROVED, approved_amount_cents
            else:
                target, amount = DamageClaimStatus.REJECTED, 0
            self._transition(
                claim,
                target,
                event_type="admin_decision",
                source=ActorSource.ADMIN,
                actor_id=admin_id,
                now=now,
                description=reason,
                metadata={"decision": decision.value, "approved_amount_cents": amount},
                approved_amount_cents=amount,
                final_amount_cents=amount,
                reviewer_id=admin_id,
                reviewed_at=now,
                decision_reason=reason,
                reviewer_notes=notes,
            )
            if target == DamageClaimStatus.REJECTED:
                self._release_booking(claim, now)
            else:
                self._charge(claim, admin_id, ActorSource.SYSTEM, now)
        return claim

    @BaseService.measure_operation("resolve_failed_damage_claim")
    def resolve_failed_claim(
        self,
        claim_id: str,
        admin_id: str,
        notes: str,
        *,
        now: Optional[datetime] = None,
    ) -> DamageClaim:
        """Close a claim whose charge failed after off-platform settlement."""
        now = now or utc_now()
        with self._in_claim_unit(claim_id):
            claim = self._lock(claim_id)
            self._transition(
                claim,
                DamageClaimStatus.RESOLVED,
                event_type="manually_resolved",
                source=ActorSource.ADMIN,
                actor_id=admin_id,
                now=now,
                description=notes,
                resolution_type=DamageClaimResolution.MANUAL.value,
                resolution_notes=notes,
            )
            self._release_booking(claim, now)
        return claim

    # Charging

    @BaseService.measure_operation("charge_damage_claim")
    def charge_claim(
        self, claim_id: str, actor_id: str, *, now: Optional[datetime] = None
    ) -> DamageClaim:
        """Charge, or retry charging, an approved claim."""
        now = now or utc_now()
        with self._in_claim_unit(claim_id):
            claim = self._lock(claim_id)
            if claim.status not in CHARGEABLE_STATUSES:
                raise InvalidTransitionException(
                    DAMAGE_CLAIM_MACHINE.name,
                    claim.id,
                    expected=" | ".join(CHARGEABLE_STATUSES),
                    actual=claim.status,
                    target=DamageClaimStatus.CHARGE_PENDING.value,
                )
            self._charge(claim, actor_id, ActorSource.MANAGER, now)
        return claim

    def _charge(self, claim: DamageClaim, actor_id: str, source: ActorSource, now: datetime) -> None:
        """
        Charge the final amount plus tax off-session inside the caller's unit.

        Each attempt has its own idempotency key so a retry after a decline
        reaches the processor again.
        """
        group = self.ledger.lock_booking_group(claim.booking_group_id)
        kitchen = self.listing_repository.get_kitchen(group.kitchen_id)
        final = int(claim.final_amount_cents or 0)
        tax = calculate_tax(final, kitchen.tax_rate_percent if kitchen else None)
        total = final + tax
        attempt = int(claim.charge_attempts or 0) + 1
        self._transition(
            claim,
            DamageClaimStatus.CHARGE_PENDING,
            event_type="charge_attempted",
            source=source,
            actor_id=actor_id,
            now=now,
            metadata={"final_amount_cents": final, "tax_cents": tax, "total_cents": total, "attempt": attempt},
            tax_cents=tax,
            charge_attempts=attempt,
            charge_attempted_at=now,
        )

        failure: Optional[str] = None
        if not group.stripe_payment_method_id:
            failure = "No saved payment method on file"
        else:
            try:
                charge = self.payment_service.charge_off_session(
                    total,
                    customer_id=group.stripe_customer_id,
                    payment_method_id=group.stripe_payment_method_id,
                    idempotency_key=f"damage_claim:{claim.id}:{attempt}",
                    metadata={"damage_claim_id": claim.id, "storage_booking_id": claim.storage_booking_id},
                    kind=PaymentAuthorizationKind.DAMAGE_CLAIM,
                    now=now,
                )
            except PaymentFailureException as exc:
                failure = exc.message
        if failure is not None:
            self.logger.error("damage_claim_charge_failed", extra={"claim_id": claim.id, "reason": failure})
            self._transition(
                claim,
                DamageClaimStatus.CHARGE_FAILED,
                event_type="charge_failed",
                source=ActorSource.SYSTEM,
                actor_id=actor_id,
                now=now,
                description=failure,
                charge_failed_at=now,
                charge_failure_reason=failure,
            )
            return
        self._transition(
            claim,
            DamageClaimStatus.CHARGE_SUCCEEDED,
            event_type="charge_succeeded",
            source=ActorSource.SYSTEM,
            actor_id=actor_id,
            now=now,
            metadata={"charged_amount_cents": total},
            charged_amount_cents=total,
            charge_succeeded_at=now,
            payment_authorization_id=charge.id,
            stripe_payment_intent_id=charge.processor_authorization_id,
            stripe_charge_id=charge.stripe_charge_id,
        )
        self._transition(
            claim,
            DamageClaimStatus.RESOLVED,
            event_type="resolved",
            source=ActorSource.SYSTEM,
            actor_id=actor_id,
            now=now,
            resolution_type=DamageClaimResolution.PAID.value,
        )
        self._release_booking(claim, now)

    @BaseService.measure_operation("refund_damage_claim")
    def refund_claim(
        self,
        claim_id: str,
        actor_id: str,
        *,
        amount_cents: Optional[int] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DamageClaim:
        """Refund part or all of a paid claim; the claim stays resolved."""
        now = now or utc_now()
        with self._in_claim_unit(claim_id):
            claim = self._lock(claim_id)
            if (
                claim.status != DamageClaimStatus.RESOLVED.value
                or claim.resolution_type != DamageClaimResolution.PAID.value
                or not claim.payment_authorization_id
            ):
                raise InvalidTransitionException(
                    DAMAGE_CLAIM_MACHINE.name,
                    claim.id,
                    expected="resolved (paid)",
                    actual=claim.status,
                    target="refund",
                )
            charge = self.payment_service.get_authorization(claim.payment_authorization_id)
            amount = charge.refundable_amount_cents if amount_cents is None else amount_cents
            self.payment_service.refund(charge.id, amount, reason=reason or "damage_claim_refund", now=now)
            previous_refunded = int(claim.refunded_amount_cents or 0)
            if not self.repository.compare_and_set(
                claim.id,
                DamageClaimStatus.RESOLVED,
                DamageClaimStatus.RESOLVED,
                guards={"refunded_amount_cents": previous_refunded},
                refunded_amount_cents=previous_refunded + amount,
            ):
                raise InvalidTransitionException(
                    DAMAGE_CLAIM_MACHINE.name,
                    claim.id,
                    expected=DamageClaimStatus.RESOLVED.value,
                    actual=claim.status,
                    target="refund",
                )
            self.repository.append_history(
                claim.id,
                previous_status=DamageClaimStatus.RESOLVED.value,
                new_status=DamageClaimStatus.RESOLVED.value,
                event_type="refunded",
                event_source=ActorSource.MANAGER.value,
                actor_id=actor_id,
                description=reason,
                metadata={"amount_cents": amount, "refunded_total_cents": previous_refunded + amount},
            )
        return claim

    # Sweep

    @BaseService.measure_operation("expire_unanswered_damage_claims")
    def expire_unanswered_claims(
        self, *, now: Optional[datetime] = None, limit: int = SWEEP_BATCH_LIMIT
    ) -> Dict[str, int]:
        """
        Approve every submitted claim whose response deadline has passed.

        The approved claim then waits for a manager to charge it. Re-running
        is a no-op.
        """
        now = now or utc_now()
        stats = ExpirySweepStats()
        candidates = [
            (claim.id, claim.booking_group_id)
            for claim in self.repository.list_unanswered_past_deadline(now, limit)
        ]
        for claim_id, group_id in candidates:
            try:
                with self.aggregate_unit(group_id):
                    claim = self._lock(claim_id)
                    if claim.status != DamageClaimStatus.SUBMITTED.value or ensure_utc(
                        claim.chef_response_deadline
                    ) > ensure_utc(now):
                        stats.skipped += 1
                        prometheus_metrics.record_sweep_item("damage_claim_expiry", "skipped")
                        continue
                    self._approve_full(
                        claim,
                        now,
                        event_type="deadline_expired",
                        description="Chef did not respond by the deadline",
                    )
                stats.approved += 1
                prometheus_metrics.record_sweep_item("damage_claim_expiry", "approved")
            except (InvalidTransitionException, BookingLockedException) as exc:
                stats.skipped += 1
                prometheus_metrics.record_sweep_item("damage_claim_expiry", "skipped")
                self.logger.warning(
                    "damage_claim_expiry_skipped", extra={"claim_id": claim_id, "error": exc.message}
                )
            except DomainException as exc:
                stats.failed += 1
                prometheus_metrics.record_sweep_item("damage_claim_expiry", "failed")
                self.logger.error(
                    "damage_claim_expiry_failed", extra={"claim_id": claim_id, "error": exc.message}
                )
        self.logger.info("damage_claim_expiry_complete", extra=stats.as_dict())
        return stats.as_dict()
