"""Damage claims: filing at checkout, chef response, admin decision and settlement."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from app.core.exceptions import (
    ForbiddenException,
    InvalidTransitionException,
    InvariantBreachException,
    ValidationException,
)
from app.core.timezone_utils import ensure_utc
from app.models.booking import CheckoutStatus
from app.models.damage_claim import DamageClaimDecision, DamageClaimHistory, DamageClaimStatus
from app.models.payment import PaymentAuthorizationKind
from app.services.damage_claim_service import DamageClaimService
from tests.factories.listing_builders import (
    ADMIN_ID,
    CHEF_ID,
    MANAGER_ID,
    OTHER_CHEF_ID,
    build_checkout,
)


@pytest.fixture
def damage_claim_service(db, ledger, payment_service):
    return DamageClaimService(db, ledger, payment_service)


@pytest.fixture
def filed_at():
    return datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture
def requested(ledger, checkout_service, marketplace, filed_at):
    group = ledger.checkout_booking_group(CHEF_ID, build_checkout(marketplace))
    group = ledger.approve_booking_group(group.id, MANAGER_ID)
    return checkout_service.request_checkout(
        group.storage_bookings[0].id, CHEF_ID, notes="Emptied", now=filed_at - timedelta(hours=1)
    )


@pytest.fixture
def claim(damage_claim_service, requested, filed_at):
    return damage_claim_service.file_claim(
        requested.id,
        MANAGER_ID,
        title="Cracked shelf",
        description="Bottom shelf cracked through",
        claimed_amount_cents=10000,
        now=filed_at,
    )


@pytest.fixture
def disputed(damage_claim_service, claim, filed_at):
    return damage_claim_service.respond_to_claim(
        claim.id, CHEF_ID, accept=False, response="It was cracked before", now=filed_at + timedelta(hours=2)
    )


def _events(service, claim_id):
    return [entry.event_type for entry in service.get_history(claim_id)]


class TestFileClaim:
    def test_claim_closes_checkout_review(self, ledger, claim, filed_at):
        booking = ledger.get_storage_booking(claim.storage_booking_id)

        assert claim.status == DamageClaimStatus.SUBMITTED.value
        assert claim.chef_id == CHEF_ID
        assert ensure_utc(claim.chef_response_deadline) == filed_at + timedelta(hours=72)
        assert booking.checkout_status == CheckoutStatus.CHECKOUT_CLAIM_FILED.value
        assert booking.checkout_claim_notes == "Bottom shelf cracked through"
        assert booking.status == "confirmed"

    def test_checkout_cannot_be_approved_after_claim(self, checkout_service, claim):
        with pytest.raises(InvalidTransitionException):
            checkout_service.approve_checkout(claim.storage_booking_id, MANAGER_ID)

    def test_claim_needs_pending_checkout(self, damage_claim_service, ledger, marketplace):
        group = ledger.checkout_booking_group(CHEF_ID, build_checkout(marketplace))
        group = ledger.approve_booking_group(group.id, MANAGER_ID)

        with pytest.raises(InvalidTransitionException):
            damage_claim_service.file_claim(
                group.storage_bookings[0].id,
                MANAGER_ID,
                title="Dent",
                description="Door dented",
                claimed_amount_cents=5000,
            )

    def test_second_claim_is_refused(self, damage_claim_service, claim):
        with pytest.raises(InvalidTransitionException):
            damage_claim_service.file_claim(
                claim.storage_booking_id,
                MANAGER_ID,
                title="Again",
                description="Second claim",
                claimed_amount_cents=5000,
            )

    @pytest.mark.parametrize("amount", [999, 500001])
    def test_amount_limits(self, damage_claim_service, requested, amount):
        with pytest.raises(ValidationException) as exc_info:
            damage_claim_service.file_claim(
                requested.id,
                MANAGER_ID,
                title="Dent",
                description="Door dented",
                claimed_amount_cents=amount,
            )

        assert exc_info.value.code == "INVALID_CLAIM_AMOUNT"

    def test_history_starts_with_submission(self, damage_claim_service, claim):
        (entry,) = damage_claim_service.get_history(claim.id)

        assert entry.previous_status is None
        assert entry.new_status == "submitted"
        assert entry.actor_id == MANAGER_ID


class TestChefResponse:
    def test_acceptance_charges_and_completes_booking(
        self, damage_claim_service, ledger, processor, payment_service, claim, filed_at
    ):
        claim = damage_claim_service.respond_to_claim(
            claim.id, CHEF_ID, accept=True, response="Sorry", now=filed_at + timedelta(hours=1)
        )

        assert claim.status == DamageClaimStatus.RESOLVED.value
        assert claim.resolution_type == "paid"
        assert claim.final_amount_cents == 10000
        assert claim.tax_cents == 1300
        assert claim.charged_amount_cents == 11300
        (charge_call,) = processor.calls_for("charge_off_session")
        assert charge_call["idempotency_key"] == f"damage_claim:{claim.id}:1"
        charge = payment_service.get_authorization(claim.payment_authorization_id)
        assert charge.kind == PaymentAuthorizationKind.DAMAGE_CLAIM.value
        assert ledger.get_storage_booking(claim.storage_booking_id).status == "completed"
        assert _events(damage_claim_service, claim.id) == [
            "submitted",
            "chef_accepted",
            "accepted",
            "charge_attempted",
            "charge_succeeded",
            "resolved",
        ]

    def test_dispute_goes_to_review(self, ledger, disputed):
        assert disputed.status == DamageClaimStatus.UNDER_REVIEW.value
        assert disputed.chef_response == "It was cracked before"
        assert ledger.get_storage_booking(disputed.storage_booking_id).status == "confirmed"

    def test_only_the_booking_chef_may_respond(self, damage_claim_service, claim):
        with pytest.raises(ForbiddenException):
            damage_claim_service.respond_to_claim(claim.id, OTHER_CHEF_ID, accept=True, response="Mine?")

    def test_response_after_deadline_is_refused(self, damage_claim_service, claim, filed_at):
        with pytest.raises(InvalidTransitionException):
            damage_claim_service.respond_to_claim(
                claim.id, CHEF_ID, accept=False, response="Late", now=filed_at + timedelta(hours=73)
            )

    def test_response_requires_text(self, damage_claim_service, claim):
        with pytest.raises(ValidationException):
            damage_claim_service.respond_to_claim(claim.id, CHEF_ID, accept=True, response="  ")


class TestAdminDecision:
    def test_partial_approval_charges_the_lower_amount(self, damage_claim_service, processor, disputed):
        claim = damage_claim_service.decide_claim(
            disputed.id,
            ADMIN_ID,
            DamageClaimDecision.PARTIALLY_APPROVE,
            "Shared responsibility",
            approved_amount_cents=4000,
        )

        assert claim.status == DamageClaimStatus.RESOLVED.value
        assert claim.approved_amount_cents == 4000
        assert claim.reviewer_id == ADMIN_ID
        (charge_call,) = processor.calls_for("charge_off_session")
        assert charge_call["amount_cents"] == 4520

    def test_partial_approval_cannot_exceed_claim(self, damage_claim_service, disputed):
        with pytest.raises(ValidationException) as exc_info:
            damage_claim_service.decide_claim(
                disputed.id,
                ADMIN_ID,
                DamageClaimDecision.PARTIALLY_APPROVE,
                "Too much",
                approved_amount_cents=10001,
            )

        assert exc_info.value.code == "INVALID_APPROVED_AMOUNT"

    def test_rejection_releases_unit_without_charge(
        self, damage_claim_service, ledger, processor, disputed
    ):
        claim = damage_claim_service.decide_claim(
            disputed.id, ADMIN_ID, DamageClaimDecision.REJECT, "Pre-existing damage"
        )

        assert claim.status == DamageClaimStatus.REJECTED.value
        assert claim.final_amount_cents == 0
        assert processor.calls_for("charge_off_session") == []
        assert ledger.get_storage_booking(claim.storage_booking_id).status == "completed"

    def test_only_disputed_claims_are_decided(self, damage_claim_service, claim):
        with pytest.raises(InvalidTransitionException):
            damage_claim_service.decide_claim(
                claim.id, ADMIN_ID, DamageClaimDecision.APPROVE, "Skipping the chef"
            )


class TestChargeFailure:
    def test_declined_charge_can_be_retried(self, damage_claim_service, ledger, processor, disputed):
        processor.decline("charge_off_session")
        claim = damage_claim_service.decide_claim(
            disputed.id, ADMIN_ID, DamageClaimDecision.APPROVE, "Photos are clear"
        )

        assert claim.status == DamageClaimStatus.CHARGE_FAILED.value
        assert claim.charge_failure_reason
        assert ledger.get_storage_booking(claim.storage_booking_id).status == "confirmed"

        claim = damage_claim_service.charge_claim(claim.id, MANAGER_ID)

        assert claim.status == DamageClaimStatus.RESOLVED.value
        assert claim.charge_attempts == 2
        keys = [call["idempotency_key"] for call in processor.calls_for("charge_off_session")]
        assert keys == [f"damage_claim:{claim.id}:1", f"damage_claim:{claim.id}:2"]
        assert ledger.get_storage_booking(claim.storage_booking_id).status == "completed"

    def test_failed_claim_resolved_manually(self, damage_claim_service, ledger, processor, disputed):
        processor.decline("charge_off_session")
        damage_claim_service.decide_claim(
            disputed.id, ADMIN_ID, DamageClaimDecision.APPROVE, "Photos are clear"
        )

        claim = damage_claim_service.resolve_failed_claim(disputed.id, ADMIN_ID, "Paid in cash")

        assert claim.status == DamageClaimStatus.RESOLVED.value
        assert claim.resolution_type == "manual"
        assert ledger.get_storage_booking(claim.storage_booking_id).status == "completed"

    def test_submitted_claim_cannot_be_charged(self, damage_claim_service, claim):
        with pytest.raises(InvalidTransitionException):
            damage_claim_service.charge_claim(claim.id, MANAGER_ID)


class TestRefund:
    def test_partial_refund_keeps_claim_resolved(self, damage_claim_service, payment_service, claim):
        damage_claim_service.respond_to_claim(claim.id, CHEF_ID, accept=True, response="OK")

        claim = damage_claim_service.refund_claim(claim.id, MANAGER_ID, amount_cents=2000, reason="Goodwill")

        assert claim.status == DamageClaimStatus.RESOLVED.value
        assert claim.refunded_amount_cents == 2000
        charge = payment_service.get_authorization(claim.payment_authorization_id)
        assert charge.status == "partially_refunded"
        assert _events(damage_claim_service, claim.id)[-1] == "refunded"

    def test_rejected_claim_has_nothing_to_refund(self, damage_claim_service, disputed):
        damage_claim_service.decide_claim(disputed.id, ADMIN_ID, DamageClaimDecision.REJECT, "No")

        with pytest.raises(InvalidTransitionException):
            damage_claim_service.refund_claim(disputed.id, MANAGER_ID)


class TestDeadlineSweep:
    def test_unanswered_claim_is_approved_after_deadline(
        self, damage_claim_service, processor, claim, filed_at
    ):
        assert damage_claim_service.expire_unanswered_claims(now=filed_at + timedelta(hours=71))[
            "approved"
        ] == 0

        stats = damage_claim_service.expire_unanswered_claims(now=filed_at + timedelta(hours=73))

        assert stats == {"approved": 1, "skipped": 0, "failed": 0}
        claim = damage_claim_service.get_claim(claim.id)
        assert claim.status == DamageClaimStatus.APPROVED.value
        assert claim.final_amount_cents == 10000
        assert processor.calls_for("charge_off_session") == []
        assert _events(damage_claim_service, claim.id)[-1] == "deadline_expired"

    def test_rerun_is_a_no_op(self, damage_claim_service, claim, filed_at):
        later = filed_at + timedelta(hours=80)
        damage_claim_service.expire_unanswered_claims(now=later)

        assert damage_claim_service.expire_unanswered_claims(now=later)["approved"] == 0

    def test_disputed_claims_are_left_alone(self, damage_claim_service, disputed, filed_at):
        stats = damage_claim_service.expire_unanswered_claims(now=filed_at + timedelta(days=10))

        assert stats["approved"] == 0
        assert damage_claim_service.get_claim(disputed.id).status == "under_review"


def test_history_is_append_only(db, damage_claim_service, claim):
    entry = db.query(DamageClaimHistory).filter_by(damage_claim_id=claim.id).one()
    entry.description = "rewritten"

    with pytest.raises(InvariantBreachException):
        db.flush()
    db.rollback()
