"""Overstay detection, grace period, pricing and manager settlement."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.core.exceptions import (
    InvalidTransitionException,
    InvariantBreachException,
    ValidationException,
)
from app.core.timezone_utils import ensure_utc
from app.models.listing import Location, StorageListing
from app.models.overstay import OverstayStatus
from app.services.overstay_penalty_service import days_overdue, resolve_penalty_config
from tests.factories.listing_builders import (
    CHEF_ID,
    MANAGER_ID,
    build_checkout,
    create_marketplace,
)


@pytest.fixture
def marketplace(db):
    # Half the daily rate per overdue day
    return create_marketplace(db, daily_rate_cents=2000, overstay_penalty_rate=Decimal("0.5"))


@pytest.fixture
def storage_booking(ledger, marketplace):
    group = ledger.checkout_booking_group(CHEF_ID, build_checkout(marketplace))
    group = ledger.approve_booking_group(group.id, MANAGER_ID)
    return group.storage_bookings[0]


@pytest.fixture
def end_date(storage_booking) -> datetime:
    return ensure_utc(storage_booking.end_date)


@pytest.fixture
def grace_record(overstay_service, marketplace, storage_booking, end_date):
    stats = overstay_service.run_overstay_sweep(now=end_date + timedelta(hours=1))
    assert stats["detected"] == 1
    (record,) = overstay_service.list_for_location(marketplace.location.id)
    return record


@pytest.fixture
def review_record(overstay_service, grace_record):
    grace_end = ensure_utc(grace_record.grace_period_ends_at)
    overstay_service.run_overstay_sweep(now=grace_end + timedelta(days=2, hours=12))
    return overstay_service.get_record(grace_record.id)


class TestPenaltyHelpers:
    GRACE_END = datetime(2026, 6, 1, 0, 0, tzinfo=timezone.utc)

    def test_no_days_before_grace_ends(self):
        assert days_overdue(self.GRACE_END, self.GRACE_END, 30) == 0
        assert days_overdue(self.GRACE_END, self.GRACE_END - timedelta(hours=5), 30) == 0

    def test_partial_day_counts_as_a_day(self):
        assert days_overdue(self.GRACE_END, self.GRACE_END + timedelta(minutes=1), 30) == 1
        assert days_overdue(self.GRACE_END, self.GRACE_END + timedelta(days=2, hours=1), 30) == 3

    def test_days_are_capped(self):
        assert days_overdue(self.GRACE_END, self.GRACE_END + timedelta(days=45), 30) == 30

    def test_listing_overrides_location_overrides_defaults(self):
        listing = StorageListing(overstay_penalty_rate=Decimal("0.25"))
        location = Location(overstay_grace_period_hours=24, overstay_penalty_rate=Decimal("0.2"))

        config = resolve_penalty_config(listing, location)

        assert config.penalty_rate == Decimal("0.25")
        assert config.grace_period_hours == 24
        assert config.max_penalty_days == 30

    def test_platform_defaults(self):
        config = resolve_penalty_config(None, None)

        assert config.grace_period_hours == 72
        assert config.penalty_rate == Decimal("0.1")
        assert config.max_penalty_days == 30


class TestSweep:
    def test_first_tick_opens_record_in_grace_period(self, overstay_service, grace_record, end_date):
        assert grace_record.status == OverstayStatus.GRACE_PERIOD.value
        assert ensure_utc(grace_record.grace_period_ends_at) == end_date + timedelta(hours=72)
        assert grace_record.daily_rate_cents == 2000
        assert grace_record.calculated_penalty_cents == 0

        history = overstay_service.get_history(grace_record.id)
        assert [entry.event_type for entry in history] == ["detected", "grace_started"]

    def test_nothing_detected_before_end_date(self, overstay_service, storage_booking, end_date):
        stats = overstay_service.run_overstay_sweep(now=end_date - timedelta(hours=1))

        assert stats["detected"] == 0

    def test_rerun_does_not_open_a_second_record(self, overstay_service, marketplace, grace_record, end_date):
        stats = overstay_service.run_overstay_sweep(now=end_date + timedelta(hours=2))

        assert stats["detected"] == 0
        assert len(overstay_service.list_for_location(marketplace.location.id)) == 1

    def test_grace_end_moves_record_to_review_with_price(self, review_record):
        assert review_record.status == OverstayStatus.PENDING_REVIEW.value
        assert review_record.days_overdue == 3
        assert review_record.calculated_penalty_cents == 3000

    def test_pending_record_is_repriced_as_days_pass(self, overstay_service, review_record):
        grace_end = ensure_utc(review_record.grace_period_ends_at)

        stats = overstay_service.run_overstay_sweep(now=grace_end + timedelta(days=4, hours=1))

        record = overstay_service.get_record(review_record.id)
        assert stats["repriced"] == 1
        assert record.days_overdue == 5
        assert record.calculated_penalty_cents == 5000

    def test_checkout_during_grace_resolves_record(
        self, overstay_service, checkout_service, grace_record, storage_booking, end_date
    ):
        checkout_service.request_checkout(storage_booking.id, CHEF_ID, now=end_date + timedelta(hours=2))
        checkout_service.approve_checkout(storage_booking.id, MANAGER_ID, now=end_date + timedelta(hours=3))

        stats = overstay_service.run_overstay_sweep(now=end_date + timedelta(hours=4))

        record = overstay_service.get_record(grace_record.id)
        assert stats["resolved"] == 1
        assert record.status == OverstayStatus.RESOLVED.value
        assert record.resolution_type == "checked_out"

    def test_released_unit_stops_accruing_days(
        self, overstay_service, checkout_service, review_record, storage_booking
    ):
        grace_end = ensure_utc(review_record.grace_period_ends_at)
        released_at = grace_end + timedelta(days=2, hours=13)
        checkout_service.request_checkout(
            storage_booking.id,
            CHEF_ID,
            photo_urls=["https://photos.example.com/unit-empty.jpg"],
            now=released_at,
        )
        checkout_service.approve_checkout(storage_booking.id, MANAGER_ID, now=released_at)

        stats = overstay_service.run_overstay_sweep(now=grace_end + timedelta(days=20))

        record = overstay_service.get_record(review_record.id)
        assert stats["repriced"] == 0
        assert record.status == OverstayStatus.PENDING_REVIEW.value
        assert record.days_overdue == 3
        assert record.calculated_penalty_cents == 3000
        assert overstay_service.preview_penalty(record.id, now=grace_end + timedelta(days=20)) == (3, 3000)

    def test_pending_checkout_request_freezes_days(
        self, overstay_service, checkout_service, review_record, storage_booking
    ):
        grace_end = ensure_utc(review_record.grace_period_ends_at)
        checkout_service.request_checkout(
            storage_booking.id,
            CHEF_ID,
            photo_urls=["https://photos.example.com/unit-empty.jpg"],
            now=grace_end + timedelta(days=3, hours=6),
        )

        overstay_service.run_overstay_sweep(now=grace_end + timedelta(days=9))

        record = overstay_service.get_record(review_record.id)
        assert record.days_overdue == 4
        assert record.calculated_penalty_cents == 4000

    def test_second_open_record_is_an_invariant_breach(
        self, db, overstay_service, grace_record, storage_booking, end_date
    ):
        with pytest.raises(InvariantBreachException):
            overstay_service.open_record(storage_booking, now=end_date + timedelta(hours=5))
        db.rollback()


class TestManagerSettlement:
    def test_approve_then_charge_with_tax(self, overstay_service, processor, review_record, marketplace):
        overstay_service.approve_penalty(review_record.id, MANAGER_ID, notes="Fair")
        record = overstay_service.charge_penalty(review_record.id, MANAGER_ID)

        assert record.status == OverstayStatus.RESOLVED.value
        assert record.resolution_type == "charged"
        assert record.final_penalty_cents == 3000
        assert record.tax_cents == 390
        assert record.charged_amount_cents == 3390
        (charge_call,) = processor.calls_for("charge_off_session")
        assert charge_call["amount_cents"] == 3390
        assert charge_call["idempotency_key"] == f"overstay_penalty:{record.id}"
        assert overstay_service.stats_for_location(marketplace.location.id)["collected_cents"] == 3390

    def test_manager_may_lower_but_not_raise(self, overstay_service, review_record):
        with pytest.raises(ValidationException) as exc_info:
            overstay_service.approve_penalty(review_record.id, MANAGER_ID, final_penalty_cents=3001)
        assert exc_info.value.code == "INVALID_FINAL_PENALTY"

        record = overstay_service.approve_penalty(
            review_record.id, MANAGER_ID, final_penalty_cents=1000
        )
        assert record.final_penalty_cents == 1000

    def test_zero_penalty_resolves_without_processor(self, overstay_service, processor, review_record):
        overstay_service.approve_penalty(review_record.id, MANAGER_ID, final_penalty_cents=0)

        record = overstay_service.charge_penalty(review_record.id, MANAGER_ID)

        assert record.status == OverstayStatus.RESOLVED.value
        assert processor.calls_for("charge_off_session") == []

    def test_declined_charge_escalates(self, overstay_service, processor, review_record):
        processor.decline("charge_off_session")
        overstay_service.approve_penalty(review_record.id, MANAGER_ID)

        record = overstay_service.charge_penalty(review_record.id, MANAGER_ID)

        assert record.status == OverstayStatus.ESCALATED.value
        assert record.charge_failure_reason
        events = [entry.event_type for entry in overstay_service.get_history(record.id)]
        assert events[-2:] == ["charge_failed", "escalated"]

        record = overstay_service.resolve_escalated(record.id, "admin-1", "Paid by e-transfer")
        assert record.status == OverstayStatus.RESOLVED.value
        assert record.resolution_type == "manual"

    def test_charge_requires_approval(self, overstay_service, review_record):
        with pytest.raises(InvalidTransitionException):
            overstay_service.charge_penalty(review_record.id, MANAGER_ID)

    def test_waive_resolves_record(self, overstay_service, review_record):
        record = overstay_service.waive_penalty(review_record.id, MANAGER_ID, "First offence")

        assert record.status == OverstayStatus.RESOLVED.value
        assert record.penalty_waived is True
        assert record.resolution_type == "waived"

    def test_waive_requires_reason(self, overstay_service, review_record):
        with pytest.raises(ValidationException):
            overstay_service.waive_penalty(review_record.id, MANAGER_ID, " ")

    def test_refund_charged_penalty(self, overstay_service, payment_service, review_record):
        overstay_service.approve_penalty(review_record.id, MANAGER_ID)
        overstay_service.charge_penalty(review_record.id, MANAGER_ID)

        record = overstay_service.refund_penalty(review_record.id, MANAGER_ID, amount_cents=1000)

        assert record.status == OverstayStatus.RESOLVED.value
        assert record.refunded_amount_cents == 1000
        charge = payment_service.get_authorization(record.payment_authorization_id)
        assert charge.status == "partially_refunded"

    def test_refund_requires_a_charge(self, overstay_service, review_record):
        overstay_service.waive_penalty(review_record.id, MANAGER_ID, "Goodwill")

        with pytest.raises(InvalidTransitionException):
            overstay_service.refund_penalty(review_record.id, MANAGER_ID)
