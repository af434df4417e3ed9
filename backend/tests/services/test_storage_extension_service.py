"""Paid storage extensions and their manager review."""

from __future__ import annotations

from datetime import timedelta

import pytest

from app.core.exceptions import (
    BelowMinimumException,
    ConflictException,
    InvalidTransitionException,
)
from app.core.timezone_utils import ensure_utc
from app.models.overstay import OverstayResolution, OverstayStatus
from app.models.storage_extension import ExtensionStatus
from tests.factories.listing_builders import CHEF_ID, MANAGER_ID, build_checkout


@pytest.fixture
def storage_booking(ledger, marketplace):
    group = ledger.checkout_booking_group(CHEF_ID, build_checkout(marketplace))
    group = ledger.approve_booking_group(group.id, MANAGER_ID)
    return group.storage_bookings[0]


@pytest.fixture
def extension(extension_service, storage_booking):
    new_end = ensure_utc(storage_booking.end_date) + timedelta(days=5)
    return extension_service.request_extension(storage_booking.id, CHEF_ID, new_end)


@pytest.fixture
def paid_extension(extension_service, extension):
    return extension_service.pay_extension(extension.id)


class TestRequestExtension:
    def test_five_days_priced_with_kitchen_tax(self, extension):
        assert extension.status == ExtensionStatus.PENDING.value
        assert (
            extension.extension_days,
            extension.base_price_cents,
            extension.tax_cents,
            extension.total_price_cents,
        ) == (5, 5000, 650, 5650)

    def test_shorter_than_listing_minimum(self, db, extension_service, marketplace, storage_booking):
        marketplace.storage_listing.minimum_booking_days = 7
        db.commit()
        new_end = ensure_utc(storage_booking.end_date) + timedelta(days=2)

        with pytest.raises(BelowMinimumException):
            extension_service.request_extension(storage_booking.id, CHEF_ID, new_end)

    def test_one_open_extension_per_booking(self, extension_service, storage_booking, extension):
        new_end = ensure_utc(storage_booking.end_date) + timedelta(days=9)

        with pytest.raises(ConflictException) as exc_info:
            extension_service.request_extension(storage_booking.id, CHEF_ID, new_end)

        assert exc_info.value.code == "EXTENSION_IN_PROGRESS"

    def test_open_overstay_blocks_extension(self, extension_service, overstay_service, storage_booking):
        end = ensure_utc(storage_booking.end_date)
        overstay_service.run_overstay_sweep(now=end + timedelta(hours=1))

        with pytest.raises(ConflictException) as exc_info:
            extension_service.request_extension(storage_booking.id, CHEF_ID, end + timedelta(days=3))

        assert exc_info.value.code == "OVERSTAY_OPEN"

    def test_unconfirmed_storage_cannot_extend(self, extension_service, ledger, marketplace):
        group = ledger.checkout_booking_group(CHEF_ID, build_checkout(marketplace))
        storage = group.storage_bookings[0]

        with pytest.raises(InvalidTransitionException):
            extension_service.request_extension(
                storage.id, CHEF_ID, ensure_utc(storage.end_date) + timedelta(days=2)
            )


class TestPayAndReview:
    def test_pay_charges_total_immediately(self, paid_extension, payment_service, processor):
        assert paid_extension.status == ExtensionStatus.PAID.value
        payment = payment_service.get_authorization(paid_extension.payment_authorization_id)
        assert payment.status == "captured"
        assert payment.captured_amount_cents == 5650
        assert payment.kind == "storage_extension"
        (authorize_call,) = processor.calls_for("authorize")[1:]
        assert authorize_call["idempotency_key"] == f"storage_extension:{paid_extension.id}"

    def test_approve_moves_end_date_and_grows_total(
        self, extension_service, ledger, storage_booking, paid_extension
    ):
        original_end = ensure_utc(storage_booking.end_date)

        extension = extension_service.approve_extension(paid_extension.id, MANAGER_ID)

        assert extension.status == ExtensionStatus.COMPLETED.value
        assert extension.reviewed_by == MANAGER_ID
        booking = ledger.get_storage_booking(storage_booking.id)
        assert ensure_utc(booking.end_date) == original_end + timedelta(days=5)
        assert booking.total_price_cents == 3000 + 5000

    def test_unpaid_extension_cannot_be_approved(self, extension_service, extension):
        with pytest.raises(InvalidTransitionException):
            extension_service.approve_extension(extension.id, MANAGER_ID)

    def test_reject_refunds_payment(self, extension_service, payment_service, paid_extension):
        extension = extension_service.reject_extension(paid_extension.id, MANAGER_ID, "Unit reserved")

        assert extension.status == ExtensionStatus.REFUNDED.value
        assert extension.rejection_reason == "Unit reserved"
        payment = payment_service.get_authorization(extension.payment_authorization_id)
        assert payment.status == "refunded"
        assert payment.refunded_amount_cents == 5650

    def test_reject_unpaid_request(self, extension_service, processor, extension):
        rejected = extension_service.reject_extension(extension.id, MANAGER_ID, "No")

        assert rejected.status == ExtensionStatus.REJECTED.value
        assert processor.calls_for("refund") == []

    def test_completed_extension_is_final(self, extension_service, paid_extension):
        extension_service.approve_extension(paid_extension.id, MANAGER_ID)

        with pytest.raises(InvalidTransitionException):
            extension_service.reject_extension(paid_extension.id, MANAGER_ID, "Too late")

    def test_new_request_allowed_after_completion(
        self, extension_service, ledger, storage_booking, paid_extension
    ):
        extension_service.approve_extension(paid_extension.id, MANAGER_ID)
        booking = ledger.get_storage_booking(storage_booking.id)

        second = extension_service.request_extension(
            booking.id, CHEF_ID, ensure_utc(booking.end_date) + timedelta(days=2)
        )

        assert second.extension_days == 2
        assert len(extension_service.list_for_booking(booking.id)) == 2


class TestExtensionAndOverstay:
    def test_approval_closes_overstay_opened_while_waiting(
        self, extension_service, overstay_service, storage_booking, paid_extension
    ):
        end = ensure_utc(storage_booking.end_date)
        overstay_service.run_overstay_sweep(now=end + timedelta(hours=1))
        (record,) = overstay_service.list_for_chef(CHEF_ID)
        assert record.status == OverstayStatus.GRACE_PERIOD.value

        extension_service.approve_extension(paid_extension.id, MANAGER_ID, now=end + timedelta(hours=2))

        record = overstay_service.get_record(record.id)
        assert record.status == OverstayStatus.RESOLVED.value
        assert record.resolution_type == OverstayResolution.EXTENDED.value
        assert overstay_service.get_history(record.id)[-1].actor_id == MANAGER_ID

        stats = overstay_service.run_overstay_sweep(now=end + timedelta(days=4))
        assert stats["detected"] == 0
        assert [r.status for r in overstay_service.list_for_chef(CHEF_ID)] == ["resolved"]

    def test_sweep_resolves_record_when_end_date_moved(
        self, db, overstay_service, storage_booking
    ):
        end = ensure_utc(storage_booking.end_date)
        overstay_service.run_overstay_sweep(now=end + timedelta(hours=1))
        (record,) = overstay_service.list_for_chef(CHEF_ID)
        storage_booking.end_date = end + timedelta(days=10)
        db.commit()

        stats = overstay_service.run_overstay_sweep(now=end + timedelta(days=5))

        record = overstay_service.get_record(record.id)
        assert stats["resolved"] == 1
        assert record.status == OverstayStatus.RESOLVED.value
        assert record.resolution_type == OverstayResolution.EXTENDED.value
        assert record.calculated_penalty_cents == 0
