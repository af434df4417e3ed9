"""Storage checkout requests, manager review and the auto-clear sweep."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from app.core.exceptions import InvalidTransitionException, ValidationException
from app.core.timezone_utils import ensure_utc
from app.models.booking import CheckoutStatus
from app.services.damage_claim_service import DamageClaimService
from tests.factories.listing_builders import CHEF_ID, MANAGER_ID, build_checkout

PHOTOS = ["https://cdn.example.com/unit-1.jpg", "https://cdn.example.com/unit-2.jpg"]


@pytest.fixture
def storage_booking(ledger, marketplace):
    group = ledger.checkout_booking_group(CHEF_ID, build_checkout(marketplace))
    group = ledger.approve_booking_group(group.id, MANAGER_ID)
    return group.storage_bookings[0]


@pytest.fixture
def requested_at():
    return datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture
def requested(checkout_service, storage_booking, requested_at):
    return checkout_service.request_checkout(
        storage_booking.id, CHEF_ID, notes="Shelves wiped", photo_urls=PHOTOS, now=requested_at
    )


class TestRequestCheckout:
    def test_request_stores_review_deadline(self, requested, requested_at):
        assert requested.checkout_status == CheckoutStatus.CHECKOUT_REQUESTED.value
        assert ensure_utc(requested.checkout_review_deadline) == requested_at + timedelta(hours=48)
        assert requested.checkout_photo_urls == PHOTOS
        assert requested.checkout_notes == "Shelves wiped"

    def test_duplicate_photo_urls_are_collapsed(self, checkout_service, storage_booking):
        booking = checkout_service.request_checkout(
            storage_booking.id, CHEF_ID, photo_urls=[PHOTOS[0], f" {PHOTOS[0]} ", ""]
        )

        assert booking.checkout_photo_urls == [PHOTOS[0]]

    def test_too_many_photos(self, checkout_service, storage_booking):
        urls = [f"https://cdn.example.com/{n}.jpg" for n in range(11)]

        with pytest.raises(ValidationException) as exc_info:
            checkout_service.request_checkout(storage_booking.id, CHEF_ID, photo_urls=urls)

        assert exc_info.value.code == "TOO_MANY_PHOTOS"

    def test_unconfirmed_storage_cannot_check_out(self, checkout_service, ledger, marketplace):
        group = ledger.checkout_booking_group(CHEF_ID, build_checkout(marketplace))

        with pytest.raises(InvalidTransitionException):
            checkout_service.request_checkout(group.storage_bookings[0].id, CHEF_ID)

    def test_request_twice_is_rejected(self, checkout_service, requested):
        with pytest.raises(InvalidTransitionException):
            checkout_service.request_checkout(requested.id, CHEF_ID)

    def test_add_photos_while_pending(self, checkout_service, requested):
        booking = checkout_service.add_checkout_photos(
            requested.id, ["https://cdn.example.com/unit-3.jpg"]
        )

        assert len(booking.checkout_photo_urls) == 3

    def test_location_review_window(self, db, checkout_service, marketplace, storage_booking):
        marketplace.location.checkout_review_window_hours = 12
        db.commit()
        now = datetime.now(timezone.utc).replace(microsecond=0)

        booking = checkout_service.request_checkout(storage_booking.id, CHEF_ID, now=now)

        assert ensure_utc(booking.checkout_review_deadline) == now + timedelta(hours=12)


class TestManagerReview:
    def test_approve_completes_storage(self, checkout_service, requested):
        booking = checkout_service.approve_checkout(requested.id, MANAGER_ID)

        assert booking.checkout_status == CheckoutStatus.CHECKOUT_APPROVED.value
        assert booking.checkout_approved_by == MANAGER_ID
        assert booking.checkout_auto_approved is False
        assert booking.status == "completed"

    def test_deny_returns_to_active_with_reason(self, checkout_service, requested):
        booking = checkout_service.deny_checkout(requested.id, MANAGER_ID, "  Shelf 3 still full ")

        assert booking.checkout_status == CheckoutStatus.ACTIVE.value
        assert booking.checkout_denial_reason == "Shelf 3 still full"
        assert booking.checkout_review_deadline is None
        assert booking.status == "confirmed"

    def test_deny_requires_reason(self, checkout_service, requested):
        with pytest.raises(ValidationException) as exc_info:
            checkout_service.deny_checkout(requested.id, MANAGER_ID, "   ")

        assert exc_info.value.code == "REASON_REQUIRED"

    def test_chef_can_request_again_after_denial(self, checkout_service, requested):
        checkout_service.deny_checkout(requested.id, MANAGER_ID, "Not clean")

        booking = checkout_service.request_checkout(requested.id, CHEF_ID)

        assert booking.checkout_status == CheckoutStatus.CHECKOUT_REQUESTED.value
        assert booking.checkout_denial_reason is None

    def test_claim_is_terminal(self, db, ledger, payment_service, checkout_service, requested):
        DamageClaimService(db, ledger, payment_service).file_claim(
            requested.id,
            MANAGER_ID,
            title="Broken shelf",
            description="Shelf bracket snapped",
            claimed_amount_cents=2500,
        )

        booking = ledger.get_storage_booking(requested.id)
        assert booking.checkout_status == CheckoutStatus.CHECKOUT_CLAIM_FILED.value
        assert booking.checkout_review_deadline is None
        assert booking.status == "confirmed"
        with pytest.raises(InvalidTransitionException):
            checkout_service.approve_checkout(requested.id, MANAGER_ID)

    def test_pending_reviews_for_location(self, checkout_service, marketplace, requested):
        pending = checkout_service.list_pending_reviews(marketplace.location.id)

        assert [booking.id for booking in pending] == [requested.id]


class TestAutoClear:
    def test_nothing_cleared_before_deadline(self, checkout_service, requested, requested_at):
        deadline = requested_at + timedelta(hours=48)

        result = checkout_service.auto_clear_expired_reviews(now=deadline - timedelta(hours=1))

        assert result == {"cleared": 0, "skipped": 0, "failed": 0}

    def test_cleared_at_deadline_and_rerun_is_noop(
        self, checkout_service, ledger, requested, requested_at
    ):
        deadline = requested_at + timedelta(hours=48)

        first = checkout_service.auto_clear_expired_reviews(now=deadline)
        second = checkout_service.auto_clear_expired_reviews(now=deadline + timedelta(minutes=5))

        assert first["cleared"] == 1
        assert second == {"cleared": 0, "skipped": 0, "failed": 0}
        booking = ledger.get_storage_booking(requested.id)
        assert booking.checkout_status == CheckoutStatus.CHECKOUT_APPROVED.value
        assert booking.checkout_auto_approved is True
        assert booking.checkout_approved_by is None
        assert booking.status == "completed"

    def test_denied_request_is_not_auto_cleared(self, checkout_service, requested, requested_at):
        checkout_service.deny_checkout(requested.id, MANAGER_ID, "Not clean")

        result = checkout_service.auto_clear_expired_reviews(
            now=requested_at + timedelta(hours=72)
        )

        assert result["cleared"] == 0
