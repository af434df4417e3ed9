"""Storage booking endpoints: checkout review, extensions and cancellation."""

from __future__ import annotations

from datetime import timedelta

import pytest

from app.core.timezone_utils import ensure_utc
from tests.factories.listing_builders import CHEF_ID, MANAGER_ID, OTHER_MANAGER_ID, build_checkout
from tests.helpers.headers import auth_headers

BASE = "/api/v1/storage-bookings"


@pytest.fixture
def storage_booking(ledger, marketplace):
    group = ledger.checkout_booking_group(CHEF_ID, build_checkout(marketplace))
    group = ledger.approve_booking_group(group.id, MANAGER_ID)
    return group.storage_bookings[0]


class TestStorageDetail:
    def test_owner_reads_booking(self, client, storage_booking, chef_headers):
        response = client.get(f"{BASE}/{storage_booking.id}", headers=chef_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "confirmed"
        assert body["checkout_status"] == "active"
        assert body["total_price_cents"] == 3000

    def test_manager_of_another_location_is_forbidden(self, client, storage_booking):
        response = client.get(
            f"{BASE}/{storage_booking.id}", headers=auth_headers(OTHER_MANAGER_ID, "manager")
        )

        assert response.status_code == 403


class TestCheckoutReview:
    def test_request_then_approve(self, client, storage_booking, chef_headers, manager_headers, marketplace):
        requested = client.post(
            f"{BASE}/{storage_booking.id}/checkout",
            json={"notes": "Shelf wiped down", "photo_urls": ["https://img.example/1.jpg"]},
            headers=chef_headers,
        )
        pending = client.get(
            f"{BASE}/checkout-reviews",
            params={"location_id": marketplace.location.id},
            headers=manager_headers,
        )
        approved = client.post(
            f"{BASE}/{storage_booking.id}/checkout/approve", headers=manager_headers
        )

        assert requested.status_code == 200
        assert requested.json()["checkout_status"] == "checkout_requested"
        assert requested.json()["checkout_photo_urls"] == ["https://img.example/1.jpg"]
        assert [item["id"] for item in pending.json()] == [storage_booking.id]
        assert approved.status_code == 200
        assert approved.json()["checkout_status"] == "checkout_approved"
        assert approved.json()["status"] == "completed"

    def test_chef_cannot_approve_own_checkout(self, client, storage_booking, chef_headers):
        client.post(f"{BASE}/{storage_booking.id}/checkout", json={}, headers=chef_headers)

        response = client.post(f"{BASE}/{storage_booking.id}/checkout/approve", headers=chef_headers)

        assert response.status_code == 403

    def test_deny_requires_reason(self, client, storage_booking, chef_headers, manager_headers):
        client.post(f"{BASE}/{storage_booking.id}/checkout", json={}, headers=chef_headers)

        empty = client.post(
            f"{BASE}/{storage_booking.id}/checkout/deny", json={"reason": ""}, headers=manager_headers
        )
        denied = client.post(
            f"{BASE}/{storage_booking.id}/checkout/deny",
            json={"reason": "Items left on shelf"},
            headers=manager_headers,
        )

        assert empty.status_code == 422
        assert denied.status_code == 200
        assert denied.json()["checkout_status"] == "active"
        assert denied.json()["checkout_denial_reason"] == "Items left on shelf"

    def test_photos_require_at_least_one_url(self, client, storage_booking, chef_headers):
        client.post(f"{BASE}/{storage_booking.id}/checkout", json={}, headers=chef_headers)

        response = client.post(
            f"{BASE}/{storage_booking.id}/checkout/photos", json={"photo_urls": []}, headers=chef_headers
        )

        assert response.status_code == 422


class TestExtensions:
    def test_request_pay_approve(self, client, storage_booking, chef_headers, manager_headers):
        new_end = ensure_utc(storage_booking.end_date) + timedelta(days=5)

        requested = client.post(
            f"{BASE}/{storage_booking.id}/extensions",
            json={"new_end_date": new_end.isoformat()},
            headers=chef_headers,
        )
        assert requested.status_code == 201
        extension_id = requested.json()["id"]
        assert requested.json()["total_price_cents"] == 5650

        paid = client.post(f"{BASE}/extensions/{extension_id}/pay", headers=chef_headers)
        approved = client.post(f"{BASE}/extensions/{extension_id}/approve", headers=manager_headers)
        history = client.get(f"{BASE}/{storage_booking.id}/extensions", headers=chef_headers)

        assert paid.json()["status"] == "paid"
        assert approved.json()["status"] == "completed"
        assert [item["id"] for item in history.json()] == [extension_id]

    def test_reject_unpaid_extension(self, client, storage_booking, chef_headers, manager_headers):
        new_end = ensure_utc(storage_booking.end_date) + timedelta(days=2)
        requested = client.post(
            f"{BASE}/{storage_booking.id}/extensions",
            json={"new_end_date": new_end.isoformat()},
            headers=chef_headers,
        )

        response = client.post(
            f"{BASE}/extensions/{requested.json()['id']}/reject",
            json={"reason": "Unit reserved"},
            headers=manager_headers,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "rejected"
        assert response.json()["rejection_reason"] == "Unit reserved"


class TestStorageCancellation:
    def test_preview_for_confirmed_storage(self, client, storage_booking, chef_headers):
        response = client.get(f"{BASE}/{storage_booking.id}/cancellation", headers=chef_headers)

        assert response.status_code == 200
        assert response.json()["policy_hours"] == 24

    def test_manager_cannot_cancel_on_chef_behalf(self, client, storage_booking, manager_headers):
        response = client.post(f"{BASE}/{storage_booking.id}/cancel", json={}, headers=manager_headers)

        assert response.status_code == 403
