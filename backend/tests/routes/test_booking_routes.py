"""Booking group endpoints under /api/v1/bookings."""

from __future__ import annotations

import ulid

from tests.helpers.headers import auth_headers
from tests.factories.listing_builders import CHEF_ID, OTHER_CHEF_ID, build_checkout

BASE = "/api/v1/bookings"


def _checkout_payload(marketplace, **kwargs):
    return build_checkout(marketplace, **kwargs).model_dump(mode="json")


def _checkout(client, marketplace, headers):
    response = client.post(BASE, json=_checkout_payload(marketplace), headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


class TestAuthentication:
    def test_missing_user_is_unauthenticated(self, client, marketplace):
        response = client.post(BASE, json=_checkout_payload(marketplace))

        assert response.status_code == 401
        assert response.json()["detail"] == "Not authenticated"

    def test_unknown_role_is_forbidden(self, client, marketplace):
        response = client.post(
            BASE,
            json=_checkout_payload(marketplace),
            headers=auth_headers(CHEF_ID, "landlord"),
        )

        assert response.status_code == 403
        assert response.json()["detail"] == "Unknown role"

    def test_manager_cannot_check_out(self, client, marketplace, manager_headers):
        response = client.post(BASE, json=_checkout_payload(marketplace), headers=manager_headers)

        assert response.status_code == 403
        assert response.json()["detail"].startswith("Requires role:")


class TestCheckout:
    def test_checkout_creates_pending_group(self, client, marketplace, chef_headers, processor):
        body = _checkout(client, marketplace, chef_headers)

        assert body["status"] == "pending"
        assert body["chef_id"] == CHEF_ID
        assert body["total_price_cents"] == 17515
        assert len(body["storage_bookings"]) == 1
        assert len(body["equipment_bookings"]) == 1
        assert len(processor.calls_for("authorize")) == 1

    def test_payload_validation_uses_problem_envelope(self, client, marketplace, chef_headers):
        payload = _checkout_payload(marketplace)
        payload["selected_slots"] = []

        response = client.post(BASE, json=payload, headers=chef_headers)

        assert response.status_code == 422
        body = response.json()
        assert body["code"] == "validation_error"
        assert body["status"] == 422
        assert body["instance"] == BASE

    def test_unknown_fields_are_rejected(self, client, marketplace, chef_headers):
        payload = _checkout_payload(marketplace)
        payload["discount_code"] = "FREE"

        response = client.post(BASE, json=payload, headers=chef_headers)

        assert response.status_code == 422

    def test_missing_payment_method_is_a_domain_error(self, client, marketplace, chef_headers):
        response = client.post(
            BASE,
            json=_checkout_payload(marketplace, payment_method_id=None),
            headers=chef_headers,
        )

        body = response.json()
        assert response.status_code == 400
        assert body["code"] == "PAYMENT_METHOD_REQUIRED"


class TestReadAccess:
    def test_owner_and_manager_can_read(self, client, marketplace, chef_headers, manager_headers):
        group = _checkout(client, marketplace, chef_headers)

        for headers in (chef_headers, manager_headers):
            response = client.get(f"{BASE}/{group['id']}", headers=headers)
            assert response.status_code == 200
            assert response.json()["id"] == group["id"]

    def test_other_chef_is_forbidden(self, client, marketplace, chef_headers):
        group = _checkout(client, marketplace, chef_headers)

        response = client.get(f"{BASE}/{group['id']}", headers=auth_headers(OTHER_CHEF_ID, "chef"))

        assert response.status_code == 403
        assert response.json()["code"] == "BOOKING_ACCESS_DENIED"

    def test_missing_group_is_not_found(self, client, chef_headers):
        response = client.get(f"{BASE}/{ulid.ULID()}", headers=chef_headers)

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_malformed_id_fails_validation(self, client, chef_headers):
        response = client.get(f"{BASE}/not-a-ulid", headers=chef_headers)

        assert response.status_code == 422

    def test_chef_lists_own_groups(self, client, marketplace, chef_headers):
        group = _checkout(client, marketplace, chef_headers)

        response = client.get(BASE, headers=chef_headers)

        assert [item["id"] for item in response.json()] == [group["id"]]

    def test_manager_listing_needs_location(self, client, marketplace, chef_headers, manager_headers):
        _checkout(client, marketplace, chef_headers)

        missing = client.get(BASE, headers=manager_headers)
        listed = client.get(
            BASE, params={"location_id": marketplace.location.id}, headers=manager_headers
        )

        assert missing.status_code == 400
        assert missing.json()["detail"] == "location_id is required"
        assert listed.status_code == 200
        assert len(listed.json()) == 1


class TestManagerActions:
    def test_approve_then_second_approve_conflicts(
        self, client, marketplace, chef_headers, manager_headers
    ):
        group = _checkout(client, marketplace, chef_headers)

        first = client.post(f"{BASE}/{group['id']}/approve", headers=manager_headers)
        second = client.post(f"{BASE}/{group['id']}/approve", headers=manager_headers)

        assert first.status_code == 200
        assert first.json()["status"] == "confirmed"
        assert second.status_code == 409
        body = second.json()
        assert body["code"] == "INVALID_TRANSITION"
        assert body["errors"]["actual"] == "confirmed"

    def test_chef_cannot_approve(self, client, marketplace, chef_headers):
        group = _checkout(client, marketplace, chef_headers)

        response = client.post(f"{BASE}/{group['id']}/approve", headers=chef_headers)

        assert response.status_code == 403

    def test_reject_with_reason(self, client, marketplace, chef_headers, manager_headers):
        group = _checkout(client, marketplace, chef_headers)

        response = client.post(
            f"{BASE}/{group['id']}/reject",
            json={"reason": "Kitchen closed for inspection"},
            headers=manager_headers,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert response.json()["rejection_reason"] == "Kitchen closed for inspection"

    def test_admin_guarded_transition(self, client, marketplace, chef_headers, admin_headers):
        group = _checkout(client, marketplace, chef_headers)

        stale = client.post(
            f"{BASE}/{group['id']}/transition",
            json={"from_status": "confirmed", "to_status": "completed"},
            headers=admin_headers,
        )

        assert stale.status_code == 409
        assert stale.json()["errors"]["expected"] == "confirmed"

    def test_unknown_target_status_is_a_validation_error(
        self, client, marketplace, chef_headers, admin_headers
    ):
        group = _checkout(client, marketplace, chef_headers)

        response = client.post(
            f"{BASE}/{group['id']}/transition",
            json={"from_status": "pending", "to_status": "bogus"},
            headers=admin_headers,
        )

        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"


class TestCancellation:
    def test_preview_and_cancel_pending_group(self, client, marketplace, chef_headers):
        group = _checkout(client, marketplace, chef_headers)

        preview = client.get(f"{BASE}/{group['id']}/cancellation", headers=chef_headers)
        cancelled = client.post(
            f"{BASE}/{group['id']}/cancel", json={"reason": "Plans changed"}, headers=chef_headers
        )

        assert preview.status_code == 200
        assert preview.json()["tier"] == "immediate"
        assert preview.json()["allowed"] is True
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"
        assert cancelled.json()["payment_action"] == "voided"

    def test_confirmed_group_goes_through_manager_request(
        self, client, marketplace, chef_headers, manager_headers
    ):
        group = _checkout(client, marketplace, chef_headers)
        client.post(f"{BASE}/{group['id']}/approve", headers=manager_headers)

        requested = client.post(f"{BASE}/{group['id']}/cancel", json={}, headers=chef_headers)
        open_requests = client.get(
            f"{BASE}/cancellation-requests",
            params={"location_id": marketplace.location.id},
            headers=manager_headers,
        )

        assert requested.status_code == 200
        assert requested.json()["tier"] == "request"
        assert requested.json()["status"] == "cancellation_requested"
        request_id = requested.json()["cancellation_request"]["id"]
        assert [item["id"] for item in open_requests.json()] == [request_id]

        resolved = client.post(
            f"{BASE}/cancellation-requests/{request_id}/resolve",
            json={"outcome": "accepted", "refund_amount_cents": 5000},
            headers=manager_headers,
        )

        assert resolved.status_code == 200
        assert resolved.json()["status"] == "cancelled"
        assert resolved.json()["refunded_cents"] == 5000
