"""Damage claim filing, chef response and admin decision endpoints."""

from __future__ import annotations

import pytest

from tests.factories.listing_builders import CHEF_ID, MANAGER_ID, OTHER_CHEF_ID, build_checkout
from tests.helpers.headers import auth_headers

BASE = "/api/v1/damage-claims"
STORAGE = "/api/v1/storage-bookings"

CLAIM = {
    "title": "Cracked shelf",
    "description": "Bottom shelf cracked through",
    "claimed_amount_cents": 10000,
}


@pytest.fixture
def storage_booking(ledger, checkout_service, marketplace):
    group = ledger.checkout_booking_group(CHEF_ID, build_checkout(marketplace))
    group = ledger.approve_booking_group(group.id, MANAGER_ID)
    return checkout_service.request_checkout(group.storage_bookings[0].id, CHEF_ID)


@pytest.fixture
def claim(client, storage_booking, manager_headers):
    response = client.post(
        f"{STORAGE}/{storage_booking.id}/checkout/claim", json=CLAIM, headers=manager_headers
    )
    assert response.status_code == 201
    return response.json()


def test_manager_files_claim_from_checkout_review(client, claim, storage_booking, manager_headers):
    booking = client.get(f"{STORAGE}/{storage_booking.id}", headers=manager_headers)

    assert claim["status"] == "submitted"
    assert claim["claimed_amount_cents"] == 10000
    assert booking.json()["checkout_status"] == "checkout_claim_filed"


def test_chef_cannot_file_claim(client, storage_booking, chef_headers):
    response = client.post(
        f"{STORAGE}/{storage_booking.id}/checkout/claim", json=CLAIM, headers=chef_headers
    )

    assert response.status_code == 403


def test_claim_amount_below_minimum(client, storage_booking, manager_headers):
    response = client.post(
        f"{STORAGE}/{storage_booking.id}/checkout/claim",
        json={**CLAIM, "claimed_amount_cents": 500},
        headers=manager_headers,
    )

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_CLAIM_AMOUNT"


def test_chef_sees_own_claims_only(client, claim, chef_headers):
    own = client.get(BASE, headers=chef_headers)
    other = client.get(BASE, headers=auth_headers(OTHER_CHEF_ID, "chef"))

    assert own.json()["total"] == 1
    assert other.json()["total"] == 0


def test_manager_lists_location_claims(client, claim, marketplace, manager_headers):
    response = client.get(BASE, params={"location_id": marketplace.location.id}, headers=manager_headers)

    assert response.json()["items"][0]["id"] == claim["id"]


def test_chef_accepts_and_is_charged(client, claim, storage_booking, chef_headers):
    response = client.post(
        f"{BASE}/{claim['id']}/respond",
        json={"accept": True, "response": "My fault"},
        headers=chef_headers,
    )
    history = client.get(f"{BASE}/{claim['id']}/history", headers=chef_headers)
    booking = client.get(f"{STORAGE}/{storage_booking.id}", headers=chef_headers)

    assert response.status_code == 200
    assert response.json()["status"] == "resolved"
    assert response.json()["charged_amount_cents"] == 11300
    assert history.json()[0]["event_type"] == "submitted"
    assert booking.json()["status"] == "completed"


def test_manager_cannot_respond_for_chef(client, claim, manager_headers):
    response = client.post(
        f"{BASE}/{claim['id']}/respond",
        json={"accept": True, "response": "Accepting"},
        headers=manager_headers,
    )

    assert response.status_code == 403


def test_dispute_is_decided_by_admin_only(client, claim, chef_headers, manager_headers, admin_headers):
    client.post(
        f"{BASE}/{claim['id']}/respond",
        json={"accept": False, "response": "Already cracked"},
        headers=chef_headers,
    )
    decision = {"decision": "reject", "reason": "Move-in photos show the crack"}

    as_manager = client.post(f"{BASE}/{claim['id']}/decision", json=decision, headers=manager_headers)
    as_admin = client.post(f"{BASE}/{claim['id']}/decision", json=decision, headers=admin_headers)

    assert as_manager.status_code == 403
    assert as_admin.status_code == 200
    assert as_admin.json()["status"] == "rejected"


def test_partial_approval_needs_amount(client, claim, chef_headers, admin_headers):
    client.post(
        f"{BASE}/{claim['id']}/respond",
        json={"accept": False, "response": "Too expensive"},
        headers=chef_headers,
    )

    response = client.post(
        f"{BASE}/{claim['id']}/decision",
        json={"decision": "partially_approve", "reason": "Split"},
        headers=admin_headers,
    )

    assert response.status_code == 422


def test_declined_charge_then_manager_retry(client, claim, processor, chef_headers, manager_headers):
    processor.decline("charge_off_session")
    failed = client.post(
        f"{BASE}/{claim['id']}/respond",
        json={"accept": True, "response": "OK"},
        headers=chef_headers,
    )
    retried = client.post(f"{BASE}/{claim['id']}/charge", headers=manager_headers)

    assert failed.json()["status"] == "charge_failed"
    assert retried.json()["status"] == "resolved"
    assert retried.json()["charge_attempts"] == 2


def test_refund_paid_claim(client, claim, chef_headers, manager_headers):
    client.post(
        f"{BASE}/{claim['id']}/respond",
        json={"accept": True, "response": "OK"},
        headers=chef_headers,
    )

    response = client.post(
        f"{BASE}/{claim['id']}/refund",
        json={"amount_cents": 1300, "reason": "Tax waived"},
        headers=manager_headers,
    )

    assert response.status_code == 200
    assert response.json()["refunded_amount_cents"] == 1300
