from datetime import datetime, timedelta, timezone

from tests.factories.listing_builders import CHEF_ID, MANAGER_ID, build_checkout


def test_stale_pending_hold_is_cancelled_and_voided(expiry_service, ledger, payment_service, marketplace):
    group = ledger.checkout_booking_group(CHEF_ID, build_checkout(marketplace))
    later = datetime.now(timezone.utc) + timedelta(hours=25)

    result = expiry_service.expire_stale_authorizations(now=later)

    assert result == {"expired": 1, "skipped": 0, "failed": 0}
    group = ledger.get_booking_group(group.id)
    assert group.status == "cancelled"
    assert "expired" in group.cancellation_reason
    assert {s.status for s in group.storage_bookings} == {"cancelled"}
    assert payment_service.get_authorization(group.payment_authorization_id).status == "voided"

    rerun = expiry_service.expire_stale_authorizations(now=later + timedelta(minutes=10))
    assert rerun == {"expired": 0, "skipped": 0, "failed": 0}


def test_recent_hold_is_kept(expiry_service, ledger, marketplace):
    group = ledger.checkout_booking_group(CHEF_ID, build_checkout(marketplace))

    result = expiry_service.expire_stale_authorizations(
        now=datetime.now(timezone.utc) + timedelta(hours=23)
    )

    assert result["expired"] == 0
    assert ledger.get_booking_group(group.id).status == "pending"


def test_approved_group_is_not_expired(expiry_service, ledger, marketplace):
    group = ledger.checkout_booking_group(CHEF_ID, build_checkout(marketplace))
    ledger.approve_booking_group(group.id, MANAGER_ID)

    result = expiry_service.expire_stale_authorizations(
        now=datetime.now(timezone.utc) + timedelta(hours=48)
    )

    assert result["expired"] == 0
    assert ledger.get_booking_group(group.id).status == "confirmed"
