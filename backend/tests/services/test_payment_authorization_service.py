"""Amount invariants, retries, webhook idempotence and reconciliation."""

from __future__ import annotations

import pytest

from app.core.exceptions import (
    InvalidTransitionException,
    PaymentFailureException,
    ValidationException,
)
from app.models.webhook_event import WebhookEvent
from app.services.payment_authorization_service import WebhookEnvelope
from tests.factories.listing_builders import CHEF_ID, CUSTOMER_ID, PAYMENT_METHOD_ID, build_checkout


@pytest.fixture
def hold(db, payment_service):
    authorization = payment_service.authorize(
        10000,
        idempotency_key="test_hold:1",
        customer_id=CUSTOMER_ID,
        payment_method_id=PAYMENT_METHOD_ID,
    )
    db.commit()
    return authorization


@pytest.fixture
def captured(db, payment_service, hold):
    authorization = payment_service.capture(hold.id)
    db.commit()
    return authorization


def _stripe_event(event_id, event_type, obj):
    return WebhookEnvelope.from_stripe_event(
        {"id": event_id, "type": event_type, "data": {"object": obj}}
    )


class TestAmountInvariants:
    def test_authorize_records_hold(self, hold, payment_service):
        assert hold.status == "authorized_hold"
        assert hold.authorized_amount_cents == 10000
        assert hold.processor_authorization_id.startswith("pi_test_")
        events = payment_service.repository.list_events(hold.id)
        assert [event.event_type for event in events] == ["authorized"]

    def test_non_positive_authorization_is_rejected(self, payment_service):
        with pytest.raises(ValidationException):
            payment_service.authorize(0, idempotency_key="zero")

    def test_capture_cannot_exceed_authorized(self, payment_service, processor, hold):
        with pytest.raises(ValidationException) as exc_info:
            payment_service.capture(hold.id, 10001)

        assert exc_info.value.code == "INVALID_CAPTURE_AMOUNT"
        assert processor.calls_for("capture") == []

    def test_partial_capture(self, payment_service, hold):
        authorization = payment_service.capture(hold.id, 6000)

        assert authorization.status == "captured"
        assert authorization.captured_amount_cents == 6000
        assert authorization.stripe_charge_id.startswith("ch_test_")

    def test_voided_hold_cannot_be_captured(self, payment_service, hold):
        payment_service.void(hold.id)

        with pytest.raises(InvalidTransitionException):
            payment_service.capture(hold.id)

    def test_refund_cannot_exceed_refundable(self, payment_service, captured):
        with pytest.raises(ValidationException) as exc_info:
            payment_service.refund(captured.id, 10001)

        assert exc_info.value.code == "INVALID_REFUND_AMOUNT"

    def test_partial_refunds_accumulate(self, payment_service, captured):
        payment_service.refund(captured.id, 2500)
        authorization = payment_service.refund(captured.id, 2500)

        assert authorization.status == "partially_refunded"
        assert authorization.refunded_amount_cents == 5000
        assert authorization.refundable_amount_cents == 5000

        authorization = payment_service.refund(captured.id, 5000)
        assert authorization.status == "refunded"

        with pytest.raises(InvalidTransitionException):
            payment_service.refund(captured.id, 1)

    def test_refund_of_uncaptured_hold_is_rejected(self, payment_service, hold):
        with pytest.raises(InvalidTransitionException):
            payment_service.refund(hold.id, 100)


class TestRetries:
    def test_transient_failures_within_attempt_limit_succeed(self, payment_service, processor):
        processor.fail_transiently("authorize", 2)

        authorization = payment_service.authorize(5000, idempotency_key="retry:ok")

        assert authorization.status == "authorized_hold"
        assert len(processor.calls_for("authorize")) == 3
        # Every attempt reuses the same key
        assert {call["idempotency_key"] for call in processor.calls_for("authorize")} == {"retry:ok"}

    def test_exhausted_retries_are_reported_as_retryable(self, payment_service, processor):
        processor.fail_transiently("authorize", 3)

        with pytest.raises(PaymentFailureException) as exc_info:
            payment_service.authorize(5000, idempotency_key="retry:exhausted")

        assert exc_info.value.retryable is True
        assert exc_info.value.attempts == 3

    def test_decline_is_not_retried(self, payment_service, processor, hold):
        processor.decline("capture", "insufficient_funds")

        with pytest.raises(PaymentFailureException) as exc_info:
            payment_service.capture(hold.id)

        assert exc_info.value.retryable is False
        assert exc_info.value.details["processor_code"] == "insufficient_funds"
        assert len(processor.calls_for("capture")) == 1
        assert payment_service.get_authorization(hold.id).status == "authorized_hold"


class TestWebhooks:
    def test_capture_event_is_applied_once(self, db, payment_service, ledger, marketplace):
        group = ledger.checkout_booking_group(CHEF_ID, build_checkout(marketplace))
        hold = payment_service.get_authorization(group.payment_authorization_id)
        envelope = _stripe_event(
            "evt_capture_1",
            "payment_intent.succeeded",
            {"id": hold.processor_authorization_id, "amount_received": 17515},
        )

        first = payment_service.apply_webhook_event(envelope)
        second = payment_service.apply_webhook_event(envelope)

        assert first.outcome == "applied"
        assert first.status == "captured"
        assert second.duplicate is True
        assert second.outcome == "applied"
        events = payment_service.repository.list_events(hold.id)
        assert [event.event_type for event in events].count("captured") == 1
        ledger_row = db.query(WebhookEvent).filter_by(event_id="evt_capture_1").one()
        assert ledger_row.retry_count == 1

    def test_event_for_already_applied_state(self, payment_service, captured):
        envelope = _stripe_event(
            "evt_capture_2",
            "payment_intent.succeeded",
            {"id": captured.processor_authorization_id, "amount_received": 10000},
        )

        result = payment_service.apply_webhook_event(envelope)

        assert result.outcome == "already_applied"
        assert result.duplicate is False

    def test_refund_event_sets_refunded_total(self, payment_service, captured):
        envelope = _stripe_event(
            "evt_refund_1",
            "charge.refunded",
            {"payment_intent": captured.processor_authorization_id, "amount_refunded": 4000},
        )

        result = payment_service.apply_webhook_event(envelope)

        authorization = payment_service.get_authorization(captured.id)
        assert result.outcome == "applied"
        assert authorization.status == "partially_refunded"
        assert authorization.refunded_amount_cents == 4000

    def test_unknown_authorization_is_ignored(self, payment_service):
        envelope = _stripe_event("evt_unknown", "payment_intent.succeeded", {"id": "pi_elsewhere"})

        result = payment_service.apply_webhook_event(envelope)

        assert result.outcome == "ignored_unknown_authorization"
        assert result.authorization_id is None

    def test_event_without_authorization(self, payment_service):
        envelope = _stripe_event("evt_customer", "customer.updated", {})

        result = payment_service.apply_webhook_event(envelope)

        assert result.outcome == "ignored_no_authorization"

    def test_envelope_from_charge_event(self):
        envelope = _stripe_event(
            "evt_1", "charge.refunded", {"payment_intent": "pi_1", "amount": 900, "amount_refunded": 300}
        )

        assert envelope.authorization_id == "pi_1"
        assert envelope.amount_cents == 300


class TestReconcile:
    def test_processor_capture_is_applied(self, payment_service, processor, hold):
        intent = processor.intents[hold.processor_authorization_id]
        intent.update(status="succeeded", amount_received=10000, amount_capturable=0)

        result = payment_service.reconcile(hold.id)

        assert result.changed is True
        assert (result.previous_status, result.status) == ("authorized_hold", "captured")

    def test_processor_refund_is_applied_after_capture(self, payment_service, processor, captured):
        processor.intents[captured.processor_authorization_id]["amount_refunded"] = 10000

        result = payment_service.reconcile(captured.id)

        assert result.status == "refunded"

    def test_backwards_processor_view_is_left_alone(self, payment_service, processor, captured):
        intent = processor.intents[captured.processor_authorization_id]
        intent.update(status="requires_capture")

        result = payment_service.reconcile(captured.id)

        assert result.changed is False
        assert result.status == "captured"
        assert result.processor_status == "authorized_hold"

    def test_matching_state_is_a_noop(self, payment_service, hold):
        result = payment_service.reconcile(hold.id)

        assert result.changed is False
        assert result.status == "authorized_hold"
