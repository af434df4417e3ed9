"""
Payment Authorization Manager.

Owns every money movement: holds at checkout, captures on approval, voids,
refunds, off-session penalty charges, webhook application and
reconciliation. It is the only caller of the payment processor and never
calls back into ledger, cancellation or penalty services.

Unit-of-work contract:
- ``authorize``, ``capture``, ``void``, ``refund`` and ``charge_off_session``
  run inside the caller's unit and only flush.
- ``apply_webhook_event`` and ``reconcile`` are entry points and own their
  transaction.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
import time
from typing import Any, Callable, Dict, Iterator, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.constants import WEBHOOK_SOURCE_STRIPE
from app.core.exceptions import (
    DomainException,
    InvalidTransitionException,
    InvariantBreachException,
    NotFoundException,
    ValidationException,
)
from app.core.timezone_utils import utc_now
from app.domain.state_machines import CAPTURED_PAYMENT_STATUSES, PAYMENT_MACHINE
from app.events.booking_events import PaymentAuthorizationChanged
from app.events.publisher import EventPublisher
from app.models.booking import BookingGroup
from app.models.payment import (
    PaymentAuthorization,
    PaymentAuthorizationKind,
    PaymentAuthorizationStatus,
    PaymentEventSource,
)
from app.monitoring.prometheus_metrics import prometheus_metrics
from app.repositories.factory import RepositoryFactory
from app.services.base import BaseService
from app.services.payment_processor import (
    PaymentProcessor,
    ProcessorSnapshot,
    call_with_backoff,
)
from app.services.webhook_ledger_service import WebhookLedgerService

Status = PaymentAuthorizationStatus


@dataclass(frozen=True)
class WebhookEnvelope:
    """Processor-neutral view of one inbound payment event."""

    event_id: str
    type: str
    authorization_id: Optional[str]
    amount_cents: Optional[int]
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_stripe_event(cls, event: Dict[str, Any]) -> "WebhookEnvelope":
        event_type = str(event.get("type") or "unknown")
        obj = (event.get("data") or {}).get("object") or {}
        if event_type.startswith("charge."):
            authorization_id = obj.get("payment_intent")
            amount = obj.get("amount_refunded") if event_type == "charge.refunded" else obj.get("amount")
        else:
            authorization_id = obj.get("id")
            amount = obj.get("amount_received") or obj.get("amount_capturable") or obj.get("amount")
        return cls(
            event_id=str(event.get("id")),
            type=event_type,
            authorization_id=authorization_id,
            amount_cents=int(amount) if amount is not None else None,
            payload=event,
        )


@dataclass(frozen=True)
class WebhookApplyResult:
    event_id: str
    outcome: str
    duplicate: bool = False
    authorization_id: Optional[str] = None
    status: Optional[str] = None


@dataclass(frozen=True)
class ReconcileResult:
    authorization_id: str
    previous_status: str
    status: str
    processor_status: str
    changed: bool


class PaymentAuthorizationService(BaseService):
    """Guards the payment authorization state machine and its amount invariants."""

    def __init__(
        self,
        db: Session,
        processor: PaymentProcessor,
        *,
        currency: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(db)
        self.processor = processor
        self.sleep = sleep
        self.repository = RepositoryFactory.create_payment_authorization_repository(db)
        self.publisher = EventPublisher(RepositoryFactory.create_event_outbox_repository(db))
        self.webhook_ledger = WebhookLedgerService(db)
        self.currency = currency or settings.stripe_currency

    # Queries

    def get_authorization(self, authorization_id: str) -> PaymentAuthorization:
        authorization = self.repository.get_by_id(authorization_id)
        if authorization is None:
            raise NotFoundException("PaymentAuthorization", authorization_id)
        return authorization

    def _lock(self, authorization_id: str) -> PaymentAuthorization:
        authorization = self.repository.get_for_update(authorization_id)
        if authorization is None:
            raise NotFoundException("PaymentAuthorization", authorization_id)
        return authorization

    # In-unit operations

    @BaseService.measure_operation("payment.authorize")
    def authorize(
        self,
        amount_cents: int,
        *,
        idempotency_key: str,
        kind: PaymentAuthorizationKind = PaymentAuthorizationKind.BOOKING_HOLD,
        customer_id: Optional[str] = None,
        payment_method_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        now: Optional[datetime] = None,
    ) -> PaymentAuthorization:
        """Place a manual-capture hold for ``amount_cents``."""
        if amount_cents <= 0:
            raise ValidationException(
                "Authorization amount must be positive",
                code="INVALID_AMOUNT",
                details={"amount_cents": amount_cents},
            )
        now = now or utc_now()
        result = call_with_backoff(
            "authorize",
            lambda: self.processor.authorize(
                amount_cents,
                currency=self.currency,
                customer_id=customer_id,
                payment_method_id=payment_method_id,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            ),
            sleep=self.sleep,
        )
        authorization = self.repository.create(
            processor_authorization_id=result.authorization_id,
            kind=kind.value,
            status=Status.AUTHORIZED_HOLD.value,
            currency=self.currency,
            authorized_amount_cents=amount_cents,
            captured_amount_cents=0,
            refunded_amount_cents=0,
            stripe_customer_id=customer_id,
            stripe_payment_method_id=payment_method_id,
            authorized_at=now,
        )
        self._record(
            authorization,
            "authorized",
            previous=None,
            new=Status.AUTHORIZED_HOLD.value,
            amount=amount_cents,
            source=PaymentEventSource.API,
            now=now,
        )
        return authorization

    @BaseService.measure_operation("payment.capture")
    def capture(
        self,
        authorization_id: str,
        amount_cents: Optional[int] = None,
        *,
        now: Optional[datetime] = None,
    ) -> PaymentAuthorization:
        """Capture up to the authorized amount (all of it by default)."""
        authorization = self._lock(authorization_id)
        PAYMENT_MACHINE.require(authorization.status, Status.CAPTURED, entity_id=authorization.id)
        amount = authorization.authorized_amount_cents if amount_cents is None else amount_cents
        if amount <= 0 or amount > authorization.authorized_amount_cents:
            raise ValidationException(
                "Capture amount must be positive and not exceed the authorized amount",
                code="INVALID_CAPTURE_AMOUNT",
                details={
                    "authorization_id": authorization.id,
                    "amount_cents": amount,
                    "authorized_amount_cents": authorization.authorized_amount_cents,
                },
            )
        result = call_with_backoff(
            "capture",
            lambda: self.processor.capture(
                authorization.processor_authorization_id,
                amount,
                idempotency_key=f"capture:{authorization.id}:{amount}",
            ),
            authorization_id=authorization.id,
            sleep=self.sleep,
        )
        now = now or utc_now()
        self._transition(
            authorization,
            Status.CAPTURED,
            event_type="captured",
            amount=amount,
            source=PaymentEventSource.API,
            now=now,
            captured_amount_cents=amount,
            captured_at=now,
            stripe_charge_id=result.charge_id,
        )
        return authorization

    @BaseService.measure_operation("payment.void")
    def void(self, authorization_id: str, *, now: Optional[datetime] = None) -> PaymentAuthorization:
        """Release an uncaptured hold."""
        authorization = self._lock(authorization_id)
        PAYMENT_MACHINE.require(authorization.status, Status.VOIDED, entity_id=authorization.id)
        call_with_backoff(
            "void",
            lambda: self.processor.void(
                authorization.processor_authorization_id,
                idempotency_key=f"void:{authorization.id}",
            ),
            authorization_id=authorization.id,
            sleep=self.sleep,
        )
        now = now or utc_now()
        self._transition(
            authorization,
            Status.VOIDED,
            event_type="voided",
            amount=0,
            source=PaymentEventSource.API,
            now=now,
            voided_at=now,
        )
        return authorization

    @BaseService.measure_operation("payment.refund")
    def refund(
        self,
        authorization_id: str,
        amount_cents: int,
        *,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PaymentAuthorization:
        """Refund part or all of the captured amount that has not been refunded yet."""
        authorization = self._lock(authorization_id)
        if authorization.status not in {status.value for status in CAPTURED_PAYMENT_STATUSES}:
            raise InvalidTransitionException(
                PAYMENT_MACHINE.name,
                authorization.id,
                expected=Status.CAPTURED.value,
                actual=authorization.status,
                target=Status.REFUNDED.value,
            )
        refundable = authorization.refundable_amount_cents
        if amount_cents <= 0 or amount_cents > refundable:
            raise ValidationException(
                "Refund amount must be positive and not exceed the refundable amount",
                code="INVALID_REFUND_AMOUNT",
                details={
                    "authorization_id": authorization.id,
                    "amount_cents": amount_cents,
                    "refundable_cents": refundable,
                },
            )
        previous_refunded = authorization.refunded_amount_cents
        new_total = previous_refunded + amount_cents
        call_with_backoff(
            "refund",
            lambda: self.processor.refund(
                authorization.processor_authorization_id,
                amount_cents,
                idempotency_key=f"refund:{authorization.id}:{new_total}",
            ),
            authorization_id=authorization.id,
            sleep=self.sleep,
        )
        now = now or utc_now()
        self._apply_refund_total(
            authorization,
            new_total,
            source=PaymentEventSource.API,
            now=now,
            event_data={"reason": reason} if reason else None,
        )
        return authorization

    @BaseService.measure_operation("payment.charge_off_session")
    def charge_off_session(
        self,
        amount_cents: int,
        *,
        customer_id: str,
        payment_method_id: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
        kind: PaymentAuthorizationKind = PaymentAuthorizationKind.OVERSTAY_PENALTY,
        now: Optional[datetime] = None,
    ) -> PaymentAuthorization:
        """
        Charge a stored payment method immediately.

        Recorded as an already captured authorization of ``kind`` (overstay
        penalty or damage claim), so it can be refunded like any other capture.
        """
        if amount_cents <= 0:
            raise ValidationException("Charge amount must be positive", code="INVALID_AMOUNT")
        result = call_with_backoff(
            "charge_off_session",
            lambda: self.processor.charge_off_session(
                amount_cents,
                currency=self.currency,
                customer_id=customer_id,
                payment_method_id=payment_method_id,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            ),
            sleep=self.sleep,
        )
        now = now or utc_now()
        authorization = self.repository.create(
            processor_authorization_id=result.authorization_id,
            kind=kind.value,
            status=Status.CAPTURED.value,
            currency=self.currency,
            authorized_amount_cents=amount_cents,
            captured_amount_cents=amount_cents,
            refunded_amount_cents=0,
            stripe_customer_id=customer_id,
            stripe_payment_method_id=payment_method_id,
            stripe_charge_id=result.charge_id,
            authorized_at=now,
            captured_at=now,
        )
        self._record(
            authorization,
            "charged_off_session",
            previous=None,
            new=Status.CAPTURED.value,
            amount=amount_cents,
            source=PaymentEventSource.API,
            now=now,
        )
        return authorization

    # Entry points

    @BaseService.measure_operation("payment.apply_webhook_event")
    def apply_webhook_event(
        self, envelope: WebhookEnvelope, *, source: str = WEBHOOK_SOURCE_STRIPE
    ) -> WebhookApplyResult:
        """
        Apply one processor event exactly once.

        Redeliveries of an event id that already finished return the stored
        outcome without touching the authorization.
        """
        try:
            with self._webhook_unit(envelope):
                ledger_event = self.webhook_ledger.record_delivery(
                    source=source,
                    event_id=envelope.event_id,
                    event_type=envelope.type,
                    payload=envelope.payload,
                )
                if ledger_event.is_finished or not self.webhook_ledger.claim(ledger_event):
                    return WebhookApplyResult(
                        event_id=envelope.event_id,
                        outcome=ledger_event.outcome or "in_progress",
                        duplicate=True,
                        authorization_id=ledger_event.payment_authorization_id,
                    )
                result = self._apply_envelope(envelope)
                self.webhook_ledger.complete(
                    ledger_event,
                    outcome=result.outcome,
                    payment_authorization_id=result.authorization_id,
                )
                return result
        except DomainException as exc:
            self.logger.error(
                "webhook_apply_failed",
                extra={"event_id": envelope.event_id, "event_type": envelope.type, "error": exc.message},
            )
            with self.transaction():
                ledger_event = self.webhook_ledger.record_delivery(
                    source=source,
                    event_id=envelope.event_id,
                    event_type=envelope.type,
                    payload=envelope.payload,
                )
                self.webhook_ledger.fail(ledger_event, exc.message)
            raise

    @contextmanager
    def _webhook_unit(self, envelope: WebhookEnvelope) -> Iterator[Session]:
        """Booking holds are applied under their group mutex; other authorizations in a plain unit."""
        group_id = self.find_group_id(envelope.authorization_id) if envelope.authorization_id else None
        if group_id is None:
            with self.transaction() as session:
                yield session
        else:
            with self.aggregate_unit(group_id) as session:
                yield session

    def _apply_envelope(self, envelope: WebhookEnvelope) -> WebhookApplyResult:
        if not envelope.authorization_id:
            return WebhookApplyResult(event_id=envelope.event_id, outcome="ignored_no_authorization")
        authorization = self.repository.get_by_processor_id(envelope.authorization_id)
        if authorization is None:
            self.logger.info(
                "webhook_unknown_authorization",
                extra={"event_id": envelope.event_id, "processor_id": envelope.authorization_id},
            )
            return WebhookApplyResult(event_id=envelope.event_id, outcome="ignored_unknown_authorization")
        authorization = self._lock(authorization.id)
        now = utc_now()
        source = PaymentEventSource.WEBHOOK

        if envelope.type == "payment_intent.succeeded":
            changed = self._apply_processor_capture(
                authorization, envelope.amount_cents, source=source, now=now, external_event_id=envelope.event_id
            )
        elif envelope.type == "payment_intent.canceled":
            changed = self._apply_processor_void(
                authorization, source=source, now=now, external_event_id=envelope.event_id
            )
        elif envelope.type == "charge.refunded":
            changed = self._apply_processor_refund_total(
                authorization,
                envelope.amount_cents or 0,
                source=source,
                now=now,
                external_event_id=envelope.event_id,
            )
        elif envelope.type in {"payment_intent.amount_capturable_updated", "payment_intent.payment_failed"}:
            self._record(
                authorization,
                envelope.type,
                previous=authorization.status,
                new=authorization.status,
                amount=envelope.amount_cents,
                source=source,
                now=now,
                external_event_id=envelope.event_id,
                publish=False,
            )
            return WebhookApplyResult(
                event_id=envelope.event_id,
                outcome="recorded",
                authorization_id=authorization.id,
                status=authorization.status,
            )
        else:
            return WebhookApplyResult(
                event_id=envelope.event_id,
                outcome="ignored_event_type",
                authorization_id=authorization.id,
                status=authorization.status,
            )
        return WebhookApplyResult(
            event_id=envelope.event_id,
            outcome="applied" if changed else "already_applied",
            authorization_id=authorization.id,
            status=authorization.status,
        )

    @BaseService.measure_operation("payment.reconcile")
    def reconcile(self, authorization_id: str) -> ReconcileResult:
        """
        Re-query the processor and catch the local record up.

        Only forward transitions the table allows from the stored status are
        applied; a processor view that would move the record backwards is
        logged and left alone.
        """
        with self.transaction():
            authorization = self._lock(authorization_id)
            previous = authorization.status
            snapshot: ProcessorSnapshot = call_with_backoff(
                "retrieve",
                lambda: self.processor.retrieve(authorization.processor_authorization_id),
                authorization_id=authorization.id,
                sleep=self.sleep,
            )
            now = utc_now()
            source = PaymentEventSource.RECONCILE
            changed = False
            if snapshot.status == Status.CAPTURED.value:
                changed |= self._apply_processor_capture(
                    authorization, snapshot.amount_received_cents, source=source, now=now
                )
                if snapshot.amount_refunded_cents:
                    changed |= self._apply_processor_refund_total(
                        authorization, snapshot.amount_refunded_cents, source=source, now=now
                    )
            elif snapshot.status == Status.VOIDED.value:
                changed |= self._apply_processor_void(authorization, source=source, now=now)
            elif snapshot.status != authorization.status:
                self.logger.warning(
                    "reconcile_status_not_applicable",
                    extra={
                        "authorization_id": authorization.id,
                        "local_status": authorization.status,
                        "processor_status": snapshot.status,
                    },
                )
            return ReconcileResult(
                authorization_id=authorization.id,
                previous_status=previous,
                status=authorization.status,
                processor_status=snapshot.status,
                changed=changed,
            )

    def find_group_id(self, processor_authorization_id: str) -> Optional[str]:
        """Booking group backed by a processor authorization, if any."""
        row = (
            self.db.query(BookingGroup.id)
            .join(PaymentAuthorization, PaymentAuthorization.id == BookingGroup.payment_authorization_id)
            .filter(PaymentAuthorization.processor_authorization_id == processor_authorization_id)
            .first()
        )
        return row[0] if row else None

    # Guarded application of processor-reported state

    def _apply_processor_capture(
        self,
        authorization: PaymentAuthorization,
        amount_cents: Optional[int],
        *,
        source: PaymentEventSource,
        now: datetime,
        external_event_id: Optional[str] = None,
    ) -> bool:
        if authorization.status != Status.AUTHORIZED_HOLD.value:
            return False
        amount = authorization.authorized_amount_cents if amount_cents is None else amount_cents
        if amount > authorization.authorized_amount_cents:
            raise InvariantBreachException(
                "Processor reports a capture larger than the authorized amount",
                details={
                    "authorization_id": authorization.id,
                    "captured_cents": amount,
                    "authorized_cents": authorization.authorized_amount_cents,
                },
            )
        self._transition(
            authorization,
            Status.CAPTURED,
            event_type="captured",
            amount=amount,
            source=source,
            now=now,
            external_event_id=external_event_id,
            captured_amount_cents=amount,
            captured_at=now,
        )
        return True

    def _apply_processor_void(
        self,
        authorization: PaymentAuthorization,
        *,
        source: PaymentEventSource,
        now: datetime,
        external_event_id: Optional[str] = None,
    ) -> bool:
        if authorization.status != Status.AUTHORIZED_HOLD.value:
            if authorization.status != Status.VOIDED.value:
                self.logger.warning(
                    "processor_void_after_capture",
                    extra={"authorization_id": authorization.id, "status": authorization.status},
                )
            return False
        self._transition(
            authorization,
            Status.VOIDED,
            event_type="voided",
            amount=0,
            source=source,
            now=now,
            external_event_id=external_event_id,
            voided_at=now,
        )
        return True

    def _apply_processor_refund_total(
        self,
        authorization: PaymentAuthorization,
        refunded_total_cents: int,
        *,
        source: PaymentEventSource,
        now: datetime,
        external_event_id: Optional[str] = None,
    ) -> bool:
        if authorization.status not in {status.value for status in CAPTURED_PAYMENT_STATUSES}:
            return False
        if refunded_total_cents <= authorization.refunded_amount_cents:
            return False
        self._apply_refund_total(
            authorization,
            refunded_total_cents,
            source=source,
            now=now,
            external_event_id=external_event_id,
        )
        return True

    def _apply_refund_total(
        self,
        authorization: PaymentAuthorization,
        refunded_total_cents: int,
        *,
        source: PaymentEventSource,
        now: datetime,
        external_event_id: Optional[str] = None,
        event_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        if refunded_total_cents > authorization.captured_amount_cents:
            raise InvariantBreachException(
                "Refunded amount would exceed the captured amount",
                details={
                    "authorization_id": authorization.id,
                    "refunded_cents": refunded_total_cents,
                    "captured_cents": authorization.captured_amount_cents,
                },
            )
        target = (
            Status.REFUNDED
            if refunded_total_cents == authorization.captured_amount_cents
            else Status.PARTIALLY_REFUNDED
        )
        delta = refunded_total_cents - authorization.refunded_amount_cents
        self._transition(
            authorization,
            target,
            event_type="refunded",
            amount=delta,
            source=source,
            now=now,
            external_event_id=external_event_id,
            event_data=event_data,
            guards={"refunded_amount_cents": authorization.refunded_amount_cents},
            refunded_amount_cents=refunded_total_cents,
            refunded_at=now,
        )

    def _transition(
        self,
        authorization: PaymentAuthorization,
        target: PaymentAuthorizationStatus,
        *,
        event_type: str,
        amount: Optional[int],
        source: PaymentEventSource,
        now: datetime,
        external_event_id: Optional[str] = None,
        event_data: Optional[Dict[str, Any]] = None,
        guards: Optional[Dict[str, Any]] = None,
        **values: Any,
    ) -> None:
        previous = authorization.status
        PAYMENT_MACHINE.require(previous, target, entity_id=authorization.id)
        if not self.repository.compare_and_set(
            authorization.id, previous, target, guards=guards, **values
        ):
            current = self.repository.get_for_update(authorization.id)
            raise InvalidTransitionException(
                PAYMENT_MACHINE.name,
                authorization.id,
                expected=previous,
                actual=current.status if current else None,
                target=target.value,
            )
        self._record(
            authorization,
            event_type,
            previous=previous,
            new=target.value,
            amount=amount,
            source=source,
            now=now,
            external_event_id=external_event_id,
            event_data=event_data,
        )
        prometheus_metrics.record_transition(PAYMENT_MACHINE.name, previous, target.value)
        self.log_operation(
            f"payment_{event_type}",
            authorization_id=authorization.id,
            previous_status=previous,
            new_status=target.value,
            amount_cents=amount,
            source=source.value,
        )

    def _record(
        self,
        authorization: PaymentAuthorization,
        event_type: str,
        *,
        previous: Optional[str],
        new: str,
        amount: Optional[int],
        source: PaymentEventSource,
        now: datetime,
        external_event_id: Optional[str] = None,
        event_data: Optional[Dict[str, Any]] = None,
        publish: bool = True,
    ) -> None:
        self.repository.append_event(
            authorization.id,
            event_type,
            source=source.value,
            previous_status=previous,
            new_status=new,
            amount_cents=amount,
            external_event_id=external_event_id,
            event_data=event_data,
        )
        if publish:
            self.publisher.publish(
                PaymentAuthorizationChanged(
                    authorization_id=authorization.id,
                    previous_status=previous,
                    new_status=new,
                    amount_cents=int(amount or 0),
                    source=source.value,
                    occurred_at=now,
                )
            )
