"""Exactly-once bookkeeping for inbound processor webhooks."""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.exceptions import RepositoryException
from app.core.timezone_utils import utc_now
from app.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.repositories.factory import RepositoryFactory
from app.services.base import BaseService

MAX_ERROR_LENGTH = 2000


class WebhookLedgerService(BaseService):
    """
    Ledger of deliveries keyed by (source, event_id).

    These helpers run inside the caller's unit of work and only flush, so the
    ledger row commits or rolls back together with the state change it guards.
    """

    def __init__(self, db: Session) -> None:
        super().__init__(db)
        self.repository = RepositoryFactory.create_webhook_event_repository(db)

    @BaseService.measure_operation("webhook_ledger.record_delivery")
    def record_delivery(
        self, *, source: str, event_id: str, event_type: Optional[str], payload: dict[str, Any]
    ) -> WebhookEvent:
        """Insert the first delivery of an event; later deliveries bump ``retry_count``."""
        now = utc_now()
        event = self.repository.get_delivery(source, event_id)
        if event is None:
            try:
                return self.repository.create(
                    source=source,
                    event_id=event_id,
                    event_type=event_type or "unknown",
                    payload=payload,
                    status=WebhookEventStatus.RECEIVED.value,
                    received_at=now,
                )
            except RepositoryException as exc:
                # Lost the insert race to a concurrent delivery of the same event
                if not isinstance(exc.__cause__, IntegrityError):
                    raise
                event = self.repository.get_delivery(source, event_id)
                if event is None:
                    raise
        event.retry_count = (event.retry_count or 0) + 1
        event.last_delivery_at = now
        self.repository.flush()
        return event

    def claim(self, event: WebhookEvent) -> bool:
        return self.repository.claim(event.id)

    def complete(
        self, event: WebhookEvent, *, outcome: str, payment_authorization_id: Optional[str]
    ) -> WebhookEvent:
        """Processed when it touched an authorization, ignored otherwise."""
        event.status = (
            WebhookEventStatus.PROCESSED.value
            if payment_authorization_id
            else WebhookEventStatus.IGNORED.value
        )
        event.outcome = outcome
        event.payment_authorization_id = payment_authorization_id
        event.processed_at = utc_now()
        self.repository.flush()
        return event

    def fail(self, event: WebhookEvent, error: str) -> WebhookEvent:
        event.status = WebhookEventStatus.FAILED.value
        event.last_error = error[:MAX_ERROR_LENGTH]
        self.repository.flush()
        return event
