"""Webhook ledger queries."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.models.webhook_event import (
    CLAIMABLE_WEBHOOK_STATUSES,
    WebhookEvent,
    WebhookEventStatus,
)
from app.repositories.base_repository import BaseRepository


class WebhookEventRepository(BaseRepository[WebhookEvent]):
    def __init__(self, db: Session) -> None:
        super().__init__(db, WebhookEvent)

    def get_delivery(self, source: str, event_id: str) -> Optional[WebhookEvent]:
        return (
            self._build_query()
            .filter(WebhookEvent.source == source, WebhookEvent.event_id == event_id)
            .populate_existing()
            .one_or_none()
        )

    def claim(self, row_id: str) -> bool:
        """
        Compare-and-swap a received or failed delivery to processing.

        False means another worker holds it or it already finished.
        """
        result = self.db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.id == row_id,
                WebhookEvent.status.in_(sorted(CLAIMABLE_WEBHOOK_STATUSES)),
            )
            .values(status=WebhookEventStatus.PROCESSING.value, last_error=None)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1
