"""Writes to the transactional event outbox."""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session
import ulid

from app.core.timezone_utils import utc_now
from app.models.event_outbox import EventOutbox, EventOutboxStatus


class EventOutboxRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_idempotency_key(self, key: str) -> Optional[EventOutbox]:
        return self.db.execute(
            select(EventOutbox).where(EventOutbox.idempotency_key == key)
        ).scalar_one_or_none()

    def enqueue(
        self,
        event_type: str,
        aggregate_id: str,
        payload: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> EventOutbox:
        """
        Add a PENDING row in the caller's transaction.

        With an explicit ``idempotency_key`` an existing row for that key is
        returned instead of writing a second one.
        """
        if idempotency_key:
            existing = self.get_by_idempotency_key(idempotency_key)
            if existing is not None:
                return existing
        event_id = str(ulid.ULID())
        row = EventOutbox(
            id=event_id,
            event_type=event_type,
            aggregate_id=aggregate_id,
            payload=payload or {},
            idempotency_key=idempotency_key or f"{event_type}:{aggregate_id}:{event_id}",
            status=EventOutboxStatus.PENDING.value,
            attempt_count=0,
            created_at=utc_now(),
        )
        self.db.add(row)
        self.db.flush()
        return row

    def list_for_aggregate(self, aggregate_id: str) -> list[EventOutbox]:
        stmt = (
            select(EventOutbox)
            .where(EventOutbox.aggregate_id == aggregate_id)
            .order_by(EventOutbox.created_at.asc(), EventOutbox.id.asc())
        )
        return list(self.db.execute(stmt).scalars().all())
