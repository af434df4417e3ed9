"""
Inbound webhook ledger.

One row per (source, event_id). The row is written before the event is
applied, so a redelivery finds it and either replays the stored outcome or,
after a failure, claims it again.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON
import ulid

from app.core.timezone_utils import utc_now
from app.database import Base


class WebhookEventStatus(str, Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    IGNORED = "ignored"
    FAILED = "failed"


FINISHED_WEBHOOK_STATUSES = frozenset(
    {WebhookEventStatus.PROCESSED.value, WebhookEventStatus.IGNORED.value}
)
CLAIMABLE_WEBHOOK_STATUSES = frozenset(
    {WebhookEventStatus.RECEIVED.value, WebhookEventStatus.FAILED.value}
)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (
        sa.UniqueConstraint("source", "event_id", name="uq_webhook_events_source_event_id"),
        sa.Index("ix_webhook_events_status", "status"),
        sa.Index("ix_webhook_events_payment_authorization_id", "payment_authorization_id"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSONB(astext_type=Text()).with_variant(JSON(), "sqlite"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=WebhookEventStatus.RECEIVED.value
    )
    # Outcome of the first successful application, replayed to redeliveries
    outcome: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payment_authorization_id: Mapped[Optional[str]] = mapped_column(String(26), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    last_delivery_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_WEBHOOK_STATUSES
