"""Event publisher - writes domain events to the transactional outbox."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Protocol

from app.repositories.event_outbox_repository import EventOutboxRepository


class Event(Protocol):
    """Protocol for event types."""

    @property
    def aggregate_id(self) -> str:
        ...

    def to_dict(self) -> Dict[str, Any]:
        ...


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _jsonable(inner) for key, inner in value.items()}
    return value


class EventPublisher:
    """
    Publishes domain events to the outbox.

    The row is written in the caller's transaction, so an event exists if and
    only if the state change that produced it committed.
    """

    def __init__(self, outbox_repository: EventOutboxRepository):
        self.outbox_repo = outbox_repository

    def publish(self, event: Event) -> None:
        event_type = type(event).__name__
        payload = {key: _jsonable(value) for key, value in event.to_dict().items()}
        self.outbox_repo.enqueue(
            event_type=f"event:{event_type}",
            aggregate_id=event.aggregate_id,
            payload=payload,
        )
