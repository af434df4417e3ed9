"""Data access for payment authorizations and their audit events."""

from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..models.payment import PaymentAuthorization, PaymentEvent
from .base_repository import BaseRepository


class PaymentAuthorizationRepository(BaseRepository[PaymentAuthorization]):
    def __init__(self, db: Session):
        super().__init__(db, PaymentAuthorization)

    def get_by_processor_id(self, processor_authorization_id: str) -> Optional[PaymentAuthorization]:
        return self.find_one_by(processor_authorization_id=processor_authorization_id)

    def append_event(
        self,
        authorization_id: str,
        event_type: str,
        *,
        source: str,
        previous_status: Optional[str] = None,
        new_status: Optional[str] = None,
        amount_cents: Optional[int] = None,
        external_event_id: Optional[str] = None,
        event_data: Optional[Dict[str, Any]] = None,
    ) -> PaymentEvent:
        event = PaymentEvent(
            payment_authorization_id=authorization_id,
            event_type=event_type,
            source=source,
            previous_status=previous_status,
            new_status=new_status,
            amount_cents=amount_cents,
            external_event_id=external_event_id,
            event_data=event_data,
        )
        self.db.add(event)
        self.db.flush()
        return event

    def list_events(self, authorization_id: str) -> List[PaymentEvent]:
        return (
            self.db.query(PaymentEvent)
            .filter(PaymentEvent.payment_authorization_id == authorization_id)
            .order_by(PaymentEvent.created_at.asc())
            .all()
        )
