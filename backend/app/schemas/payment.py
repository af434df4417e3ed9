# backend/app/schemas/payment.py
"""Payment authorization read models and webhook/reconcile responses."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from .base import StandardizedModel


class PaymentEventResponse(StandardizedModel):
    id: str
    event_type: str
    source: str
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    amount_cents: Optional[int] = None
    external_event_id: Optional[str] = None
    event_data: Optional[Dict[str, Any]] = None
    created_at: datetime


class PaymentAuthorizationResponse(StandardizedModel):
    id: str
    processor_authorization_id: str
    kind: str
    status: str
    currency: str
    authorized_amount_cents: int
    captured_amount_cents: int
    refunded_amount_cents: int
    refundable_amount_cents: int
    authorized_at: datetime
    captured_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    last_error: Optional[str] = None


class PaymentAuthorizationDetail(PaymentAuthorizationResponse):
    events: List[PaymentEventResponse] = []


class ReconcileResponse(StandardizedModel):
    authorization_id: str
    previous_status: str
    status: str
    processor_status: str
    changed: bool


class WebhookAckResponse(StandardizedModel):
    """Acknowledgement returned to the processor."""

    status: str
    event_id: str
    outcome: str
    duplicate: bool = False
