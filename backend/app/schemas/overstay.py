# backend/app/schemas/overstay.py
"""
Overstay penalty schemas.

Amounts are integer cents. ``final_penalty_cents`` may only lower the
calculated penalty; the service rejects anything above it.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import Field

from ..core.constants import MAX_NOTES_LENGTH, MAX_REASON_LENGTH
from .base import StandardizedModel, StrictRequestModel


class PenaltyApproval(StrictRequestModel):
    final_penalty_cents: Optional[int] = Field(
        None, ge=0, description="Defaults to the calculated penalty"
    )
    notes: Optional[str] = Field(None, max_length=MAX_NOTES_LENGTH)


class PenaltyWaiver(StrictRequestModel):
    reason: str = Field(..., min_length=1, max_length=MAX_REASON_LENGTH)


class EscalationResolution(StrictRequestModel):
    notes: str = Field(..., min_length=1, max_length=MAX_NOTES_LENGTH)


class PenaltyRefund(StrictRequestModel):
    amount_cents: Optional[int] = Field(None, gt=0, description="Defaults to the refundable amount")
    reason: Optional[str] = Field(None, max_length=MAX_REASON_LENGTH)


class OverstayRecordResponse(StandardizedModel):
    id: str
    storage_booking_id: str
    status: str
    detected_at: datetime
    end_date_snapshot: datetime
    grace_period_ends_at: datetime
    days_overdue: int
    daily_rate_cents: int
    penalty_rate: Decimal
    calculated_penalty_cents: int
    final_penalty_cents: Optional[int] = None
    tax_cents: Optional[int] = None
    charged_amount_cents: Optional[int] = None
    refunded_amount_cents: int = 0
    penalty_waived: bool = False
    waive_reason: Optional[str] = None
    manager_notes: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    payment_authorization_id: Optional[str] = None
    charge_failure_reason: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_type: Optional[str] = None
    resolution_notes: Optional[str] = None


class OverstayHistoryResponse(StandardizedModel):
    id: str
    sequence: int
    previous_status: Optional[str] = None
    new_status: str
    event_type: str
    event_source: str
    actor_id: Optional[str] = None
    description: Optional[str] = None
    event_metadata: Optional[Dict[str, Any]] = None
    created_at: datetime


class OverstayStatsResponse(StandardizedModel):
    location_id: str
    by_status: Dict[str, int]
    open: int
    pending_review: int
    escalated: int
    collected_cents: int


class OverstayRecordList(StandardizedModel):
    items: List[OverstayRecordResponse]
    total: int
