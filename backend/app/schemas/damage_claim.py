# backend/app/schemas/damage_claim.py
"""
Damage claim schemas.

Amounts are integer cents. A partial approval must carry
``approved_amount_cents``; it can never exceed the claimed amount.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator, model_validator

from ..core.constants import MAX_NOTES_LENGTH, MAX_REASON_LENGTH
from ..models.damage_claim import DamageClaimDecision
from .base import StandardizedModel, StrictRequestModel, clean_text


class DamageClaimCreate(StrictRequestModel):
    """Manager files a claim while reviewing a checkout."""

    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=MAX_NOTES_LENGTH)
    claimed_amount_cents: int = Field(..., gt=0)
    damage_date: Optional[datetime] = None

    @field_validator("title", "description")
    @classmethod
    def _clean(cls, v: str) -> str:
        return clean_text(v) or ""


class DamageClaimChefResponse(StrictRequestModel):
    accept: bool
    response: str = Field(..., min_length=1, max_length=MAX_NOTES_LENGTH)


class DamageClaimDecisionCreate(StrictRequestModel):
    decision: DamageClaimDecision
    reason: str = Field(..., min_length=1, max_length=MAX_REASON_LENGTH)
    approved_amount_cents: Optional[int] = Field(None, gt=0)
    notes: Optional[str] = Field(None, max_length=MAX_NOTES_LENGTH)

    @model_validator(mode="after")
    def _amount_for_partial(self) -> "DamageClaimDecisionCreate":
        if self.decision == DamageClaimDecision.PARTIALLY_APPROVE and self.approved_amount_cents is None:
            raise ValueError("approved_amount_cents is required for a partial approval")
        return self


class DamageClaimResolve(StrictRequestModel):
    notes: str = Field(..., min_length=1, max_length=MAX_NOTES_LENGTH)


class DamageClaimRefund(StrictRequestModel):
    amount_cents: Optional[int] = Field(None, gt=0, description="Defaults to the refundable amount")
    reason: Optional[str] = Field(None, max_length=MAX_REASON_LENGTH)


class DamageClaimResponse(StandardizedModel):
    id: str
    storage_booking_id: str
    booking_group_id: str
    chef_id: str
    manager_id: str
    status: str
    claim_title: str
    claim_description: str
    damage_date: Optional[datetime] = None
    claimed_amount_cents: int
    approved_amount_cents: Optional[int] = None
    final_amount_cents: Optional[int] = None
    tax_cents: Optional[int] = None
    charged_amount_cents: Optional[int] = None
    refunded_amount_cents: int = 0
    submitted_at: datetime
    chef_response_deadline: datetime
    chef_response: Optional[str] = None
    chef_responded_at: Optional[datetime] = None
    reviewer_id: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    decision_reason: Optional[str] = None
    payment_authorization_id: Optional[str] = None
    charge_attempts: int = 0
    charge_failure_reason: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_type: Optional[str] = None
    resolution_notes: Optional[str] = None


class DamageClaimHistoryResponse(StandardizedModel):
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


class DamageClaimList(StandardizedModel):
    items: List[DamageClaimResponse]
    total: int
