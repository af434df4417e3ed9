# backend/app/schemas/storage.py
"""Storage checkout verification and extension schemas."""

from datetime import datetime
from typing import List, Optional

from pydantic import Field, field_validator

from ..core.constants import MAX_NOTES_LENGTH, MAX_REASON_LENGTH
from .base import StandardizedModel, StrictRequestModel, clean_text


class CheckoutRequestCreate(StrictRequestModel):
    """Chef asks to release a storage unit."""

    notes: Optional[str] = Field(None, max_length=MAX_NOTES_LENGTH)
    photo_urls: List[str] = Field(default_factory=list, description="Photos of the emptied unit")

    @field_validator("notes")
    @classmethod
    def _clean_notes(cls, v: Optional[str]) -> Optional[str]:
        return clean_text(v)


class CheckoutPhotosAdd(StrictRequestModel):
    photo_urls: List[str] = Field(..., min_length=1)


class CheckoutDenial(StrictRequestModel):
    reason: str = Field(..., min_length=1, max_length=MAX_REASON_LENGTH)


class ExtensionCreate(StrictRequestModel):
    new_end_date: datetime = Field(..., description="Requested new end of the rental (UTC)")


class ExtensionRejection(StrictRequestModel):
    reason: str = Field(..., min_length=1, max_length=MAX_REASON_LENGTH)


class StorageExtensionResponse(StandardizedModel):
    id: str
    storage_booking_id: str
    chef_id: str
    status: str
    previous_end_date: datetime
    new_end_date: datetime
    extension_days: int
    daily_rate_cents: int
    base_price_cents: int
    tax_cents: int
    total_price_cents: int
    payment_authorization_id: Optional[str] = None
    rejection_reason: Optional[str] = None
    reviewed_by: Optional[str] = None
    paid_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    created_at: datetime
