# backend/app/schemas/booking.py
"""
Booking schemas for the KitchenHub booking core.

A booking group is one kitchen session plus the storage and equipment add-ons
checked out with it. Requests carry listing ids and the chef's payment
references; prices are always computed server-side.
"""

from datetime import date, datetime, time
import re
from typing import List, Literal, Optional

from pydantic import Field, field_validator, model_validator

from ..core.constants import MAX_NOTES_LENGTH, MAX_REASON_LENGTH
from ..models.booking import BookingStatus
from .base import StandardizedModel, StrictRequestModel, clean_text

DATE_ONLY_REGEX = re.compile(r"^\d{4}-\d{2}-\d{2}$")
SLOT_REGEX = re.compile(r"^\d{2}:\d{2}-\d{2}:\d{2}$")


def _ensure_date_only(value: object, field_name: str) -> object:
    if isinstance(value, str):
        candidate = value.strip()
        if not DATE_ONLY_REGEX.fullmatch(candidate):
            raise ValueError(f"{field_name} must be a YYYY-MM-DD date-only string")
        return candidate
    return value


class StorageAddonCreate(StrictRequestModel):
    """A storage unit rented alongside the kitchen session."""

    storage_listing_id: str = Field(..., description="Storage listing to rent")
    start_date: datetime = Field(..., description="Start of the storage rental (UTC)")
    end_date: datetime = Field(..., description="End of the storage rental (UTC)")

    @model_validator(mode="after")
    def _check_range(self) -> "StorageAddonCreate":
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class EquipmentAddonCreate(StrictRequestModel):
    equipment_listing_id: str = Field(..., description="Equipment listing to rent for the session")


class BookingGroupCreate(StrictRequestModel):
    """
    Checkout request for a kitchen session and its add-ons.

    ``selected_slots`` are ``"HH:MM-HH:MM"`` ranges in the location's local
    time; they may be non-contiguous.
    """

    kitchen_id: str = Field(..., description="Kitchen to book")
    booking_date: date = Field(..., description="Local date of the session")
    selected_slots: List[str] = Field(..., min_length=1, max_length=48)
    storage: List[StorageAddonCreate] = Field(default_factory=list)
    equipment: List[EquipmentAddonCreate] = Field(default_factory=list)
    special_notes: Optional[str] = Field(None, max_length=MAX_NOTES_LENGTH)
    stripe_customer_id: Optional[str] = Field(None, description="Processor customer reference")
    stripe_payment_method_id: Optional[str] = Field(
        None, description="Saved payment method used for the hold and later penalties"
    )

    @field_validator("booking_date", mode="before")
    @classmethod
    def _enforce_date_only(cls, v: object) -> object:
        return _ensure_date_only(v, "booking_date")

    @field_validator("selected_slots")
    @classmethod
    def _validate_slots(cls, v: List[str]) -> List[str]:
        cleaned = [slot.strip() for slot in v]
        for slot in cleaned:
            if not SLOT_REGEX.fullmatch(slot):
                raise ValueError(f"Invalid slot {slot!r}. Expected HH:MM-HH:MM.")
        if len(set(cleaned)) != len(cleaned):
            raise ValueError("Duplicate time slots")
        return cleaned

    @field_validator("special_notes")
    @classmethod
    def _clean_notes(cls, v: Optional[str]) -> Optional[str]:
        return clean_text(v)


class AddonAttach(StrictRequestModel):
    """Attach exactly one add-on to a pending booking group."""

    storage: Optional[StorageAddonCreate] = None
    equipment: Optional[EquipmentAddonCreate] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "AddonAttach":
        if (self.storage is None) == (self.equipment is None):
            raise ValueError("Provide exactly one of storage or equipment")
        return self


class BookingTransitionRequest(StrictRequestModel):
    """Guarded status change; fails unless the stored status equals ``from_status``."""

    from_status: BookingStatus
    to_status: BookingStatus
    reason: Optional[str] = Field(None, max_length=MAX_REASON_LENGTH)


class BookingRejection(StrictRequestModel):
    reason: str = Field(..., min_length=1, max_length=MAX_REASON_LENGTH)

    @field_validator("reason")
    @classmethod
    def _strip(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("reason must not be blank")
        return v


class CancellationCreate(StrictRequestModel):
    reason: Optional[str] = Field(None, max_length=MAX_REASON_LENGTH)

    @field_validator("reason")
    @classmethod
    def _clean(cls, v: Optional[str]) -> Optional[str]:
        return clean_text(v)


class CancellationResolve(StrictRequestModel):
    outcome: Literal["accepted", "declined"]
    notes: Optional[str] = Field(None, max_length=MAX_NOTES_LENGTH)
    refund_amount_cents: Optional[int] = Field(
        None, ge=0, description="Refund on acceptance; defaults to the full refundable amount"
    )


# Responses


class StorageBookingResponse(StandardizedModel):
    id: str
    booking_group_id: str
    storage_listing_id: str
    chef_id: str
    start_date: datetime
    end_date: datetime
    daily_rate_cents: int
    total_price_cents: int
    status: str
    checkout_status: str
    checkout_requested_at: Optional[datetime] = None
    checkout_review_deadline: Optional[datetime] = None
    checkout_notes: Optional[str] = None
    checkout_photo_urls: List[str] = Field(default_factory=list)
    checkout_approved_at: Optional[datetime] = None
    checkout_auto_approved: bool = False
    checkout_denied_at: Optional[datetime] = None
    checkout_denial_reason: Optional[str] = None
    checkout_claim_filed_at: Optional[datetime] = None
    checkout_claim_notes: Optional[str] = None


class EquipmentBookingResponse(StandardizedModel):
    id: str
    booking_group_id: str
    equipment_listing_id: str
    status: str
    total_price_cents: int
    damage_deposit_cents: int


class BookingGroupResponse(StandardizedModel):
    id: str
    chef_id: str
    kitchen_id: str
    location_id: str
    booking_date: date
    start_time: time
    end_time: time
    selected_slots: List[str]
    booking_start_utc: datetime
    status: str
    payment_authorization_id: Optional[str] = None
    kitchen_price_cents: int
    subtotal_cents: int
    service_fee_cents: int
    tax_cents: int
    total_price_cents: int
    special_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    storage_bookings: List[StorageBookingResponse] = Field(default_factory=list)
    equipment_bookings: List[EquipmentBookingResponse] = Field(default_factory=list)


class CancellationDecisionResponse(StandardizedModel):
    """Read-only preview of what a cancellation would do right now."""

    tier: Literal["immediate", "request"]
    allowed: bool
    hours_until_start: float
    policy_hours: int
    within_window: bool
    reason_code: Optional[str] = None


class CancellationRequestResponse(StandardizedModel):
    id: str
    booking_group_id: str
    storage_booking_id: Optional[str] = None
    requested_by: str
    reason: Optional[str] = None
    requested_at: datetime
    outcome: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None
    refund_amount_cents: Optional[int] = None


class CancellationResultResponse(StandardizedModel):
    tier: Literal["immediate", "request"]
    booking_group_id: str
    storage_booking_id: Optional[str] = None
    status: str
    payment_action: Optional[str] = None
    refunded_cents: int = 0
    cancellation_request: Optional[CancellationRequestResponse] = None
