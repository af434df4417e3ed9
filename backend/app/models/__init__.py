"""
Database models for the booking core.

Organized by lifecycle:
- Listings: locations, kitchens, storage and equipment listings (read-only inputs)
- Ledger: booking groups with storage and equipment add-ons
- Payments: processor authorizations and their audit events
- Storage: extensions, cancellation requests, overstay penalties, damage claims
- Infrastructure: webhook dedup ledger and the event outbox
"""

from .booking import BookingGroup, BookingStatus, CheckoutStatus, EquipmentBooking, StorageBooking
from .cancellation import CancellationOutcome, CancellationRequest
from .damage_claim import (
    DamageClaim,
    DamageClaimDecision,
    DamageClaimHistory,
    DamageClaimResolution,
    DamageClaimStatus,
)
from .event_outbox import EventOutbox, EventOutboxStatus
from .listing import EquipmentListing, Kitchen, Location, StorageListing
from .overstay import OverstayHistory, OverstayPenaltyRecord, OverstayResolution, OverstayStatus
from .payment import (
    PaymentAuthorization,
    PaymentAuthorizationKind,
    PaymentAuthorizationStatus,
    PaymentEvent,
    PaymentEventSource,
)
from .storage_extension import ExtensionStatus, StorageExtension
from .webhook_event import WebhookEvent, WebhookEventStatus

__all__ = [
    "BookingGroup",
    "BookingStatus",
    "CancellationOutcome",
    "CancellationRequest",
    "CheckoutStatus",
    "DamageClaim",
    "DamageClaimDecision",
    "DamageClaimHistory",
    "DamageClaimResolution",
    "DamageClaimStatus",
    "EquipmentBooking",
    "EquipmentListing",
    "EventOutbox",
    "EventOutboxStatus",
    "ExtensionStatus",
    "Kitchen",
    "Location",
    "OverstayHistory",
    "OverstayPenaltyRecord",
    "OverstayResolution",
    "OverstayStatus",
    "PaymentAuthorization",
    "PaymentAuthorizationKind",
    "PaymentAuthorizationStatus",
    "PaymentEvent",
    "PaymentEventSource",
    "StorageBooking",
    "StorageExtension",
    "StorageListing",
    "WebhookEvent",
    "WebhookEventStatus",
]
