"""Domain events published through the transactional outbox."""

from app.events.booking_events import (
    AddonStatusChanged,
    BookingGroupStatusChanged,
    CancellationRequested,
    CheckoutStatusChanged,
    OverstayPenaltyStatusChanged,
    PaymentAuthorizationChanged,
    StorageExtensionStatusChanged,
)
from app.events.publisher import EventPublisher

__all__ = [
    "AddonStatusChanged",
    "BookingGroupStatusChanged",
    "CancellationRequested",
    "CheckoutStatusChanged",
    "EventPublisher",
    "OverstayPenaltyStatusChanged",
    "PaymentAuthorizationChanged",
    "StorageExtensionStatusChanged",
]
