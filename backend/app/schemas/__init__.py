# backend/app/schemas/__init__.py
"""
Pydantic schemas for the booking core.

Request models forbid unknown fields; response models read ORM rows directly.
"""

# Booking ledger and cancellation
from .booking import (
    AddonAttach,
    BookingGroupCreate,
    BookingGroupResponse,
    BookingRejection,
    BookingTransitionRequest,
    CancellationCreate,
    CancellationDecisionResponse,
    CancellationRequestResponse,
    CancellationResolve,
    CancellationResultResponse,
    EquipmentAddonCreate,
    EquipmentBookingResponse,
    StorageAddonCreate,
    StorageBookingResponse,
)

# Damage claims
from .damage_claim import (
    DamageClaimChefResponse,
    DamageClaimCreate,
    DamageClaimDecisionCreate,
    DamageClaimHistoryResponse,
    DamageClaimList,
    DamageClaimRefund,
    DamageClaimResolve,
    DamageClaimResponse,
)

# Overstay penalties
from .overstay import (
    EscalationResolution,
    OverstayHistoryResponse,
    OverstayRecordList,
    OverstayRecordResponse,
    OverstayStatsResponse,
    PenaltyApproval,
    PenaltyRefund,
    PenaltyWaiver,
)

# Payments
from .payment import (
    PaymentAuthorizationDetail,
    PaymentAuthorizationResponse,
    PaymentEventResponse,
    ReconcileResponse,
    WebhookAckResponse,
)

# Storage checkout and extensions
from .storage import (
    CheckoutDenial,
    CheckoutPhotosAdd,
    CheckoutRequestCreate,
    ExtensionCreate,
    ExtensionRejection,
    StorageExtensionResponse,
)

__all__ = [
    # Booking ledger
    "AddonAttach",
    "BookingGroupCreate",
    "BookingGroupResponse",
    "BookingRejection",
    "BookingTransitionRequest",
    "EquipmentAddonCreate",
    "EquipmentBookingResponse",
    "StorageAddonCreate",
    "StorageBookingResponse",
    # Cancellation
    "CancellationCreate",
    "CancellationDecisionResponse",
    "CancellationRequestResponse",
    "CancellationResolve",
    "CancellationResultResponse",
    # Damage claims
    "DamageClaimChefResponse",
    "DamageClaimCreate",
    "DamageClaimDecisionCreate",
    "DamageClaimHistoryResponse",
    "DamageClaimList",
    "DamageClaimRefund",
    "DamageClaimResolve",
    "DamageClaimResponse",
    # Overstay
    "EscalationResolution",
    "OverstayHistoryResponse",
    "OverstayRecordList",
    "OverstayRecordResponse",
    "OverstayStatsResponse",
    "PenaltyApproval",
    "PenaltyRefund",
    "PenaltyWaiver",
    # Payments
    "PaymentAuthorizationDetail",
    "PaymentAuthorizationResponse",
    "PaymentEventResponse",
    "ReconcileResponse",
    "WebhookAckResponse",
    # Storage
    "CheckoutDenial",
    "CheckoutPhotosAdd",
    "CheckoutRequestCreate",
    "ExtensionCreate",
    "ExtensionRejection",
    "StorageExtensionResponse",
]
