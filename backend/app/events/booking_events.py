"""Lifecycle domain events consumed by notification and display collaborators."""
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class BookingGroupStatusChanged:
    """Fired after a booking group moves between ledger states."""

    booking_group_id: str
    previous_status: Optional[str]
    new_status: str
    occurred_at: datetime
    actor_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def aggregate_id(self) -> str:
        return self.booking_group_id

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AddonStatusChanged:
    """Fired after a storage or equipment add-on changes status."""

    booking_id: str
    booking_type: str  # 'storage' or 'equipment'
    booking_group_id: str
    previous_status: Optional[str]
    new_status: str
    occurred_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.booking_group_id

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PaymentAuthorizationChanged:
    """Fired after any money movement on an authorization."""

    authorization_id: str
    previous_status: Optional[str]
    new_status: str
    amount_cents: int
    source: str
    occurred_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.authorization_id

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CancellationRequested:
    """Fired when a captured booking enters manager review for cancellation."""

    request_id: str
    booking_group_id: str
    requested_by: str
    occurred_at: datetime
    storage_booking_id: Optional[str] = None

    @property
    def aggregate_id(self) -> str:
        return self.booking_group_id

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CheckoutStatusChanged:
    """Fired after a storage checkout request advances or is denied."""

    storage_booking_id: str
    previous_status: str
    new_status: str
    occurred_at: datetime
    actor_id: Optional[str] = None
    auto_approved: bool = False

    @property
    def aggregate_id(self) -> str:
        return self.storage_booking_id

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class OverstayPenaltyStatusChanged:
    """Fired after an overstay record transition."""

    record_id: str
    storage_booking_id: str
    previous_status: Optional[str]
    new_status: str
    occurred_at: datetime
    amounts: Dict[str, Optional[int]] = field(default_factory=dict)

    @property
    def aggregate_id(self) -> str:
        return self.storage_booking_id

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StorageExtensionStatusChanged:
    """Fired after a storage extension request changes status."""

    extension_id: str
    storage_booking_id: str
    previous_status: Optional[str]
    new_status: str
    occurred_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.storage_booking_id

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DamageClaimStatusChanged:
    """Fired after a damage claim transition."""

    claim_id: str
    storage_booking_id: str
    previous_status: Optional[str]
    new_status: str
    occurred_at: datetime
    amounts: Dict[str, Optional[int]] = field(default_factory=dict)

    @property
    def aggregate_id(self) -> str:
        return self.storage_booking_id

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
