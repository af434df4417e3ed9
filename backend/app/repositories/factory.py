# backend/app/repositories/factory.py
"""
Repository Factory for the booking core.

Centralizes repository creation so services share one construction path and
tests can swap implementations.
"""

from sqlalchemy.orm import Session

from .booking_repository import (
    BookingGroupRepository,
    EquipmentBookingRepository,
    StorageBookingRepository,
)
from .cancellation_request_repository import CancellationRequestRepository
from .damage_claim_repository import DamageClaimRepository
from .event_outbox_repository import EventOutboxRepository
from .listing_repository import ListingRepository
from .overstay_repository import OverstayRepository
from .payment_authorization_repository import PaymentAuthorizationRepository
from .storage_extension_repository import StorageExtensionRepository
from .webhook_event_repository import WebhookEventRepository


class RepositoryFactory:
    """Factory class for creating repository instances."""

    @staticmethod
    def create_booking_group_repository(db: Session) -> BookingGroupRepository:
        return BookingGroupRepository(db)

    @staticmethod
    def create_storage_booking_repository(db: Session) -> StorageBookingRepository:
        return StorageBookingRepository(db)

    @staticmethod
    def create_equipment_booking_repository(db: Session) -> EquipmentBookingRepository:
        return EquipmentBookingRepository(db)

    @staticmethod
    def create_listing_repository(db: Session) -> ListingRepository:
        return ListingRepository(db)

    @staticmethod
    def create_payment_authorization_repository(db: Session) -> PaymentAuthorizationRepository:
        return PaymentAuthorizationRepository(db)

    @staticmethod
    def create_overstay_repository(db: Session) -> OverstayRepository:
        return OverstayRepository(db)

    @staticmethod
    def create_damage_claim_repository(db: Session) -> DamageClaimRepository:
        return DamageClaimRepository(db)

    @staticmethod
    def create_storage_extension_repository(db: Session) -> StorageExtensionRepository:
        return StorageExtensionRepository(db)

    @staticmethod
    def create_cancellation_request_repository(db: Session) -> CancellationRequestRepository:
        return CancellationRequestRepository(db)

    @staticmethod
    def create_webhook_event_repository(db: Session) -> WebhookEventRepository:
        return WebhookEventRepository(db)

    @staticmethod
    def create_event_outbox_repository(db: Session) -> EventOutboxRepository:
        return EventOutboxRepository(db)
