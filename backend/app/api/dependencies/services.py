# backend/app/api/dependencies/services.py
"""
Service layer dependencies for dependency injection.

This module provides factory functions that create service instances
with their required dependencies properly injected. Every service built for
one request shares that request's session, so a unit of work spans them all.
"""

from functools import lru_cache
import logging

from fastapi import Depends
from sqlalchemy.orm import Session

from ...services.booking_ledger_service import BookingLedgerService
from ...services.cancellation_policy_service import CancellationPolicyService
from ...services.damage_claim_service import DamageClaimService
from ...services.overstay_penalty_service import OverstayPenaltyService
from ...services.payment_authorization_service import PaymentAuthorizationService
from ...services.payment_processor import PaymentProcessor, StripePaymentProcessor
from ...services.storage_checkout_service import StorageCheckoutService
from ...services.storage_extension_service import StorageExtensionService
from .database import get_db

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_payment_processor_singleton() -> StripePaymentProcessor:
    """Get the process-wide Stripe processor."""
    return StripePaymentProcessor()


def get_payment_processor() -> PaymentProcessor:
    """Get payment processor for dependency injection; tests override this."""
    return get_payment_processor_singleton()


def get_payment_service(
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> PaymentAuthorizationService:
    return PaymentAuthorizationService(db, processor)


def get_ledger_service(
    db: Session = Depends(get_db),
    payment_service: PaymentAuthorizationService = Depends(get_payment_service),
) -> BookingLedgerService:
    """
    Get booking ledger service instance.

    Args:
        db: Database session
        payment_service: Payment authorization service sharing the session

    Returns:
        BookingLedgerService instance
    """
    return BookingLedgerService(db, payment_service)


def get_cancellation_service(
    db: Session = Depends(get_db),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    payment_service: PaymentAuthorizationService = Depends(get_payment_service),
) -> CancellationPolicyService:
    return CancellationPolicyService(db, ledger, payment_service)


def get_checkout_service(
    db: Session = Depends(get_db),
    ledger: BookingLedgerService = Depends(get_ledger_service),
) -> StorageCheckoutService:
    return StorageCheckoutService(db, ledger)


def get_overstay_service(
    db: Session = Depends(get_db),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    payment_service: PaymentAuthorizationService = Depends(get_payment_service),
) -> OverstayPenaltyService:
    return OverstayPenaltyService(db, ledger, payment_service)


def get_extension_service(
    db: Session = Depends(get_db),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    payment_service: PaymentAuthorizationService = Depends(get_payment_service),
) -> StorageExtensionService:
    return StorageExtensionService(db, ledger, payment_service)


def get_damage_claim_service(
    db: Session = Depends(get_db),
    ledger: BookingLedgerService = Depends(get_ledger_service),
    payment_service: PaymentAuthorizationService = Depends(get_payment_service),
) -> DamageClaimService:
    return DamageClaimService(db, ledger, payment_service)
