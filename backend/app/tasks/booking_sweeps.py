# backend/app/tasks/booking_sweeps.py
"""
Scheduled sweeps over the booking ledger.

Each task builds its services on a fresh session; the services run one unit
of work per entity, so a failure on one booking never rolls back another.
"""

import logging
from typing import Dict, Optional

from sqlalchemy.orm import Session

from app.core.constants import SWEEP_BATCH_LIMIT
from app.database import get_db_session
from app.services.authorization_expiry_service import AuthorizationExpiryService
from app.services.booking_ledger_service import BookingLedgerService
from app.services.damage_claim_service import DamageClaimService
from app.services.overstay_penalty_service import OverstayPenaltyService
from app.services.payment_authorization_service import PaymentAuthorizationService
from app.services.payment_processor import PaymentProcessor, StripePaymentProcessor
from app.services.storage_checkout_service import StorageCheckoutService
from app.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


def _ledger(session: Session, processor: Optional[PaymentProcessor] = None) -> BookingLedgerService:
    payment_service = PaymentAuthorizationService(session, processor or StripePaymentProcessor())
    return BookingLedgerService(session, payment_service)


def run_overstay_sweep(
    session: Session, processor: Optional[PaymentProcessor] = None, limit: int = SWEEP_BATCH_LIMIT
) -> Dict[str, int]:
    ledger = _ledger(session, processor)
    service = OverstayPenaltyService(session, ledger, ledger.payment_service)
    return service.run_overstay_sweep(limit=limit)


def run_checkout_sweep(
    session: Session, processor: Optional[PaymentProcessor] = None, limit: int = SWEEP_BATCH_LIMIT
) -> Dict[str, int]:
    service = StorageCheckoutService(session, _ledger(session, processor))
    return service.auto_clear_expired_reviews(limit=limit)


def run_expiry_sweep(
    session: Session, processor: Optional[PaymentProcessor] = None, limit: int = SWEEP_BATCH_LIMIT
) -> Dict[str, int]:
    service = AuthorizationExpiryService(session, _ledger(session, processor))
    return service.expire_stale_authorizations(limit=limit)


def run_damage_claim_sweep(
    session: Session, processor: Optional[PaymentProcessor] = None, limit: int = SWEEP_BATCH_LIMIT
) -> Dict[str, int]:
    ledger = _ledger(session, processor)
    service = DamageClaimService(session, ledger, ledger.payment_service)
    return service.expire_unanswered_claims(limit=limit)


@celery_app.task(name="app.tasks.booking_sweeps.detect_storage_overstays")  # type: ignore[misc]
def detect_storage_overstays(limit: int = SWEEP_BATCH_LIMIT) -> Dict[str, int]:
    """Open overstay records, end elapsed grace periods and re-price pending reviews."""
    with get_db_session() as session:
        stats = run_overstay_sweep(session, limit=limit)
    logger.info("Overstay sweep finished", extra=stats)
    return stats


@celery_app.task(name="app.tasks.booking_sweeps.auto_clear_checkout_reviews")  # type: ignore[misc]
def auto_clear_checkout_reviews(limit: int = SWEEP_BATCH_LIMIT) -> Dict[str, int]:
    """Approve checkout requests whose review deadline passed."""
    with get_db_session() as session:
        stats = run_checkout_sweep(session, limit=limit)
    logger.info("Checkout auto-clear finished", extra=stats)
    return stats


@celery_app.task(name="app.tasks.booking_sweeps.expire_stale_authorizations")  # type: ignore[misc]
def expire_stale_authorizations(limit: int = SWEEP_BATCH_LIMIT) -> Dict[str, int]:
    """Cancel pending groups whose hold was never approved and void the hold."""
    with get_db_session() as session:
        stats = run_expiry_sweep(session, limit=limit)
    logger.info("Authorization expiry sweep finished", extra=stats)
    return stats


@celery_app.task(name="app.tasks.booking_sweeps.expire_unanswered_damage_claims")  # type: ignore[misc]
def expire_unanswered_damage_claims(limit: int = SWEEP_BATCH_LIMIT) -> Dict[str, int]:
    """Approve damage claims the chef left unanswered past the response deadline."""
    with get_db_session() as session:
        stats = run_damage_claim_sweep(session, limit=limit)
    logger.info("Damage claim expiry sweep finished", extra=stats)
    return stats
