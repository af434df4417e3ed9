"""Sweep that releases booking holds nobody approved in time."""

from datetime import datetime, timedelta
import logging
from typing import Dict, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.constants import SWEEP_BATCH_LIMIT
from ..core.exceptions import BookingLockedException, DomainException, InvalidTransitionException
from ..core.timezone_utils import utc_now
from ..models.booking import BookingStatus
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .booking_ledger_service import BookingLedgerService

logger = logging.getLogger(__name__)

EXPIRY_REASON = "Payment authorization expired before the booking was approved"


class AuthorizationExpiryService(BaseService):
    """Cancels pending groups whose hold is older than ``authorization_expiry_hours``."""

    def __init__(self, db: Session, ledger: BookingLedgerService):
        super().__init__(db)
        self.ledger = ledger
        self.group_repository = RepositoryFactory.create_booking_group_repository(db)

    @BaseService.measure_operation("expire_stale_authorizations")
    def expire_stale_authorizations(
        self, *, now: Optional[datetime] = None, limit: int = SWEEP_BATCH_LIMIT
    ) -> Dict[str, int]:
        now = now or utc_now()
        cutoff = now - timedelta(hours=settings.authorization_expiry_hours)
        expired = skipped = failed = 0
        group_ids = [group.id for group in self.group_repository.list_pending_with_stale_holds(cutoff, limit)]
        for group_id in group_ids:
            try:
                with self.aggregate_unit(group_id):
                    group = self.ledger.lock_booking_group(group_id)
                    if group.status != BookingStatus.PENDING.value:
                        skipped += 1
                        continue
                    self.ledger.transition_group(
                        group,
                        BookingStatus.CANCELLED,
                        expected=BookingStatus.PENDING,
                        reason=EXPIRY_REASON,
                        now=now,
                    )
                    self.ledger.release_hold(group, now)
                expired += 1
                prometheus_metrics.record_sweep_item("authorization_expiry", "expired")
            except (InvalidTransitionException, BookingLockedException) as exc:
                skipped += 1
                prometheus_metrics.record_sweep_item("authorization_expiry", "skipped")
                self.logger.warning(
                    "authorization_expiry_skipped", extra={"booking_group_id": group_id, "error": exc.message}
                )
            except DomainException as exc:
                failed += 1
                prometheus_metrics.record_sweep_item("authorization_expiry", "failed")
                self.logger.error(
                    "authorization_expiry_failed", extra={"booking_group_id": group_id, "error": exc.message}
                )
        return {"expired": expired, "skipped": skipped, "failed": failed}
