# backend/app/repositories/damage_claim_repository.py
"""Data access for storage damage claims and their append-only history."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.booking import BookingGroup
from ..models.damage_claim import DamageClaim, DamageClaimHistory, DamageClaimStatus
from .base_repository import BaseRepository


class DamageClaimRepository(BaseRepository[DamageClaim]):
    def __init__(self, db: Session):
        super().__init__(db, DamageClaim)

    def get_for_booking(self, storage_booking_id: str) -> Optional[DamageClaim]:
        return self.find_one_by(storage_booking_id=storage_booking_id)

    def list_unanswered_past_deadline(self, now: datetime, limit: int) -> List[DamageClaim]:
        query = (
            self._build_query()
            .filter(
                DamageClaim.status == DamageClaimStatus.SUBMITTED.value,
                DamageClaim.chef_response_deadline <= now,
            )
            .order_by(DamageClaim.chef_response_deadline.asc())
            .limit(limit)
        )
        return self._execute_query(query)

    def list_for_location(
        self, location_id: str, *, statuses: Optional[List[str]] = None
    ) -> List[DamageClaim]:
        query = (
            self._build_query()
            .join(BookingGroup, BookingGroup.id == DamageClaim.booking_group_id)
            .filter(BookingGroup.location_id == location_id)
        )
        if statuses:
            query = query.filter(DamageClaim.status.in_(statuses))
        return self._execute_query(query.order_by(DamageClaim.submitted_at.desc()))

    def list_for_chef(
        self, chef_id: str, *, statuses: Optional[List[str]] = None
    ) -> List[DamageClaim]:
        query = self._build_query().filter(DamageClaim.chef_id == chef_id)
        if statuses:
            query = query.filter(DamageClaim.status.in_(statuses))
        return self._execute_query(query.order_by(DamageClaim.submitted_at.desc()))

    # History

    def append_history(
        self,
        claim_id: str,
        *,
        previous_status: Optional[str],
        new_status: str,
        event_type: str,
        event_source: str,
        actor_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> DamageClaimHistory:
        last_sequence = (
            self.db.query(func.max(DamageClaimHistory.sequence))
            .filter(DamageClaimHistory.damage_claim_id == claim_id)
            .scalar()
        )
        entry = DamageClaimHistory(
            damage_claim_id=claim_id,
            sequence=int(last_sequence or 0) + 1,
            previous_status=previous_status,
            new_status=new_status,
            event_type=event_type,
            event_source=event_source,
            actor_id=actor_id,
            description=description,
            event_metadata=metadata,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def list_history(self, claim_id: str) -> List[DamageClaimHistory]:
        return (
            self.db.query(DamageClaimHistory)
            .filter(DamageClaimHistory.damage_claim_id == claim_id)
            .order_by(DamageClaimHistory.sequence.asc())
            .all()
        )
