# backend/app/repositories/overstay_repository.py
"""Data access for overstay penalty records and their append-only history."""

from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.booking import BookingGroup, StorageBooking
from ..models.overstay import OverstayHistory, OverstayPenaltyRecord, OverstayStatus
from .base_repository import BaseRepository


class OverstayRepository(BaseRepository[OverstayPenaltyRecord]):
    def __init__(self, db: Session):
        super().__init__(db, OverstayPenaltyRecord)

    def get_open_for_booking(self, storage_booking_id: str) -> Optional[OverstayPenaltyRecord]:
        return (
            self._build_query()
            .filter(OverstayPenaltyRecord.open_booking_key == storage_booking_id)
            .populate_existing()
            .first()
        )

    def list_by_status(self, status: OverstayStatus, limit: int) -> List[OverstayPenaltyRecord]:
        query = (
            self._build_query()
            .filter(OverstayPenaltyRecord.status == status.value)
            .order_by(OverstayPenaltyRecord.detected_at.asc())
            .limit(limit)
        )
        return self._execute_query(query)

    def list_for_location(
        self, location_id: str, *, statuses: Optional[List[str]] = None
    ) -> List[OverstayPenaltyRecord]:
        query = (
            self._build_query()
            .join(StorageBooking, StorageBooking.id == OverstayPenaltyRecord.storage_booking_id)
            .join(BookingGroup, BookingGroup.id == StorageBooking.booking_group_id)
            .filter(BookingGroup.location_id == location_id)
        )
        if statuses:
            query = query.filter(OverstayPenaltyRecord.status.in_(statuses))
        return self._execute_query(query.order_by(OverstayPenaltyRecord.detected_at.desc()))

    def list_for_chef(
        self, chef_id: str, *, statuses: Optional[List[str]] = None
    ) -> List[OverstayPenaltyRecord]:
        query = (
            self._build_query()
            .join(StorageBooking, StorageBooking.id == OverstayPenaltyRecord.storage_booking_id)
            .filter(StorageBooking.chef_id == chef_id)
        )
        if statuses:
            query = query.filter(OverstayPenaltyRecord.status.in_(statuses))
        return self._execute_query(query.order_by(OverstayPenaltyRecord.detected_at.desc()))

    def status_counts_for_location(self, location_id: str) -> Dict[str, int]:
        rows = (
            self.db.query(OverstayPenaltyRecord.status, func.count(OverstayPenaltyRecord.id))
            .join(StorageBooking, StorageBooking.id == OverstayPenaltyRecord.storage_booking_id)
            .join(BookingGroup, BookingGroup.id == StorageBooking.booking_group_id)
            .filter(BookingGroup.location_id == location_id)
            .group_by(OverstayPenaltyRecord.status)
            .all()
        )
        return {status: int(count) for status, count in rows}

    def collected_cents_for_location(self, location_id: str) -> int:
        total = (
            self.db.query(func.coalesce(func.sum(OverstayPenaltyRecord.charged_amount_cents), 0))
            .join(StorageBooking, StorageBooking.id == OverstayPenaltyRecord.storage_booking_id)
            .join(BookingGroup, BookingGroup.id == StorageBooking.booking_group_id)
            .filter(
                BookingGroup.location_id == location_id,
                OverstayPenaltyRecord.charge_succeeded_at.isnot(None),
            )
            .scalar()
        )
        return int(total or 0)

    # History

    def append_history(
        self,
        record_id: str,
        *,
        previous_status: Optional[str],
        new_status: str,
        event_type: str,
        event_source: str,
        actor_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> OverstayHistory:
        last_sequence = (
            self.db.query(func.max(OverstayHistory.sequence))
            .filter(OverstayHistory.overstay_record_id == record_id)
            .scalar()
        )
        entry = OverstayHistory(
            overstay_record_id=record_id,
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

    def list_history(self, record_id: str) -> List[OverstayHistory]:
        return (
            self.db.query(OverstayHistory)
            .filter(OverstayHistory.overstay_record_id == record_id)
            .order_by(OverstayHistory.sequence.asc())
            .all()
        )
