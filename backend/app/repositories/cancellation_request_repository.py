"""Data access for manager-reviewed cancellation requests."""

from typing import List, Optional

from sqlalchemy.orm import Session

from ..models.booking import BookingGroup
from ..models.cancellation import CancellationRequest
from .base_repository import BaseRepository


class CancellationRequestRepository(BaseRepository[CancellationRequest]):
    def __init__(self, db: Session):
        super().__init__(db, CancellationRequest)

    def get_open_for_target(
        self, booking_group_id: str, storage_booking_id: Optional[str] = None
    ) -> Optional[CancellationRequest]:
        query = self._build_query().filter(
            CancellationRequest.booking_group_id == booking_group_id,
            CancellationRequest.outcome.is_(None),
        )
        if storage_booking_id is None:
            query = query.filter(CancellationRequest.storage_booking_id.is_(None))
        else:
            query = query.filter(CancellationRequest.storage_booking_id == storage_booking_id)
        return query.first()

    def list_open_for_location(self, location_id: str) -> List[CancellationRequest]:
        query = (
            self._build_query()
            .join(BookingGroup, BookingGroup.id == CancellationRequest.booking_group_id)
            .filter(
                BookingGroup.location_id == location_id,
                CancellationRequest.outcome.is_(None),
            )
            .order_by(CancellationRequest.requested_at.asc())
        )
        return self._execute_query(query)
