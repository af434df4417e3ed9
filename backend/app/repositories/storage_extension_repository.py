"""Data access for storage extension requests."""

from typing import List, Optional

from sqlalchemy.orm import Session

from ..models.storage_extension import ExtensionStatus, StorageExtension
from .base_repository import BaseRepository

_OPEN_STATUSES = (ExtensionStatus.PENDING.value, ExtensionStatus.PAID.value)


class StorageExtensionRepository(BaseRepository[StorageExtension]):
    def __init__(self, db: Session):
        super().__init__(db, StorageExtension)

    def get_open_for_booking(self, storage_booking_id: str) -> Optional[StorageExtension]:
        return (
            self._build_query()
            .filter(
                StorageExtension.storage_booking_id == storage_booking_id,
                StorageExtension.status.in_(_OPEN_STATUSES),
            )
            .first()
        )

    def list_for_booking(self, storage_booking_id: str) -> List[StorageExtension]:
        return self._execute_query(
            self._build_query()
            .filter(StorageExtension.storage_booking_id == storage_booking_id)
            .order_by(StorageExtension.created_at.asc())
        )
