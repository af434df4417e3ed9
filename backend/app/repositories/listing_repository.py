"""Read access to listing reference data."""

from typing import Optional

from sqlalchemy.orm import Session

from ..models.listing import EquipmentListing, Kitchen, Location, StorageListing
from .base_repository import BaseRepository


class ListingRepository(BaseRepository[Location]):
    def __init__(self, db: Session):
        super().__init__(db, Location)

    def get_location(self, location_id: str) -> Optional[Location]:
        return self.db.get(Location, location_id)

    def get_kitchen(self, kitchen_id: str) -> Optional[Kitchen]:
        return self.db.get(Kitchen, kitchen_id)

    def get_storage_listing(self, listing_id: str) -> Optional[StorageListing]:
        return self.db.get(StorageListing, listing_id)

    def get_equipment_listing(self, listing_id: str) -> Optional[EquipmentListing]:
        return self.db.get(EquipmentListing, listing_id)
