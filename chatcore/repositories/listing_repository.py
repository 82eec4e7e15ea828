from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from chatcore.models.listing import ListingSummary
from chatcore.repositories.user_repository import to_object_id


class ListingRepository:
    """Read-only view over marketplace listings."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("marketplace_items")

    async def get_listing_summary(self, listing_id: str) -> Optional[ListingSummary]:
        oid = to_object_id(listing_id)
        if oid is None:
            return None
        doc = await self._collection.find_one(
            {"_id": oid},
            {"title": 1, "price": 1, "is_active": 1, "available": 1, "owner": 1},
        )
        if not doc:
            return None
        owner = doc.get("owner")
        return {
            "_id": str(doc["_id"]),
            "title": doc.get("title", ""),
            "price": doc.get("price"),
            # an item is offered only while active and still available
            "is_active": bool(doc.get("is_active", True)) and bool(doc.get("available", True)),
            "owner_id": str(owner) if owner is not None else None,
        }
