from datetime import timedelta
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from chatcore.core.time import utcnow
from chatcore.models.checkin import CheckInDocument
from chatcore.repositories.user_repository import to_object_id


DEFAULT_CHECKIN_TTL = timedelta(hours=4)


class CheckInRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("checkins")

    async def get_check_in(self, check_in_id: str) -> Optional[CheckInDocument]:
        oid = to_object_id(check_in_id)
        if oid is None:
            return None
        doc = await self._collection.find_one({"_id": oid})
        if doc:
            doc["_id"] = str(doc["_id"])
            if doc.get("user") is not None and "user_id" not in doc:
                doc["user_id"] = str(doc["user"])
        return doc

    async def create_check_in(self, user_id: str, coordinates: List[float], note: Optional[str] = None) -> str:
        now = utcnow()
        doc = {
            "user_id": user_id,
            "location": {"type": "Point", "coordinates": list(coordinates)},
            "note": note or "",
            "created_at": now,
            "expires_at": now + DEFAULT_CHECKIN_TTL,
        }
        result = await self._collection.insert_one(doc)
        return str(result.inserted_id)
