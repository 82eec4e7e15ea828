from typing import Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase

from chatcore.models.user import UserDocument, UserIdentity


def to_object_id(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


class UserRepository:
    """Read-only view over the users collection owned by the identity service."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def get_user_by_id(self, user_id: str) -> Optional[UserDocument]:
        oid = to_object_id(user_id)
        if oid is None:
            return None
        user = await self._collection.find_one({"_id": oid})
        if user:
            user["_id"] = str(user["_id"])  # normalize to string for API layer
        return user

    async def get_users_by_ids(self, user_ids: List[str]) -> Dict[str, UserDocument]:
        oids = [oid for oid in (to_object_id(u) for u in set(user_ids)) if oid is not None]
        if not oids:
            return {}
        users = {}
        async for user in self._collection.find({"_id": {"$in": oids}}):
            user["_id"] = str(user["_id"])
            users[user["_id"]] = user
        return users


def to_identity(user: UserDocument) -> UserIdentity:
    display_name = (
        user.get("display_name")
        or user.get("full_name")
        or user.get("username")
        or user.get("email")
        or "Unknown user"
    )
    return {"_id": str(user["_id"]), "display_name": display_name, "avatar": user.get("avatar")}
