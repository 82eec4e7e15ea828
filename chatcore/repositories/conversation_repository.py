from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from chatcore.core.time import utcnow
from chatcore.models.conversation import ConversationDocument, pair_key


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("pair_key", ASCENDING)], unique=True)
        await self.collection.create_index([("participants", ASCENDING)])
        await self.collection.create_index([("updated_at", DESCENDING)])

    async def get_by_id(self, conversation_id: ObjectId) -> Optional[ConversationDocument]:
        return await self.collection.find_one({"_id": conversation_id})

    async def find_by_pair(self, user_a: str, user_b: str) -> Optional[ConversationDocument]:
        return await self.collection.find_one({"pair_key": pair_key(user_a, user_b)})

    async def get_or_create_one_to_one(self, user_a: str, user_b: str) -> Tuple[ConversationDocument, bool]:
        existing = await self.find_by_pair(user_a, user_b)
        if existing:
            return existing, False
        now = utcnow()
        on_insert = {
            "participants": sorted([user_a, user_b]),
            "pair_key": pair_key(user_a, user_b),
            "last_message": None,
            "last_message_at": None,
            "unread_count": {user_a: 0, user_b: 0},
            "archived_by": [],
            "created_at": now,
            "updated_at": now,
        }
        created = False
        try:
            # BEFORE yields None exactly when this call inserted the row
            before = await self.collection.find_one_and_update(
                {"pair_key": on_insert["pair_key"]},
                {"$setOnInsert": on_insert},
                upsert=True,
                return_document=ReturnDocument.BEFORE,
            )
            created = before is None
        except DuplicateKeyError:
            # lost the upsert race, the other writer's row is the conversation
            created = False
        doc = await self.find_by_pair(user_a, user_b)
        return doc, created

    async def update_on_new_message(
        self,
        conversation_id: ObjectId,
        message_id: ObjectId,
        created_at: datetime,
        sender_id: str,
        receiver_id: str,
    ) -> Optional[ConversationDocument]:
        return await self.collection.find_one_and_update(
            {"_id": conversation_id},
            {
                "$set": {
                    "last_message": message_id,
                    "last_message_at": created_at,
                    "updated_at": created_at,
                },
                "$inc": {f"unread_count.{receiver_id}": 1},
                "$pull": {"archived_by": sender_id},
            },
            return_document=ReturnDocument.AFTER,
        )

    async def decrement_unread(self, conversation_id: ObjectId, user_id: str, amount: int = 1) -> bool:
        # counter never goes below zero
        result = await self.collection.update_one(
            {"_id": conversation_id, f"unread_count.{user_id}": {"$gte": amount}},
            {"$inc": {f"unread_count.{user_id}": -amount}},
        )
        if result.modified_count:
            return True
        result = await self.collection.update_one(
            {"_id": conversation_id, f"unread_count.{user_id}": {"$gt": 0}},
            {"$set": {f"unread_count.{user_id}": 0}},
        )
        return bool(result.modified_count)

    async def set_archived(self, conversation_id: ObjectId, user_id: str, archived: bool) -> Optional[ConversationDocument]:
        op = "$addToSet" if archived else "$pull"
        return await self.collection.find_one_and_update(
            {"_id": conversation_id},
            {op: {"archived_by": user_id}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )

    async def set_last_message(
        self,
        conversation_id: ObjectId,
        message_id: Optional[ObjectId],
        created_at: Optional[datetime],
    ) -> None:
        await self.collection.update_one(
            {"_id": conversation_id},
            {"$set": {"last_message": message_id, "last_message_at": created_at}},
        )

    async def overwrite_counters(
        self,
        conversation_id: ObjectId,
        unread_count: Dict[str, int],
        last_message: Optional[ObjectId],
        last_message_at: Optional[datetime],
    ) -> Optional[ConversationDocument]:
        return await self.collection.find_one_and_update(
            {"_id": conversation_id},
            {
                "$set": {
                    "unread_count": unread_count,
                    "last_message": last_message,
                    "last_message_at": last_message_at,
                }
            },
            return_document=ReturnDocument.AFTER,
        )

    async def list_for_user(
        self,
        user_id: str,
        archived: bool = False,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[ConversationDocument], int]:
        query: Dict[str, Any] = {"participants": user_id}
        query["archived_by"] = user_id if archived else {"$ne": user_id}
        sort = [("updated_at", DESCENDING), ("_id", DESCENDING)]
        cursor = self.collection.find(query).sort(sort).skip((page - 1) * limit).limit(limit)
        items = await cursor.to_list(length=limit)
        total = await self.collection.count_documents(query)
        return items, total

