from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from chatcore.core.time import utcnow
from chatcore.models.message import MessageDocument


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("created_at", DESCENDING)])
        await self.collection.create_index([("receiver_id", ASCENDING), ("is_read", ASCENDING)])
        await self.collection.create_index([("sender_id", ASCENDING), ("created_at", DESCENDING)])

    async def save_message(self, doc: Dict[str, Any]) -> MessageDocument:
        now = utcnow()
        doc = {
            **doc,
            "is_read": False,
            "read_at": None,
            "deleted_by": [],
            "is_deleted": False,
            "deleted_at": None,
            "is_edited": False,
            "edited_at": None,
            "created_at": now,
            "updated_at": now,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = result.inserted_id
        return doc

    async def get_by_id(self, message_id: ObjectId) -> Optional[MessageDocument]:
        return await self.collection.find_one({"_id": message_id})

    async def get_messages_by_conversation(
        self,
        conversation_id: ObjectId,
        viewer_id: str,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[MessageDocument], int]:
        query: Dict[str, Any] = {"conversation_id": conversation_id, "deleted_by": {"$ne": viewer_id}}
        sort = [("created_at", DESCENDING), ("_id", DESCENDING)]
        cur = self.collection.find(query).sort(sort).skip((page - 1) * limit).limit(limit)
        items = await cur.to_list(length=limit)
        total = await self.collection.count_documents(query)
        # newest-first from the store, oldest-first for the client
        return list(reversed(items)), total

    async def get_latest_visible(self, conversation_id: ObjectId) -> Optional[MessageDocument]:
        cur = (
            self.collection.find({"conversation_id": conversation_id, "is_deleted": False})
            .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            .limit(1)
        )
        items = await cur.to_list(length=1)
        return items[0] if items else None

    async def get_unread_ids(self, conversation_id: ObjectId, receiver_id: str) -> List[ObjectId]:
        cur = self.collection.find(
            {"conversation_id": conversation_id, "receiver_id": receiver_id, "is_read": False},
            {"_id": 1},
        )
        return [doc["_id"] async for doc in cur]

    async def mark_read(
        self,
        message_ids: List[ObjectId],
        read_at: datetime,
        visible_to: Optional[str] = None,
    ) -> int:
        """Flip unread messages to read and return how many this call flipped.

        With ``visible_to`` only messages that user has not hidden are touched.
        """
        if not message_ids:
            return 0
        query: Dict[str, Any] = {"_id": {"$in": message_ids}, "is_read": False}
        if visible_to is not None:
            query["deleted_by"] = {"$ne": visible_to}
        result = await self.collection.update_many(
            query,
            {"$set": {"is_read": True, "read_at": read_at, "updated_at": read_at}},
        )
        return result.modified_count or 0

    async def mark_message_read(self, message_id: ObjectId, receiver_id: str) -> Optional[MessageDocument]:
        """Flip one message to read; None when it was already read."""
        now = utcnow()
        return await self.collection.find_one_and_update(
            {"_id": message_id, "receiver_id": receiver_id, "is_read": False},
            {"$set": {"is_read": True, "read_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )

    async def add_deleted_by(self, message_id: ObjectId, user_id: str) -> Optional[MessageDocument]:
        return await self.collection.find_one_and_update(
            {"_id": message_id},
            {"$addToSet": {"deleted_by": user_id}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )

    async def add_deleted_by_for_conversation(
        self,
        conversation_id: ObjectId,
        user_id: str,
        until: Optional[datetime] = None,
    ) -> int:
        query: Dict[str, Any] = {"conversation_id": conversation_id, "deleted_by": {"$ne": user_id}}
        if until is not None:
            query["created_at"] = {"$lte": until}
        result = await self.collection.update_many(
            query,
            {"$addToSet": {"deleted_by": user_id}, "$set": {"updated_at": utcnow()}},
        )
        return result.modified_count or 0

    async def mark_deleted_for_everyone(self, conversation_id: ObjectId, participants: List[str]) -> int:
        now = utcnow()
        result = await self.collection.update_many(
            {"conversation_id": conversation_id, "deleted_by": {"$all": participants}, "is_deleted": False},
            {"$set": {"is_deleted": True, "deleted_at": now, "updated_at": now}},
        )
        return result.modified_count or 0

    async def edit_content(self, message_id: ObjectId, sender_id: str, content: str) -> Optional[MessageDocument]:
        now = utcnow()
        return await self.collection.find_one_and_update(
            {"_id": message_id, "sender_id": sender_id, "is_deleted": False},
            {"$set": {"content": content, "is_edited": True, "edited_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )

    async def count_unread_for_receiver(
        self,
        receiver_id: str,
        conversation_id: Optional[ObjectId] = None,
        until: Optional[datetime] = None,
    ) -> int:
        query: Dict[str, Any] = {"receiver_id": receiver_id, "is_read": False, "deleted_by": {"$ne": receiver_id}}
        if conversation_id is not None:
            query["conversation_id"] = conversation_id
        if until is not None:
            query["created_at"] = {"$lte": until}
        return await self.collection.count_documents(query)

    async def get_many(self, message_ids: List[ObjectId]) -> Dict[ObjectId, MessageDocument]:
        if not message_ids:
            return {}
        cur = self.collection.find({"_id": {"$in": message_ids}})
        return {doc["_id"]: doc async for doc in cur}
