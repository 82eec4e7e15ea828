from datetime import datetime
from typing import List, Optional, TypedDict

from bson import ObjectId


class ConversationDocument(TypedDict, total=False):
    _id: ObjectId
    # exactly two user ids, sorted
    participants: List[str]
    # "<min_id>:<max_id>", unique
    pair_key: str
    last_message: Optional[ObjectId]
    last_message_at: Optional[datetime]
    # per-user unread counters (user_id -> count)
    unread_count: dict[str, int]
    archived_by: List[str]
    created_at: datetime
    updated_at: datetime


def pair_key(user_a: str, user_b: str) -> str:
    low, high = sorted([user_a, user_b])
    return f"{low}:{high}"
