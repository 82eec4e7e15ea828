from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, TypedDict

from bson import ObjectId


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    LOCATION = "location"
    MARKETPLACE_ITEM = "marketplace_item"
    MARKETPLACE_OFFER = "marketplace_offer"
    CHECKIN = "checkin"

    @classmethod
    def values(cls) -> List[str]:
        return [m.value for m in cls]


MARKETPLACE_TYPES = (MessageType.MARKETPLACE_ITEM, MessageType.MARKETPLACE_OFFER)


class GeoPoint(TypedDict, total=False):
    type: str  # "Point"
    coordinates: List[float]  # [longitude, latitude]
    name: Optional[str]


class MessageDocument(TypedDict, total=False):
    _id: ObjectId
    conversation_id: ObjectId
    sender_id: str
    receiver_id: str
    content: str
    type: str
    attachments: List[str]
    image_url: Optional[str]
    location: Optional[GeoPoint]
    # listing id + summary snapshot taken at send time
    marketplace_item: Optional[Dict[str, Any]]
    # check-in id + snapshot
    check_in: Optional[Dict[str, Any]]
    # read state, one way
    is_read: bool
    read_at: Optional[datetime]
    # per-user soft delete
    deleted_by: List[str]
    is_deleted: bool
    deleted_at: Optional[datetime]
    is_edited: bool
    edited_at: Optional[datetime]
    # client ack
    client_message_id: Optional[str]
    created_at: datetime
    updated_at: datetime
