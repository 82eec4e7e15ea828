from typing import List, Optional

from pydantic import Field

from chatcore.models.message import MessageType
from chatcore.schemas.base import RequestModel


class LocationIn(RequestModel):

    # [longitude, latitude]; range checks happen in the service
    coordinates: Optional[List[float]] = None
    name: Optional[str] = None


class MessageCreate(RequestModel):

    conversation_id: Optional[str] = None
    receiver_id: Optional[str] = None
    content: Optional[str] = None
    message_type: str = MessageType.TEXT.value
    attachments: List[str] = Field(default_factory=list)
    image_url: Optional[str] = None
    coordinates: Optional[List[float]] = None
    location: Optional[LocationIn] = None
    marketplace_item_id: Optional[str] = None
    check_in_id: Optional[str] = None
    client_message_id: Optional[str] = Field(default=None, max_length=128)


class MessageEdit(RequestModel):

    content: str
