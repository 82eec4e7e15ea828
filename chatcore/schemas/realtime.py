from typing import Any, Dict, Literal

from pydantic import BaseModel, Field


InboundEvent = Literal["join_chat", "leave_chat", "send_message", "typing", "stop_typing", "ping"]


class WsInbound(BaseModel):
    """A client frame: ``{"type": <event>, "data": {...}}``."""

    type: InboundEvent
    data: Dict[str, Any] = Field(default_factory=dict)


class WsOutbound(BaseModel):

    type: str
    data: Dict[str, Any] = Field(default_factory=dict)
