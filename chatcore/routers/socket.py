import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import ValidationError
from pymongo.errors import PyMongoError

from chatcore.core.errors import AuthenticationError, ChatError, InvalidPayload, Unavailable
from chatcore.core.time import isoformat, utcnow
from chatcore.database.connection import mongo_db_dependency
from chatcore.repositories.user_repository import UserRepository
from chatcore.schemas.realtime import WsInbound, WsOutbound
from chatcore.services.chat_service import ChatService, other_member
from chatcore.services.collaborators import MongoIdentityProvider
from chatcore.services.presence_service import PresenceChannel
from chatcore.utils.dependencies import authenticate_token, build_chat_service, get_presence
from chatcore.utils.websocket_manager import Connection


logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

WS_UNAUTHORIZED = 4401


def _bearer(header: Optional[str]) -> Optional[str]:
    if header and header.lower().startswith("bearer "):
        return header[7:].strip()
    return None


async def _reply(websocket: WebSocket, event: str, data: Dict[str, Any]) -> None:
    await websocket.send_json(WsOutbound(type=event, data=data).model_dump())


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket, db: AsyncIOMotorDatabase = Depends(mongo_db_dependency)):
    # token via ?token=... or the Authorization header
    token = websocket.query_params.get("token") or _bearer(websocket.headers.get("authorization"))
    try:
        user = await authenticate_token(token, MongoIdentityProvider(UserRepository(db)))
    except AuthenticationError as exc:
        logger.info("Rejected socket: %s", exc.message)
        await websocket.close(code=WS_UNAUTHORIZED, reason=exc.message)
        return

    presence = get_presence(websocket)
    service = build_chat_service(db, presence)
    conn = await presence.connect(user["_id"], websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            event = None
            try:
                try:
                    frame = WsInbound.model_validate(json.loads(raw))
                except (ValueError, ValidationError) as exc:
                    raise InvalidPayload("Malformed frame") from exc
                event = frame.type
                try:
                    await _dispatch(websocket, conn, service, presence, frame)
                except PyMongoError as exc:
                    logger.error("Database error on socket %s (%s): %s", conn.connection_id, event, exc)
                    raise Unavailable("The message store is unavailable") from exc
            except ChatError as exc:
                await _reply(websocket, "error", {"code": exc.code, "message": exc.message, "event": event})
    except WebSocketDisconnect:
        logger.debug("Socket %s closed by client", conn.connection_id)
    finally:
        await presence.disconnect(conn)


async def _dispatch(
    websocket: WebSocket,
    conn: Connection,
    service: ChatService,
    presence: PresenceChannel,
    frame: WsInbound,
) -> None:
    user_id = conn.user_id
    if frame.type == "ping":
        await _reply(websocket, "pong", {"ts": isoformat(utcnow())})
        return

    conversation_id = frame.data.get("conversation_id")
    if not isinstance(conversation_id, str) or not conversation_id:
        raise InvalidPayload("conversation_id is required")
    convo = await service.require_member(conversation_id, user_id)

    if frame.type == "join_chat":
        await presence.join(conn.connection_id, conversation_id)
        await _reply(websocket, "joined_chat", {"conversation_id": conversation_id})
    elif frame.type == "leave_chat":
        await presence.leave(conn.connection_id, conversation_id)
        await _reply(websocket, "left_chat", {"conversation_id": conversation_id})
    elif frame.type == "typing":
        await presence.typing(conversation_id, user_id, other_member(convo, user_id))
    elif frame.type == "stop_typing":
        await presence.stop_typing(conversation_id, user_id, other_member(convo, user_id))
    elif frame.type == "send_message":
        # relay of a message already persisted over REST; nothing is written here
        message = frame.data.get("message")
        if not isinstance(message, dict):
            raise InvalidPayload("message is required")
        await presence.publish(
            "message_received",
            {**message, "conversation_id": conversation_id},
            rooms=[presence.room_for(conversation_id)],
            exclude_users=[user_id],
        )
