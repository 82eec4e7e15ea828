from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from chatcore.models.user import UserIdentity
from chatcore.schemas.message import MessageCreate, MessageEdit
from chatcore.services.chat_service import ChatService
from chatcore.utils.dependencies import get_chat_service, get_current_user


router = APIRouter(prefix="/messages", tags=["messages"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def send_message(
    body: MessageCreate,
    current_user: UserIdentity = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    message = await service.send_message(
        current_user["_id"],
        receiver_id=body.receiver_id,
        content=body.content,
        message_type=body.message_type,
        conversation_id=body.conversation_id,
        attachments=body.attachments,
        image_url=body.image_url,
        coordinates=body.coordinates,
        location=body.location.model_dump() if body.location else None,
        marketplace_item_id=body.marketplace_item_id,
        check_in_id=body.check_in_id,
        client_message_id=body.client_message_id,
    )
    return {"message": message}


# must stay above /{conversation_id}
@router.get("/unread/count")
async def unread_count(
    current_user: UserIdentity = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return {"unread_count": await service.get_unread_total(current_user["_id"])}


@router.get("/{conversation_id}")
async def get_messages(
    conversation_id: str,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    current_user: UserIdentity = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return await service.get_messages(current_user["_id"], conversation_id, page=page, limit=limit)


@router.put("/{message_id}/read")
async def mark_message_read(
    message_id: str,
    current_user: UserIdentity = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return {"message": await service.mark_message_read(current_user["_id"], message_id)}


@router.put("/{message_id}")
async def edit_message(
    message_id: str,
    body: MessageEdit,
    current_user: UserIdentity = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return {"message": await service.edit_message(current_user["_id"], message_id, body.content)}


@router.delete("/{message_id}")
async def delete_message(
    message_id: str,
    current_user: UserIdentity = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return await service.delete_message(current_user["_id"], message_id)
