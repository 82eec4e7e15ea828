from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status

from chatcore.models.user import UserIdentity
from chatcore.schemas.conversation import ConversationCreate
from chatcore.services.chat_service import ChatService
from chatcore.utils.dependencies import get_chat_service, get_current_user


router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_conversation(
    body: ConversationCreate,
    response: Response,
    current_user: UserIdentity = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    conversation, created = await service.get_or_create_conversation(current_user["_id"], body.participant_id)
    if not created:
        response.status_code = status.HTTP_200_OK
    return {"conversation": conversation, "created": created}


@router.get("")
async def list_conversations(
    archived: bool = False,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    current_user: UserIdentity = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return await service.list_conversations(current_user["_id"], archived=archived, page=page, limit=limit)


@router.get("/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    current_user: UserIdentity = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return {"conversation": await service.get_conversation(current_user["_id"], conversation_id)}


@router.put("/{conversation_id}/archive")
async def toggle_archive(
    conversation_id: str,
    current_user: UserIdentity = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    state = await service.toggle_archive(current_user["_id"], conversation_id)
    return {"conversation_id": conversation_id, "status": state}


@router.put("/{conversation_id}/read")
async def mark_conversation_read(
    conversation_id: str,
    current_user: UserIdentity = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    updated = await service.mark_conversation_read(current_user["_id"], conversation_id)
    return {"conversation_id": conversation_id, "updated": updated}


@router.post("/{conversation_id}/reconcile")
async def reconcile_conversation(
    conversation_id: str,
    current_user: UserIdentity = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return await service.reconcile_conversation(conversation_id, user_id=current_user["_id"])


@router.delete("/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    current_user: UserIdentity = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return await service.delete_conversation(current_user["_id"], conversation_id)
