from fastapi import APIRouter, Depends

from chatcore.models.user import UserIdentity
from chatcore.schemas.presence import StatusUpdate
from chatcore.services.presence_service import PresenceChannel
from chatcore.utils.dependencies import get_current_user, get_presence


router = APIRouter(prefix="/presence", tags=["presence"])


@router.get("/{user_id}")
async def presence(
    user_id: str,
    current_user: UserIdentity = Depends(get_current_user),
    channel: PresenceChannel = Depends(get_presence),
):
    """
    Online state of a user. Local sockets are checked first, then the Redis
    presence key when the realtime bus is enabled.
    """
    return await channel.get_presence(user_id)


@router.post("/status")
async def update_status(
    body: StatusUpdate,
    current_user: UserIdentity = Depends(get_current_user),
    channel: PresenceChannel = Depends(get_presence),
):
    return await channel.broadcast_status(current_user["_id"], body.status, body.custom_message)
