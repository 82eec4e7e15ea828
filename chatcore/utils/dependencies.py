from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from motor.motor_asyncio import AsyncIOMotorDatabase
from starlette.requests import HTTPConnection

from chatcore.core.config import get_settings
from chatcore.core.errors import AuthenticationError
from chatcore.database.connection import mongo_db_dependency
from chatcore.models.user import UserIdentity
from chatcore.repositories.checkin_repository import CheckInRepository
from chatcore.repositories.conversation_repository import ConversationRepository
from chatcore.repositories.listing_repository import ListingRepository
from chatcore.repositories.message_repository import MessageRepository
from chatcore.repositories.user_repository import UserRepository
from chatcore.services.chat_service import ChatService
from chatcore.services.collaborators import MongoIdentityProvider
from chatcore.services.presence_service import PresenceChannel
from chatcore.utils.security import decode_access_token


bearer_scheme = HTTPBearer(auto_error=False)


def get_presence(conn: HTTPConnection) -> PresenceChannel:
    return conn.app.state.presence


def get_identity_provider(db: AsyncIOMotorDatabase = Depends(mongo_db_dependency)) -> MongoIdentityProvider:
    return MongoIdentityProvider(UserRepository(db))


def build_chat_service(db: AsyncIOMotorDatabase, presence: Optional[PresenceChannel]) -> ChatService:
    return ChatService(
        MessageRepository(db),
        ConversationRepository(db),
        MongoIdentityProvider(UserRepository(db)),
        ListingRepository(db),
        CheckInRepository(db),
        presence=presence,
        settings=get_settings(),
    )


def get_chat_service(
    db: AsyncIOMotorDatabase = Depends(mongo_db_dependency),
    presence: PresenceChannel = Depends(get_presence),
) -> ChatService:
    return build_chat_service(db, presence)


async def authenticate_token(token: Optional[str], identity: MongoIdentityProvider) -> UserIdentity:
    if not token:
        raise AuthenticationError("Not authenticated")
    payload = decode_access_token(token)
    user = await identity.resolve_user(payload["sub"])
    if user is None:
        raise AuthenticationError("User not found")
    return user


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    identity: MongoIdentityProvider = Depends(get_identity_provider),
) -> UserIdentity:
    return await authenticate_token(credentials.credentials if credentials else None, identity)
