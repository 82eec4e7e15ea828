"""
Shared fixtures: an in-memory Mongo (mongomock-motor) seeded with users,
listings and check-ins, a presence channel over fake sockets, and the
service and app wired to them.
"""

import asyncio

import pytest
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from chatcore.core.config import Settings
from chatcore.database.connection import mongo_db_dependency
from chatcore.main import create_app
from chatcore.repositories.checkin_repository import CheckInRepository
from chatcore.repositories.conversation_repository import ConversationRepository
from chatcore.repositories.listing_repository import ListingRepository
from chatcore.repositories.message_repository import MessageRepository
from chatcore.repositories.user_repository import UserRepository
from chatcore.services.chat_service import ChatService
from chatcore.services.collaborators import MongoIdentityProvider
from chatcore.services.presence_service import PresenceChannel
from chatcore.utils.websocket_manager import ConnectionManager
from tests.helpers import seed


@pytest.fixture
def settings():
    return Settings(typing_timeout_ms=100, presence_offline_grace_seconds=0)


@pytest.fixture
async def db():
    database = AsyncMongoMockClient()["chatcore_test"]
    await seed(database)
    return database


@pytest.fixture
async def presence(settings):
    channel = PresenceChannel(
        ConnectionManager(),
        typing_timeout_ms=settings.typing_timeout_ms,
        offline_grace_seconds=settings.presence_offline_grace_seconds,
    )
    yield channel
    await channel.stop()


@pytest.fixture
def make_service(db, presence, settings):
    def _make(**overrides):
        parts = {
            "identity": MongoIdentityProvider(UserRepository(db)),
            "marketplace": ListingRepository(db),
            "check_ins": CheckInRepository(db),
            "presence": presence,
            "settings": settings,
        }
        parts.update(overrides)
        return ChatService(MessageRepository(db), ConversationRepository(db), **parts)

    return _make


@pytest.fixture
def service(make_service):
    return make_service()


@pytest.fixture
def app(db, presence):
    application = create_app()
    application.dependency_overrides[mongo_db_dependency] = lambda: db
    application.state.presence = presence
    return application


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.fixture
def sync_db():
    """Seeded database for the synchronous websocket TestClient."""
    database = AsyncMongoMockClient()["chatcore_ws"]
    asyncio.run(seed(database))
    return database
