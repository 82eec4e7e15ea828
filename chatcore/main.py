import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pymongo.errors import PyMongoError

from chatcore.core.config import get_settings
from chatcore.core.errors import (
    ChatError,
    chat_error_handler,
    database_error_handler,
    general_exception_handler,
    validation_exception_handler,
)
from chatcore.core.logging import setup_logging
from chatcore.database.connection import close_mongo_connection, connect_to_mongo
from chatcore.repositories.conversation_repository import ConversationRepository
from chatcore.repositories.message_repository import MessageRepository
from chatcore.routers.conversations import router as conversations_router
from chatcore.routers.messages import router as messages_router
from chatcore.routers.presence import router as presence_router
from chatcore.routers.socket import router as socket_router
from chatcore.services.presence_service import PresenceChannel
from chatcore.utils.realtime_bus import close_bus, get_bus
from chatcore.utils.websocket_manager import ConnectionManager


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    db = await connect_to_mongo()
    await ConversationRepository(db).ensure_indexes()
    await MessageRepository(db).ensure_indexes()

    presence = PresenceChannel(
        ConnectionManager(),
        bus=await get_bus(settings.redis_url),
        channel=settings.bus_channel,
        typing_timeout_ms=settings.typing_timeout_ms,
        offline_grace_seconds=settings.presence_offline_grace_seconds,
    )
    await presence.start()
    app.state.presence = presence
    logger.info("%s started", settings.app_name)
    try:
        yield
    finally:
        await presence.stop()
        await close_bus()
        await close_mongo_connection()


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(settings.log_level)

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    # replaced in lifespan; lets the app serve without it (tests)
    app.state.presence = PresenceChannel(
        ConnectionManager(),
        typing_timeout_ms=settings.typing_timeout_ms,
        offline_grace_seconds=settings.presence_offline_grace_seconds,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=settings.cors_origin_list != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ChatError, chat_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(PyMongoError, database_error_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(conversations_router)
    app.include_router(messages_router)
    app.include_router(presence_router)
    app.include_router(socket_router)

    @app.get("/health")
    async def health():
        presence: PresenceChannel = app.state.presence
        return {"status": "ok", "online_users": len(presence.manager.online_users())}

    return app


app = create_app()
