from datetime import timedelta
from unittest.mock import AsyncMock

from bson import ObjectId

from chatcore.core.time import utcnow
from chatcore.repositories.conversation_repository import ConversationRepository
from chatcore.repositories.message_repository import MessageRepository
from chatcore.utils.security import create_access_token


ALICE = "64b000000000000000000001"
BOB = "64b000000000000000000002"
CAROL = "64b000000000000000000003"
GHOST = "64b0000000000000000000ff"

ACTIVE_ITEM = "64c000000000000000000001"
SOLD_ITEM = "64c000000000000000000002"

BOB_CHECKIN = "64d000000000000000000001"
EXPIRED_CHECKIN = "64d000000000000000000002"
ALICE_CHECKIN = "64d000000000000000000003"


async def seed(db) -> None:
    await db.users.insert_many(
        [
            {"_id": ObjectId(ALICE), "email": "alice@example.com", "display_name": "Alice", "avatar": "a.png"},
            {"_id": ObjectId(BOB), "email": "bob@example.com", "full_name": "Bob Builder"},
            {"_id": ObjectId(CAROL), "email": "carol@example.com", "username": "carol"},
        ]
    )
    await db.marketplace_items.insert_many(
        [
            {"_id": ObjectId(ACTIVE_ITEM), "title": "Road bike", "price": 120.0, "owner": ObjectId(BOB)},
            {"_id": ObjectId(SOLD_ITEM), "title": "Tent", "price": 40.0, "available": False, "owner": ObjectId(BOB)},
        ]
    )
    now = utcnow()
    await db.checkins.insert_many(
        [
            {
                "_id": ObjectId(BOB_CHECKIN),
                "user": ObjectId(BOB),
                "location": {"type": "Point", "coordinates": [2.35, 48.85]},
                "note": "coffee",
                "expires_at": now + timedelta(hours=2),
            },
            {
                "_id": ObjectId(EXPIRED_CHECKIN),
                "user_id": BOB,
                "location": {"type": "Point", "coordinates": [2.35, 48.85]},
                "expires_at": now - timedelta(minutes=1),
            },
            {
                "_id": ObjectId(ALICE_CHECKIN),
                "user_id": ALICE,
                "location": {"type": "Point", "coordinates": [13.4, 52.5]},
                "expires_at": now + timedelta(hours=1),
            },
        ]
    )
    await ConversationRepository(db).ensure_indexes()
    await MessageRepository(db).ensure_indexes()


def make_socket() -> AsyncMock:
    return AsyncMock()


def frames(websocket, event=None):
    """Frames pushed to a fake socket, optionally filtered by event type."""
    sent = [c.args[0] for c in websocket.send_json.await_args_list]
    return [f for f in sent if event is None or f["type"] == event]


def auth(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}
