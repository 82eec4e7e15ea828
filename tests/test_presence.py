import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from chatcore.services.presence_service import PresenceChannel
from chatcore.utils.websocket_manager import ConnectionManager
from tests.helpers import ALICE, BOB, CAROL, frames, make_socket


class RecordingBus:
    """Stands in for Redis shared by several processes: publishes are recorded instead of sent."""

    enabled = True

    def __init__(self):
        self.published = []
        self.present = set()
        self.connections = {}

    async def publish(self, channel, message):
        self.published.append((channel, message))

    async def set_presence(self, user_id, ttl_seconds=60):
        self.present.add(user_id)

    async def clear_presence(self, user_id):
        self.present.discard(user_id)

    async def is_present(self, user_id):
        return user_id in self.present

    async def add_connection(self, user_id, connection_id, ttl_seconds=60):
        self.connections.setdefault(user_id, set()).add(connection_id)
        return len(self.connections[user_id])

    async def remove_connection(self, user_id, connection_id):
        self.connections.get(user_id, set()).discard(connection_id)
        return len(self.connections.get(user_id, ()))

    async def connection_count(self, user_id):
        return len(self.connections.get(user_id, ()))

    def statuses(self, user_id):
        envelopes = [json.loads(raw) for _, raw in self.published]
        return [
            e["data"]["status"]
            for e in envelopes
            if e["event"] == "workspace_status_update" and e["data"]["user_id"] == user_id
        ]


async def test_manager_tracks_rooms_and_users():
    manager = ConnectionManager()
    ws1, ws2 = make_socket(), make_socket()

    first = await manager.connect(ALICE, ws1)
    second = await manager.connect(ALICE, ws2)
    assert manager.count_for_user(ALICE) == 2
    ws1.accept.assert_awaited_once()

    await manager.join(first.connection_id, "conversation:1")
    assert manager.in_room(first.connection_id, "conversation:1")
    assert not manager.in_room(second.connection_id, "conversation:1")

    scoped = await manager.resolve(users=[ALICE], rooms=["conversation:1"], room_only=True)
    assert [c.connection_id for c in scoped] == [first.connection_id]

    await manager.disconnect(first.connection_id)
    assert manager.rooms == {}
    assert manager.is_online(ALICE)
    await manager.disconnect(second.connection_id)
    assert not manager.is_online(ALICE)
    assert await manager.disconnect(second.connection_id) is None


async def test_failed_sends_are_dropped():
    manager = ConnectionManager()
    broken, healthy = make_socket(), make_socket()
    broken.send_json.side_effect = RuntimeError("socket closed")
    await manager.connect(ALICE, broken)
    await manager.connect(BOB, healthy)

    sent = await manager.send(await manager.resolve(everyone=True), {"type": "x", "data": {}})

    assert sent == 1
    healthy.send_json.assert_awaited_once_with({"type": "x", "data": {}})


async def test_send_fans_out_to_both_members_and_room(service, presence):
    alice_ws, bob_ws, carol_ws = make_socket(), make_socket(), make_socket()
    await presence.connect(ALICE, alice_ws)
    await presence.connect(BOB, bob_ws)
    await presence.connect(CAROL, carol_ws)

    msg = await service.send_message(ALICE, receiver_id=BOB, content="hello")

    for ws in (alice_ws, bob_ws):
        received = frames(ws, "message_received")
        assert [f["data"]["_id"] for f in received] == [msg["_id"]]
    assert frames(carol_ws, "message_received") == []

    [bob_update] = frames(bob_ws, "conversation_updated")
    [alice_update] = frames(alice_ws, "conversation_updated")
    assert bob_update["data"]["unread_count"] == 1
    assert alice_update["data"]["unread_count"] == 0
    assert bob_update["data"]["last_message"]["content"] == "hello"


async def test_each_socket_gets_one_copy_even_when_in_room(service, presence):
    bob_ws = make_socket()
    first = await service.send_message(ALICE, receiver_id=BOB, content="one")
    conn = await presence.connect(BOB, bob_ws)
    await presence.join(conn.connection_id, first["conversation_id"])

    await service.send_message(ALICE, receiver_id=BOB, content="two")

    assert [f["data"]["content"] for f in frames(bob_ws, "message_received")] == ["two"]


async def test_events_of_one_sender_arrive_in_send_order(service, presence):
    bob_ws = make_socket()
    await presence.connect(BOB, bob_ws)

    for i in range(5):
        await service.send_message(ALICE, receiver_id=BOB, content=str(i))

    assert [f["data"]["content"] for f in frames(bob_ws, "message_received")] == ["0", "1", "2", "3", "4"]


async def test_read_receipt_goes_to_sender(service, presence):
    alice_ws, bob_ws = make_socket(), make_socket()
    msg = await service.send_message(BOB, receiver_id=ALICE, content="read me")
    await presence.connect(ALICE, alice_ws)
    await presence.connect(BOB, bob_ws)

    await service.mark_conversation_read(ALICE, msg["conversation_id"])
    await service.mark_conversation_read(ALICE, msg["conversation_id"])

    [receipt] = frames(bob_ws, "message_read")
    assert receipt["data"]["message_ids"] == [msg["_id"]]
    assert receipt["data"]["reader_id"] == ALICE
    assert frames(alice_ws, "message_read") == []


async def test_delete_and_edit_are_broadcast(service, presence):
    alice_ws, bob_ws = make_socket(), make_socket()
    await presence.connect(ALICE, alice_ws)
    await presence.connect(BOB, bob_ws)
    msg = await service.send_message(ALICE, receiver_id=BOB, content="draft")

    await service.edit_message(ALICE, msg["_id"], "final")
    await service.delete_message(BOB, msg["_id"])

    [edited] = frames(bob_ws, "message_edited")
    assert edited["data"]["content"] == "final"
    [deleted] = frames(alice_ws, "message_deleted")
    assert deleted["data"] == {
        "message_id": msg["_id"],
        "conversation_id": msg["conversation_id"],
        "is_deleted": False,
        "deleted_by": BOB,
    }


async def test_typing_reaches_other_member_only_in_room(presence):
    bob_in_room, bob_elsewhere, alice_ws = make_socket(), make_socket(), make_socket()
    joined = await presence.connect(BOB, bob_in_room)
    await presence.connect(BOB, bob_elsewhere)
    alice = await presence.connect(ALICE, alice_ws)
    await presence.join(joined.connection_id, "c1")
    await presence.join(alice.connection_id, "c1")

    await presence.typing("c1", ALICE, BOB)

    [typing] = frames(bob_in_room, "typing")
    assert typing["data"] == {"conversation_id": "c1", "user_id": ALICE, "timeout_ms": 100}
    assert frames(bob_elsewhere, "typing") == []
    assert frames(alice_ws, "typing") == []


async def test_typing_expires_on_its_own(presence):
    bob_ws = make_socket()
    conn = await presence.connect(BOB, bob_ws)
    await presence.join(conn.connection_id, "c1")

    await presence.typing("c1", ALICE, BOB)
    assert presence.is_typing("c1", ALICE)
    await asyncio.sleep(0.3)

    assert not presence.is_typing("c1", ALICE)
    assert len(frames(bob_ws, "stop_typing")) == 1


async def test_repeated_typing_extends_the_indicator(presence):
    bob_ws = make_socket()
    conn = await presence.connect(BOB, bob_ws)
    await presence.join(conn.connection_id, "c1")

    await presence.typing("c1", ALICE, BOB)
    await asyncio.sleep(0.06)
    await presence.typing("c1", ALICE, BOB)
    await asyncio.sleep(0.06)

    assert presence.is_typing("c1", ALICE)
    assert frames(bob_ws, "stop_typing") == []
    await asyncio.sleep(0.2)
    assert len(frames(bob_ws, "stop_typing")) == 1


async def test_sending_clears_typing(service, presence):
    first = await service.send_message(ALICE, receiver_id=BOB, content="hi")
    cid = first["conversation_id"]
    bob_ws = make_socket()
    conn = await presence.connect(BOB, bob_ws)
    await presence.join(conn.connection_id, cid)

    await presence.typing(cid, ALICE, BOB)
    await service.send_message(ALICE, conversation_id=cid, content="done typing")

    assert not presence.is_typing(cid, ALICE)
    types = [f["type"] for f in frames(bob_ws)]
    assert types.index("stop_typing") < types.index("message_received")


async def test_disconnect_clears_typing(presence):
    bob_ws, alice_ws = make_socket(), make_socket()
    bob = await presence.connect(BOB, bob_ws)
    alice = await presence.connect(ALICE, alice_ws)
    await presence.join(bob.connection_id, "c1")

    await presence.typing("c1", ALICE, BOB)
    await presence.disconnect(alice)

    assert not presence.is_typing("c1", ALICE)
    assert len(frames(bob_ws, "stop_typing")) == 1


async def test_online_and_offline_broadcasts(presence):
    watcher, alice_ws = make_socket(), make_socket()
    await presence.connect(CAROL, watcher)

    alice = await presence.connect(ALICE, alice_ws)
    second = await presence.connect(ALICE, make_socket())
    await presence.disconnect(second)
    await presence.disconnect(alice)

    updates = [f["data"] for f in frames(watcher, "workspace_status_update") if f["data"]["user_id"] == ALICE]
    assert [u["status"] for u in updates] == ["online", "offline"]
    assert updates[1]["last_seen"] is not None

    state = await presence.get_presence(ALICE)
    assert state["online"] is False
    assert state["last_seen"] == updates[1]["last_seen"]


async def test_offline_waits_for_grace_period():
    channel = PresenceChannel(ConnectionManager(), offline_grace_seconds=0.1)
    watcher = make_socket()
    await channel.connect(CAROL, watcher)

    conn = await channel.connect(ALICE, make_socket())
    await channel.disconnect(conn)
    assert (await channel.get_presence(ALICE))["online"] is True
    await channel.connect(ALICE, make_socket())
    await asyncio.sleep(0.2)

    statuses = [f["data"]["status"] for f in frames(watcher, "workspace_status_update") if f["data"]["user_id"] == ALICE]
    assert statuses == ["online"]
    await channel.stop()


async def test_custom_status_broadcast(presence):
    watcher = make_socket()
    await presence.connect(BOB, watcher)

    await presence.broadcast_status(ALICE, "away", "lunch")

    [update] = [f for f in frames(watcher, "workspace_status_update") if f["data"]["user_id"] == ALICE]
    assert update["data"] == {"user_id": ALICE, "status": "away", "custom_message": "lunch"}


async def test_publish_goes_through_bus_when_enabled():
    bus = RecordingBus()
    channel = PresenceChannel(ConnectionManager(), bus=bus, channel="events")
    ws = make_socket()
    await channel.manager.connect(BOB, ws)

    await channel.publish("message_read", {"reader_id": ALICE}, users=[BOB])

    ws.send_json.assert_not_awaited()
    [(name, raw)] = bus.published
    assert name == "events"
    envelope = json.loads(raw)
    assert envelope["event"] == "message_read"
    assert envelope["users"] == [BOB]

    await channel.handle_bus_message(raw)
    ws.send_json.assert_awaited_once_with({"type": "message_read", "data": {"reader_id": ALICE}})


async def test_malformed_bus_message_is_ignored(presence):
    ws = make_socket()
    await presence.manager.connect(BOB, ws)

    await presence.handle_bus_message("{not json")

    ws.send_json.assert_not_awaited()


async def test_start_subscribes_when_bus_enabled():
    subscription = AsyncMock()
    bus = AsyncMock()
    bus.enabled = True
    bus.subscribe.return_value = subscription
    channel = PresenceChannel(ConnectionManager(), bus=bus, channel="events")

    await channel.start()
    await channel.stop()

    bus.subscribe.assert_awaited_once_with("events", channel.handle_bus_message)
    subscription.cancel.assert_awaited_once()


@pytest.mark.parametrize("event", ["message_received", "typing"])
async def test_unrelated_users_never_see_conversation_events(presence, event):
    carol_ws = make_socket()
    await presence.connect(CAROL, carol_ws)

    await presence.publish(event, {}, users=[ALICE, BOB], rooms=[presence.room_for("c1")])

    assert frames(carol_ws, event) == []


async def test_offline_waits_for_connections_on_other_processes():
    bus = RecordingBus()
    proc_a = PresenceChannel(ConnectionManager(), bus=bus, channel="events", offline_grace_seconds=0)
    proc_b = PresenceChannel(ConnectionManager(), bus=bus, channel="events", offline_grace_seconds=0)

    on_a = await proc_a.connect(ALICE, make_socket())
    on_b = await proc_b.connect(ALICE, make_socket())
    await asyncio.sleep(0)
    assert bus.statuses(ALICE) == ["online"]

    await proc_a.disconnect(on_a)
    assert bus.statuses(ALICE) == ["online"]
    assert await bus.is_present(ALICE)
    assert (await proc_a.get_presence(ALICE))["online"] is True

    await proc_b.disconnect(on_b)
    assert bus.statuses(ALICE) == ["online", "offline"]
    assert not await bus.is_present(ALICE)
    assert await bus.connection_count(ALICE) == 0

    await proc_a.stop()
    await proc_b.stop()


async def test_grace_period_rechecks_other_processes():
    bus = RecordingBus()
    proc_a = PresenceChannel(ConnectionManager(), bus=bus, channel="events", offline_grace_seconds=0.05)
    proc_b = PresenceChannel(ConnectionManager(), bus=bus, channel="events", offline_grace_seconds=0.05)

    on_a = await proc_a.connect(ALICE, make_socket())
    await proc_a.disconnect(on_a)
    await proc_b.connect(ALICE, make_socket())
    await asyncio.sleep(0.15)

    assert "offline" not in bus.statuses(ALICE)
    assert await bus.connection_count(ALICE) == 1

    await proc_a.stop()
    await proc_b.stop()
