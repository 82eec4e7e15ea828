"""
Presence & typing channel.

Sits between the messaging service and the live sockets. Every event is
published as an envelope naming its audience (users, rooms, everyone); the
envelope either travels over the realtime bus, so each process delivers to its
own sockets, or is delivered locally when no bus is configured.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple

from fastapi import WebSocket
from redis.exceptions import RedisError

from chatcore.core.time import isoformat, utcnow
from chatcore.utils.realtime_bus import NoopBus
from chatcore.utils.websocket_manager import Connection, ConnectionManager


logger = logging.getLogger(__name__)

PRESENCE_TTL_SECONDS = 60
HEARTBEAT_SECONDS = 30


class PresenceChannel:

    def __init__(
        self,
        manager: Optional[ConnectionManager] = None,
        bus=None,
        channel: str = "chatcore:events",
        typing_timeout_ms: int = 3000,
        offline_grace_seconds: float = 30.0,
    ) -> None:
        self.manager = manager or ConnectionManager()
        self._bus = bus or NoopBus()
        self._channel = channel
        self.typing_timeout_ms = typing_timeout_ms
        self.offline_grace_seconds = offline_grace_seconds
        # (conversation_id, typer) -> (expiry task, other member)
        self._typing: Dict[Tuple[str, str], Tuple[asyncio.Task, str]] = {}
        self._offline_tasks: Dict[str, asyncio.Task] = {}
        self._heartbeats: Dict[str, asyncio.Task] = {}
        self._last_seen: Dict[str, datetime] = {}
        self._status: Dict[str, str] = {}
        self._subscription = None
        self._subscription_task: Optional[asyncio.Task] = None

    @staticmethod
    def room_for(conversation_id: str) -> str:
        return f"conversation:{conversation_id}"

    # lifecycle

    async def start(self) -> None:
        if not getattr(self._bus, "enabled", False):
            return
        self._subscription = await self._bus.subscribe(self._channel, self.handle_bus_message)
        self._subscription_task = asyncio.create_task(self._subscription.run())
        logger.info("Subscribed to realtime channel %s", self._channel)

    async def stop(self) -> None:
        tasks = [task for task, _ in self._typing.values()]
        tasks += list(self._offline_tasks.values()) + list(self._heartbeats.values())
        if self._subscription_task is not None:
            tasks.append(self._subscription_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._typing.clear()
        self._offline_tasks.clear()
        self._heartbeats.clear()
        if self._subscription is not None:
            await self._subscription.cancel()
        self._subscription = None
        self._subscription_task = None

    # fan-out

    async def publish(
        self,
        event: str,
        data: Dict[str, Any],
        users: Iterable[str] = (),
        rooms: Iterable[str] = (),
        exclude_users: Iterable[str] = (),
        everyone: bool = False,
        room_only: bool = False,
    ) -> None:
        envelope = {
            "event": event,
            "data": data,
            "users": list(users),
            "rooms": list(rooms),
            "exclude_users": list(exclude_users),
            "everyone": everyone,
            "room_only": room_only,
        }
        if getattr(self._bus, "enabled", False):
            try:
                await self._bus.publish(self._channel, json.dumps(envelope))
                return
            except RedisError as exc:
                logger.warning("Realtime bus publish failed, delivering locally: %s", exc)
        await self._deliver(envelope)

    async def handle_bus_message(self, raw: str) -> None:
        try:
            envelope = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring malformed bus message: %.200s", raw)
            return
        await self._deliver(envelope)

    async def _deliver(self, envelope: Dict[str, Any]) -> int:
        targets = await self.manager.resolve(
            users=envelope.get("users") or (),
            rooms=envelope.get("rooms") or (),
            exclude_users=envelope.get("exclude_users") or (),
            everyone=bool(envelope.get("everyone")),
            room_only=bool(envelope.get("room_only")),
        )
        sent = await self.manager.send(targets, {"type": envelope["event"], "data": envelope.get("data") or {}})
        logger.debug("Delivered %s to %d/%d connection(s)", envelope["event"], sent, len(targets))
        return sent

    # connections and rooms

    async def connect(self, user_id: str, websocket: WebSocket) -> Connection:
        was_online = self.manager.is_online(user_id) or user_id in self._offline_tasks
        pending = self._offline_tasks.pop(user_id, None)
        if pending is not None:
            pending.cancel()
        conn = await self.manager.connect(user_id, websocket)
        if getattr(self._bus, "enabled", False):
            live = await self._track(user_id, conn.connection_id)
            was_online = was_online or live > 1
            self._heartbeats[conn.connection_id] = asyncio.create_task(self._heartbeat(user_id, conn.connection_id))
        if not was_online:
            await self.publish(
                "workspace_status_update",
                {"user_id": user_id, "status": self._status.get(user_id, "online")},
                everyone=True,
            )
        return conn

    async def disconnect(self, connection: Connection) -> None:
        await self.manager.disconnect(connection.connection_id)
        heartbeat = self._heartbeats.pop(connection.connection_id, None)
        if heartbeat is not None:
            heartbeat.cancel()
        user_id = connection.user_id
        remaining = await self._untrack(user_id, connection.connection_id)
        if self.manager.is_online(user_id):
            return
        for conversation_id, typer in [key for key in self._typing if key[1] == user_id]:
            await self.stop_typing(conversation_id, typer, self._typing[(conversation_id, typer)][1])
        if remaining > 0:
            logger.debug("User %s still has %d connection(s) on other processes", user_id, remaining)
            return
        if self.offline_grace_seconds <= 0:
            await self._go_offline(user_id)
        else:
            self._offline_tasks[user_id] = asyncio.create_task(self._offline_after_grace(user_id))

    async def join(self, connection_id: str, conversation_id: str) -> bool:
        return await self.manager.join(connection_id, self.room_for(conversation_id))

    async def leave(self, connection_id: str, conversation_id: str) -> bool:
        return await self.manager.leave(connection_id, self.room_for(conversation_id))

    # typing

    async def typing(self, conversation_id: str, user_id: str, other_user_id: str) -> None:
        key = (conversation_id, user_id)
        previous = self._typing.pop(key, None)
        if previous is not None:
            previous[0].cancel()
        self._typing[key] = (asyncio.create_task(self._expire_typing(key)), other_user_id)
        await self.publish(
            "typing",
            {"conversation_id": conversation_id, "user_id": user_id, "timeout_ms": self.typing_timeout_ms},
            users=[other_user_id],
            rooms=[self.room_for(conversation_id)],
            room_only=True,
        )

    async def stop_typing(
        self,
        conversation_id: str,
        user_id: str,
        other_user_id: str,
        only_if_typing: bool = False,
    ) -> bool:
        entry = self._typing.pop((conversation_id, user_id), None)
        if entry is not None:
            entry[0].cancel()
        elif only_if_typing:
            return False
        await self._emit_stop_typing(conversation_id, user_id, other_user_id)
        return True

    def is_typing(self, conversation_id: str, user_id: str) -> bool:
        return (conversation_id, user_id) in self._typing

    async def _expire_typing(self, key: Tuple[str, str]) -> None:
        await asyncio.sleep(self.typing_timeout_ms / 1000)
        entry = self._typing.pop(key, None)
        if entry is None:
            return
        await self._emit_stop_typing(key[0], key[1], entry[1])

    async def _emit_stop_typing(self, conversation_id: str, user_id: str, other_user_id: str) -> None:
        await self.publish(
            "stop_typing",
            {"conversation_id": conversation_id, "user_id": user_id},
            users=[other_user_id],
            rooms=[self.room_for(conversation_id)],
            room_only=True,
        )

    # presence

    async def broadcast_status(self, user_id: str, status: str, custom_message: Optional[str] = None) -> Dict[str, Any]:
        self._status[user_id] = status
        data: Dict[str, Any] = {"user_id": user_id, "status": status}
        if custom_message:
            data["custom_message"] = custom_message
        await self.publish("workspace_status_update", data, everyone=True)
        return data

    async def get_presence(self, user_id: str) -> Dict[str, Any]:
        online = self.manager.is_online(user_id) or user_id in self._offline_tasks
        if not online:
            try:
                online = await self._bus.is_present(user_id)
            except RedisError as exc:
                logger.warning("Presence lookup for %s failed: %s", user_id, exc)
        return {
            "user_id": user_id,
            "online": online,
            "status": self._status.get(user_id, "online") if online else "offline",
            "last_seen": None if online else isoformat(self._last_seen.get(user_id)),
        }

    async def _offline_after_grace(self, user_id: str) -> None:
        await asyncio.sleep(self.offline_grace_seconds)
        self._offline_tasks.pop(user_id, None)
        if self.manager.is_online(user_id):
            return
        if await self._cluster_count(user_id) > 0:
            return
        await self._go_offline(user_id)

    async def _go_offline(self, user_id: str) -> None:
        last_seen = utcnow()
        self._last_seen[user_id] = last_seen
        try:
            await self._bus.clear_presence(user_id)
        except RedisError as exc:
            logger.warning("Failed to clear presence for %s: %s", user_id, exc)
        await self.publish(
            "workspace_status_update",
            {"user_id": user_id, "status": "offline", "last_seen": isoformat(last_seen)},
            everyone=True,
        )

    async def _heartbeat(self, user_id: str, connection_id: str) -> None:
        while True:
            try:
                await self._bus.set_presence(user_id, ttl_seconds=PRESENCE_TTL_SECONDS)
                await self._bus.add_connection(user_id, connection_id, ttl_seconds=PRESENCE_TTL_SECONDS)
            except RedisError as exc:
                logger.warning("Presence heartbeat for %s failed: %s", user_id, exc)
            await asyncio.sleep(HEARTBEAT_SECONDS)

    # connections of a user across processes; without a bus only this process counts

    async def _track(self, user_id: str, connection_id: str) -> int:
        try:
            return await self._bus.add_connection(user_id, connection_id, ttl_seconds=PRESENCE_TTL_SECONDS)
        except RedisError as exc:
            logger.warning("Failed to register connection %s of %s: %s", connection_id, user_id, exc)
            return 0

    async def _untrack(self, user_id: str, connection_id: str) -> int:
        if not getattr(self._bus, "enabled", False):
            return 0
        try:
            return await self._bus.remove_connection(user_id, connection_id)
        except RedisError as exc:
            logger.warning("Failed to drop connection %s of %s: %s", connection_id, user_id, exc)
            return 0

    async def _cluster_count(self, user_id: str) -> int:
        if not getattr(self._bus, "enabled", False):
            return 0
        try:
            return await self._bus.connection_count(user_id)
        except RedisError as exc:
            logger.warning("Connection count for %s failed: %s", user_id, exc)
            return 0
