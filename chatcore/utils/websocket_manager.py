import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket


logger = logging.getLogger(__name__)


@dataclass
class Connection:
    connection_id: str
    user_id: str
    websocket: WebSocket
    rooms: Set[str] = field(default_factory=set)


class ConnectionManager:
    """
    Local registry of live sockets.

    user -> connections, connection -> rooms, room -> connections. Mutations
    happen under one asyncio.Lock; sends happen outside it on a snapshot.
    """

    def __init__(self) -> None:
        self.connections: Dict[str, Connection] = {}
        self.user_connections: Dict[str, Set[str]] = {}
        self.rooms: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, user_id: str, websocket: WebSocket, accept: bool = True) -> Connection:
        if accept:
            await websocket.accept()
        conn = Connection(connection_id=uuid.uuid4().hex, user_id=user_id, websocket=websocket)
        async with self._lock:
            self.connections[conn.connection_id] = conn
            self.user_connections.setdefault(user_id, set()).add(conn.connection_id)
        logger.info("User %s connected (%s), %d live connection(s)", user_id, conn.connection_id, self.count_for_user(user_id))
        return conn

    async def disconnect(self, connection_id: str) -> Optional[Connection]:
        async with self._lock:
            conn = self.connections.pop(connection_id, None)
            if conn is None:
                return None
            for room in conn.rooms:
                members = self.rooms.get(room)
                if members is not None:
                    members.discard(connection_id)
                    if not members:
                        del self.rooms[room]
            user_conns = self.user_connections.get(conn.user_id)
            if user_conns is not None:
                user_conns.discard(connection_id)
                if not user_conns:
                    del self.user_connections[conn.user_id]
        logger.info("User %s disconnected (%s)", conn.user_id, connection_id)
        return conn

    async def join(self, connection_id: str, room: str) -> bool:
        async with self._lock:
            conn = self.connections.get(connection_id)
            if conn is None:
                return False
            conn.rooms.add(room)
            self.rooms.setdefault(room, set()).add(connection_id)
        return True

    async def leave(self, connection_id: str, room: str) -> bool:
        async with self._lock:
            conn = self.connections.get(connection_id)
            if conn is None or room not in conn.rooms:
                return False
            conn.rooms.discard(room)
            members = self.rooms.get(room)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self.rooms[room]
        return True

    def is_online(self, user_id: str) -> bool:
        return bool(self.user_connections.get(user_id))

    def count_for_user(self, user_id: str) -> int:
        return len(self.user_connections.get(user_id, ()))

    def online_users(self) -> List[str]:
        return list(self.user_connections)

    def in_room(self, connection_id: str, room: str) -> bool:
        conn = self.connections.get(connection_id)
        return conn is not None and room in conn.rooms

    async def resolve(
        self,
        users: Iterable[str] = (),
        rooms: Iterable[str] = (),
        exclude_users: Iterable[str] = (),
        everyone: bool = False,
        room_only: bool = False,
    ) -> List[Connection]:
        """
        Snapshot the connections an event should reach.

        With ``room_only`` a user's sockets are kept only when they are joined
        to one of ``rooms``.
        """
        excluded = set(exclude_users)
        rooms = set(rooms)
        ids: Set[str] = set()
        async with self._lock:
            if everyone:
                ids = set(self.connections)
            else:
                for user_id in users:
                    ids |= self.user_connections.get(user_id, set())
                if room_only:
                    ids = {cid for cid in ids if self.connections[cid].rooms & rooms}
                else:
                    for room in rooms:
                        ids |= self.rooms.get(room, set())
            return [
                self.connections[cid]
                for cid in ids
                if cid in self.connections and self.connections[cid].user_id not in excluded
            ]

    async def send(self, targets: List[Connection], message: Dict[str, Any]) -> int:
        """Send to every target concurrently; returns how many sends succeeded."""
        if not targets:
            return 0
        results = await asyncio.gather(*(self._safe_send(conn, message) for conn in targets))
        return sum(1 for ok in results if ok)

    async def _safe_send(self, conn: Connection, message: Dict[str, Any]) -> bool:
        try:
            await conn.websocket.send_json(message)
            return True
        except Exception as exc:
            # socket already gone; the REST path stays authoritative
            logger.debug("Dropping event for %s (%s): %s", conn.user_id, conn.connection_id, exc)
            return False
