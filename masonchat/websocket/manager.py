import asyncio
import contextlib
import itertools
from typing import Any, AsyncIterator, Dict, Iterable, Optional, Set

from fastapi import WebSocket

from masonchat.core.logger import get_logger
from masonchat.services.presence import PresenceTracker
from masonchat.services.rooms import participants

logger = get_logger(__name__)

_connection_ids = itertools.count(1)


class Connection:
    """
    One client session on the real-time channel.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self.id = next(_connection_ids)
        self.websocket = websocket
        self.user_id: Optional[str] = None
        self.rooms: Set[str] = set()
        self._send_lock = asyncio.Lock()

    async def emit(self, event: str, data: Any = None) -> None:
        # Frames to one socket go out one at a time, in call order
        async with self._send_lock:
            await self.websocket.send_json({"event": event, "data": data})

    def __hash__(self) -> int:
        return hash(self.id)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Connection) and other.id == self.id

    def __repr__(self) -> str:
        return f"<Connection id={self.id} user={self.user_id}>"


class ConnectionManager:
    """
    Manages active WebSocket connections, per-room broadcast groups and
    presence interest.

    `watchers[user]` holds the connections that joined a room with `user`
    in it; those are the ones told when `user` goes online or offline.
    """

    def __init__(self, presence: Optional[PresenceTracker] = None) -> None:
        self.presence = presence or PresenceTracker()
        self.active_connections: Dict[str, Set[Connection]] = {}
        self.watchers: Dict[str, Set[Connection]] = {}
        self._room_locks: Dict[str, asyncio.Lock] = {}
        # Senders holding or waiting on each room lock
        self._lock_users: Dict[str, int] = {}

    async def connect(self, websocket: WebSocket) -> Connection:
        """
        Accept the connection. It receives nothing until it joins a room.
        """
        await websocket.accept()
        conn = Connection(websocket)
        logger.info("WebSocket accepted: %r", conn)
        return conn

    def join_room(self, conn: Connection, room_id: str) -> None:
        """
        Subscribe `conn` to future events of `room_id` and to presence
        changes of the room's other participant.
        """
        self.active_connections.setdefault(room_id, set()).add(conn)
        conn.rooms.add(room_id)
        for member in participants(room_id):
            self.watchers.setdefault(member, set()).add(conn)
        logger.info("%r joined room %s (connections=%s)", conn, room_id, len(self.active_connections[room_id]))

    def leave_room(self, conn: Connection, room_id: str) -> None:
        if room_id in self.active_connections:
            self.active_connections[room_id].discard(conn)
            if not self.active_connections[room_id]:
                del self.active_connections[room_id]
                self._prune_room_lock(room_id)
        conn.rooms.discard(room_id)
        for member in participants(room_id):
            if any(member in participants(r) for r in conn.rooms):
                continue
            self._discard_watcher(member, conn)

    def _discard_watcher(self, user_id: str, conn: Connection) -> None:
        if user_id in self.watchers:
            self.watchers[user_id].discard(conn)
            if not self.watchers[user_id]:
                del self.watchers[user_id]

    async def disconnect(self, conn: Connection) -> None:
        """
        Remove the connection from every room. An unannounced disconnect
        counts as going offline.
        """
        for room_id in list(conn.rooms):
            self.leave_room(conn, room_id)
        logger.info("WebSocket disconnected: %r", conn)
        if conn.user_id is not None and self.presence.drop_connection(conn.user_id, conn):
            await self.broadcast_status(conn.user_id)

    @contextlib.asynccontextmanager
    async def room_lock(self, room_id: str) -> AsyncIterator[None]:
        """
        Single broadcast point per room: persisting and fanning out a
        message happen under this lock, in arrival order.

        The lock is forgotten once no sender holds or awaits it and nobody
        is in the room.
        """
        lock = self._room_locks.get(room_id)
        if lock is None:
            lock = self._room_locks[room_id] = asyncio.Lock()
        self._lock_users[room_id] = self._lock_users.get(room_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[room_id] -= 1
            if not self._lock_users[room_id]:
                del self._lock_users[room_id]
            self._prune_room_lock(room_id)

    def _prune_room_lock(self, room_id: str) -> None:
        if room_id not in self.active_connections and room_id not in self._lock_users:
            self._room_locks.pop(room_id, None)

    async def announce_online(self, conn: Connection, user_id: str) -> None:
        if conn.user_id is not None and conn.user_id != user_id:
            # Connection re-announced under another identity
            if self.presence.drop_connection(conn.user_id, conn):
                await self.broadcast_status(conn.user_id)
        conn.user_id = user_id
        if self.presence.set_online(user_id, conn):
            await self.broadcast_status(user_id)

    async def announce_offline(self, conn: Connection, user_id: str) -> None:
        """
        Only this connection stops counting; the user stays online while
        another of their connections is live.
        """
        if self.presence.set_offline(user_id, conn):
            await self.broadcast_status(user_id)

    async def broadcast_status(self, user_id: str) -> None:
        """
        Tell every connection that has a room with `user_id` open, except
        the user's own connections, about the user's current status.
        """
        watchers = [c for c in self.watchers.get(user_id, ()) if c.user_id != user_id]
        payload = {"userId": user_id, "status": self.presence.status(user_id)}
        logger.debug("Status update %s to %s watcher(s)", payload, len(watchers))
        await self._send_all(watchers, "status_update", payload, label=f"status of {user_id}")

    async def broadcast(
        self,
        room_id: str,
        event: str,
        data: Any,
        exclude: Optional[Connection] = None,
    ) -> None:
        """
        Fan out an event to all connections in a room except `exclude`.
        """
        connections = self.active_connections.get(room_id)
        if not connections:
            logger.debug("No connections to broadcast to for room %s", room_id)
            return

        targets = [c for c in connections if c is not exclude]
        logger.debug("Broadcasting %s to %s connections in room %s", event, len(targets), room_id)
        dead = await self._send_all(targets, event, data, label=f"room {room_id}")
        for conn in dead:
            connections.discard(conn)

    async def _send_all(
        self,
        targets: Iterable[Connection],
        event: str,
        data: Any,
        label: str,
    ) -> Set[Connection]:
        # In-order fan-out; a failed peer is dropped, the rest still receive.
        dead = set()
        for conn in list(targets):
            try:
                await conn.emit(event, data)
            except Exception:
                logger.exception("Error sending %s to %r (%s)", event, conn, label)
                dead.add(conn)
        return dead
