from typing import Any, Callable, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from masonchat.core.config import settings
from masonchat.core.errors import MessageValidationError
from masonchat.core.logger import get_logger
from masonchat.schemas.chat import ChannelEvent, MessageCreate, MessageRead
from masonchat.services.message_store import MessageStore
from masonchat.services.rooms import normalize_identity, participants
from masonchat.websocket.manager import Connection, ConnectionManager

logger = get_logger(__name__)


def _identity(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not value.strip():
        return None
    return normalize_identity(value) if settings.NORMALIZE_IDENTITIES else value


class ChannelHandler:
    """
    Dispatches inbound channel frames to the connection manager and the
    message store.

    `session_factory` opens one short DB session per event so a long-lived
    socket never holds a transaction open.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        session_factory: Callable,
        store: Optional[MessageStore] = None,
    ) -> None:
        self.manager = manager
        self.session_factory = session_factory
        self.store = store or MessageStore()
        self._handlers = {
            "join_room": self.handle_join_room,
            "user_online": self.handle_user_online,
            "user_offline": self.handle_user_offline,
            "send_message": self.handle_send_message,
            "ping": self.handle_ping,
        }

    async def handle(self, conn: Connection, frame: Any) -> None:
        try:
            envelope = ChannelEvent.model_validate(frame)
        except ValidationError:
            logger.warning("Malformed frame from %r: %r", conn, frame)
            await conn.emit("error", {"message": "Frame must be an object with an 'event' key"})
            return

        handler = self._handlers.get(envelope.event)
        if handler is None:
            logger.warning("Unknown event %s from %r", envelope.event, conn)
            await conn.emit("error", {"message": f"Unknown event: {envelope.event}"})
            return
        await handler(conn, envelope.data)

    async def handle_join_room(self, conn: Connection, data: Any) -> None:
        room = data.get("roomId") if isinstance(data, dict) else data
        room = _identity(room)
        if room is None:
            await conn.emit("error", {"message": "join_room requires a room id"})
            return

        self.manager.join_room(conn, room)
        await conn.emit("room_joined", {"roomId": room})

        # Snapshot of the other side so the header is right before any change
        for member in participants(room):
            if member == conn.user_id:
                continue
            await conn.emit(
                "status_update",
                {"userId": member, "status": self.manager.presence.status(member)},
            )

    async def handle_user_online(self, conn: Connection, data: Any) -> None:
        user_id = _identity(data.get("userId") if isinstance(data, dict) else data)
        if user_id is None:
            await conn.emit("error", {"message": "user_online requires a user id"})
            return
        await self.manager.announce_online(conn, user_id)

    async def handle_user_offline(self, conn: Connection, data: Any) -> None:
        user_id = _identity(data.get("userId") if isinstance(data, dict) else data)
        if user_id is None:
            # Original clients emit user_offline with a null id on early unmount
            user_id = conn.user_id
        if user_id is None:
            return
        await self.manager.announce_offline(conn, user_id)

    async def handle_send_message(self, conn: Connection, data: Any) -> None:
        """
        Persist, then fan out to the rest of the room. The sender only gets
        a `message_sent` confirmation, never its own `receive_message`.
        """
        temp_id = data.get("tempId") if isinstance(data, dict) else None
        try:
            message_in = MessageCreate.model_validate(data)
        except ValidationError as e:
            logger.warning("Invalid send_message payload from %r: %s", conn, e)
            await conn.emit("message_error", {"tempId": temp_id, "error": "Invalid message payload"})
            return

        room = _identity(message_in.room_id) or ""
        async with self.manager.room_lock(room):
            try:
                async with self.session_factory() as db:
                    stored = await self.store.append(db, message_in)
            except MessageValidationError as e:
                await conn.emit("message_error", {"tempId": temp_id, "error": str(e)})
                return
            except SQLAlchemyError:
                logger.exception("Persisting message from %r failed (tempId=%s)", conn, temp_id)
                await conn.emit("message_error", {"tempId": temp_id, "error": "Message could not be stored"})
                return

            payload = MessageRead.model_validate(stored).model_dump(mode="json", by_alias=True)
            await self.manager.broadcast(stored.room_id, "receive_message", payload, exclude=conn)

        await conn.emit("message_sent", payload)
        logger.debug("Message id=%s delivered in room %s", stored.id, stored.room_id)

    async def handle_ping(self, conn: Connection, data: Any) -> None:
        await conn.emit("pong")
