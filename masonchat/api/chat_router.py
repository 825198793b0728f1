from typing import List

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from masonchat.core.config import settings
from masonchat.core.db import get_db
from masonchat.core.logger import get_logger
from masonchat.schemas.chat import (
    ConversationRead,
    MessageRead,
    RoomRead,
    StatusRead,
    UnreadCountRead,
    UnreadTotalRead,
)
from masonchat.services.message_store import MessageStore
from masonchat.services.presence import PresenceTracker
from masonchat.services.rooms import normalize_identity, room_id

logger = get_logger(__name__)


class ChatRouter:
    """
    APIRouter for message history, read state and presence snapshots.
    """

    def __init__(self, presence: PresenceTracker) -> None:
        self.router = APIRouter(tags=["chat"])
        self.store = MessageStore()
        self.presence = presence
        self._register_routes()

    def _register_routes(self) -> None:
        self.router.get(
            "/messages/{room_id}",
            response_model=List[MessageRead],
            response_model_by_alias=True,
        )(self.get_history)
        self.router.put(
            "/messages/read/{room_id}/{user_id}",
            status_code=status.HTTP_204_NO_CONTENT,
        )(self.mark_read)
        self.router.get(
            "/messages/{room_id}/unread/{user_id}",
            response_model=UnreadCountRead,
        )(self.get_unread_count)
        self.router.get(
            "/unread-total/{user_id}",
            response_model=UnreadTotalRead,
        )(self.get_unread_total)
        self.router.get("/status/{user_id}", response_model=StatusRead)(self.get_status)
        self.router.get(
            "/conversations/{user_id}",
            response_model=List[ConversationRead],
        )(self.list_conversations)
        self.router.get("/rooms/{user_a}/{user_b}", response_model=RoomRead)(self.resolve_room)

    async def get_history(
        self,
        room_id: str,
        db: AsyncSession = Depends(get_db),
    ):
        """
        Full history of a room, oldest first. A room nobody wrote to yet
        simply has no messages.
        """
        messages = await self.store.history(db, room_id)
        logger.debug("History for room %s: %s messages", room_id, len(messages))
        return messages

    async def mark_read(
        self,
        room_id: str,
        user_id: str,
        db: AsyncSession = Depends(get_db),
    ):
        await self.store.mark_read(db, room_id, user_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    async def get_unread_count(
        self,
        room_id: str,
        user_id: str,
        db: AsyncSession = Depends(get_db),
    ):
        count = await self.store.unread_count(db, room_id, user_id)
        return UnreadCountRead(room_id=room_id, user_id=user_id, unread_count=count)

    async def get_unread_total(
        self,
        user_id: str,
        db: AsyncSession = Depends(get_db),
    ):
        """
        Badge count for the whole app: unread messages in every room.
        """
        total = await self.store.unread_total(db, user_id)
        user = normalize_identity(user_id) if settings.NORMALIZE_IDENTITIES else user_id
        return UnreadTotalRead(user_id=user, total_unread=total)

    async def get_status(self, user_id: str):
        """
        Point-in-time presence; may be stale by the time it arrives.
        """
        user = normalize_identity(user_id) if settings.NORMALIZE_IDENTITIES else user_id
        return StatusRead(user_id=user, status=self.presence.status(user))

    async def list_conversations(
        self,
        user_id: str,
        db: AsyncSession = Depends(get_db),
    ):
        """
        Rooms the user takes part in, with unread badge counts.
        """
        return await self.store.conversations(db, user_id)

    async def resolve_room(self, user_a: str, user_b: str):
        return RoomRead(room_id=room_id(user_a, user_b))
