from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, select, update, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from masonchat.core.config import settings
from masonchat.core.errors import MessageValidationError
from masonchat.core.logger import get_logger
from masonchat.models.chat import Message, ReadState
from masonchat.schemas.chat import ConversationRead, MessageCreate, MessageRead
from masonchat.services.rooms import normalize_identity, participants, peer_of

logger = get_logger(__name__)

REQUIRED_FIELDS = ("room_id", "sender_id", "text")


def _canonical(value: str) -> str:
    return normalize_identity(value) if settings.NORMALIZE_IDENTITIES else value


def _rooms_of(user: str):
    """Filter on rooms whose id names `user` as one of its two participants."""
    sep = settings.ROOM_SEPARATOR
    return or_(
        Message.room_id.startswith(f"{user}{sep}", autoescape=True),
        Message.room_id.endswith(f"{sep}{user}", autoescape=True),
    )


class MessageStore:
    """
    Durable append-only message log plus the per-user read-state markers.
    """

    async def append(
        self,
        db: AsyncSession,
        message_in: MessageCreate,
    ) -> Message:
        """
        Validate and persist a message, returning the stored row.

        - roomId, senderId and text must be present and non-blank.
        - A message whose tempId was already stored for the same room and
          sender is not inserted twice; the stored copy is returned.
        """
        for field in REQUIRED_FIELDS:
            value = getattr(message_in, field)
            if value is None or not str(value).strip():
                logger.warning("Rejected message: missing %s (tempId=%s)", field, message_in.temp_id)
                raise MessageValidationError(field)

        room = _canonical(message_in.room_id)
        sender = _canonical(message_in.sender_id)
        # An empty tempId means none; it must not collide on the unique key
        temp_id = message_in.temp_id or None

        if temp_id:
            existing = await self.get_by_temp_id(db, room, sender, temp_id)
            if existing:
                logger.info(
                    "Duplicate send for tempId=%s in room %s, returning stored id=%s",
                    temp_id, room, existing.id,
                )
                return existing

        created_at = datetime.utcnow()
        message = Message(
            temp_id=temp_id,
            room_id=room,
            sender_id=sender,
            text=message_in.text,
            time=message_in.time or created_at.strftime("%H:%M"),
            created_at=created_at,
            read=False,
        )
        db.add(message)
        await db.commit()
        await db.refresh(message)
        logger.debug("Persisted message id=%s room=%s sender=%s", message.id, message.room_id, message.sender_id)
        return message

    async def get_by_temp_id(
        self,
        db: AsyncSession,
        room_id: str,
        sender_id: str,
        temp_id: str,
    ) -> Optional[Message]:
        stmt = select(Message).where(
            Message.room_id == room_id,
            Message.sender_id == sender_id,
            Message.temp_id == temp_id,
        )
        res = await db.execute(stmt)
        return res.scalars().first()

    async def history(
        self,
        db: AsyncSession,
        room_id: str,
    ) -> List[Message]:
        """
        All messages of a room, oldest first. Empty list for an unknown room.
        """
        stmt = (
            select(Message)
            .where(Message.room_id == _canonical(room_id))
            .order_by(Message.created_at.asc(), Message.id.asc())
        )
        res = await db.execute(stmt)
        return list(res.scalars())

    async def get_read_state(
        self,
        db: AsyncSession,
        room_id: str,
        user_id: str,
    ) -> Optional[ReadState]:
        stmt = select(ReadState).where(
            ReadState.room_id == _canonical(room_id),
            ReadState.user_id == _canonical(user_id),
        )
        res = await db.execute(stmt)
        return res.scalars().first()

    async def mark_read(
        self,
        db: AsyncSession,
        room_id: str,
        user_id: str,
    ) -> ReadState:
        """
        Move the user's read marker to the newest message in the room and
        flag the other party's messages as read.

        The marker is the createdAt of the latest message, not the wall
        clock, so repeating the call without new messages changes nothing.
        """
        room = _canonical(room_id)
        user = _canonical(user_id)

        latest = (
            await db.execute(
                select(func.max(Message.created_at)).where(Message.room_id == room)
            )
        ).scalar_one_or_none()

        state = await self.get_read_state(db, room, user)
        if state is None:
            state = ReadState(room_id=room, user_id=user, last_read_at=latest)
            db.add(state)
            logger.info("Created read state for user=%s room=%s", user, room)
        elif latest is not None and (state.last_read_at is None or latest > state.last_read_at):
            state.last_read_at = latest
        else:
            logger.debug("Read state unchanged for user=%s room=%s", user, room)
            return state

        await db.execute(
            update(Message)
            .where(
                Message.room_id == room,
                Message.sender_id != user,
                Message.read.is_(False),
            )
            .values(read=True)
        )
        await db.commit()
        await db.refresh(state)
        logger.debug("Marked room %s read for user=%s up to %s", room, user, state.last_read_at)
        return state

    async def unread_count(
        self,
        db: AsyncSession,
        room_id: str,
        user_id: str,
    ) -> int:
        """
        Messages in the room newer than the user's marker and not sent by them.
        """
        room = _canonical(room_id)
        user = _canonical(user_id)
        state = await self.get_read_state(db, room, user)

        stmt = select(func.count(Message.id)).where(
            Message.room_id == room,
            Message.sender_id != user,
        )
        if state is not None and state.last_read_at is not None:
            stmt = stmt.where(Message.created_at > state.last_read_at)
        return (await db.execute(stmt)).scalar_one()

    async def unread_total(
        self,
        db: AsyncSession,
        user_id: str,
    ) -> int:
        """
        Unread messages across every room of the user, for the app badge.
        Same rule as `unread_count`, summed in one query.
        """
        user = _canonical(user_id)
        stmt = (
            select(func.count(Message.id))
            .outerjoin(
                ReadState,
                and_(ReadState.room_id == Message.room_id, ReadState.user_id == user),
            )
            .where(
                _rooms_of(user),
                Message.sender_id != user,
                or_(
                    ReadState.last_read_at.is_(None),
                    Message.created_at > ReadState.last_read_at,
                ),
            )
        )
        total = (await db.execute(stmt)).scalar_one()
        logger.debug("Unread total for user=%s: %s", user, total)
        return total

    async def conversations(
        self,
        db: AsyncSession,
        user_id: str,
    ) -> List[ConversationRead]:
        """
        Every room the user participates in, most recent activity first.
        """
        user = _canonical(user_id)
        stmt = (
            select(Message.room_id, func.max(Message.created_at).label("last_at"))
            .where(_rooms_of(user))
            .group_by(Message.room_id)
            .order_by(func.max(Message.created_at).desc())
        )
        rows = (await db.execute(stmt)).all()

        result = []
        for room, _last_at in rows:
            if user not in participants(room):
                continue
            last = (
                await db.execute(
                    select(Message)
                    .where(Message.room_id == room)
                    .order_by(Message.created_at.desc(), Message.id.desc())
                    .limit(1)
                )
            ).scalars().first()
            result.append(
                ConversationRead(
                    room_id=room,
                    peer_id=peer_of(room, user),
                    unread_count=await self.unread_count(db, room, user),
                    last_message=MessageRead.model_validate(last) if last else None,
                )
            )
        logger.debug("Listed %s conversations for user=%s", len(result), user)
        return result
