from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    DateTime,
    Text,
    Index,
    UniqueConstraint,
)

from masonchat.core.db import Base


class Message(Base):
    """
    One chat utterance. Append-only: only `read` changes after insert.
    """

    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("room_id", "sender_id", "temp_id", name="uq_messages_room_sender_temp"),
    )

    id = Column(Integer, primary_key=True, index=True)
    temp_id = Column(String(64), nullable=True, index=True)
    room_id = Column(String(255), nullable=False, index=True)
    sender_id = Column(String(128), nullable=False)

    text = Column(Text, nullable=False)
    time = Column(String(32), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    read = Column(Boolean, default=False, nullable=False)


Index("idx_messages_room_created_at", Message.room_id, Message.created_at)


class ReadState(Base):
    """
    Per (room, user) watermark: every message created at or before
    `last_read_at` counts as read for that user.
    """

    __tablename__ = "read_states"
    __table_args__ = (
        UniqueConstraint("room_id", "user_id", name="uq_read_states_room_user"),
    )

    id = Column(Integer, primary_key=True, index=True)
    room_id = Column(String(255), nullable=False, index=True)
    user_id = Column(String(128), nullable=False, index=True)
    last_read_at = Column(DateTime, nullable=True)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )
