from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Wire models use camelCase keys, Python code uses snake_case."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


class MessageCreate(CamelModel):
    """Message as emitted by a client on `send_message`.

    Fields are deliberately optional here: presence of the required ones is
    checked by the message store so that a missing field surfaces as a
    failed send rather than a malformed frame.
    """
    room_id: Optional[str] = None
    sender_id: Optional[str] = None
    text: Optional[str] = None
    time: Optional[str] = None
    temp_id: Optional[str] = None
    read: bool = False


class MessageRead(CamelModel):
    """Stored message returned to clients."""
    id: int
    temp_id: Optional[str] = None
    room_id: str
    sender_id: str
    text: str
    time: str
    created_at: datetime
    read: bool = False


class StatusRead(CamelModel):
    user_id: str
    status: str


class RoomRead(CamelModel):
    room_id: str


class UnreadCountRead(CamelModel):
    room_id: str
    user_id: str
    unread_count: int


class UnreadTotalRead(CamelModel):
    """Unread messages across all of a user's rooms."""
    user_id: str
    total_unread: int


class ConversationRead(CamelModel):
    """One row of a user's conversation list."""
    room_id: str
    peer_id: str
    unread_count: int
    last_message: Optional[MessageRead] = None


class ChannelEvent(BaseModel):
    """Envelope for every frame on the real-time channel."""
    event: str
    data: Any = None
