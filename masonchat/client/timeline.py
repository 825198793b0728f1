import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from masonchat.core.logger import get_logger
from masonchat.schemas.chat import MessageRead

logger = get_logger(__name__)


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


@dataclass
class TimelineEntry:
    """A message as shown on the chat screen."""
    room_id: str
    sender_id: str
    text: str
    time: str
    temp_id: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    read: bool = False
    status: DeliveryStatus = DeliveryStatus.SENT

    @property
    def key(self) -> Optional[Union[int, str]]:
        return self.id if self.id is not None else self.temp_id

    @classmethod
    def from_message(cls, message: MessageRead) -> "TimelineEntry":
        return cls(
            room_id=message.room_id,
            sender_id=message.sender_id,
            text=message.text,
            time=message.time,
            temp_id=message.temp_id,
            id=message.id,
            created_at=message.created_at,
            read=message.read,
        )

    def same_message(self, other: "TimelineEntry") -> bool:
        if self.id is not None and other.id is not None:
            return self.id == other.id
        # tempIds are only unique per sender
        return (
            self.temp_id is not None
            and self.temp_id == other.temp_id
            and self.sender_id == other.sender_id
        )

    def to_payload(self) -> Dict[str, Any]:
        """Wire form for `send_message`."""
        return {
            "roomId": self.room_id,
            "senderId": self.sender_id,
            "text": self.text,
            "time": self.time,
            "tempId": self.temp_id,
            "read": self.read,
        }


def _adopt(local: TimelineEntry, stored: TimelineEntry) -> None:
    local.id = stored.id
    local.created_at = stored.created_at
    local.time = stored.time
    local.read = stored.read
    local.status = DeliveryStatus.SENT


def _as_message(message: Union[MessageRead, Dict[str, Any]]) -> MessageRead:
    if isinstance(message, MessageRead):
        return message
    return MessageRead.model_validate(message)


class MessageTimeline:
    """
    Ordered local list of messages for one open room: history merged with
    the live stream and this client's optimistic sends.
    """

    def __init__(self, own_id: str) -> None:
        self.own_id = own_id
        self._entries: List[TimelineEntry] = []

    @property
    def entries(self) -> List[TimelineEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def find(self, entry: TimelineEntry) -> Optional[TimelineEntry]:
        for existing in self._entries:
            if existing.same_message(entry):
                return existing
        return None

    def find_by_temp_id(self, temp_id: str) -> Optional[TimelineEntry]:
        for existing in self._entries:
            if existing.temp_id == temp_id and existing.sender_id == self.own_id:
                return existing
        return None

    def add_local(self, entry: TimelineEntry) -> TimelineEntry:
        """Optimistic append of a message this client is sending."""
        self._entries.append(entry)
        return entry

    def merge_incoming(self, message: Union[MessageRead, Dict[str, Any]]) -> bool:
        """
        Append a live message unless it is our own echo or already shown.
        Returns True if the timeline changed.
        """
        incoming = TimelineEntry.from_message(_as_message(message))
        if incoming.sender_id == self.own_id:
            logger.debug("Dropping echo of own message %s", incoming.key)
            return False
        if self.find(incoming) is not None:
            logger.debug("Dropping duplicate delivery of message %s", incoming.key)
            return False
        self._entries.append(incoming)
        return True

    def confirm(self, message: Union[MessageRead, Dict[str, Any]]) -> TimelineEntry:
        """
        The server stored one of our sends: adopt its id and timestamp.
        """
        stored = TimelineEntry.from_message(_as_message(message))
        local = self.find_by_temp_id(stored.temp_id) if stored.temp_id else None
        if local is None:
            local = self.find(stored)
        if local is None:
            self._entries.append(stored)
            return stored
        _adopt(local, stored)
        return local

    def mark_failed(self, temp_id: str) -> Optional[TimelineEntry]:
        entry = self.find_by_temp_id(temp_id)
        if entry is not None and entry.id is None:
            entry.status = DeliveryStatus.FAILED
        return entry

    def unconfirmed(self) -> List[TimelineEntry]:
        """Own entries the server has not acknowledged yet (pending or failed)."""
        return [e for e in self._entries if e.id is None and e.sender_id == self.own_id]

    def reconcile(self, history: List[Union[MessageRead, Dict[str, Any]]]) -> None:
        """
        Merge authoritative history into the timeline.

        A local entry that history also holds adopts the stored copy, so an
        optimistic send collapses into its stored form by tempId. Entries
        the snapshot does not know yet (a live message that raced the
        fetch) are kept. Stored entries are ordered by createdAt; our own
        unconfirmed sends follow in send order.
        """
        merged = []
        for message in history:
            stored = TimelineEntry.from_message(_as_message(message))
            local = self.find(stored)
            if local is None:
                merged.append(stored)
            elif all(m is not local for m in merged):
                _adopt(local, stored)
                merged.append(local)

        kept = [e for e in self._entries if all(m is not e for m in merged)]
        confirmed = merged + [e for e in kept if e.id is not None]
        confirmed.sort(key=lambda e: (e.created_at, e.id))
        pending = [e for e in kept if e.id is None]
        self._entries = confirmed + pending
        logger.debug(
            "Reconciled timeline: %s from history, %s kept, %s unconfirmed",
            len(merged), len(kept) - len(pending), len(pending),
        )
