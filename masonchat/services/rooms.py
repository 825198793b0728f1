"""
Room addressing for two-party conversations.

A room is not stored anywhere: its id is derived from the unordered pair of
participant identities, so both sides compute the same value without a
round-trip.
"""
from typing import List, Optional

from masonchat.core.config import settings


def normalize_identity(identity: str) -> str:
    """
    Canonical form of an identity string: surrounding whitespace removed.

    Case is preserved; identities are opaque and may be case-sensitive.
    """
    return str(identity).strip()


def room_id(
    participant_a: str,
    participant_b: str,
    normalize: Optional[bool] = None,
    separator: Optional[str] = None,
) -> str:
    """
    Return the canonical room id for two participants.

    Commutative: room_id(a, b) == room_id(b, a).
    """
    if normalize is None:
        normalize = settings.NORMALIZE_IDENTITIES
    if separator is None:
        separator = settings.ROOM_SEPARATOR

    pair = [str(participant_a), str(participant_b)]
    if normalize:
        pair = [normalize_identity(p) for p in pair]
    return separator.join(sorted(pair))


def participants(room: str, separator: Optional[str] = None) -> List[str]:
    """
    Split a room id back into its two participants.

    Only meaningful when identities never contain the separator.
    """
    if separator is None:
        separator = settings.ROOM_SEPARATOR
    first, sep, second = room.partition(separator)
    if not sep:
        return [room]
    return [first, second]


def peer_of(room: str, user_id: str, separator: Optional[str] = None) -> Optional[str]:
    """Return the other participant of `room`, or None if `user_id` is not in it."""
    members = participants(room, separator)
    if user_id not in members:
        return None
    others = [m for m in members if m != user_id]
    # A room with yourself has no distinct peer
    return others[0] if others else user_id
