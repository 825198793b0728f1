from typing import Dict, Hashable, List, Optional, Set

from masonchat.core.logger import get_logger

logger = get_logger(__name__)

ONLINE = "online"
OFFLINE = "offline"


class PresenceTracker:
    """
    Process-wide, in-memory record of who is reachable right now.

    Each identity maps to the set of connections that announced it. The
    identity is online while that set is non-empty. Nothing is persisted;
    an unknown identity is simply offline.

    Mutations never await, so on a single event loop no lock is needed
    around a user's record.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, Set[Hashable]] = {}

    def set_online(self, user_id: str, connection: Hashable) -> bool:
        """
        Register `connection` for `user_id`. Returns True if the user's
        status flipped from offline to online.
        """
        was_online = self.is_online(user_id)
        self._connections.setdefault(user_id, set()).add(connection)
        if not was_online:
            logger.info("User %s is online", user_id)
        return not was_online

    def set_offline(self, user_id: str, connection: Optional[Hashable] = None) -> bool:
        """
        Explicit offline signal. With `connection`, only that connection
        stops counting (another screen or device may still be live);
        without it every connection of the user is dropped.
        Returns True if the status flipped.
        """
        if connection is not None:
            return self.drop_connection(user_id, connection)
        was_online = self.is_online(user_id)
        self._connections.pop(user_id, None)
        if was_online:
            logger.info("User %s is offline", user_id)
        return was_online

    def drop_connection(self, user_id: str, connection: Hashable) -> bool:
        """
        Implicit offline on disconnect. The user only goes offline once no
        other connection of theirs remains (e.g. after a rapid reconnect).
        Returns True if the status flipped.
        """
        conns = self._connections.get(user_id)
        if not conns:
            return False
        conns.discard(connection)
        if conns:
            logger.debug("User %s still has %s live connection(s)", user_id, len(conns))
            return False
        del self._connections[user_id]
        logger.info("User %s is offline (last connection dropped)", user_id)
        return True

    def is_online(self, user_id: str) -> bool:
        return bool(self._connections.get(user_id))

    def status(self, user_id: str) -> str:
        return ONLINE if self.is_online(user_id) else OFFLINE

    def online_users(self) -> List[str]:
        return list(self._connections.keys())
