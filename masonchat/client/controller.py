"""
Client-side controller for one open chat screen.

Lifecycle: INITIALIZING -> CONNECTING -> ACTIVE -> CLOSING -> CLOSED, with
DEGRADED (history polling while the channel is down) and ERROR (no local
identity). A controller owns its channel connection exclusively; nothing
is shared between screen instances.
"""
import asyncio
import enum
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Set

from masonchat.client.api import API_ERRORS, ChatAPI
from masonchat.client.channel import ChannelConnection
from masonchat.client.timeline import DeliveryStatus, MessageTimeline, TimelineEntry
from masonchat.core.config import settings
from masonchat.core.errors import ChannelConnectionError, IdentityError
from masonchat.core.logger import get_logger
from masonchat.services.presence import ONLINE
from masonchat.services.rooms import normalize_identity, room_id

logger = get_logger(__name__)

IdentityProvider = Callable[[], Awaitable[Optional[str]]]
ChannelFactory = Callable[[], ChannelConnection]
ChangeListener = Callable[["ChatController"], None]


class ChatState(str, enum.Enum):
    INITIALIZING = "initializing"
    CONNECTING = "connecting"
    ACTIVE = "active"
    DEGRADED = "degraded"
    ERROR = "error"
    CLOSING = "closing"
    CLOSED = "closed"


def new_temp_id() -> str:
    """Client-side id for an optimistic message: a high-resolution timestamp."""
    return str(time.time_ns())


class ChatController:
    def __init__(
        self,
        peer_id: str,
        identity_provider: IdentityProvider,
        api: Optional[ChatAPI] = None,
        channel_factory: Optional[ChannelFactory] = None,
        join_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        backoff_initial: Optional[float] = None,
        backoff_max: Optional[float] = None,
    ) -> None:
        self.peer_id = normalize_identity(peer_id) if settings.NORMALIZE_IDENTITIES else peer_id
        self.identity_provider = identity_provider
        # Only an HTTP client created here is closed here
        self._owns_api = api is None
        self.api = api or ChatAPI()
        self.channel_factory = channel_factory or ChannelConnection
        self.join_timeout = settings.JOIN_TIMEOUT_SECONDS if join_timeout is None else join_timeout
        self.poll_interval = (
            settings.HISTORY_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        )
        self.backoff_initial = (
            settings.RECONNECT_BACKOFF_INITIAL_SECONDS if backoff_initial is None else backoff_initial
        )
        self.backoff_max = settings.RECONNECT_BACKOFF_MAX_SECONDS if backoff_max is None else backoff_max

        self.state = ChatState.INITIALIZING
        self.user_id: Optional[str] = None
        self.room_id: Optional[str] = None
        self.timeline: Optional[MessageTimeline] = None
        self.loading = True
        self.error: Optional[Exception] = None

        self._peer_online = False
        self._channel: Optional[ChannelConnection] = None
        self._joined: Optional[asyncio.Event] = None
        self._open_task: Optional[asyncio.Task] = None
        self._recovery_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._listeners: List[ChangeListener] = []

    # -- observable state -------------------------------------------------

    @property
    def messages(self) -> List[TimelineEntry]:
        return self.timeline.entries if self.timeline is not None else []

    @property
    def peer_online(self) -> bool:
        """
        Presence of the peer as shown in the header. Never claims online
        while our own channel is down.
        """
        return self.state is ChatState.ACTIVE and self._peer_online

    @property
    def closed(self) -> bool:
        return self.state in (ChatState.CLOSING, ChatState.CLOSED)

    def subscribe(self, listener: ChangeListener) -> None:
        """Register a render callback, invoked after every state change."""
        self._listeners.append(listener)

    def _changed(self) -> None:
        if self.closed:
            return
        for listener in list(self._listeners):
            listener(self)

    # -- opening ----------------------------------------------------------

    async def open(self) -> None:
        """
        Identity, then read marker and history, then the channel. Closing
        the screen while this runs cancels it.
        """
        self._open_task = asyncio.current_task()
        try:
            await self._initialize()
            if self.state is ChatState.ERROR or self.closed:
                return
            await self._connect()
        except asyncio.CancelledError:
            logger.debug("Opening room %s cancelled", self.room_id)
            if not self.closed:
                raise
        finally:
            self._open_task = None

    async def _initialize(self) -> None:
        self.state = ChatState.INITIALIZING
        own_id = await self.identity_provider()
        if not own_id:
            self.error = IdentityError("No local user identity; log in first")
            self.state = ChatState.ERROR
            self.loading = False
            logger.warning("Cannot open chat with %s: %s", self.peer_id, self.error)
            self._changed()
            return

        self.user_id = normalize_identity(own_id) if settings.NORMALIZE_IDENTITIES else own_id
        self.room_id = room_id(self.user_id, self.peer_id)
        self.timeline = MessageTimeline(self.user_id)

        await self._mark_read()
        try:
            history = await self.api.history(self.room_id)
        except API_ERRORS as e:
            logger.warning("History fetch for room %s failed: %s", self.room_id, e)
            history = []
        if self.closed:
            return
        self.timeline.reconcile(history)
        self.loading = False
        self._changed()

    async def _connect(self) -> None:
        self.state = ChatState.CONNECTING
        self._changed()
        try:
            await self._open_channel()
        except ChannelConnectionError as e:
            logger.warning("Channel for room %s unavailable: %s", self.room_id, e)
            self._enter_degraded()
            return
        if self.closed:
            return
        self.state = ChatState.ACTIVE
        logger.info("Chat room %s active for user=%s", self.room_id, self.user_id)
        await self._refresh_peer_status()
        self._changed()

    async def _open_channel(self) -> None:
        channel = self.channel_factory()
        self._channel = channel
        self._joined = asyncio.Event()

        channel.on("room_joined", self._on_room_joined)
        channel.on("status_update", self._on_status_update)
        channel.on("receive_message", self._on_receive_message)
        channel.on("message_sent", self._on_message_sent)
        channel.on("message_error", self._on_message_error)
        channel.on_close(self._on_transport_lost)

        try:
            await channel.connect()
            await channel.emit("user_online", self.user_id)
            await channel.emit("join_room", self.room_id)
            await asyncio.wait_for(self._joined.wait(), timeout=self.join_timeout)
        except asyncio.TimeoutError:
            await self._teardown_channel()
            raise ChannelConnectionError(
                f"No join acknowledgment for room {self.room_id} within {self.join_timeout}s"
            )
        except ChannelConnectionError:
            await self._teardown_channel()
            raise

    async def _refresh_peer_status(self) -> None:
        try:
            self._peer_online = (await self.api.status(self.peer_id)) == ONLINE
        except API_ERRORS as e:
            logger.debug("Status check for %s failed: %s", self.peer_id, e)

    # -- sending ----------------------------------------------------------

    async def send(self, text: str) -> Optional[TimelineEntry]:
        """
        Optimistically show the message, then emit it. Returns None for a
        blank message or a closed screen.
        """
        text = (text or "").strip()
        if not text or self.timeline is None or self.closed:
            return None

        entry = self.timeline.add_local(
            TimelineEntry(
                room_id=self.room_id,
                sender_id=self.user_id,
                text=text,
                time=datetime.now().strftime("%H:%M"),
                temp_id=new_temp_id(),
                status=DeliveryStatus.PENDING,
            )
        )
        await self._emit_entry(entry)
        self._changed()
        return entry

    async def retry(self, temp_id: str) -> Optional[TimelineEntry]:
        """
        Resend a failed message with its original tempId so the server and
        the timeline collapse it with the first attempt.
        """
        if self.timeline is None or self.closed:
            return None
        entry = self.timeline.find_by_temp_id(temp_id)
        if entry is None or entry.id is not None:
            return entry
        entry.status = DeliveryStatus.PENDING
        await self._emit_entry(entry)
        self._changed()
        return entry

    async def _emit_entry(self, entry: TimelineEntry) -> None:
        if self.state is not ChatState.ACTIVE or self._channel is None:
            entry.status = DeliveryStatus.FAILED
            logger.info("Send of %s deferred: channel not active (%s)", entry.temp_id, self.state.value)
            return
        try:
            await self._channel.emit("send_message", entry.to_payload())
        except ChannelConnectionError as e:
            logger.warning("Send of %s failed: %s", entry.temp_id, e)
            entry.status = DeliveryStatus.FAILED
            self._on_transport_lost()

    # -- channel events ---------------------------------------------------

    def _on_room_joined(self, data: Any) -> None:
        if self._joined is not None:
            self._joined.set()

    def _on_status_update(self, data: Any) -> None:
        if not isinstance(data, dict) or data.get("userId") != self.peer_id:
            return
        self._peer_online = data.get("status") == ONLINE
        self._changed()

    def _on_receive_message(self, data: Any) -> None:
        if self.closed or self.timeline is None:
            return
        if self.timeline.merge_incoming(data):
            self._spawn(self._mark_read())
            self._changed()

    def _on_message_sent(self, data: Any) -> None:
        if self.closed or self.timeline is None:
            return
        self.timeline.confirm(data)
        self._changed()

    def _on_message_error(self, data: Any) -> None:
        if self.closed or self.timeline is None or not isinstance(data, dict):
            return
        temp_id = data.get("tempId")
        if temp_id:
            self.timeline.mark_failed(temp_id)
        logger.info("Server rejected message %s: %s", temp_id, data.get("error"))
        self._changed()

    def _on_transport_lost(self) -> None:
        if self.state is not ChatState.ACTIVE:
            return
        logger.warning("Channel for room %s lost", self.room_id)
        self._enter_degraded()

    # -- degraded mode ----------------------------------------------------

    def _enter_degraded(self) -> None:
        self.state = ChatState.DEGRADED
        if self.timeline is not None:
            for entry in self.timeline.unconfirmed():
                if entry.status is DeliveryStatus.PENDING:
                    entry.status = DeliveryStatus.FAILED
        if self._recovery_task is None or self._recovery_task.done():
            self._recovery_task = asyncio.get_running_loop().create_task(self._recover())
        self._changed()

    async def _recover(self) -> None:
        """
        Poll history until the channel comes back, reconnecting with
        exponential backoff. On success, resend what the server never saw.
        """
        delay = self.backoff_initial
        next_attempt = asyncio.get_running_loop().time() + delay
        while not self.closed:
            await self._poll_history()
            if self.closed:
                return
            if asyncio.get_running_loop().time() >= next_attempt:
                await self._teardown_channel()
                try:
                    await self._open_channel()
                except ChannelConnectionError as e:
                    delay = min(delay * 2, self.backoff_max)
                    next_attempt = asyncio.get_running_loop().time() + delay
                    logger.info("Reconnect to room %s failed (%s); next try in %.1fs", self.room_id, e, delay)
                else:
                    if self.closed:
                        return
                    self.state = ChatState.ACTIVE
                    logger.info("Channel for room %s restored", self.room_id)
                    await self._poll_history()
                    await self._resend_unconfirmed()
                    await self._refresh_peer_status()
                    self._changed()
                    return
            await asyncio.sleep(min(self.poll_interval, max(next_attempt - asyncio.get_running_loop().time(), 0)))

    async def _poll_history(self) -> None:
        try:
            history = await self.api.history(self.room_id)
        except API_ERRORS as e:
            logger.debug("History poll for room %s failed: %s", self.room_id, e)
            return
        if self.closed or self.timeline is None:
            return
        self.timeline.reconcile(history)
        self._changed()

    async def _resend_unconfirmed(self) -> None:
        for entry in self.timeline.unconfirmed():
            entry.status = DeliveryStatus.PENDING
            await self._emit_entry(entry)

    # -- closing ----------------------------------------------------------

    async def close(self) -> None:
        """
        Unmount. Listener teardown strictly precedes transport teardown, so
        a message already in flight cannot touch this screen.
        """
        if self.closed:
            return
        self.state = ChatState.CLOSING

        if self._open_task is not None and self._open_task is not asyncio.current_task():
            self._open_task.cancel()
        if self._recovery_task is not None:
            self._recovery_task.cancel()
        for task in list(self._background):
            task.cancel()

        channel = self._channel
        if channel is not None:
            channel.off("receive_message")
            channel.off("message_sent")
            channel.off("message_error")
            channel.off("status_update")
            channel.off("room_joined")
            if channel.connected and self.user_id is not None:
                try:
                    await channel.emit("user_offline", self.user_id)
                except ChannelConnectionError:
                    logger.debug("Could not announce offline for %s", self.user_id)
            await channel.disconnect()
            self._channel = None

        if self._owns_api:
            await self.api.aclose()

        self.state = ChatState.CLOSED
        logger.info("Chat room %s closed", self.room_id)

    async def _teardown_channel(self) -> None:
        channel, self._channel = self._channel, None
        if channel is None:
            return
        for event in ("receive_message", "message_sent", "message_error", "status_update", "room_joined"):
            channel.off(event)
        await channel.disconnect()

    # -- helpers ----------------------------------------------------------

    async def _mark_read(self) -> None:
        try:
            await self.api.mark_read(self.room_id, self.user_id)
        except API_ERRORS as e:
            # Read markers are best-effort; a failure only leaves a stale badge
            logger.warning("Marking room %s read failed: %s", self.room_id, e)

    def _spawn(self, coro: Awaitable) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
