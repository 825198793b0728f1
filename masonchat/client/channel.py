import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from masonchat.core.config import settings
from masonchat.core.errors import ChannelConnectionError
from masonchat.core.logger import get_logger

logger = get_logger(__name__)

Listener = Callable[[Any], None]


def channel_url(base_url: Optional[str] = None) -> str:
    """ws(s):// URL of the real-time channel for an http(s):// server URL."""
    base = (base_url or settings.CHAT_SERVER_URL).rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return f"{base}/ws/chat"


class ChannelConnection:
    """
    Client end of the real-time channel.

    Listeners are plain callables run on the reader task, in frame order.
    Removing a listener with `off` takes effect immediately: a frame that
    arrives afterwards is dropped, even if it was already on the wire.
    """

    def __init__(self, url: Optional[str] = None) -> None:
        self.url = url or channel_url()
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._listeners: Dict[str, List[Listener]] = {}
        self._close_callback: Optional[Callable[[], None]] = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._reader is not None and not self._reader.done()

    def on(self, event: str, listener: Listener) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str) -> None:
        self._listeners.pop(event, None)

    def on_close(self, callback: Callable[[], None]) -> None:
        """Called once if the transport drops without `disconnect()`."""
        self._close_callback = callback

    async def connect(self) -> None:
        try:
            self._ws = await websockets.connect(self.url)
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            logger.warning("Channel connect to %s failed: %s", self.url, e)
            raise ChannelConnectionError(f"Could not connect to {self.url}: {e}") from e
        self._reader = asyncio.create_task(self._read_loop())
        logger.info("Channel connected to %s", self.url)

    async def emit(self, event: str, data: Any = None) -> None:
        if self._ws is None:
            raise ChannelConnectionError("Channel is not connected")
        try:
            await self._ws.send(json.dumps({"event": event, "data": data}))
        except (ConnectionClosed, OSError) as e:
            raise ChannelConnectionError(f"Emit of {event} failed: {e}") from e

    async def disconnect(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        self._ws = None
        logger.info("Channel to %s closed", self.url)

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    frame = json.loads(raw)
                    event, data = frame["event"], frame.get("data")
                except (ValueError, KeyError, TypeError):
                    logger.warning("Dropping malformed frame: %r", raw)
                    continue
                for listener in list(self._listeners.get(event, ())):
                    try:
                        listener(data)
                    except Exception:
                        logger.exception("Listener for %s failed", event)
        except ConnectionClosed as e:
            logger.info("Channel closed by peer: %s", e)
        finally:
            if not self._closing and self._close_callback is not None:
                self._close_callback()
