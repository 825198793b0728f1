from typing import List, Optional

import httpx

from masonchat.core.config import settings
from masonchat.core.errors import ChannelConnectionError
from masonchat.core.logger import get_logger
from masonchat.schemas.chat import ConversationRead, MessageRead

logger = get_logger(__name__)

# Failures a caller can recover from by retrying later
API_ERRORS = (ChannelConnectionError, httpx.HTTPStatusError)


class ChatAPI:
    """
    HTTP side of the chat server as seen by the client controller.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url or settings.CHAT_SERVER_URL
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )

    async def history(self, room_id: str) -> List[MessageRead]:
        """
        Stored messages of a room, oldest first. A 404 is an empty history.
        """
        response = await self._request("GET", f"/api/messages/{room_id}")
        if response.status_code == httpx.codes.NOT_FOUND:
            return []
        response.raise_for_status()
        return [MessageRead.model_validate(m) for m in response.json()]

    async def mark_read(self, room_id: str, user_id: str) -> None:
        response = await self._request("PUT", f"/api/messages/read/{room_id}/{user_id}")
        response.raise_for_status()

    async def status(self, user_id: str) -> str:
        response = await self._request("GET", f"/api/status/{user_id}")
        response.raise_for_status()
        return response.json().get("status", "offline")

    async def unread_total(self, user_id: str) -> int:
        response = await self._request("GET", f"/api/unread-total/{user_id}")
        response.raise_for_status()
        return response.json().get("totalUnread", 0)

    async def conversations(self, user_id: str) -> List[ConversationRead]:
        response = await self._request("GET", f"/api/conversations/{user_id}")
        response.raise_for_status()
        return [ConversationRead.model_validate(c) for c in response.json()]

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str) -> httpx.Response:
        try:
            return await self._client.request(method, url)
        except httpx.TransportError as e:
            logger.warning("%s %s failed: %s", method, url, e)
            raise ChannelConnectionError(f"{method} {url} failed: {e}") from e
