import logging
from dataclasses import dataclass

import httpx

from ..api.models import ToolResultContent
from ..config import RELAY_BASE_URL, USER_ID_HEADER

logger = logging.getLogger(__name__)


@dataclass
class StreamEvent:
    event: str
    data: str = ""


async def iter_sse(lines):
    """Parse ``text/event-stream`` lines into StreamEvents."""
    event = "message"
    data: list[str] = []
    async for line in lines:
        line = line.rstrip("\r")
        if not line:
            if data:
                yield StreamEvent(event=event, data="\n".join(data))
            event, data = "message", []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value
        elif name == "data":
            data.append(value)
    if data:
        yield StreamEvent(event=event, data="\n".join(data))


class ChatTransport:
    """HTTP client for the relay's chat endpoints.

    The anonymous session cookie issued by the server is kept by the
    underlying ``httpx.AsyncClient``. Once the caller authenticates,
    ``set_user`` makes every later request carry the user id.
    """

    def __init__(
        self,
        base_url: str = RELAY_BASE_URL,
        client: httpx.AsyncClient | None = None,
        timeout: float = 120.0,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self.user_id: str | None = None

    def set_user(self, user_id: str | None) -> None:
        self.user_id = user_id

    def _headers(self) -> dict:
        return {USER_ID_HEADER: self.user_id} if self.user_id else {}

    async def create_chat(self, first_message: str | None = None) -> dict:
        body = {"firstMessage": first_message} if first_message else None
        resp = await self._client.post("/api/chat", json=body, headers=self._headers())
        resp.raise_for_status()
        return resp.json()

    async def list_chats(self) -> list[dict]:
        resp = await self._client.get("/api/chats", headers=self._headers())
        resp.raise_for_status()
        return resp.json()

    async def get_messages(self, chat_id: str) -> list[dict]:
        resp = await self._client.get(f"/api/chat/{chat_id}/messages", headers=self._headers())
        resp.raise_for_status()
        return resp.json()

    async def delete_chat(self, chat_id: str) -> None:
        resp = await self._client.delete(f"/api/chat/{chat_id}", headers=self._headers())
        resp.raise_for_status()

    async def stream_turn(
        self,
        chat_id: str,
        query: str | None,
        tool_result: ToolResultContent | None = None,
    ):
        """POST one turn and yield the server's SSE events as they arrive."""
        body = {
            "query": query,
            "frontendToolCallRes": tool_result.model_dump(by_alias=True) if tool_result else None,
        }
        async with self._client.stream(
            "POST", f"/api/chat/{chat_id}", json=body, headers=self._headers()
        ) as resp:
            if resp.status_code >= 400:
                await resp.aread()
                resp.raise_for_status()
            async for event in iter_sse(resp.aiter_lines()):
                yield event

    async def aclose(self) -> None:
        await self._client.aclose()
