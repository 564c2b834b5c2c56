"""A live view of one conversation, as seen by the caller.

The view owns the transcript, the stream status and the dispatch state.
After every change it hands the transcript to the ``DispatchGuard``; a
frontend tool result produced there is held until the current stream has
ended and is then sent as a hidden continuation turn.
"""

import json
import logging
import uuid
from contextlib import aclosing

import httpx

from ..api.models import ToolResultContent
from ..config import CONTINUATION_SENTINEL
from .continuation import ContinuationFilter
from .dispatch import DispatchGuard, DispatchState
from .frontend_tools import FrontendToolRegistry
from .messages import UIMessage
from .reconcile import reconcile

logger = logging.getLogger(__name__)


class ConversationView:
    def __init__(self, chat_id: str, transport, registry: FrontendToolRegistry) -> None:
        self.chat_id = chat_id
        self.transport = transport
        self.messages: list[UIMessage] = []
        self.persisted: list[UIMessage] = []
        self.status = "ready"
        self.error: str | None = None
        self.state = DispatchState()
        self.filter = ContinuationFilter(CONTINUATION_SENTINEL)
        self.guard = DispatchGuard(registry, self.state, self._enqueue_continuation)
        self._pending: list[ToolResultContent] = []
        self._stop_requested = False

    # --- Transcript ---

    def transcript(self) -> list[UIMessage]:
        """Everything the guard reasons about, hidden turns included."""
        return reconcile(self.messages, self.persisted)

    def displayed(self) -> list[UIMessage]:
        return reconcile(self.messages, self.persisted, is_hidden=self.filter.is_hidden)

    async def load(self) -> None:
        """Load persisted turns; nothing already in history is dispatched again."""
        data = await self.transport.get_messages(self.chat_id)
        self.persisted = [UIMessage.from_api(m) for m in data]
        self.messages = []
        self.state.seed_from_history(self.persisted)
        await self._on_update()

    async def refresh(self) -> None:
        data = await self.transport.get_messages(self.chat_id)
        self.persisted = [UIMessage.from_api(m) for m in data]
        persisted_ids = {m.id for m in self.persisted}
        self.messages = [m for m in self.messages if m.id not in persisted_ids]

    async def _on_update(self) -> None:
        await self.guard.on_transcript_update(self.transcript(), self.status)

    async def _enqueue_continuation(self, result: ToolResultContent) -> None:
        self._pending.append(result)

    # --- Sending ---

    def stop(self) -> None:
        self._stop_requested = True

    async def send_message(self, text: str) -> None:
        """Send a user turn, then any continuations its answers trigger."""
        text = text.strip()
        if not text:
            return
        self.error = None
        await self._round_trip(text, None)
        await self._flush_continuations()

    async def _flush_continuations(self) -> None:
        try:
            while self._pending and self.status != "error":
                result = self._pending.pop(0)
                self.filter.arm()
                logger.info("Sending continuation for %s", result.tool_call_id)
                await self._round_trip(CONTINUATION_SENTINEL, result)
        finally:
            self.state.sending_continuation = False

    async def _round_trip(self, query: str, tool_result: ToolResultContent | None) -> None:
        self._stop_requested = False
        user_turn = UIMessage(
            id=f"local-{uuid.uuid4().hex}",
            role="user",
            parts=[{"type": "text", "text": query}],
        )
        self.messages.append(user_turn)
        assistant: UIMessage | None = None
        self.status = "submitted"
        await self._on_update()

        try:
            async with aclosing(
                self.transport.stream_turn(self.chat_id, query, tool_result)
            ) as events:
                async for event in events:
                    if self._stop_requested:
                        break
                    if event.event == "init":
                        info = json.loads(event.data)
                        if info.get("user_message_id"):
                            user_turn.id = info["user_message_id"]
                        self.filter.observe(self.messages)
                        assistant = UIMessage(id=info["assistant_message_id"], role="assistant")
                        self.messages.append(assistant)
                        self.status = "streaming"
                        self.state.sending_continuation = False
                    elif event.event == "text" and assistant is not None:
                        assistant.append_text(event.data)
                    elif event.event == "structured" and assistant is not None:
                        payload = json.loads(event.data)
                        parts = [{"type": "text", "text": payload.get("result") or assistant.text}]
                        if payload.get("frontend_tool_call"):
                            parts.append({"type": "object", "object": payload})
                        assistant.parts = parts
                    elif event.event == "error":
                        self._fail(event.data, assistant)
                        assistant = None
                    elif event.event == "done":
                        info = json.loads(event.data) if event.data else {}
                        if info.get("error") and self.status != "error":
                            self._fail(info["error"], assistant)
                            assistant = None
                    else:
                        continue
                    await self._on_update()
                    if self._stop_requested:
                        break
        except httpx.HTTPStatusError as e:
            detail = e.response.text
            logger.warning("Chat request failed: %s %s", e.response.status_code, detail)
            self._drop_unsent(user_turn)
            self._fail(detail or str(e), assistant)
            await self._on_update()
            return
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Chat stream failed: %s", e)
            if assistant is None:
                self._drop_unsent(user_turn)
            self._fail(str(e) or e.__class__.__name__, assistant)
            await self._on_update()
            return

        if self._stop_requested and self.status != "error":
            logger.info("Stream stopped by caller")
            if assistant is not None:
                # Never persisted by the server: not rendered, never dispatched.
                self.state.mark_handled(assistant.id)
                self.messages.remove(assistant)
            self._pending.clear()
        if self.status != "error":
            self.status = "ready"
        await self._on_update()

    def _drop_unsent(self, user_turn: UIMessage) -> None:
        if user_turn in self.messages:
            self.messages.remove(user_turn)
        self.filter.suppress_next = False

    def _fail(self, message: str, assistant: UIMessage | None) -> None:
        self.status = "error"
        self.error = message
        self._pending.clear()
        if assistant is not None and assistant in self.messages:
            self.messages.remove(assistant)
