"""Server-side handling of one chat turn: load, contextualise, invoke, persist."""

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field

from ..agent.client import ChatEvent
from ..agent.prompts import build_tool_result_block, with_auth_alert
from ..agent.structured import parse_structured_output
from ..agent.tool_call_id import validate_tool_call_id
from ..api.models import ToolResultContent
from ..config import (
    AUTH_ALERT_MESSAGE_THRESHOLD,
    CHAT_TITLE_MAX_LENGTH,
    CONTINUATION_SENTINEL,
    DEFAULT_CHAT_TITLE,
)
from ..errors import (
    AccessDenied,
    DuplicateToolResult,
    NotFound,
    PersistenceFailure,
    RelayError,
    StructuredParseFailure,
    Unauthorized,
    ValidationError,
)
from .history import build_model_messages, is_continuation, reconstruct_history

logger = logging.getLogger(__name__)


@dataclass
class Identity:
    user_id: str | None = None
    session_id: str | None = None

    @property
    def authenticated(self) -> bool:
        return bool(self.user_id)


@dataclass
class PreparedTurn:
    """Everything decided before the model is invoked."""

    chat_id: str
    identity: Identity
    assistant_message_id: str
    model_messages: list[dict]
    user_message_id: str | None = None
    tool_result: ToolResultContent | None = None
    auth_alert: bool = False
    history: list[dict] = field(default_factory=list)


def generate_chat_title(first_message: str) -> str:
    first_message = first_message.strip()
    if len(first_message) > CHAT_TITLE_MAX_LENGTH:
        return first_message[:CHAT_TITLE_MAX_LENGTH] + "..."
    return first_message or DEFAULT_CHAT_TITLE


class TurnOrchestrator:
    def __init__(self, store, agent_client) -> None:
        self._store = store
        self._agent = agent_client

    # --- Identity and ownership ---

    async def resolve_chat(self, chat_id: str, identity: Identity) -> dict:
        """Return the chat if ``identity`` may use it.

        An authenticated caller reaching a chat owned by its own anonymous
        session takes ownership of it.
        """
        if not identity.user_id and not identity.session_id:
            raise Unauthorized("Unauthorized - no user or session")
        if not chat_id or chat_id == "new":
            raise ValidationError("Invalid chat ID")

        chat = await self._store.get_chat(chat_id)
        if chat is None:
            raise NotFound("Chat not found")

        owned_by_user = identity.user_id is not None and chat["user_id"] == identity.user_id
        owned_by_session = (
            identity.session_id is not None and chat["session_id"] == identity.session_id
        )
        if not owned_by_user and not owned_by_session:
            raise AccessDenied("Chat access denied")

        if identity.user_id and not owned_by_user:
            logger.info("Chat %s claimed by user after login", chat_id)
            await self._store.claim_chat(chat_id, identity.user_id)
            chat = {**chat, "user_id": identity.user_id, "session_id": None}
        return chat

    async def load_history(self, chat_id: str) -> list[dict]:
        messages = await self._store.get_messages(chat_id)
        assistant_ids = [m["id"] for m in messages if m["role"] == "assistant"]
        tool_calls = await self._store.get_tool_calls_for_messages(assistant_ids)
        return reconstruct_history(messages, tool_calls)

    # --- Turn pipeline ---

    async def prepare_turn(
        self,
        chat_id: str,
        identity: Identity,
        query: str | None,
        tool_result: ToolResultContent | None,
    ) -> PreparedTurn:
        """Validate the request, persist the user turn and build model context."""
        query = query.strip() if query else None
        continuation = query == CONTINUATION_SENTINEL
        if continuation and tool_result is None:
            raise ValidationError("Continuation turn requires frontendToolCallRes")
        if not query and tool_result is None:
            raise ValidationError(
                "query/text/messages required (non-empty string) or frontendToolCallRes must be provided"
            )

        chat = await self.resolve_chat(chat_id, identity)
        history = await self.load_history(chat_id)

        if tool_result is not None:
            existing = await self._store.get_tool_call(
                validate_tool_call_id(tool_result.tool_call_id)
            )
            if existing is not None:
                raise DuplicateToolResult(
                    f"Tool result {tool_result.tool_call_id} was already recorded"
                )

        prior_user_turns = sum(
            1 for m in history if m["role"] == "user" and not is_continuation(m)
        )
        model_messages = build_model_messages(history)

        user_message_id = None
        auth_alert = False
        try:
            if continuation:
                saved = await self._store.add_message(
                    chat_id,
                    "user",
                    CONTINUATION_SENTINEL,
                    [{"type": "text", "text": CONTINUATION_SENTINEL}],
                    hidden=True,
                )
                user_message_id = saved["id"]
            elif query:
                saved = await self._store.add_message(
                    chat_id, "user", query, [{"type": "text", "text": query}]
                )
                user_message_id = saved["id"]
                if chat["title"] == DEFAULT_CHAT_TITLE and prior_user_turns == 0:
                    await self._store.update_chat_title(chat_id, generate_chat_title(query))
        except sqlite3.Error as e:
            logger.exception("Failed to save user message")
            raise PersistenceFailure("Failed to save user message") from e

        if query and not continuation:
            user_query = query
            if not identity.authenticated and prior_user_turns + 1 > AUTH_ALERT_MESSAGE_THRESHOLD:
                user_query = with_auth_alert(query)
                auth_alert = True
            model_messages.append({"role": "user", "content": user_query})

        if tool_result is not None:
            # The continuation reaches the model as this block alone; its sentinel
            # text is stored for the transcript and never sent, here or on replay.
            # User role, not tool role: there is no matching native tool-call turn.
            model_messages.append(
                {
                    "role": "user",
                    "content": build_tool_result_block(
                        tool_result.tool_name,
                        tool_result.tool_call_id,
                        tool_result.output.model_dump(),
                    ),
                }
            )

        return PreparedTurn(
            chat_id=chat_id,
            identity=identity,
            assistant_message_id=str(uuid.uuid4()),
            model_messages=model_messages,
            user_message_id=user_message_id,
            tool_result=tool_result,
            auth_alert=auth_alert,
            history=history,
        )

    async def stream_turn(self, turn: PreparedTurn):
        """Invoke the model and yield ChatEvents; persist only once the stream finishes."""
        async for event in self._agent.chat(turn.model_messages, run_id=turn.assistant_message_id):
            if event.type == "error":
                yield event
                return
            if event.type != "done":
                yield event
                continue

            payload = json.loads(event.data)
            structured = await self._finish_turn(turn, payload)
            yield ChatEvent(type="structured", data=json.dumps(structured))
            yield ChatEvent(
                type="done",
                data=json.dumps(
                    {
                        "assistant_message_id": turn.assistant_message_id,
                        "user_message_id": turn.user_message_id,
                    }
                ),
            )

    async def _finish_turn(self, turn: PreparedTurn, payload: dict) -> dict:
        text = payload.get("text") or ""
        try:
            parsed = parse_structured_output(text)
            structured = parsed.model_dump()
        except StructuredParseFailure:
            logger.warning("Model output did not match the structured contract; using raw text")
            structured = {"result": text, "frontend_tool_call": None}

        display_text = structured["result"] or text
        parts = [{"type": "text", "text": display_text}]
        if structured.get("frontend_tool_call"):
            parts.append({"type": "object", "object": structured})

        try:
            await self._store.add_message(
                turn.chat_id,
                "assistant",
                display_text,
                parts,
                parent_message_id=turn.user_message_id,
                message_id=turn.assistant_message_id,
            )
        except sqlite3.Error as e:
            logger.exception("Failed to save assistant message")
            raise PersistenceFailure("Failed to save assistant message") from e

        for call in payload.get("tool_calls") or []:
            status = call.get("status") or "pending"
            error = call.get("error")
            if status == "pending":
                # The run ended before the tool returned.
                status, error = "error", error or "Tool call did not complete"
            try:
                await self._store.create_tool_call(
                    validate_tool_call_id(call["id"]),
                    turn.assistant_message_id,
                    call["tool_name"],
                    call.get("tool_args") or {},
                    call.get("tool_result"),
                    status=status,
                    error=error,
                )
            except (sqlite3.Error, RelayError):
                logger.exception("Error saving tool call %s", call.get("id"))

        if turn.tool_result is not None:
            result = turn.tool_result
            try:
                await self._store.create_tool_call(
                    validate_tool_call_id(result.tool_call_id),
                    turn.assistant_message_id,
                    result.tool_name,
                    {},
                    result.result_record(),
                    status="error" if result.is_error else "success",
                    error=result.error_detail,
                )
            except (sqlite3.Error, RelayError):
                logger.exception("Error saving frontend tool call %s", result.tool_call_id)

        await self._store.touch_chat(turn.chat_id)
        return structured
