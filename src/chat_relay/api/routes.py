import json
import logging

from fastapi import APIRouter, HTTPException, Request
from sse_starlette.sse import EventSourceResponse

from ..chat.orchestrator import PreparedTurn, TurnOrchestrator, generate_chat_title
from ..config import DEFAULT_CHAT_TITLE
from ..errors import RelayError, Unauthorized
from .identity import resolve_identity
from .models import ChatOut, ChatTurnRequest, CreateChatRequest, MessageOut, UpdateChatRequest
from .sse import (
    sse_done,
    sse_error,
    sse_init,
    sse_status,
    sse_structured,
    sse_text,
    sse_tool,
)

logger = logging.getLogger(__name__)
router = APIRouter()


def _http_error(e: RelayError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


def _orchestrator(request: Request) -> TurnOrchestrator:
    return request.app.state.orchestrator


def message_out(m: dict) -> dict:
    return MessageOut(
        id=m["id"],
        chat_id=m["chat_id"],
        role=m["role"],
        content=m["content"],
        parent_message_id=m["parent_message_id"],
        parts=m["parts"],
        hidden=m["hidden"],
        created_at=m["created_at"],
    ).model_dump()


@router.post("/api/chat", status_code=201, response_model=ChatOut)
async def create_chat(request: Request, req: CreateChatRequest | None = None):
    sqlite = request.app.state.sqlite_store
    identity = resolve_identity(request)
    if not identity.user_id and not identity.session_id:
        raise _http_error(Unauthorized("Unauthorized - no user or session"))

    first_message = req.first_message if req else None
    title = generate_chat_title(first_message) if first_message else DEFAULT_CHAT_TITLE
    return await sqlite.create_chat(
        title=title, user_id=identity.user_id, session_id=identity.session_id
    )


@router.get("/api/chats", response_model=list[ChatOut])
async def list_chats(request: Request):
    sqlite = request.app.state.sqlite_store
    identity = resolve_identity(request)
    if not identity.user_id and not identity.session_id:
        raise _http_error(Unauthorized("Unauthorized - no user or session"))
    return await sqlite.list_chats(identity.user_id, identity.session_id)


@router.get("/api/chat/{chat_id}")
@router.get("/api/chat/{chat_id}/messages")
async def get_chat_messages(chat_id: str, request: Request):
    orchestrator = _orchestrator(request)
    try:
        await orchestrator.resolve_chat(chat_id, resolve_identity(request))
    except RelayError as e:
        raise _http_error(e) from e
    history = await orchestrator.load_history(chat_id)
    return [message_out(m) for m in history]


@router.patch("/api/chat/{chat_id}", response_model=ChatOut)
async def update_chat(chat_id: str, req: UpdateChatRequest, request: Request):
    sqlite = request.app.state.sqlite_store
    try:
        await _orchestrator(request).resolve_chat(chat_id, resolve_identity(request))
    except RelayError as e:
        raise _http_error(e) from e
    title = req.title.strip()
    if not title:
        raise HTTPException(status_code=400, detail="title is required")
    await sqlite.update_chat_title(chat_id, title)
    return await sqlite.get_chat(chat_id)


@router.delete("/api/chat/{chat_id}")
async def delete_chat(chat_id: str, request: Request):
    sqlite = request.app.state.sqlite_store
    try:
        await _orchestrator(request).resolve_chat(chat_id, resolve_identity(request))
    except RelayError as e:
        raise _http_error(e) from e
    await sqlite.delete_chat(chat_id)
    return {"success": True, "message": "Chat deleted successfully"}


@router.post("/api/chat/{chat_id}")
async def chat_turn(chat_id: str, req: ChatTurnRequest, request: Request):
    orchestrator = _orchestrator(request)
    try:
        turn = await orchestrator.prepare_turn(
            chat_id,
            resolve_identity(request),
            req.extract_query(),
            req.frontend_tool_call_res,
        )
    except RelayError as e:
        raise _http_error(e) from e

    return EventSourceResponse(turn_event_stream(orchestrator, turn), ping=15)


async def turn_event_stream(orchestrator: TurnOrchestrator, turn: PreparedTurn):
    """SSE events for one prepared turn: init, the model stream, then done."""
    yield sse_init(
        {
            "chat_id": turn.chat_id,
            "user_message_id": turn.user_message_id,
            "assistant_message_id": turn.assistant_message_id,
        }
    )
    try:
        async for event in orchestrator.stream_turn(turn):
            if event.type == "text":
                yield sse_text(event.data)
            elif event.type == "status":
                yield sse_status(event.data)
            elif event.type == "tool":
                yield sse_tool(event.data)
            elif event.type == "structured":
                yield sse_structured(event.data)
            elif event.type == "error":
                yield sse_error(event.data)
                yield sse_done({"error": event.data})
            elif event.type == "done":
                yield sse_done(json.loads(event.data))
    except Exception as e:
        logger.exception("Error in chat stream")
        yield sse_error(str(e))
        yield sse_done({"error": str(e)})
