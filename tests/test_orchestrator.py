import json

import pytest
import pytest_asyncio
from conftest import payload

from chat_relay.agent.prompts import AUTH_ALERT_BLOCK, WAITING_FOR_CODE_MESSAGE
from chat_relay.api.models import ToolResultContent, ToolResultOutput
from chat_relay.chat.orchestrator import Identity, generate_chat_title
from chat_relay.config import CONTINUATION_SENTINEL
from chat_relay.errors import (
    AccessDenied,
    DuplicateToolResult,
    NotFound,
    Unauthorized,
    ValidationError,
)

ANON = Identity(session_id="sess-1")


async def _run(orchestrator, chat_id, query, identity=ANON, tool_result=None):
    turn = await orchestrator.prepare_turn(chat_id, identity, query, tool_result)
    events = [e async for e in orchestrator.stream_turn(turn)]
    return turn, events


def _tool_result(tool_call_id="frontend-login_user_start-abc", value=None, type="json"):
    return ToolResultContent(
        tool_call_id=tool_call_id,
        tool_name="login_user_start",
        output=ToolResultOutput(type=type, value={"ok": True} if value is None else value),
    )


@pytest_asyncio.fixture
async def chat(sqlite_store):
    return await sqlite_store.create_chat(session_id="sess-1")


def test_generate_chat_title():
    assert generate_chat_title("  hi  ") == "hi"
    assert generate_chat_title("x" * 60) == "x" * 50 + "..."
    assert generate_chat_title("   ") == "New Chat"


@pytest.mark.asyncio
async def test_auth_alert_after_threshold_for_anonymous(orchestrator, fake_agent, chat):
    for text in ("one", "two", "three"):
        await _run(orchestrator, chat["id"], text)

    last_user = [call[-1]["content"] for call in fake_agent.calls]
    assert AUTH_ALERT_BLOCK not in last_user[0]
    assert AUTH_ALERT_BLOCK not in last_user[1]
    assert last_user[2].startswith("three")
    assert AUTH_ALERT_BLOCK in last_user[2]


@pytest.mark.asyncio
async def test_no_auth_alert_for_authenticated(orchestrator, fake_agent, sqlite_store):
    chat = await sqlite_store.create_chat(user_id="user-1")
    identity = Identity(user_id="user-1")
    for text in ("one", "two", "three", "four"):
        turn, _ = await _run(orchestrator, chat["id"], text, identity)
        assert turn.auth_alert is False
    assert all(AUTH_ALERT_BLOCK not in call[-1]["content"] for call in fake_agent.calls)


@pytest.mark.asyncio
async def test_alert_is_not_persisted(orchestrator, sqlite_store, chat):
    for text in ("one", "two", "three"):
        await _run(orchestrator, chat["id"], text)
    stored = await sqlite_store.get_messages(chat["id"])
    assert all(AUTH_ALERT_BLOCK not in m["content"] for m in stored)


@pytest.mark.asyncio
async def test_turn_persists_user_and_assistant(orchestrator, fake_agent, sqlite_store, chat):
    fake_agent.queue(payload("Hello there"))
    turn, events = await _run(orchestrator, chat["id"], "hi")

    assert [e.type for e in events] == ["status", "text", "structured", "done"]
    assert json.loads(events[2].data) == {"result": "Hello there", "frontend_tool_call": None}
    assert json.loads(events[3].data)["assistant_message_id"] == turn.assistant_message_id

    msgs = await sqlite_store.get_messages(chat["id"])
    assert [m["role"] for m in msgs] == ["user", "assistant"]
    assert msgs[1]["id"] == turn.assistant_message_id
    assert msgs[1]["content"] == "Hello there"
    assert msgs[1]["parent_message_id"] == msgs[0]["id"]
    assert msgs[1]["raw"]["parts"] == [{"type": "text", "text": "Hello there"}]

    updated = await sqlite_store.get_chat(chat["id"])
    assert updated["title"] == "hi"


@pytest.mark.asyncio
async def test_directive_is_kept_as_object_part(orchestrator, fake_agent, sqlite_store, chat):
    fake_agent.queue(payload(WAITING_FOR_CODE_MESSAGE, "login_user_start", email="a@b.co"))
    turn, _ = await _run(orchestrator, chat["id"], "a@b.co")

    stored = await sqlite_store.get_message(turn.assistant_message_id)
    parts = stored["raw"]["parts"]
    assert parts[0] == {"type": "text", "text": WAITING_FOR_CODE_MESSAGE}
    assert parts[1]["object"]["frontend_tool_call"]["tool_name"] == "login_user_start"


@pytest.mark.asyncio
async def test_unstructured_reply_falls_back_to_raw_text(orchestrator, fake_agent, sqlite_store, chat):
    fake_agent.queue("plain words")
    turn, events = await _run(orchestrator, chat["id"], "hi")
    assert json.loads(events[2].data) == {"result": "plain words", "frontend_tool_call": None}
    assert (await sqlite_store.get_message(turn.assistant_message_id))["content"] == "plain words"


@pytest.mark.asyncio
async def test_model_error_persists_no_assistant_turn(orchestrator, fake_agent, sqlite_store, chat):
    fake_agent.fail_with = "model unavailable"
    _, events = await _run(orchestrator, chat["id"], "hi")

    assert [e.type for e in events] == ["error"]
    msgs = await sqlite_store.get_messages(chat["id"])
    assert [m["role"] for m in msgs] == ["user"]


@pytest.mark.asyncio
async def test_native_tool_calls_are_recorded(orchestrator, fake_agent, sqlite_store, chat):
    fake_agent.native_tool_calls = [
        {
            "id": "tool-email_validator-1",
            "tool_name": "email_validator",
            "tool_args": {"email": "a@b.co"},
            "tool_result": {"success": True},
            "status": "success",
            "error": None,
        },
        {
            "id": "tool-email_validator-2",
            "tool_name": "email_validator",
            "tool_args": {"email": "x"},
            "tool_result": None,
            "status": "pending",
            "error": None,
        },
    ]
    turn, _ = await _run(orchestrator, chat["id"], "a@b.co")

    done = await sqlite_store.get_tool_call("tool-email_validator-1")
    assert done["assistant_message_id"] == turn.assistant_message_id
    assert done["status"] == "success"
    unfinished = await sqlite_store.get_tool_call("tool-email_validator-2")
    assert unfinished["status"] == "error"
    assert unfinished["error"]


@pytest.mark.asyncio
async def test_continuation_turn(orchestrator, fake_agent, sqlite_store, chat):
    await _run(orchestrator, chat["id"], "a@b.co")
    result = _tool_result()
    turn, _ = await _run(orchestrator, chat["id"], CONTINUATION_SENTINEL, tool_result=result)

    sent = fake_agent.calls[-1][-1]
    assert sent["role"] == "user"
    assert sent["content"].startswith("[FRONTEND_TOOL_RESULT]")
    assert "toolName=login_user_start" in sent["content"]
    assert all(CONTINUATION_SENTINEL not in m["content"] for m in fake_agent.calls[-1])

    sentinel = await sqlite_store.get_message(turn.user_message_id)
    assert sentinel["raw"]["hidden"] is True

    record = await sqlite_store.get_tool_call("frontend-login_user_start-abc")
    assert record["assistant_message_id"] == turn.assistant_message_id
    assert record["status"] == "success"
    assert record["tool_result"] == {"ok": True}

    history = await orchestrator.load_history(chat["id"])
    assert [m["hidden"] for m in history] == [False, False, True, False]


@pytest.mark.asyncio
async def test_continuation_does_not_count_towards_auth_alert(orchestrator, fake_agent, chat):
    await _run(orchestrator, chat["id"], "one")
    await _run(
        orchestrator, chat["id"], CONTINUATION_SENTINEL, tool_result=_tool_result("frontend-a")
    )
    await _run(
        orchestrator, chat["id"], CONTINUATION_SENTINEL, tool_result=_tool_result("frontend-b")
    )
    turn, _ = await _run(orchestrator, chat["id"], "two")
    assert turn.auth_alert is False


@pytest.mark.asyncio
async def test_failed_tool_result_recorded_as_error(orchestrator, sqlite_store, chat):
    result = _tool_result(value={"ok": False, "error": "Incorrect code", "code": "VERIFY_FAILED"})
    await _run(orchestrator, chat["id"], CONTINUATION_SENTINEL, tool_result=result)
    record = await sqlite_store.get_tool_call(result.tool_call_id)
    assert record["status"] == "error"
    assert record["error"] == "Incorrect code"


@pytest.mark.asyncio
async def test_text_error_tool_result(orchestrator, sqlite_store, chat):
    result = _tool_result(type="text", value="Error: provider offline")
    await _run(orchestrator, chat["id"], CONTINUATION_SENTINEL, tool_result=result)
    record = await sqlite_store.get_tool_call(result.tool_call_id)
    assert record["status"] == "error"
    assert record["tool_result"] == {"value": "Error: provider offline"}


@pytest.mark.asyncio
async def test_duplicate_tool_result_rejected(orchestrator, fake_agent, sqlite_store, chat):
    await _run(orchestrator, chat["id"], CONTINUATION_SENTINEL, tool_result=_tool_result())
    before = len(await sqlite_store.get_messages(chat["id"]))

    with pytest.raises(DuplicateToolResult):
        await orchestrator.prepare_turn(chat["id"], ANON, CONTINUATION_SENTINEL, _tool_result())
    assert len(await sqlite_store.get_messages(chat["id"])) == before
    assert len(fake_agent.calls) == 1


@pytest.mark.asyncio
async def test_prepare_turn_validation(orchestrator, chat):
    with pytest.raises(ValidationError):
        await orchestrator.prepare_turn(chat["id"], ANON, "   ", None)
    with pytest.raises(ValidationError):
        await orchestrator.prepare_turn(chat["id"], ANON, CONTINUATION_SENTINEL, None)
    with pytest.raises(ValidationError):
        await orchestrator.prepare_turn("new", ANON, "hi", None)
    with pytest.raises(NotFound):
        await orchestrator.prepare_turn("missing", ANON, "hi", None)
    with pytest.raises(Unauthorized):
        await orchestrator.prepare_turn(chat["id"], Identity(), "hi", None)
    with pytest.raises(AccessDenied):
        await orchestrator.prepare_turn(chat["id"], Identity(session_id="other"), "hi", None)
    with pytest.raises(AccessDenied):
        await orchestrator.prepare_turn(chat["id"], Identity(user_id="stranger"), "hi", None)


@pytest.mark.asyncio
async def test_user_claims_session_chat_after_login(orchestrator, sqlite_store, chat):
    identity = Identity(user_id="user-1", session_id="sess-1")
    resolved = await orchestrator.resolve_chat(chat["id"], identity)
    assert resolved["user_id"] == "user-1"

    stored = await sqlite_store.get_chat(chat["id"])
    assert stored["user_id"] == "user-1"
    assert stored["session_id"] is None

    # The user keeps access without the old session.
    await orchestrator.resolve_chat(chat["id"], Identity(user_id="user-1"))
    with pytest.raises(AccessDenied):
        await orchestrator.resolve_chat(chat["id"], ANON)
