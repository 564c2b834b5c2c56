import json

import httpx
import pytest

from chat_relay.api.models import ToolResultContent, ToolResultOutput
from chat_relay.caller.transport import ChatTransport, StreamEvent, iter_sse
from chat_relay.config import USER_ID_HEADER


async def _lines(*lines):
    for line in lines:
        yield line


@pytest.mark.asyncio
async def test_iter_sse_parses_events():
    events = [
        e
        async for e in iter_sse(
            _lines(
                "event: init",
                'data: {"a": 1}',
                "",
                ": ping - 2024-01-01",
                "event: text",
                "data: hel",
                "data: lo",
                "\r",
                "data: tail",
            )
        )
    ]
    assert events == [
        StreamEvent("init", '{"a": 1}'),
        StreamEvent("text", "hel\nlo"),
        StreamEvent("message", "tail"),
    ]


def _transport(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://relay")
    return ChatTransport(client=client)


@pytest.mark.asyncio
async def test_requests_carry_user_header_after_login():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[])

    transport = _transport(handler)
    await transport.list_chats()
    transport.set_user("user-1")
    await transport.get_messages("c1")
    await transport.aclose()

    assert USER_ID_HEADER.lower() not in seen[0].headers
    assert seen[1].headers[USER_ID_HEADER] == "user-1"
    assert seen[1].url.path == "/api/chat/c1/messages"


@pytest.mark.asyncio
async def test_stream_turn_yields_events_and_sends_tool_result():
    seen = []
    body = (
        'event: init\ndata: {"assistant_message_id": "a1"}\n\n'
        ": ping\n\n"
        "event: text\ndata: Hello\n\n"
        'event: done\ndata: {"assistant_message_id": "a1"}\n\n'
    )

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

    transport = _transport(handler)
    result = ToolResultContent(
        tool_call_id="frontend-login_user_start-abc",
        tool_name="login_user_start",
        output=ToolResultOutput(type="json", value={"ok": True}),
    )
    events = [e async for e in transport.stream_turn("c1", "[[continue]]", result)]
    await transport.aclose()

    assert [e.event for e in events] == ["init", "text", "done"]
    assert events[1].data == "Hello"
    assert seen[0]["query"] == "[[continue]]"
    assert seen[0]["frontendToolCallRes"]["toolCallId"] == "frontend-login_user_start-abc"
    assert seen[0]["frontendToolCallRes"]["output"] == {"type": "json", "value": {"ok": True}}


@pytest.mark.asyncio
async def test_stream_turn_raises_on_http_error():
    def handler(request):
        return httpx.Response(409, json={"detail": "already recorded"})

    transport = _transport(handler)
    with pytest.raises(httpx.HTTPStatusError) as exc_info:
        [e async for e in transport.stream_turn("c1", "hi")]
    assert exc_info.value.response.status_code == 409
    await transport.aclose()
