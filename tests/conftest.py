import json

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI

from chat_relay.agent.client import ChatEvent
from chat_relay.api.identity import session_cookie_middleware
from chat_relay.api.routes import message_out, router, turn_event_stream
from chat_relay.caller.frontend_tools import build_frontend_registry
from chat_relay.caller.identity import InMemoryIdentityProvider
from chat_relay.caller.transport import StreamEvent
from chat_relay.chat.orchestrator import Identity, TurnOrchestrator
from chat_relay.data.sqlite_store import SQLiteStore
from chat_relay.errors import RelayError

TEST_CODE = "123456"


def payload(result: str, tool_name: str | None = None, **tool_args) -> str:
    """A model reply in the structured wire shape."""
    call = None
    if tool_name:
        call = {
            "tool_name": tool_name,
            "tool_args": {"email": tool_args.get("email"), "code": tool_args.get("code")},
        }
    return json.dumps({"result": result, "frontend_tool_call": call})


class FakeAgentClient:
    """Stands in for the model: replays scripted replies and records what it was sent."""

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.calls: list[list[dict]] = []
        self.native_tool_calls: list[dict] = []
        self.fail_with: str | None = None

    def queue(self, *replies: str) -> None:
        self.replies.extend(replies)

    async def chat(self, messages, run_id):
        self.calls.append(list(messages))
        if self.fail_with:
            yield ChatEvent(type="error", data=self.fail_with)
            return
        text = self.replies.pop(0) if self.replies else payload("OK")
        yield ChatEvent(type="status", data="Thinking...")
        yield ChatEvent(type="text", data=text)
        yield ChatEvent(
            type="done",
            data=json.dumps({"text": text, "tool_calls": self.native_tool_calls}),
        )

    async def close(self):
        pass


class InProcessTransport:
    """ChatTransport with the HTTP hop removed: calls the orchestrator and route helpers."""

    def __init__(self, orchestrator: TurnOrchestrator, session_id: str = "sess-test"):
        self.orchestrator = orchestrator
        self.session_id = session_id
        self.user_id: str | None = None

    def set_user(self, user_id):
        self.user_id = user_id

    @property
    def identity(self) -> Identity:
        return Identity(user_id=self.user_id, session_id=self.session_id)

    def _status_error(self, e: RelayError) -> httpx.HTTPStatusError:
        request = httpx.Request("POST", "http://testserver/api/chat")
        response = httpx.Response(e.status_code, json={"detail": e.message}, request=request)
        return httpx.HTTPStatusError(e.message, request=request, response=response)

    async def create_chat(self, first_message=None):
        store = self.orchestrator._store
        return await store.create_chat(user_id=self.user_id, session_id=self.session_id)

    async def get_messages(self, chat_id):
        try:
            await self.orchestrator.resolve_chat(chat_id, self.identity)
        except RelayError as e:
            raise self._status_error(e) from e
        history = await self.orchestrator.load_history(chat_id)
        return json.loads(json.dumps([message_out(m) for m in history]))

    async def stream_turn(self, chat_id, query, tool_result=None):
        try:
            turn = await self.orchestrator.prepare_turn(chat_id, self.identity, query, tool_result)
        except RelayError as e:
            raise self._status_error(e) from e
        async for event in turn_event_stream(self.orchestrator, turn):
            yield StreamEvent(event=event["event"], data=event["data"])

    async def aclose(self):
        pass


@pytest_asyncio.fixture
async def sqlite_store(tmp_path):
    store = SQLiteStore(str(tmp_path / "test.db"))
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def fake_agent():
    return FakeAgentClient()


@pytest.fixture
def orchestrator(sqlite_store, fake_agent):
    return TurnOrchestrator(sqlite_store, fake_agent)


@pytest.fixture
def transport(orchestrator):
    return InProcessTransport(orchestrator)


@pytest.fixture
def identity_provider():
    return InMemoryIdentityProvider(code_factory=lambda: TEST_CODE)


@pytest.fixture
def frontend(identity_provider, transport):
    """(registry, login tools) wired so a successful verify authenticates the transport."""
    return build_frontend_registry(identity_provider, on_authenticated=transport.set_user)


@pytest.fixture
def app(sqlite_store, fake_agent, orchestrator):
    app = FastAPI()
    app.middleware("http")(session_cookie_middleware)
    app.include_router(router)
    app.state.sqlite_store = sqlite_store
    app.state.agent_client = fake_agent
    app.state.orchestrator = orchestrator
    return app


@pytest_asyncio.fixture
async def client(app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://testserver"
    ) as c:
        yield c
