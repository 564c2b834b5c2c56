import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass, field

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ResultMessage,
    TextBlock,
    ToolUseBlock,
    create_sdk_mcp_server,
    tool,
)

from ..config import MAX_AGENT_TURNS, MODEL, NATIVE_TOOL_CALL_PREFIX
from .prompts import build_system_prompt
from .structured import DECLARED_TOOL_NAMES
from .tool_call_id import generate_tool_call_id
from .tools import validate_email

logger = logging.getLogger(__name__)

MCP_SERVER_NAME = "relay"


@dataclass
class ChatEvent:
    """An event yielded while the model streams a turn."""

    type: str  # "text", "status", "tool", "error", "done"
    data: str = ""


@dataclass
class NativeToolCall:
    """A server tool the model invoked itself during generation."""

    id: str
    tool_name: str
    tool_args: dict
    tool_result: dict | None = None
    status: str = "pending"
    error: str | None = None
    duration_ms: int = 0


@dataclass
class _AgentRun:
    run_id: str
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    tool_calls: list[NativeToolCall] = field(default_factory=list)
    text_segments: list[str] = field(default_factory=list)


class AgentClient:
    """Invokes the model through the Claude Agent SDK with the relay's native tools.

    All per-request state lives on an ``_AgentRun`` so concurrent requests for
    different chats never share mutable state.
    """

    def __init__(self, model: str = MODEL, max_turns: int = MAX_AGENT_TURNS) -> None:
        self._model = model
        self._max_turns = max_turns
        self._system_prompt = build_system_prompt(DECLARED_TOOL_NAMES)

    def _make_tools(self, run: _AgentRun):
        @tool(
            "email_validator",
            "Validate whether an email address is in a valid format. Returns success and the normalized email.",
            {"email": str},
        )
        async def email_validator_tool(args: dict) -> dict:
            await run.queue.put(("status", "Validating email..."))
            call = NativeToolCall(
                id=generate_tool_call_id(
                    NATIVE_TOOL_CALL_PREFIX,
                    "email_validator",
                    f"{run.run_id}:{len(run.tool_calls)}",
                ),
                tool_name="email_validator",
                tool_args=dict(args),
            )
            run.tool_calls.append(call)

            t0 = time.time()
            try:
                result = validate_email(args)
            except Exception as e:
                logger.exception("email_validator failed")
                call.status = "error"
                call.error = str(e)
                return {"content": [{"type": "text", "text": f"Error: {e}"}]}
            finally:
                call.duration_ms = round((time.time() - t0) * 1000)

            call.tool_result = result
            call.status = "success"
            return {"content": [{"type": "text", "text": json.dumps(result)}]}

        return [email_validator_tool]

    def _build_mcp_server(self, run: _AgentRun):
        return create_sdk_mcp_server(
            name=MCP_SERVER_NAME,
            version="1.0.0",
            tools=self._make_tools(run),
        )

    def _build_prompt(self, messages: list[dict]) -> str:
        if len(messages) == 1:
            return messages[0]["content"]
        parts = []
        for msg in messages:
            role = msg["role"].capitalize()
            parts.append(f"{role}: {msg['content']}")
        return "\n\n".join(parts)

    async def chat(self, messages: list[dict], run_id: str):
        """Yield ChatEvent objects while the model produces one turn.

        ``run_id`` seeds native tool-call ids; the orchestrator passes the
        pre-allocated assistant turn id. The final ``done`` event carries the
        model's last text segment and every native tool call made.
        """
        run = _AgentRun(run_id=run_id)
        prompt = self._build_prompt(messages)

        options = ClaudeAgentOptions(
            system_prompt=self._system_prompt,
            model=self._model,
            mcp_servers={MCP_SERVER_NAME: self._build_mcp_server(run)},
            allowed_tools=[f"mcp__{MCP_SERVER_NAME}__email_validator"],
            max_turns=self._max_turns,
        )

        async def run_agent():
            try:
                async with ClaudeSDKClient(options=options) as client:
                    await client.query(prompt)
                    async for message in client.receive_response():
                        if isinstance(message, AssistantMessage):
                            turn_text = []
                            for block in message.content:
                                if isinstance(block, TextBlock) and block.text:
                                    turn_text.append(block.text)
                                    await run.queue.put(("text", block.text))
                                elif isinstance(block, ToolUseBlock):
                                    await run.queue.put(("tool", block.name))
                            if "".join(turn_text).strip():
                                run.text_segments.append("".join(turn_text))
                        elif isinstance(message, ResultMessage):
                            if not run.text_segments and message.result:
                                run.text_segments.append(message.result)
            except Exception as e:
                logger.exception("Error in agent run")
                await run.queue.put(("error", str(e)))
            finally:
                await run.queue.put(("_sentinel", None))

        agent_task = asyncio.create_task(run_agent())
        failed = False
        try:
            while True:
                event_type, event_data = await run.queue.get()
                if event_type == "_sentinel":
                    break
                if event_type == "error":
                    failed = True
                yield ChatEvent(type=event_type, data=event_data)
            await agent_task
        finally:
            if not agent_task.done():
                agent_task.cancel()

        if failed:
            return

        yield ChatEvent(
            type="done",
            data=json.dumps(
                {
                    "text": run.text_segments[-1] if run.text_segments else "",
                    "tool_calls": [asdict(c) for c in run.tool_calls],
                }
            ),
        )

    async def close(self) -> None:
        pass
