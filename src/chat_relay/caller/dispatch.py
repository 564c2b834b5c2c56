"""At-most-once execution of frontend tool directives.

``DispatchState`` is owned by one conversation view and lives exactly as long
as it does. ``evaluate`` is the transition function: given the current
transcript and stream status it decides whether the latest assistant turn's
directive should run now. ``DispatchGuard`` carries out that decision.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from ..agent.tool_call_id import generate_tool_call_id
from ..api.models import ToolResultContent, ToolResultOutput
from ..config import FINGERPRINT_PREFIX_LENGTH, FRONTEND_TOOL_CALL_PREFIX
from .frontend_tools import FrontendToolRegistry
from .messages import STREAMING_STATUSES, UIMessage

logger = logging.getLogger(__name__)


@dataclass
class DispatchState:
    handled_turn_ids: set[str] = field(default_factory=set)
    handled_fingerprints: set[str] = field(default_factory=set)
    in_flight_turn_id: str | None = None
    executed_tool_call_ids: set[str] = field(default_factory=set)
    sending_continuation: bool = False
    last_status: str = "ready"

    def mark_handled(self, turn_id: str, fingerprint: str | None = None) -> None:
        self.handled_turn_ids.add(turn_id)
        if fingerprint:
            self.handled_fingerprints.add(fingerprint)

    def seed_from_history(self, messages: list[UIMessage]) -> None:
        """Treat every loaded assistant turn, and every recorded tool call, as done."""
        for i, msg in enumerate(messages):
            for part in msg.tool_parts():
                if part.get("toolCallId"):
                    self.executed_tool_call_ids.add(part["toolCallId"])
            if msg.role == "assistant":
                self.mark_handled(msg.id, directive_fingerprint(messages, i))


@dataclass
class DispatchDecision:
    turn_id: str
    tool_name: str
    tool_args: dict
    tool_call_id: str


def frontend_tool_call_id(turn_id: str, tool_name: str) -> str:
    return generate_tool_call_id(FRONTEND_TOOL_CALL_PREFIX, tool_name, turn_id)


def directive_fingerprint(messages: list[UIMessage], index: int) -> str:
    """Content key for a turn: role, text prefix, directive, and the user turn it answers.

    Including the preceding user turn lets a repeated request (a second code,
    say) through, while the same content re-arriving under a new id after a
    stream restart is still caught.
    """
    msg = messages[index]
    anchor = next(
        (m.id for m in reversed(messages[:index]) if m.role == "user"),
        "",
    )
    directive = msg.tool_directive()
    signature = json.dumps(directive, sort_keys=True) if directive else ""
    prefix = msg.display_text()[:FINGERPRINT_PREFIX_LENGTH]
    return f"{anchor}|{msg.role}|{prefix}|{signature}"


def _recorded_tool_call_ids(messages: list[UIMessage]) -> set[str]:
    return {p["toolCallId"] for m in messages for p in m.tool_parts() if p.get("toolCallId")}


def evaluate(
    state: DispatchState,
    messages: list[UIMessage],
    status: str,
    tools_loaded: bool = True,
) -> DispatchDecision | None:
    """Decide whether the latest assistant turn's directive should run now."""
    previous, state.last_status = state.last_status, status

    if not tools_loaded or state.sending_continuation:
        return None

    index = next(
        (i for i in range(len(messages) - 1, -1, -1) if messages[i].role == "assistant"),
        None,
    )
    if index is None:
        return None
    turn = messages[index]

    if turn.id in state.handled_turn_ids:
        return None
    fingerprint = directive_fingerprint(messages, index)
    if fingerprint in state.handled_fingerprints:
        state.mark_handled(turn.id)
        return None
    if state.in_flight_turn_id is not None:
        return None

    live = status in STREAMING_STATUSES
    just_settled = previous in STREAMING_STATUSES and not live
    if not live and not just_settled:
        # A settled turn seen without a live stream came from history.
        state.mark_handled(turn.id, fingerprint)
        return None

    directive = turn.tool_directive()
    if directive is None:
        if not live:
            state.mark_handled(turn.id, fingerprint)
        return None

    tool_name = str(directive["tool_name"])
    tool_call_id = frontend_tool_call_id(turn.id, tool_name)
    if (
        tool_call_id in state.executed_tool_call_ids
        or tool_call_id in _recorded_tool_call_ids(messages)
    ):
        state.mark_handled(turn.id, fingerprint)
        return None

    state.in_flight_turn_id = turn.id
    state.mark_handled(turn.id, fingerprint)
    return DispatchDecision(
        turn_id=turn.id,
        tool_name=tool_name,
        tool_args=dict(directive.get("tool_args") or {}),
        tool_call_id=tool_call_id,
    )


class DispatchGuard:
    def __init__(
        self,
        registry: FrontendToolRegistry,
        state: DispatchState,
        enqueue_continuation: Callable[[ToolResultContent], Awaitable[None]],
    ) -> None:
        self._registry = registry
        self.state = state
        self._enqueue_continuation = enqueue_continuation

    async def on_transcript_update(
        self, messages: list[UIMessage], status: str
    ) -> ToolResultContent | None:
        decision = evaluate(self.state, messages, status, tools_loaded=len(self._registry) > 0)
        if decision is None:
            return None

        try:
            result = await self._execute(decision)
            if result.tool_call_id in self.state.executed_tool_call_ids:
                return None
            # Failed runs are not recorded as executed. The turn stays handled.
            if not result.is_error:
                self.state.executed_tool_call_ids.add(result.tool_call_id)
            self.state.sending_continuation = True
            await self._enqueue_continuation(result)
            return result
        finally:
            self.state.in_flight_turn_id = None

    async def _execute(self, decision: DispatchDecision) -> ToolResultContent:
        try:
            value = await self._registry.execute(decision.tool_name, decision.tool_args)
            output = ToolResultOutput(type="json", value=value)
        except Exception as e:
            logger.exception("Frontend tool execution error")
            output = ToolResultOutput(type="text", value=f"Error: {e}")
        return ToolResultContent(
            tool_call_id=decision.tool_call_id,
            tool_name=decision.tool_name,
            output=output,
        )
