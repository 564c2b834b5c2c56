"""Rebuild display parts and model context from persisted turns."""

import json
import logging

from ..agent.prompts import build_tool_result_block
from ..agent.tool_call_id import generate_tool_call_id
from ..config import CONTINUATION_SENTINEL, FRONTEND_TOOL_CALL_PREFIX, NATIVE_TOOL_CALL_PREFIX

logger = logging.getLogger(__name__)


def is_tool_part(part: dict) -> bool:
    return isinstance(part.get("type"), str) and part["type"].startswith("tool-")


def is_continuation(message: dict) -> bool:
    """True for the hidden user turn a caller sends after running a frontend tool."""
    if message.get("role") != "user":
        return False
    raw = message.get("raw") or {}
    return bool(raw.get("hidden")) or message.get("content") == CONTINUATION_SENTINEL


def merge_parts(existing_parts: list[dict], tool_parts: list[dict]) -> list[dict]:
    """Insert tool parts so that they precede the first text part.

    With no text part the tool parts come first. Tool parts whose
    ``toolCallId`` is already present are not added twice.
    """
    present = {p.get("toolCallId") for p in existing_parts if is_tool_part(p)}
    new_parts = [p for p in tool_parts if p.get("toolCallId") not in present]
    if not new_parts:
        return list(existing_parts)
    for i, part in enumerate(existing_parts):
        if part.get("type") == "text":
            return [*existing_parts[:i], *new_parts, *existing_parts[i:]]
    return [*new_parts, *existing_parts]


def tool_part_from_record(record: dict, message_id: str) -> dict:
    tool_call_id = record.get("id") or generate_tool_call_id(
        NATIVE_TOOL_CALL_PREFIX, record["tool_name"], message_id
    )
    if record.get("status") == "error":
        state = "output-error"
    elif record.get("tool_result") is not None:
        state = "output-available"
    else:
        state = "input-available"
    part = {
        "type": f"tool-{record['tool_name']}",
        "toolCallId": tool_call_id,
        "state": state,
        "input": record.get("tool_args") or {},
    }
    if record.get("tool_result") is not None:
        part["output"] = record["tool_result"]
    if record.get("error"):
        part["errorText"] = record["error"]
    return part


def display_parts(message: dict) -> list[dict]:
    raw = message.get("raw") or {}
    stored = raw.get("parts")
    if not isinstance(stored, list):
        return [{"type": "text", "text": message.get("content") or ""}]

    parts = []
    for part in stored:
        if not isinstance(part, dict):
            continue
        if part.get("type") == "text":
            parts.append({**part, "text": part.get("text") or message.get("content") or ""})
        else:
            parts.append(part)
    if not any(p.get("type") == "text" for p in parts) and message.get("content"):
        parts.insert(0, {"type": "text", "text": message["content"]})
    return parts


def reconstruct_history(messages: list[dict], tool_calls: list[dict]) -> list[dict]:
    """Attach display parts to each persisted turn, folding in tool-call records."""
    by_message: dict[str, list[dict]] = {}
    for record in tool_calls:
        by_message.setdefault(record["assistant_message_id"], []).append(record)

    history = []
    for msg in messages:
        parts = display_parts(msg)
        if msg["role"] == "assistant":
            records = by_message.get(msg["id"], [])
            tool_parts = [tool_part_from_record(r, msg["id"]) for r in records]
            parts = merge_parts(parts, tool_parts)
        history.append({**msg, "parts": parts, "hidden": is_continuation(msg)})
    return history


def _structured_part(message: dict) -> dict | None:
    for part in message.get("parts") or []:
        if part.get("type") == "object" and isinstance(part.get("object"), dict):
            return part["object"]
    return None


def _frontend_tool_blocks(message: dict) -> list[str]:
    blocks = []
    for part in message.get("parts") or []:
        if not is_tool_part(part) or part.get("state") == "input-available":
            continue
        if not str(part.get("toolCallId", "")).startswith(f"{FRONTEND_TOOL_CALL_PREFIX}-"):
            continue
        output = part.get("output")
        if part.get("errorText") and output is None:
            output = {"error": part["errorText"]}
        blocks.append(
            build_tool_result_block(
                part["type"][len("tool-") :],
                part.get("toolCallId", ""),
                {"type": "json", "value": output},
            )
        )
    return blocks


def build_model_messages(history: list[dict]) -> list[dict]:
    """Flatten reconstructed history into ``{role, content}`` model context.

    A continuation turn stands in for the tool-result block(s) owned by the
    assistant turn that answers it, which is what the model originally saw.
    Assistant turns that carried a tool directive are replayed as their JSON
    payload so the model can see which actions it already requested.
    """
    model_messages = []
    for i, msg in enumerate(history):
        role = msg["role"]
        if role == "tool":
            continue
        if is_continuation(msg):
            following = history[i + 1] if i + 1 < len(history) else None
            blocks = _frontend_tool_blocks(following) if following else []
            if blocks:
                model_messages.append({"role": "user", "content": "\n\n".join(blocks)})
            continue
        if role == "assistant":
            structured = _structured_part(msg)
            if structured and structured.get("frontend_tool_call"):
                content = json.dumps(structured)
            else:
                content = msg.get("content") or ""
            model_messages.append({"role": "assistant", "content": content})
            continue
        model_messages.append({"role": role, "content": msg.get("content") or ""})
    return model_messages
