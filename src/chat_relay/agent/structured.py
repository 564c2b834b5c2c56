"""The structured payload every model turn must produce, and how to recover it."""

import json
import logging
from typing import Any, Literal

import pydantic
from pydantic import BaseModel, ConfigDict

from ..errors import StructuredParseFailure

logger = logging.getLogger(__name__)

FrontendToolName = Literal["login_user_start", "login_user_verify", "login_user_resend"]

DECLARED_TOOL_NAMES: tuple[str, ...] = (
    "login_user_start",
    "login_user_verify",
    "login_user_resend",
)


class ToolArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str | None = None
    code: str | None = None


class FrontendToolCall(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tool_name: FrontendToolName
    tool_args: ToolArgs


class StructuredOutput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    result: str
    frontend_tool_call: FrontendToolCall | None = None


def structured_output_schema() -> dict:
    return StructuredOutput.model_json_schema()


def extract_structured(text: str) -> dict | None:
    """Find a structured payload embedded in free text.

    Fallback path for transports that deliver the payload as a plain text
    block, and for partial stream text. Scans for balanced ``{...}`` spans,
    skipping braces inside JSON strings, and parses each one. A candidate is a
    JSON object with a ``result`` key. The first candidate carrying a non-null
    ``frontend_tool_call`` wins, otherwise the first candidate is returned.
    Never raises; the same input always gives the same answer.
    """
    if not text:
        return None

    first: dict | None = None
    pos = 0
    while True:
        start = text.find("{", pos)
        if start < 0:
            break
        end = _matching_brace(text, start)
        if end < 0:
            # Unclosed: still streaming, or garbage. Inner spans may still close.
            pos = start + 1
            continue
        try:
            candidate = json.loads(text[start : end + 1])
        except ValueError:
            pos = start + 1
            continue
        if isinstance(candidate, dict) and "result" in candidate:
            if candidate.get("frontend_tool_call"):
                return candidate
            if first is None:
                first = candidate
            pos = end + 1
        else:
            pos = start + 1
    return first


def _matching_brace(text: str, start: int) -> int:
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return -1


def parse_structured_output(text: str) -> StructuredOutput:
    """Parse the model's final text into a validated payload.

    Raises StructuredParseFailure when neither the whole text nor any embedded
    object validates against the contract.
    """
    raw: Any
    try:
        raw = json.loads(text)
    except ValueError:
        raw = extract_structured(text)
    if not isinstance(raw, dict):
        raise StructuredParseFailure("No structured payload found in model output")
    try:
        return StructuredOutput.model_validate(raw)
    except pydantic.ValidationError as e:
        raise StructuredParseFailure(f"Structured payload does not match contract: {e}") from e
