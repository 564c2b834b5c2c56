"""Caller-side transcript model."""

from dataclasses import dataclass, field
from typing import Literal

from ..agent.structured import extract_structured

ChatStatus = Literal["ready", "submitted", "streaming", "error"]
STREAMING_STATUSES: tuple[str, ...] = ("submitted", "streaming")


@dataclass
class UIMessage:
    id: str
    role: str
    parts: list[dict] = field(default_factory=list)
    hidden: bool = False

    @classmethod
    def from_api(cls, data: dict) -> "UIMessage":
        parts = data.get("parts")
        if not isinstance(parts, list):
            parts = [{"type": "text", "text": data.get("content") or ""}]
        return cls(
            id=data["id"],
            role=data["role"],
            parts=[dict(p) for p in parts if isinstance(p, dict)],
            hidden=bool(data.get("hidden")),
        )

    @property
    def text(self) -> str:
        return "".join(p.get("text") or "" for p in self.parts if p.get("type") == "text")

    def append_text(self, delta: str) -> None:
        for part in reversed(self.parts):
            if part.get("type") == "text":
                part["text"] = (part.get("text") or "") + delta
                return
        self.parts.append({"type": "text", "text": delta})

    def structured_payload(self) -> dict | None:
        """The turn's structured payload, re-parsed from text when no object part exists."""
        for part in self.parts:
            if part.get("type") == "object" and isinstance(part.get("object"), dict):
                return part["object"]
        if self.role != "assistant":
            return None
        return extract_structured(self.text)

    def tool_directive(self) -> dict | None:
        payload = self.structured_payload()
        if not payload:
            return None
        directive = payload.get("frontend_tool_call")
        if isinstance(directive, dict) and directive.get("tool_name"):
            return directive
        return None

    def display_text(self) -> str:
        if self.role == "assistant":
            payload = self.structured_payload()
            if payload and isinstance(payload.get("result"), str):
                return payload["result"]
        return self.text

    def tool_parts(self) -> list[dict]:
        return [p for p in self.parts if str(p.get("type", "")).startswith("tool-")]
