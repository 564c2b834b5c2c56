from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ToolResultOutput(BaseModel):
    type: Literal["text", "json"]
    value: Any = None


class ToolResultContent(BaseModel):
    """Result of a frontend tool, reported by the caller on the next request."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str = Field(alias="toolCallId", min_length=1)
    tool_name: str = Field(alias="toolName", min_length=1)
    output: ToolResultOutput

    @property
    def is_error(self) -> bool:
        if self.output.type == "text":
            return str(self.output.value).startswith("Error:")
        return isinstance(self.output.value, dict) and self.output.value.get("ok") is False

    @property
    def error_detail(self) -> str | None:
        if not self.is_error:
            return None
        if self.output.type == "text":
            return str(self.output.value)
        value = self.output.value
        return value.get("error") or value.get("code") or "Tool reported failure"

    def result_record(self) -> dict:
        if self.output.type == "json" and isinstance(self.output.value, dict):
            return self.output.value
        return {"value": self.output.value}


class ChatTurnRequest(BaseModel):
    query: str | None = None
    text: str | None = None
    messages: list[dict] | None = None
    frontend_tool_call_res: ToolResultContent | None = Field(
        default=None, alias="frontendToolCallRes"
    )

    model_config = ConfigDict(populate_by_name=True)

    def extract_query(self) -> str | None:
        """The user utterance, from ``query``, ``text`` or the last UI message's text part."""
        for candidate in (self.query, self.text):
            if isinstance(candidate, str) and candidate.strip():
                return candidate.strip()
        if self.messages:
            last = self.messages[-1]
            for part in last.get("parts") or []:
                if isinstance(part, dict) and part.get("type") == "text":
                    text = part.get("text")
                    if isinstance(text, str) and text.strip():
                        return text.strip()
            content = last.get("content")
            if isinstance(content, str) and content.strip():
                return content.strip()
        return None


class CreateChatRequest(BaseModel):
    first_message: str | None = Field(default=None, alias="firstMessage")

    model_config = ConfigDict(populate_by_name=True)


class UpdateChatRequest(BaseModel):
    title: str = Field(min_length=1)


class ChatOut(BaseModel):
    id: str
    title: str
    user_id: str | None
    session_id: str | None
    created_at: str
    updated_at: str


class MessageOut(BaseModel):
    id: str
    chat_id: str
    role: str
    content: str
    parent_message_id: str | None
    parts: list[dict]
    hidden: bool = False
    created_at: str
