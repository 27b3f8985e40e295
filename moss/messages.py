"""Conversation message types shared by the agent, the log and the backend."""

import uuid
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant", "tool"]


def new_message_id() -> str:
    """Return a short random message identifier."""
    return uuid.uuid4().hex[:8]


class TextPart(BaseModel):
    """Plain text content."""

    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class ToolCallPart(BaseModel):
    """A tool invocation requested by the assistant."""

    model_config = ConfigDict(frozen=True)

    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)


class ToolResultPart(BaseModel):
    """The outcome of one tool invocation."""

    model_config = ConfigDict(frozen=True)

    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    result: Any = None

    @property
    def is_error(self) -> bool:
        return isinstance(self.result, dict) and "error" in self.result


ContentPart = Annotated[TextPart | ToolCallPart | ToolResultPart, Field(discriminator="type")]


class Message(BaseModel):
    """One conversation turn. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_message_id)
    role: Role
    content: str | list[ContentPart]

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(role="user", content=text)

    @classmethod
    def assistant(cls, text: str = "", tool_calls: list[ToolCallPart] | None = None) -> "Message":
        if not tool_calls:
            return cls(role="assistant", content=text)
        parts: list[TextPart | ToolCallPart] = []
        if text:
            parts.append(TextPart(text=text))
        parts.extend(tool_calls)
        return cls(role="assistant", content=parts)

    @classmethod
    def tool(cls, results: list[ToolResultPart]) -> "Message":
        return cls(role="tool", content=list(results))

    @property
    def parts(self) -> list[TextPart | ToolCallPart | ToolResultPart]:
        """Content as a list of parts (plain text becomes one text part)."""
        if isinstance(self.content, str):
            return [TextPart(text=self.content)] if self.content else []
        return list(self.content)

    @property
    def text(self) -> str:
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    @property
    def tool_calls(self) -> list[ToolCallPart]:
        return [part for part in self.parts if isinstance(part, ToolCallPart)]

    @property
    def tool_results(self) -> list[ToolResultPart]:
        return [part for part in self.parts if isinstance(part, ToolResultPart)]

    def to_json_line(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json_line(cls, line: str) -> "Message":
        return cls.model_validate_json(line)
