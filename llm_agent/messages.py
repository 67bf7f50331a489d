"""Conversation messages and backend turns.

A conversation is an ordered, append-only list of ``Message``. Each message
holds content blocks: plain text, a tool use requested by the assistant, or
the result of that tool use sent back as the user.
"""

from __future__ import annotations

import enum
import json as _json
from dataclasses import dataclass, field
from typing import Any, Union


class Role(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"


class StopReason(str, enum.Enum):
    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model. ``arguments`` is a JSON string."""

    id: str
    name: str
    arguments: str = "{}"

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode ``arguments``; raises ValueError on invalid JSON or a non-object."""
        raw = self.arguments.strip() or "{}"
        value = _json.loads(raw)
        if not isinstance(value, dict):
            raise ValueError(f"Tool arguments must be a JSON object, got {type(value).__name__}")
        return value


@dataclass(frozen=True)
class TextContent:
    text: str


@dataclass(frozen=True)
class ToolUseContent:
    id: str
    name: str
    arguments: str = "{}"

    @classmethod
    def from_call(cls, call: ToolCall) -> ToolUseContent:
        return cls(call.id, call.name, call.arguments)


@dataclass(frozen=True)
class ToolResultContent:
    tool_call_id: str
    name: str
    content: str
    is_error: bool = False


Content = Union[TextContent, ToolUseContent, ToolResultContent]


@dataclass(frozen=True)
class Message:
    role: Role
    contents: tuple[Content, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.contents, tuple):
            object.__setattr__(self, "contents", tuple(self.contents))

    @classmethod
    def text(cls, role: Role, text: str) -> Message:
        return cls(role, (TextContent(text),))

    @classmethod
    def user(cls, text: str) -> Message:
        return cls.text(Role.USER, text)

    @classmethod
    def assistant(cls, text: str) -> Message:
        return cls.text(Role.ASSISTANT, text)

    @property
    def text_content(self) -> str:
        return "".join(c.text for c in self.contents if isinstance(c, TextContent))

    @property
    def tool_uses(self) -> list[ToolUseContent]:
        return [c for c in self.contents if isinstance(c, ToolUseContent)]

    @property
    def tool_results(self) -> list[ToolResultContent]:
        return [c for c in self.contents if isinstance(c, ToolResultContent)]


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: Usage) -> Usage:
        if not isinstance(other, Usage):
            return NotImplemented
        return Usage(
            self.input_tokens + other.input_tokens,
            self.output_tokens + other.output_tokens,
        )


@dataclass(frozen=True)
class ModelTurn:
    """One backend response."""

    text_parts: tuple[str, ...] = ()
    tool_calls: tuple[ToolCall, ...] = ()
    usage: Usage = field(default_factory=Usage)
    stop_reason: StopReason | None = None
    raw: Any = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        if not isinstance(self.text_parts, tuple):
            object.__setattr__(self, "text_parts", tuple(self.text_parts))
        if not isinstance(self.tool_calls, tuple):
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls))

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_message(self) -> Message:
        """The assistant message recording this turn in the conversation."""
        contents: list[Content] = [TextContent(t) for t in self.text_parts if t]
        contents.extend(ToolUseContent.from_call(c) for c in self.tool_calls)
        return Message(Role.ASSISTANT, tuple(contents))
