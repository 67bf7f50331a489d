"""Tool abstraction: tools, tool sets and in-process function tools.

A tool is anything with a name, a description, a canonical input ``Schema``
and an async ``execute(arguments)`` taking the model's JSON argument string.

Usage:
    from llm_agent.tools import ToolSet

    async def get_weather(city: str, unit: str = "celsius") -> dict:
        '''Current weather for a city.'''
        ...

    tools = (
        ToolSet.builder()
        .function(get_weather)
        .mcp(MCPServer.stdio("files", "npx", ["-y", "@mcp/files"]).read_only())
        .toolkit(MemoryToolKit(), MCPToolSelection.safe())
        .build()
    )
    tools = await resolve_mcp_servers(tools)   # placeholders -> real tools

Duplicate names are a caller error detected at resolution time
(``ensure_unique_names``), not while building, because MCP tool names are
only known once the servers are contacted.
"""

from __future__ import annotations

import enum
import inspect
import json as _json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Iterable,
    Iterator,
    Literal,
    Union,
    get_args,
    get_origin,
    get_type_hints,
)

from pydantic import BaseModel, ValidationError

from llm_agent.config import DEFAULT_TOOL_RESULT_MAX_LENGTH
from llm_agent.errors import DuplicateToolNameError, ToolExecutionError, ToolNotFoundError
from llm_agent.messages import ToolCall
from llm_agent.schema import Schema
from llm_agent.schema_adapters import RemovedConstraint, SchemaAdapter

if TYPE_CHECKING:
    from llm_agent.mcp_bridge import MCPServer, MCPToolSelection
    from llm_agent.toolkits import ToolKit

logger = logging.getLogger(__name__)

__all__ = [
    "ASK_USER_TOOL_NAME",
    "AskUserTool",
    "FunctionTool",
    "Tool",
    "ToolCall",
    "ToolChoice",
    "ToolDefinition",
    "ToolResult",
    "ToolSet",
    "ToolSetBuilder",
]

ASK_USER_TOOL_NAME = "ask_user"
"""Tool name the scheduler intercepts to pause for a user answer."""


@dataclass(frozen=True)
class ToolResult:
    content: str
    is_error: bool = False

    @classmethod
    def error(cls, message: str) -> ToolResult:
        return cls(message, is_error=True)


class ToolChoiceKind(str, enum.Enum):
    AUTO = "auto"
    REQUIRED = "required"
    NONE = "none"
    TOOL = "tool"


@dataclass(frozen=True)
class ToolChoice:
    kind: ToolChoiceKind = ToolChoiceKind.AUTO
    tool_name: str | None = None

    @classmethod
    def auto(cls) -> ToolChoice:
        return cls(ToolChoiceKind.AUTO)

    @classmethod
    def required(cls) -> ToolChoice:
        return cls(ToolChoiceKind.REQUIRED)

    @classmethod
    def none(cls) -> ToolChoice:
        return cls(ToolChoiceKind.NONE)

    @classmethod
    def tool(cls, name: str) -> ToolChoice:
        return cls(ToolChoiceKind.TOOL, name)


class Tool(ABC):
    """Capability interface every tool implements."""

    is_placeholder: bool = False

    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def description(self) -> str: ...

    @property
    @abstractmethod
    def input_schema(self) -> Schema: ...

    @abstractmethod
    async def execute(self, arguments: str | bytes) -> ToolResult:
        """Run the tool. May raise; callers turn exceptions into error results."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


def _decode_arguments(arguments: str | bytes) -> str:
    if isinstance(arguments, (bytes, bytearray)):
        return bytes(arguments).decode("utf-8")
    return arguments


def _truncate(text: str, max_length: int) -> str:
    """Truncate text if it exceeds max_length, appending a notice."""
    if len(text) <= max_length:
        return text
    return text[:max_length] + f"\n... [truncated at {max_length} chars]"


# ---------------------------------------------------------------------------
# Function tools
# ---------------------------------------------------------------------------

# Python type -> JSON Schema type
_TYPE_MAP: dict[type, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
}


def _type_to_json_schema(tp: Any) -> dict[str, Any]:
    """Convert a Python type annotation to a JSON Schema fragment.

    Supports: str, int, float, bool, list[X], dict, Optional[X], Literal[...]
    of strings and pydantic models. Raises ValueError for unsupported types.
    """
    origin = get_origin(tp)
    args = get_args(tp)

    # Optional[X] -> X
    if origin is Union or (origin is not None and type(None) in args):
        non_none = [a for a in args if a is not type(None)]
        if len(non_none) == 1:
            return _type_to_json_schema(non_none[0])

    if origin is Literal and args and all(isinstance(a, str) for a in args):
        return {"type": "string", "enum": list(args)}

    if origin is list:
        schema: dict[str, Any] = {"type": "array"}
        if args:
            schema["items"] = _type_to_json_schema(args[0])
        return schema

    if origin is dict or tp is dict:
        return {"type": "object"}

    if isinstance(tp, type) and issubclass(tp, BaseModel):
        return tp.model_json_schema()

    if tp in _TYPE_MAP:
        return {"type": _TYPE_MAP[tp]}

    raise ValueError(
        f"Unsupported type annotation: {tp!r}. "
        f"Supported: str, int, float, bool, list[X], dict, Optional[X], Literal, BaseModel."
    )


def _callable_description(fn: Callable[..., Any]) -> str:
    """Explicit ``__tool_description__`` or the docstring's first line."""
    override = getattr(fn, "__tool_description__", None)
    if isinstance(override, str) and override.strip():
        return override.strip()
    if fn.__doc__:
        first_line = fn.__doc__.strip().split("\n")[0].strip()
        if first_line:
            return first_line
    return ""


def callable_to_schema(fn: Callable[..., Any]) -> Schema:
    """Build the input schema of a typed callable.

    Every parameter must have a type annotation (raises ValueError otherwise).
    Parameters without a default are required.
    """
    sig = inspect.signature(fn)
    try:
        hints = get_type_hints(fn)
    except Exception:
        hints = {}

    properties: dict[str, Any] = {}
    required: list[str] = []
    defs: dict[str, Any] = {}

    for name, param in sig.parameters.items():
        if name in ("self", "cls"):
            continue
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        if name not in hints:
            raise ValueError(
                f"Parameter {name!r} of {fn.__name__!r} has no type annotation. "
                f"All parameters must be typed for schema generation."
            )
        prop = _type_to_json_schema(hints[name])
        # Hoist nested pydantic definitions so $ref resolution sees them.
        defs.update(prop.pop("$defs", {}))
        properties[name] = prop
        if param.default is inspect.Parameter.empty:
            required.append(name)

    return Schema.from_dict({
        "type": "object",
        "properties": properties,
        "required": required,
        "$defs": defs,
    })


def _normalize_arguments(
    fn: Callable[..., Any],
    arguments: dict[str, Any],
) -> tuple[dict[str, Any], list[str], list[str], list[str]]:
    """Check args against the callable's signature.

    Returns:
      normalized_args, unknown_args, missing_required, accepted_params
    """
    try:
        sig = inspect.signature(fn)
    except (TypeError, ValueError):
        return dict(arguments), [], [], sorted(arguments)
    try:
        hints = get_type_hints(fn)
    except Exception:
        hints = {}

    accepted: set[str] = set()
    required: set[str] = set()
    accepts_var_kwargs = False
    for name, param in sig.parameters.items():
        if name in ("self", "cls"):
            continue
        if param.kind == inspect.Parameter.VAR_KEYWORD:
            accepts_var_kwargs = True
            continue
        if param.kind in (
            inspect.Parameter.POSITIONAL_OR_KEYWORD,
            inspect.Parameter.KEYWORD_ONLY,
        ):
            accepted.add(name)
            if param.default is inspect.Parameter.empty:
                required.add(name)

    normalized: dict[str, Any] = {}
    unknown: list[str] = []
    for key, value in arguments.items():
        if key in accepted or accepts_var_kwargs:
            hint = hints.get(key)
            if isinstance(hint, type) and issubclass(hint, BaseModel) and isinstance(value, dict):
                value = hint.model_validate(value)
            normalized[key] = value
        else:
            unknown.append(key)

    missing = sorted(name for name in required if name not in normalized)
    return normalized, sorted(unknown), missing, sorted(accepted)


def _serialize_result(value: Any) -> str:
    """str passed through, pydantic models dumped, anything else json.dumps."""
    if isinstance(value, str):
        return value
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    return _json.dumps(value, default=str)


class FunctionTool(Tool):
    """A Python callable (sync or async) exposed as a tool."""

    def __init__(
        self,
        fn: Callable[..., Any],
        *,
        name: str | None = None,
        description: str | None = None,
        input_schema: Schema | None = None,
        max_result_length: int = DEFAULT_TOOL_RESULT_MAX_LENGTH,
    ) -> None:
        self._fn = fn
        self._name = name or fn.__name__
        self._description = description if description is not None else _callable_description(fn)
        self._input_schema = input_schema or callable_to_schema(fn)
        self._max_result_length = max_result_length

    @classmethod
    def from_callable(cls, fn: Callable[..., Any], **kwargs: Any) -> FunctionTool:
        return cls(fn, **kwargs)

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def input_schema(self) -> Schema:
        return self._input_schema

    async def execute(self, arguments: str | bytes) -> ToolResult:
        raw = _decode_arguments(arguments)
        try:
            parsed = _json.loads(raw.strip() or "{}")
        except _json.JSONDecodeError as exc:
            logger.warning("Invalid JSON arguments for %s: %s", self._name, raw[:200])
            return ToolResult.error(f"Invalid JSON arguments: {exc}")
        if not isinstance(parsed, dict):
            return ToolResult.error(
                f"Arguments must be a JSON object, got {type(parsed).__name__}"
            )

        try:
            normalized, unknown, missing, accepted = _normalize_arguments(self._fn, parsed)
        except ValidationError as exc:
            return ToolResult.error(f"Validation error: {exc}")
        if unknown or missing:
            parts: list[str] = []
            if unknown:
                parts.append("unsupported args: " + ", ".join(unknown))
            if missing:
                parts.append("missing required args: " + ", ".join(missing))
            parts.append("allowed args: " + ", ".join(accepted))
            return ToolResult.error("Validation error: " + "; ".join(parts))

        try:
            value = self._fn(**normalized)
            if inspect.isawaitable(value):
                value = await value
        except Exception as exc:
            raise ToolExecutionError(self._name, exc) from exc

        return ToolResult(_truncate(_serialize_result(value), self._max_result_length))


class AskUserTool(Tool):
    """Lets the model ask the user a question.

    The scheduler intercepts calls to this tool and pauses the run; executing
    it directly outside a session only reports that no user is attached.
    """

    @property
    def name(self) -> str:
        return ASK_USER_TOOL_NAME

    @property
    def description(self) -> str:
        return (
            "Ask the user a question to gather additional information. Use this tool "
            "when you need clarification, lack sufficient information to proceed, or "
            "want to confirm the user's intent before taking action."
        )

    @property
    def input_schema(self) -> Schema:
        return Schema.object(
            {
                "question": Schema.string(
                    description=(
                        "The question to ask the user. Be specific and clear "
                        "about what information you need."
                    ),
                ),
            },
            ["question"],
        )

    async def execute(self, arguments: str | bytes) -> ToolResult:
        return ToolResult.error("ask_user is only available in an interactive session")


# ---------------------------------------------------------------------------
# Tool sets
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolDefinition:
    """A tool as a backend sees it, with its input schema already adapted."""

    name: str
    description: str
    input_schema: Schema
    removed_constraints: tuple[RemovedConstraint, ...] = ()


class ToolSet:
    """Immutable ordered collection of tools."""

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: tuple[Tool, ...] = tuple(tools)

    @staticmethod
    def builder() -> ToolSetBuilder:
        return ToolSetBuilder()

    def __iter__(self) -> Iterator[Tool]:
        return iter(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def __bool__(self) -> bool:
        return bool(self._tools)

    def __contains__(self, name: object) -> bool:
        return any(t.name == name for t in self._tools)

    def __add__(self, other: ToolSet) -> ToolSet:
        if not isinstance(other, ToolSet):
            return NotImplemented
        return ToolSet(self._tools + other._tools)

    def __repr__(self) -> str:
        return f"ToolSet({list(self.names)!r})"

    def appending(self, *tools: Tool) -> ToolSet:
        return ToolSet(self._tools + tools)

    @property
    def tools(self) -> tuple[Tool, ...]:
        return self._tools

    @property
    def names(self) -> list[str]:
        return [t.name for t in self._tools]

    def get(self, name: str) -> Tool | None:
        return next((t for t in self._tools if t.name == name), None)

    async def execute(self, name: str, arguments: str | bytes) -> ToolResult:
        tool = self.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return await tool.execute(arguments)

    async def execute_call(self, call: ToolCall) -> ToolResult:
        return await self.execute(call.name, call.arguments)

    def ensure_unique_names(self) -> None:
        seen: set[str] = set()
        for tool in self._tools:
            if tool.name in seen:
                raise DuplicateToolNameError(tool.name)
            seen.add(tool.name)

    @property
    def has_placeholders(self) -> bool:
        return any(t.is_placeholder for t in self._tools)

    @property
    def placeholders(self) -> list[Tool]:
        return [t for t in self._tools if t.is_placeholder]

    def definitions(self, adapter: SchemaAdapter | None = None) -> list[ToolDefinition]:
        """Tool definitions for a backend, schemas adapted when ``adapter`` is given."""
        out: list[ToolDefinition] = []
        for tool in self._tools:
            if adapter is None:
                out.append(ToolDefinition(tool.name, tool.description, tool.input_schema))
                continue
            result = adapter.adapt(tool.input_schema)
            out.append(ToolDefinition(
                tool.name, tool.description, result.schema, result.removed_constraints,
            ))
        return out


class ToolSetBuilder:
    """Fluent builder for ``ToolSet``."""

    def __init__(self) -> None:
        self._tools: list[Tool] = []

    def add(self, *tools: Tool) -> ToolSetBuilder:
        self._tools.extend(tools)
        return self

    def function(self, fn: Callable[..., Any], **kwargs: Any) -> ToolSetBuilder:
        self._tools.append(FunctionTool.from_callable(fn, **kwargs))
        return self

    def mcp(self, server: MCPServer) -> ToolSetBuilder:
        """Add an MCP server; its tools are fetched by ``resolve_mcp_servers``."""
        from llm_agent.mcp_bridge import MCPServerPlaceholder

        self._tools.append(MCPServerPlaceholder(server))
        return self

    def toolkit(self, kit: ToolKit, selection: MCPToolSelection | None = None) -> ToolSetBuilder:
        """Add a built-in kit's tools, filtered by ``selection`` (all by default)."""
        self._tools.extend(kit.selected(selection))
        return self

    def ask_user(self) -> ToolSetBuilder:
        self._tools.append(AskUserTool())
        return self

    def build(self) -> ToolSet:
        return ToolSet(self._tools)
