"""MCP (Model Context Protocol) bridge.

MCP servers are declared synchronously while building a ``ToolSet`` and
contacted only when the agent starts:

    from llm_agent import MCPAuthorization, MCPServer, ToolSet, resolve_mcp_servers

    tools = (
        ToolSet.builder()
        .mcp(MCPServer.stdio("files", "npx", ["-y", "@modelcontextprotocol/server-filesystem", "/tmp"]).read_only())
        .mcp(MCPServer.http("issues", "https://mcp.example.com/mcp",
                            authorization=MCPAuthorization.bearer(token)).safe())
        .build()
    )
    tools = await resolve_mcp_servers(tools)

``build()`` leaves an ``MCPServerPlaceholder`` per server. Resolution lists
the server's tools, converts their JSON-Schema inputs to ``Schema``, applies
the server's tool selection and swaps the placeholder for the result.

Every remote call opens a fresh connection (subprocess spawn or HTTP
session) and closes it afterwards. There is no pooling.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import json as _json
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping, Sequence, Union

from llm_agent.config import DEFAULT_MCP_TIMEOUT, DEFAULT_TOOL_RESULT_MAX_LENGTH, AgentConfig
from llm_agent.errors import (
    MCPConnectionError,
    MCPError,
    MCPPlaceholderError,
    MCPToolExecutionError,
    MCPToolFetchError,
    MCPToolNotFoundError,
)
from llm_agent.schema import Schema
from llm_agent.tools import Tool, ToolResult, ToolSet, _decode_arguments, _truncate

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "__mcp_placeholder_"

READ_ONLY_KEYWORDS: tuple[str, ...] = (
    "get", "read", "list", "search", "find", "fetch", "query", "show", "view",
)
"""Name fragments that mark a tool as read-only."""

DANGEROUS_KEYWORDS: tuple[str, ...] = (
    "delete", "remove", "drop", "destroy", "force", "admin", "sudo", "root",
)
"""Name or description fragments that mark a tool as dangerous."""

_MAX_LIST_PAGES = 100


def _import_mcp() -> tuple[Any, ...]:
    """Lazily import mcp client components.

    Returns:
        (ClientSession, StdioServerParameters, stdio_client, streamablehttp_client)
    """
    try:
        from mcp import ClientSession
        from mcp.client.stdio import StdioServerParameters, stdio_client
        from mcp.client.streamable_http import streamablehttp_client
    except ImportError:
        raise ImportError(
            "mcp package is required for MCP servers. Install with: pip install mcp"
        ) from None
    return ClientSession, StdioServerParameters, stdio_client, streamablehttp_client


# ---------------------------------------------------------------------------
# Transport and authorization
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StdioTransport:
    """A server spawned as a subprocess speaking JSON-RPC over stdio."""

    command: str
    args: tuple[str, ...] = ()
    env: Mapping[str, str] | None = None
    cwd: str | None = None

    def describe(self) -> str:
        return " ".join([self.command, *self.args])


@dataclass(frozen=True)
class HTTPTransport:
    """A server reached over streamable HTTP."""

    url: str

    def describe(self) -> str:
        return self.url


MCPTransport = Union[StdioTransport, HTTPTransport]


@dataclass(frozen=True)
class MCPAuthorization:
    """Headers sent with every HTTP request to a server."""

    values: tuple[tuple[str, str], ...] = field(default=(), repr=False)

    @classmethod
    def none(cls) -> MCPAuthorization:
        return cls()

    @classmethod
    def bearer(cls, token: str) -> MCPAuthorization:
        return cls((("Authorization", f"Bearer {token}"),))

    @classmethod
    def header(cls, name: str, value: str) -> MCPAuthorization:
        return cls(((name, value),))

    @classmethod
    def headers(cls, mapping: Mapping[str, str]) -> MCPAuthorization:
        return cls(tuple(mapping.items()))

    @property
    def is_none(self) -> bool:
        return not self.values

    def to_headers(self) -> dict[str, str]:
        return dict(self.values)

    def __repr__(self) -> str:
        names = ", ".join(name for name, _ in self.values)
        return f"MCPAuthorization(headers=[{names}])"


# ---------------------------------------------------------------------------
# Capabilities and selection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MCPToolCapabilities:
    is_read_only: bool = False
    is_dangerous: bool = False


def capabilities_from_hints(
    read_only_hint: bool | None, destructive_hint: bool | None,
) -> MCPToolCapabilities:
    """Read-only per ``read_only_hint`` (default False); a read-only tool is
    never dangerous, otherwise ``destructive_hint`` (default True) decides."""
    is_read_only = bool(read_only_hint)
    is_dangerous = False if is_read_only else (
        True if destructive_hint is None else bool(destructive_hint)
    )
    return MCPToolCapabilities(is_read_only, is_dangerous)


def infer_capabilities(
    name: str,
    description: str = "",
    annotations: Any = None,
) -> MCPToolCapabilities:
    """Capabilities from server annotations, or keyword heuristics without them."""
    read_only_hint = getattr(annotations, "readOnlyHint", None)
    destructive_hint = getattr(annotations, "destructiveHint", None)
    if read_only_hint is not None or destructive_hint is not None:
        return capabilities_from_hints(read_only_hint, destructive_hint)

    lowered_name = name.lower()
    lowered_desc = (description or "").lower()
    return MCPToolCapabilities(
        is_read_only=any(k in lowered_name for k in READ_ONLY_KEYWORDS),
        is_dangerous=any(k in lowered_name or k in lowered_desc for k in DANGEROUS_KEYWORDS),
    )


class MCPPreset(str, enum.Enum):
    READ_ONLY = "read_only"
    WRITE_ONLY = "write_only"
    SAFE = "safe"


class SelectionMode(str, enum.Enum):
    ALL = "all"
    INCLUDING = "including"
    EXCLUDING = "excluding"
    PRESET = "preset"


@dataclass(frozen=True)
class MCPToolSelection:
    mode: SelectionMode = SelectionMode.ALL
    names: frozenset[str] = frozenset()
    preset_value: MCPPreset | None = None

    @classmethod
    def all(cls) -> MCPToolSelection:
        return cls()

    @classmethod
    def including(cls, *names: str) -> MCPToolSelection:
        return cls(SelectionMode.INCLUDING, frozenset(names))

    @classmethod
    def excluding(cls, *names: str) -> MCPToolSelection:
        return cls(SelectionMode.EXCLUDING, frozenset(names))

    @classmethod
    def preset(cls, preset: MCPPreset) -> MCPToolSelection:
        return cls(SelectionMode.PRESET, preset_value=preset)

    @classmethod
    def read_only(cls) -> MCPToolSelection:
        return cls.preset(MCPPreset.READ_ONLY)

    @classmethod
    def write_only(cls) -> MCPToolSelection:
        return cls.preset(MCPPreset.WRITE_ONLY)

    @classmethod
    def safe(cls) -> MCPToolSelection:
        return cls.preset(MCPPreset.SAFE)

    def includes(self, name: str, capabilities: MCPToolCapabilities | None = None) -> bool:
        if self.mode is SelectionMode.ALL:
            return True
        if self.mode is SelectionMode.INCLUDING:
            return name in self.names
        if self.mode is SelectionMode.EXCLUDING:
            return name not in self.names
        caps = capabilities if capabilities is not None else infer_capabilities(name)
        if self.preset_value is MCPPreset.READ_ONLY:
            return caps.is_read_only
        if self.preset_value is MCPPreset.WRITE_ONLY:
            return not caps.is_read_only
        return not caps.is_dangerous


# ---------------------------------------------------------------------------
# Servers and remote tools
# ---------------------------------------------------------------------------


def _result_text(result: Any) -> str:
    parts: list[str] = []
    for item in getattr(result, "content", None) or []:
        text = getattr(item, "text", None)
        parts.append(text if isinstance(text, str) else str(item))
    return "\n".join(parts)


@dataclass
class MCPServer:
    name: str
    transport: MCPTransport
    authorization: MCPAuthorization = field(default_factory=MCPAuthorization.none)
    tool_selection: MCPToolSelection = field(default_factory=MCPToolSelection.all)
    timeout: float | None = None
    max_result_length: int | None = None
    _known_tools: frozenset[str] | None = field(
        default=None, init=False, repr=False, compare=False,
    )

    @classmethod
    def stdio(
        cls,
        name: str,
        command: str,
        args: Sequence[str] = (),
        *,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        **kwargs: Any,
    ) -> MCPServer:
        return cls(name, StdioTransport(command, tuple(args), env, cwd), **kwargs)

    @classmethod
    def http(
        cls,
        name: str,
        url: str,
        *,
        authorization: MCPAuthorization | None = None,
        **kwargs: Any,
    ) -> MCPServer:
        return cls(
            name,
            HTTPTransport(url),
            authorization=authorization or MCPAuthorization.none(),
            **kwargs,
        )

    # -- fluent copies -----------------------------------------------------

    def selecting(self, selection: MCPToolSelection) -> MCPServer:
        return dataclasses.replace(self, tool_selection=selection)

    def read_only(self) -> MCPServer:
        return self.selecting(MCPToolSelection.read_only())

    def write_only(self) -> MCPServer:
        return self.selecting(MCPToolSelection.write_only())

    def safe(self) -> MCPServer:
        return self.selecting(MCPToolSelection.safe())

    def including(self, *names: str) -> MCPServer:
        return self.selecting(MCPToolSelection.including(*names))

    def excluding(self, *names: str) -> MCPServer:
        return self.selecting(MCPToolSelection.excluding(*names))

    def all_tools(self) -> MCPServer:
        return self.selecting(MCPToolSelection.all())

    def authorized(self, authorization: MCPAuthorization) -> MCPServer:
        return dataclasses.replace(self, authorization=authorization)

    def configured(self, config: AgentConfig) -> MCPServer:
        """Copy with an unset timeout and result length taken from ``config``."""
        return dataclasses.replace(
            self,
            timeout=self.timeout if self.timeout is not None else config.mcp_timeout,
            max_result_length=(
                self.max_result_length
                if self.max_result_length is not None
                else config.tool_result_max_length
            ),
        )

    # -- connection --------------------------------------------------------

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[Any]:
        """Open and initialize a client session; closed on exit."""
        ClientSession, StdioServerParameters, stdio_client, streamablehttp_client = _import_mcp()
        async with AsyncExitStack() as stack:
            try:
                if isinstance(self.transport, StdioTransport):
                    params = StdioServerParameters(
                        command=self.transport.command,
                        args=list(self.transport.args),
                        env=dict(self.transport.env) if self.transport.env is not None else None,
                        cwd=self.transport.cwd,
                    )
                    read_stream, write_stream = await stack.enter_async_context(
                        stdio_client(params)
                    )
                else:
                    streams = await stack.enter_async_context(
                        streamablehttp_client(
                            self.transport.url,
                            headers=self.authorization.to_headers() or None,
                        )
                    )
                    read_stream, write_stream = streams[0], streams[1]
                session = await stack.enter_async_context(
                    ClientSession(read_stream, write_stream)
                )
                await asyncio.wait_for(
                    session.initialize(), timeout=self.timeout or DEFAULT_MCP_TIMEOUT,
                )
            except Exception as exc:
                raise MCPConnectionError(
                    f"Failed to connect to MCP server {self.name!r} "
                    f"({self.transport.describe()}): {exc}",
                    original=exc,
                ) from exc
            yield session

    # -- operations --------------------------------------------------------

    async def fetch_tools(self) -> list[MCPTool]:
        """All tools the server exposes, following ``nextCursor`` pagination."""
        tools: list[MCPTool] = []
        async with self.connect() as session:
            cursor: str | None = None
            for _ in range(_MAX_LIST_PAGES):
                try:
                    page = await session.list_tools(cursor=cursor) if cursor else await session.list_tools()
                except Exception as exc:
                    raise MCPToolFetchError(
                        f"Failed to list tools on MCP server {self.name!r}: {exc}",
                        original=exc,
                    ) from exc
                for remote in page.tools:
                    tools.append(MCPTool.from_remote(self, remote))
                cursor = getattr(page, "nextCursor", None)
                if not cursor:
                    break
            else:
                logger.warning(
                    "MCP server %r returned more than %d tool pages; stopping",
                    self.name, _MAX_LIST_PAGES,
                )

        self._known_tools = frozenset(t.name for t in tools)
        logger.debug("MCP server %r: %d tools listed", self.name, len(tools))
        return tools

    async def filtered_tools(self) -> list[MCPTool]:
        """Listed tools that pass ``tool_selection``."""
        all_tools = await self.fetch_tools()
        selected = [t for t in all_tools if self.tool_selection.includes(t.name, t.capabilities)]
        logger.info(
            "MCP server %r: %d/%d tools selected (%s)",
            self.name, len(selected), len(all_tools), self.tool_selection.mode.value,
        )
        return selected

    async def execute_tool(
        self, name: str, arguments: str | bytes | Mapping[str, Any] | None = None,
    ) -> ToolResult:
        """Call one remote tool on a fresh connection."""
        if self._known_tools is not None and name not in self._known_tools:
            raise MCPToolNotFoundError(f"MCP server {self.name!r} has no tool {name!r}")

        if arguments is None or isinstance(arguments, Mapping):
            parsed: Any = dict(arguments or {})
        else:
            raw = _decode_arguments(arguments)
            try:
                parsed = _json.loads(raw.strip() or "{}")
            except _json.JSONDecodeError as exc:
                return ToolResult.error(f"Invalid JSON arguments: {exc}")
        if not isinstance(parsed, dict):
            return ToolResult.error(
                f"Arguments must be a JSON object, got {type(parsed).__name__}"
            )

        async with self.connect() as session:
            try:
                result = await session.call_tool(name, parsed)
            except Exception as exc:
                raise MCPToolExecutionError(
                    f"MCP tool {name!r} on server {self.name!r} failed: {exc}",
                    original=exc,
                ) from exc

        content = _truncate(
            _result_text(result), self.max_result_length or DEFAULT_TOOL_RESULT_MAX_LENGTH,
        )
        return ToolResult(content, is_error=bool(getattr(result, "isError", False)))


class MCPTool(Tool):
    """A tool hosted on an MCP server."""

    def __init__(
        self,
        server: MCPServer,
        name: str,
        description: str,
        input_schema: Schema,
        capabilities: MCPToolCapabilities,
    ) -> None:
        self.server = server
        self._name = name
        self._description = description
        self._input_schema = input_schema
        self.capabilities = capabilities

    @classmethod
    def from_remote(cls, server: MCPServer, remote: Any) -> MCPTool:
        """Build from an ``mcp.types.Tool`` (name, description, inputSchema, annotations)."""
        name = str(remote.name)
        description = getattr(remote, "description", None) or ""
        return cls(
            server,
            name,
            description,
            Schema.from_dict(getattr(remote, "inputSchema", None)),
            infer_capabilities(name, description, getattr(remote, "annotations", None)),
        )

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
        return await self.server.execute_tool(self._name, arguments)


class MCPServerPlaceholder(Tool):
    """Stands in for a server's tools until ``resolve_mcp_servers`` runs."""

    is_placeholder = True

    def __init__(self, server: MCPServer) -> None:
        self.server = server

    @property
    def name(self) -> str:
        return f"{PLACEHOLDER_PREFIX}{self.server.name}"

    @property
    def description(self) -> str:
        return f"Unresolved MCP server {self.server.name!r}"

    @property
    def input_schema(self) -> Schema:
        return Schema.object()

    async def execute(self, arguments: str | bytes) -> ToolResult:
        raise MCPPlaceholderError(self.server.name)


async def resolve_mcp_servers(
    tool_set: ToolSet, *, config: AgentConfig | None = None,
) -> ToolSet:
    """Replace every placeholder with its server's selected tools.

    Ordinary tools keep their position. With ``config``, servers without an
    explicit timeout or result length use ``config.mcp_timeout`` and
    ``config.tool_result_max_length``. Raises MCPConnectionError or
    MCPToolFetchError when a server cannot be listed, and
    DuplicateToolNameError when the resolved set has clashing names.
    """
    if not tool_set.has_placeholders:
        tool_set.ensure_unique_names()
        return tool_set

    resolved: list[Tool] = []
    for tool in tool_set:
        if isinstance(tool, MCPServerPlaceholder):
            server = tool.server.configured(config) if config is not None else tool.server
            try:
                resolved.extend(await server.filtered_tools())
            except MCPError:
                logger.error("Failed to resolve MCP server %r", tool.server.name)
                raise
        else:
            resolved.append(tool)

    result = ToolSet(resolved)
    result.ensure_unique_names()
    logger.info(
        "Resolved %d MCP server(s) into %d tools",
        len(tool_set.placeholders), len(result),
    )
    return result
