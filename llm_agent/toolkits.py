"""Built-in tool kits: groups of in-process tools with MCP-style annotations.

A kit bundles related tools that would otherwise need an external MCP server.
Kits are added to a tool set with ``ToolSetBuilder.toolkit``, which accepts
the same ``MCPToolSelection`` presets as MCP servers.

Usage:
    from llm_agent import MCPToolSelection, MemoryToolKit, ToolSet, UtilityToolKit

    tools = (
        ToolSet.builder()
        .toolkit(MemoryToolKit("~/.agent/memory.jsonl"), MCPToolSelection.safe())
        .toolkit(UtilityToolKit(timezone="UTC"))
        .build()
    )
"""

from __future__ import annotations

import asyncio
import datetime as _dt
import inspect
import json as _json
import logging
import math
import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import jsonschema
from pydantic import BaseModel, ConfigDict, Field

from llm_agent.config import DEFAULT_TOOL_RESULT_MAX_LENGTH
from llm_agent.errors import ToolExecutionError
from llm_agent.mcp_bridge import MCPToolCapabilities, MCPToolSelection, capabilities_from_hints
from llm_agent.schema import Schema
from llm_agent.tools import Tool, ToolResult, _decode_arguments, _serialize_result, _truncate

logger = logging.getLogger(__name__)

__all__ = [
    "BuiltInTool",
    "Entity",
    "KnowledgeGraph",
    "MemoryToolKit",
    "Relation",
    "ToolAnnotations",
    "ToolKit",
    "UtilityToolKit",
    "calculate",
]

Handler = Callable[[dict[str, Any]], Union[Any, Awaitable[Any]]]


# ---------------------------------------------------------------------------
# Annotations and built-in tools
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolAnnotations:
    """Behaviour hints in the shape of MCP tool annotations.

    Unset hints take the MCP defaults: not read-only, destructive,
    not idempotent, open world.
    """

    title: str | None = None
    read_only_hint: bool | None = None
    destructive_hint: bool | None = None
    idempotent_hint: bool | None = None
    open_world_hint: bool | None = None

    @classmethod
    def read_only(cls) -> ToolAnnotations:
        return cls(read_only_hint=True)

    @classmethod
    def destructive(cls) -> ToolAnnotations:
        return cls(read_only_hint=False, destructive_hint=True)

    @classmethod
    def idempotent_write(cls) -> ToolAnnotations:
        return cls(read_only_hint=False, destructive_hint=True, idempotent_hint=True)

    @classmethod
    def closed_world(cls) -> ToolAnnotations:
        return cls(open_world_hint=False)

    @property
    def capabilities(self) -> MCPToolCapabilities:
        return capabilities_from_hints(self.read_only_hint, self.destructive_hint)


class BuiltInTool(Tool):
    """A kit tool: explicit schema, annotations and a handler taking the parsed arguments.

    Arguments are validated against the input schema before the handler runs;
    a handler exception is raised as ``ToolExecutionError``.
    """

    def __init__(
        self,
        name: str,
        description: str,
        input_schema: Schema,
        handler: Handler,
        *,
        annotations: ToolAnnotations | None = None,
        max_result_length: int = DEFAULT_TOOL_RESULT_MAX_LENGTH,
    ) -> None:
        self._name = name
        self._description = description
        self._input_schema = input_schema
        self._handler = handler
        self.annotations = annotations or ToolAnnotations()
        self._max_result_length = max_result_length

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def input_schema(self) -> Schema:
        return self._input_schema

    @property
    def capabilities(self) -> MCPToolCapabilities:
        return self.annotations.capabilities

    async def execute(self, arguments: str | bytes) -> ToolResult:
        raw = _decode_arguments(arguments)
        try:
            parsed = _json.loads(raw.strip() or "{}")
        except _json.JSONDecodeError as exc:
            logger.warning("Invalid JSON arguments for %s: %s", self._name, raw[:200])
            return ToolResult.error(f"Invalid JSON arguments: {exc}")
        try:
            jsonschema.validate(parsed, self._input_schema.to_dict())
        except jsonschema.ValidationError as exc:
            return ToolResult.error(f"Validation error: {exc.message}")

        try:
            value = self._handler(parsed)
            if inspect.isawaitable(value):
                value = await value
        except Exception as exc:
            raise ToolExecutionError(self._name, exc) from exc

        return ToolResult(_truncate(_serialize_result(value), self._max_result_length))


class ToolKit(ABC):
    """A named group of related built-in tools."""

    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def tools(self) -> list[BuiltInTool]: ...

    @property
    def tool_count(self) -> int:
        return len(self.tools)

    @property
    def tool_names(self) -> list[str]:
        return [t.name for t in self.tools]

    def tool(self, name: str) -> BuiltInTool | None:
        for t in self.tools:
            if t.name == name:
                return t
        return None

    def selected(self, selection: MCPToolSelection | None = None) -> list[BuiltInTool]:
        """Tools passing ``selection``; presets use the annotation capabilities."""
        if selection is None:
            return list(self.tools)
        return [t for t in self.tools if selection.includes(t.name, t.capabilities)]

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, tools={self.tool_names!r})"


# ---------------------------------------------------------------------------
# Memory: a knowledge graph of entities, relations and observations
# ---------------------------------------------------------------------------


class Entity(BaseModel):
    name: str
    entityType: str
    observations: list[str] = Field(default_factory=list)


class Relation(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_: str = Field(alias="from")
    to: str
    relationType: str

    def touches(self, name: str) -> bool:
        return self.from_ == name or self.to == name


class KnowledgeGraph(BaseModel):
    entities: list[Entity] = Field(default_factory=list)
    relations: list[Relation] = Field(default_factory=list)

    def dump(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def _dump_all(items: Sequence[BaseModel]) -> list[dict[str, Any]]:
    return [item.model_dump(by_alias=True) for item in items]


_ENTITY_SCHEMA = Schema.object(
    {
        "name": Schema.string(description="Unique name of the entity"),
        "entityType": Schema.string(
            description="Type of the entity (e.g., 'person', 'organization')",
        ),
        "observations": Schema.array(
            Schema.string(), description="Initial observations about the entity",
        ),
    },
    ["name", "entityType"],
)


def _relation_schema(type_description: str) -> Schema:
    return Schema.object(
        {
            "from": Schema.string(description="Name of the source entity"),
            "to": Schema.string(description="Name of the target entity"),
            "relationType": Schema.string(description=type_description),
        },
        ["from", "to", "relationType"],
    )


class MemoryToolKit(ToolKit):
    """In-memory knowledge graph, optionally persisted as JSONL.

    Entity names are unique; creating an existing entity or relation is a
    no-op. Deleting an entity also deletes every relation touching it. With a
    ``persistence_path`` the graph is loaded on construction and rewritten
    after every mutation, one ``{"type": "entity"|"relation", ...}`` object
    per line.
    """

    def __init__(self, persistence_path: str | os.PathLike[str] | None = None) -> None:
        self._path = Path(persistence_path).expanduser() if persistence_path is not None else None
        self._entities: dict[str, Entity] = {}
        self._relations: list[Relation] = []
        if self._path is not None:
            self._load()
        self._tools = self._build_tools()

    @property
    def name(self) -> str:
        return "memory"

    @property
    def tools(self) -> list[BuiltInTool]:
        return self._tools

    # -- graph operations ---------------------------------------------------

    def create_entities(self, entities: list[Entity]) -> list[Entity]:
        created = []
        for entity in entities:
            if entity.name not in self._entities:
                self._entities[entity.name] = entity
                created.append(entity)
        self._save()
        return created

    def create_relations(self, relations: list[Relation]) -> list[Relation]:
        created = []
        for relation in relations:
            if relation not in self._relations:
                self._relations.append(relation)
                created.append(relation)
        self._save()
        return created

    def add_observations(self, additions: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Append new observations; unknown entities are skipped."""
        added = []
        for addition in additions:
            entity = self._entities.get(addition["entityName"])
            if entity is None:
                continue
            fresh = []
            for observation in addition["contents"]:
                if observation not in entity.observations:
                    entity.observations.append(observation)
                    fresh.append(observation)
            if fresh:
                added.append({"entityName": entity.name, "contents": fresh})
        self._save()
        return added

    def delete_entities(self, names: list[str]) -> None:
        for name in names:
            self._entities.pop(name, None)
            self._relations = [r for r in self._relations if not r.touches(name)]
        self._save()

    def delete_observations(self, deletions: list[dict[str, Any]]) -> None:
        for deletion in deletions:
            entity = self._entities.get(deletion["entityName"])
            if entity is not None:
                drop = set(deletion["observations"])
                entity.observations = [o for o in entity.observations if o not in drop]
        self._save()

    def delete_relations(self, relations: list[Relation]) -> None:
        self._relations = [r for r in self._relations if r not in relations]
        self._save()

    def read_graph(self) -> KnowledgeGraph:
        return KnowledgeGraph(entities=list(self._entities.values()), relations=list(self._relations))

    def search_nodes(self, query: str) -> KnowledgeGraph:
        """Case-insensitive substring match on name, type and observations.

        Relations touching any matched entity are included.
        """
        needle = query.lower()
        matched = [
            e for e in self._entities.values()
            if needle in e.name.lower()
            or needle in e.entityType.lower()
            or any(needle in o.lower() for o in e.observations)
        ]
        names = {e.name for e in matched}
        relations = [r for r in self._relations if r.from_ in names or r.to in names]
        return KnowledgeGraph(entities=matched, relations=relations)

    def open_nodes(self, names: list[str]) -> KnowledgeGraph:
        """Named entities, and only the relations between two of them."""
        wanted = set(names)
        entities = [self._entities[n] for n in names if n in self._entities]
        relations = [r for r in self._relations if r.from_ in wanted and r.to in wanted]
        return KnowledgeGraph(entities=entities, relations=relations)

    # -- persistence --------------------------------------------------------

    def _load(self) -> None:
        assert self._path is not None
        if not self._path.exists():
            return
        for lineno, line in enumerate(self._path.read_text(encoding="utf-8").splitlines(), 1):
            if not line.strip():
                continue
            try:
                record = _json.loads(line)
                kind = record.pop("type", None)
                if kind == "entity":
                    entity = Entity.model_validate(record)
                    self._entities[entity.name] = entity
                elif kind == "relation":
                    relation = Relation.model_validate(record)
                    if relation not in self._relations:
                        self._relations.append(relation)
                else:
                    logger.warning("%s:%d: unknown record type %r", self._path, lineno, kind)
            except (ValueError, AttributeError) as exc:
                logger.warning("%s:%d: skipping unreadable record: %s", self._path, lineno, exc)

    def _save(self) -> None:
        if self._path is None:
            return
        lines = [
            _json.dumps({"type": "entity", **e.model_dump()}) for e in self._entities.values()
        ]
        lines += [
            _json.dumps({"type": "relation", **r.model_dump(by_alias=True)}) for r in self._relations
        ]
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        tmp.write_text("\n".join(lines) + ("\n" if lines else ""), encoding="utf-8")
        os.replace(tmp, self._path)

    # -- tools --------------------------------------------------------------

    def _build_tools(self) -> list[BuiltInTool]:
        observation_edit = Schema.object(
            {
                "entityName": Schema.string(description="Name of the entity"),
                "contents": Schema.array(Schema.string(), description="Observation strings to add"),
            },
            ["entityName", "contents"],
        )
        observation_delete = Schema.object(
            {
                "entityName": Schema.string(description="Name of the entity"),
                "observations": Schema.array(Schema.string(), description="Observations to delete"),
            },
            ["entityName", "observations"],
        )
        additive = ToolAnnotations(
            read_only_hint=False, destructive_hint=False, idempotent_hint=True, open_world_hint=False,
        )
        removal = ToolAnnotations(
            read_only_hint=False, destructive_hint=True, idempotent_hint=True, open_world_hint=False,
        )
        query = ToolAnnotations(read_only_hint=True, open_world_hint=False)

        def relations_from(args: dict[str, Any]) -> list[Relation]:
            return [Relation.model_validate(r) for r in args["relations"]]

        return [
            BuiltInTool(
                "create_entities",
                "Create multiple new entities in the knowledge graph",
                Schema.object(
                    {"entities": Schema.array(_ENTITY_SCHEMA, description="Array of entities to create")},
                    ["entities"],
                ),
                lambda args: _dump_all(
                    self.create_entities([Entity.model_validate(e) for e in args["entities"]])
                ),
                annotations=replace(additive, title="Create Entities"),
            ),
            BuiltInTool(
                "create_relations",
                "Create multiple new relations between entities in the knowledge graph. "
                "Relations should be in active voice",
                Schema.object(
                    {
                        "relations": Schema.array(
                            _relation_schema(
                                "Type of relation in active voice (e.g., 'works_at', 'knows')",
                            ),
                            description="Array of relations to create",
                        ),
                    },
                    ["relations"],
                ),
                lambda args: _dump_all(self.create_relations(relations_from(args))),
                annotations=replace(additive, title="Create Relations"),
            ),
            BuiltInTool(
                "add_observations",
                "Add new observations to existing entities in the knowledge graph",
                Schema.object(
                    {
                        "observations": Schema.array(
                            observation_edit, description="Array of observations to add",
                        ),
                    },
                    ["observations"],
                ),
                lambda args: self.add_observations(args["observations"]),
                annotations=replace(additive, title="Add Observations"),
            ),
            BuiltInTool(
                "delete_entities",
                "Delete multiple entities and their associated relations from the knowledge graph",
                Schema.object(
                    {
                        "entityNames": Schema.array(
                            Schema.string(), description="Names of entities to delete",
                        ),
                    },
                    ["entityNames"],
                ),
                self._delete_entities_tool,
                annotations=replace(removal, title="Delete Entities"),
            ),
            BuiltInTool(
                "delete_observations",
                "Delete specific observations from entities in the knowledge graph",
                Schema.object(
                    {
                        "deletions": Schema.array(
                            observation_delete, description="Array of observations to delete",
                        ),
                    },
                    ["deletions"],
                ),
                self._delete_observations_tool,
                annotations=replace(removal, title="Delete Observations"),
            ),
            BuiltInTool(
                "delete_relations",
                "Delete multiple relations from the knowledge graph",
                Schema.object(
                    {
                        "relations": Schema.array(
                            _relation_schema("Type of relation"),
                            description="Array of relations to delete",
                        ),
                    },
                    ["relations"],
                ),
                self._delete_relations_tool,
                annotations=replace(removal, title="Delete Relations"),
            ),
            BuiltInTool(
                "read_graph",
                "Read the entire knowledge graph",
                Schema.object({}),
                lambda args: self.read_graph().dump(),
                annotations=replace(query, title="Read Graph"),
            ),
            BuiltInTool(
                "search_nodes",
                "Search for nodes based on matching entity names, types, and observation content",
                Schema.object(
                    {"query": Schema.string(description="Search query string")}, ["query"],
                ),
                lambda args: self.search_nodes(args["query"]).dump(),
                annotations=replace(query, title="Search Nodes"),
            ),
            BuiltInTool(
                "open_nodes",
                "Open specific nodes in the knowledge graph by their names",
                Schema.object(
                    {
                        "names": Schema.array(
                            Schema.string(), description="Names of entities to retrieve",
                        ),
                    },
                    ["names"],
                ),
                lambda args: self.open_nodes(args["names"]).dump(),
                annotations=replace(query, title="Open Nodes"),
            ),
        ]

    def _delete_entities_tool(self, args: dict[str, Any]) -> str:
        self.delete_entities(args["entityNames"])
        return "Deleted entities: " + ", ".join(args["entityNames"])

    def _delete_observations_tool(self, args: dict[str, Any]) -> str:
        self.delete_observations(args["deletions"])
        return "Deleted observations successfully"

    def _delete_relations_tool(self, args: dict[str, Any]) -> str:
        self.delete_relations([Relation.model_validate(r) for r in args["relations"]])
        return "Deleted relations successfully"


# ---------------------------------------------------------------------------
# Utility: time, arithmetic, UUIDs, sleep
# ---------------------------------------------------------------------------

_BINARY_OPS: dict[str, Callable[[float, float], float]] = {
    "add": lambda a, b: a + b,
    "+": lambda a, b: a + b,
    "subtract": lambda a, b: a - b,
    "-": lambda a, b: a - b,
    "multiply": lambda a, b: a * b,
    "*": lambda a, b: a * b,
    "divide": lambda a, b: a / b,
    "/": lambda a, b: a / b,
    "power": math.pow,
    "pow": math.pow,
    "^": math.pow,
}

_UNARY_OPS: dict[str, Callable[[float], float]] = {
    "sqrt": math.sqrt,
    "abs": abs,
    # Half away from zero, not banker's rounding.
    "round": lambda a: float(math.floor(abs(a) + 0.5)) * (1 if a >= 0 else -1),
    "floor": lambda a: float(math.floor(a)),
    "ceil": lambda a: float(math.ceil(a)),
}

MAX_UUID_COUNT = 100
MIN_SLEEP_SECONDS = 0.001
MAX_SLEEP_SECONDS = 60.0


def calculate(operation: str, a: float, b: float | None = None) -> float:
    """Apply a named (or symbolic) operation; raises ValueError on bad input."""
    op = operation.lower()
    if op in _BINARY_OPS:
        if b is None:
            raise ValueError(f"Operation '{operation}' requires operand 'b'")
        if op in ("divide", "/") and b == 0:
            raise ValueError("Division by zero is not allowed")
        return float(_BINARY_OPS[op](a, b))
    if op in _UNARY_OPS:
        if op == "sqrt" and a < 0:
            raise ValueError("Cannot calculate square root of negative number")
        return float(_UNARY_OPS[op](a))
    raise ValueError(f"Unknown operation: {operation}")


class UtilityToolKit(ToolKit):
    """Small closed-world helpers. ``timezone`` is the default for get_current_time."""

    def __init__(self, timezone: str | None = None) -> None:
        self._timezone = timezone
        self._tools = self._build_tools()

    @property
    def name(self) -> str:
        return "utility"

    @property
    def tools(self) -> list[BuiltInTool]:
        return self._tools

    def _zone(self, name: str | None) -> _dt.tzinfo | None:
        for candidate in (name, self._timezone):
            if not candidate:
                continue
            try:
                return ZoneInfo(candidate)
            except (ZoneInfoNotFoundError, ValueError):
                logger.warning("Unknown timezone %r, falling back", candidate)
        return None

    def current_time(self, format: str | None = None, timezone: str | None = None) -> dict[str, str]:
        zone = self._zone(timezone)
        now = _dt.datetime.now(zone) if zone is not None else _dt.datetime.now().astimezone()
        fmt = format or "ISO8601"
        text = now.isoformat(timespec="seconds") if fmt == "ISO8601" else now.strftime(fmt)
        return {"time": text, "timezone": str(zone or now.tzinfo), "format": fmt}

    def _build_tools(self) -> list[BuiltInTool]:
        helper = ToolAnnotations(read_only_hint=True, open_world_hint=False)
        return [
            BuiltInTool(
                "get_current_time",
                "Get the current time in a specified format and timezone",
                Schema.object(
                    {
                        "format": Schema.string(
                            description=(
                                "strftime format string (e.g., '%Y-%m-%d %H:%M:%S') "
                                "or 'ISO8601'. Default is ISO8601."
                            ),
                        ),
                        "timezone": Schema.string(
                            description=(
                                "IANA timezone (e.g., 'UTC', 'Asia/Tokyo'). "
                                "Default is the kit's timezone, else local time."
                            ),
                        ),
                    },
                    [],
                ),
                lambda args: self.current_time(args.get("format"), args.get("timezone")),
                annotations=replace(helper, title="Get Current Time"),
            ),
            BuiltInTool(
                "calculate",
                "Perform basic mathematical calculations",
                Schema.object(
                    {
                        "operation": Schema.string(
                            description=(
                                "Mathematical operation: 'add', 'subtract', 'multiply', "
                                "'divide', 'power', 'sqrt', 'abs', 'round', 'floor', 'ceil'"
                            ),
                        ),
                        "a": Schema.number(description="First operand (required for all operations)"),
                        "b": Schema.number(
                            description="Second operand (required for add, subtract, multiply, divide, power)",
                        ),
                    },
                    ["operation", "a"],
                ),
                _calculate_tool,
                annotations=replace(helper, title="Calculate"),
            ),
            BuiltInTool(
                "generate_uuid",
                "Generate a random UUID (Universally Unique Identifier)",
                Schema.object(
                    {
                        "format": Schema.string(
                            description=(
                                "Output format: 'standard' (with hyphens), 'compact' "
                                "(no hyphens), 'uppercase'. Default is 'standard'."
                            ),
                        ),
                        "count": Schema.integer(
                            description="Number of UUIDs to generate (1-100). Default is 1.",
                        ),
                    },
                    [],
                ),
                _generate_uuid_tool,
                annotations=replace(helper, title="Generate UUID"),
            ),
            BuiltInTool(
                "sleep",
                "Wait for a specified duration",
                Schema.object(
                    {"seconds": Schema.number(description="Duration to wait in seconds (0.001 - 60)")},
                    ["seconds"],
                ),
                _sleep_tool,
                annotations=replace(helper, title="Sleep"),
            ),
        ]


def _calculate_tool(args: dict[str, Any]) -> dict[str, Any]:
    result = calculate(args["operation"], args["a"], args.get("b"))
    return {"operation": args["operation"], "a": args["a"], "b": args.get("b"), "result": result}


def _generate_uuid_tool(args: dict[str, Any]) -> dict[str, Any]:
    fmt = args.get("format") or "standard"
    count = min(max(args.get("count") or 1, 1), MAX_UUID_COUNT)
    uuids = []
    for _ in range(count):
        value = uuid.uuid4()
        if fmt.lower() == "compact":
            uuids.append(value.hex)
        elif fmt.lower() == "uppercase":
            uuids.append(str(value).upper())
        else:
            uuids.append(str(value))
    return {"uuids": uuids, "format": fmt, "count": count}


async def _sleep_tool(args: dict[str, Any]) -> dict[str, float]:
    duration = min(max(float(args["seconds"]), MIN_SLEEP_SECONDS), MAX_SLEEP_SECONDS)
    await asyncio.sleep(duration)
    return {"requestedSeconds": args["seconds"], "actualSeconds": duration}
