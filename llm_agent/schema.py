"""Canonical, provider-agnostic constraint model.

A ``Schema`` is an immutable JSON-Schema-like tree. Provider adapters
(``schema_adapters``) never mutate one; they build new trees.

Usage:
    from llm_agent.schema import DynamicStructure, NamedField, Schema

    person = DynamicStructure(
        name="Person",
        fields=[
            NamedField("name", Schema.string(min_length=1)),
            NamedField("age", Schema.integer(minimum=0), is_required=False),
        ],
    )
    schema = person.to_schema()
    schema.to_dict()
    # {"type": "object", "properties": {...}, "required": ["name"],
    #  "additionalProperties": False}

MCP servers and pydantic models describe inputs as plain JSON-Schema dicts;
``Schema.from_dict`` parses those. Types it does not understand become an
empty object schema, which is an approximation, not a faithful translation.
"""

from __future__ import annotations

import dataclasses
import enum
import json as _json
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping

Number = int | float


class SchemaKind(str, enum.Enum):
    OBJECT = "object"
    ARRAY = "array"
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"


_KIND_BY_NAME = {k.value: k for k in SchemaKind}


@dataclass(frozen=True)
class Schema:
    """One node of the canonical constraint tree."""

    kind: SchemaKind
    description: str | None = None
    # object
    properties: Mapping[str, Schema] | None = None
    required: frozenset[str] | None = None
    additional_properties: bool | None = None
    # array
    items: Schema | None = None
    min_items: int | None = None
    max_items: int | None = None
    # string
    min_length: int | None = None
    max_length: int | None = None
    pattern: str | None = None
    format: str | None = None
    enum: tuple[str, ...] | None = None
    # number / integer
    minimum: Number | None = None
    maximum: Number | None = None
    exclusive_minimum: Number | None = None
    exclusive_maximum: Number | None = None

    def __post_init__(self) -> None:
        # Freeze caller-supplied containers so the tree is immutable once built.
        if self.properties is not None and not isinstance(self.properties, MappingProxyType):
            object.__setattr__(self, "properties", MappingProxyType(dict(self.properties)))
        if self.required is not None and not isinstance(self.required, frozenset):
            object.__setattr__(self, "required", frozenset(self.required))
        if self.enum is not None and not isinstance(self.enum, tuple):
            object.__setattr__(self, "enum", tuple(self.enum))

    def __hash__(self) -> int:
        return hash(self.to_json())

    # -- factories ---------------------------------------------------------

    @classmethod
    def object(
        cls,
        properties: Mapping[str, Schema] | None = None,
        required: Iterable[str] | None = None,
        *,
        description: str | None = None,
        additional_properties: bool | None = None,
    ) -> Schema:
        return cls(
            kind=SchemaKind.OBJECT,
            description=description,
            properties=dict(properties or {}),
            required=frozenset(required) if required is not None else None,
            additional_properties=additional_properties,
        )

    @classmethod
    def array(
        cls,
        items: Schema,
        *,
        description: str | None = None,
        min_items: int | None = None,
        max_items: int | None = None,
    ) -> Schema:
        return cls(
            kind=SchemaKind.ARRAY,
            description=description,
            items=items,
            min_items=min_items,
            max_items=max_items,
        )

    @classmethod
    def string(
        cls,
        *,
        description: str | None = None,
        min_length: int | None = None,
        max_length: int | None = None,
        pattern: str | None = None,
        format: str | None = None,
        enum: Iterable[str] | None = None,
    ) -> Schema:
        return cls(
            kind=SchemaKind.STRING,
            description=description,
            min_length=min_length,
            max_length=max_length,
            pattern=pattern,
            format=format,
            enum=tuple(enum) if enum is not None else None,
        )

    @classmethod
    def integer(
        cls,
        *,
        description: str | None = None,
        minimum: Number | None = None,
        maximum: Number | None = None,
        exclusive_minimum: Number | None = None,
        exclusive_maximum: Number | None = None,
    ) -> Schema:
        return cls(
            kind=SchemaKind.INTEGER,
            description=description,
            minimum=minimum,
            maximum=maximum,
            exclusive_minimum=exclusive_minimum,
            exclusive_maximum=exclusive_maximum,
        )

    @classmethod
    def number(
        cls,
        *,
        description: str | None = None,
        minimum: Number | None = None,
        maximum: Number | None = None,
        exclusive_minimum: Number | None = None,
        exclusive_maximum: Number | None = None,
    ) -> Schema:
        return cls(
            kind=SchemaKind.NUMBER,
            description=description,
            minimum=minimum,
            maximum=maximum,
            exclusive_minimum=exclusive_minimum,
            exclusive_maximum=exclusive_maximum,
        )

    @classmethod
    def boolean(cls, *, description: str | None = None) -> Schema:
        return cls(kind=SchemaKind.BOOLEAN, description=description)

    # -- derived -----------------------------------------------------------

    def replace(self, **changes: Any) -> Schema:
        """Return a copy with ``changes`` applied; the original is untouched."""
        return dataclasses.replace(self, **changes)

    @property
    def is_object(self) -> bool:
        return self.kind is SchemaKind.OBJECT

    @property
    def is_array(self) -> bool:
        return self.kind is SchemaKind.ARRAY

    def to_dict(self) -> dict[str, Any]:
        """Render as a JSON-Schema dict with camelCase keywords."""
        out: dict[str, Any] = {"type": self.kind.value}
        if self.description is not None:
            out["description"] = self.description
        if self.kind is SchemaKind.OBJECT:
            out["properties"] = {
                name: prop.to_dict() for name, prop in (self.properties or {}).items()
            }
            if self.required is not None:
                out["required"] = sorted(self.required)
            if self.additional_properties is not None:
                out["additionalProperties"] = self.additional_properties
        if self.items is not None:
            out["items"] = self.items.to_dict()
        for attr, key in _CONSTRAINT_KEYS:
            value = getattr(self, attr)
            if value is not None:
                out[key] = list(value) if attr == "enum" else value
        return out

    def to_json(self) -> str:
        return _json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> Schema:
        """Parse a JSON-Schema dict (MCP tool input, pydantic model schema)."""
        if not isinstance(data, Mapping):
            return cls.object()
        defs: dict[str, Any] = {}
        for key in ("$defs", "definitions"):
            raw = data.get(key)
            if isinstance(raw, Mapping):
                defs.update(raw)
        return _parse(data, defs, depth=0)


_CONSTRAINT_KEYS: tuple[tuple[str, str], ...] = (
    ("min_items", "minItems"),
    ("max_items", "maxItems"),
    ("min_length", "minLength"),
    ("max_length", "maxLength"),
    ("pattern", "pattern"),
    ("format", "format"),
    ("enum", "enum"),
    ("minimum", "minimum"),
    ("maximum", "maximum"),
    ("exclusive_minimum", "exclusiveMinimum"),
    ("exclusive_maximum", "exclusiveMaximum"),
)

_MAX_REF_DEPTH = 32


def _resolve_ref(node: Mapping[str, Any], defs: Mapping[str, Any]) -> Mapping[str, Any]:
    ref = node.get("$ref")
    if not isinstance(ref, str):
        return node
    name = ref.rsplit("/", 1)[-1]
    target = defs.get(name)
    if not isinstance(target, Mapping):
        return {}
    # Sibling keywords (e.g. description) override the referenced definition.
    merged = dict(target)
    merged.update({k: v for k, v in node.items() if k != "$ref"})
    return merged


def _collapse_nullable(node: Mapping[str, Any]) -> Mapping[str, Any]:
    """Collapse ``anyOf: [X, null]`` and ``type: [x, "null"]`` to X."""
    for key in ("anyOf", "oneOf"):
        branches = node.get(key)
        if isinstance(branches, list):
            non_null = [
                b for b in branches
                if isinstance(b, Mapping) and b.get("type") != "null"
            ]
            if non_null:
                merged = dict(non_null[0])
                if "description" in node and "description" not in merged:
                    merged["description"] = node["description"]
                return merged
    type_value = node.get("type")
    if isinstance(type_value, list):
        non_null_types = [t for t in type_value if t != "null"]
        merged = dict(node)
        merged["type"] = non_null_types[0] if non_null_types else None
        return merged
    return node


def _parse(node: Mapping[str, Any], defs: Mapping[str, Any], depth: int) -> Schema:
    if depth > _MAX_REF_DEPTH:
        return Schema.object()
    node = _collapse_nullable(_resolve_ref(node, defs))
    if "$ref" in node or "anyOf" in node or "oneOf" in node:
        node = _collapse_nullable(_resolve_ref(node, defs))

    kind = _KIND_BY_NAME.get(node.get("type"))  # type: ignore[arg-type]
    description = node.get("description") if isinstance(node.get("description"), str) else None
    if kind is None:
        return Schema.object(description=description)

    if kind is SchemaKind.OBJECT:
        properties: dict[str, Schema] = {}
        raw_props = node.get("properties")
        if isinstance(raw_props, Mapping):
            for name, prop in raw_props.items():
                if isinstance(prop, Mapping):
                    properties[str(name)] = _parse(prop, defs, depth + 1)
        raw_required = node.get("required")
        required = (
            [r for r in raw_required if isinstance(r, str)]
            if isinstance(raw_required, list) else None
        )
        additional = node.get("additionalProperties")
        return Schema.object(
            properties,
            required,
            description=description,
            additional_properties=additional if isinstance(additional, bool) else None,
        )

    if kind is SchemaKind.ARRAY:
        raw_items = node.get("items")
        items = (
            _parse(raw_items, defs, depth + 1)
            if isinstance(raw_items, Mapping) else Schema.string()
        )
        return Schema.array(
            items,
            description=description,
            min_items=_int_or_none(node.get("minItems")),
            max_items=_int_or_none(node.get("maxItems")),
        )

    if kind is SchemaKind.STRING:
        raw_enum = node.get("enum")
        return Schema.string(
            description=description,
            min_length=_int_or_none(node.get("minLength")),
            max_length=_int_or_none(node.get("maxLength")),
            pattern=node.get("pattern") if isinstance(node.get("pattern"), str) else None,
            format=node.get("format") if isinstance(node.get("format"), str) else None,
            enum=[str(v) for v in raw_enum] if isinstance(raw_enum, list) else None,
        )

    if kind is SchemaKind.BOOLEAN:
        return Schema.boolean(description=description)

    return Schema(
        kind=kind,
        description=description,
        minimum=_number_or_none(node.get("minimum")),
        maximum=_number_or_none(node.get("maximum")),
        exclusive_minimum=_number_or_none(node.get("exclusiveMinimum")),
        exclusive_maximum=_number_or_none(node.get("exclusiveMaximum")),
    )


def _int_or_none(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def _number_or_none(value: Any) -> Number | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


# ---------------------------------------------------------------------------
# Declarative object assembly
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NamedField:
    """A named property used while assembling an object schema."""

    name: str
    schema: Schema
    is_required: bool = True

    def required(self) -> NamedField:
        return dataclasses.replace(self, is_required=True)

    def optional(self) -> NamedField:
        return dataclasses.replace(self, is_required=False)


@dataclass(frozen=True)
class DynamicStructure:
    """A runtime-defined output structure.

    Equality is structural: name, description and the ordered fields.
    """

    name: str
    description: str | None = None
    fields: tuple[NamedField, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not isinstance(self.fields, tuple):
            object.__setattr__(self, "fields", tuple(self.fields))

    def to_schema(self) -> Schema:
        """Object schema: required = fields marked required, no extra properties."""
        return Schema.object(
            {f.name: f.schema for f in self.fields},
            [f.name for f in self.fields if f.is_required],
            description=self.description,
            additional_properties=False,
        )

    @staticmethod
    def builder(name: str, description: str | None = None) -> DynamicStructureBuilder:
        return DynamicStructureBuilder(name, description)


class DynamicStructureBuilder:
    """Fluent builder: ``DynamicStructure.builder("Person").field(...).build()``."""

    def __init__(self, name: str, description: str | None = None) -> None:
        self._name = name
        self._description = description
        self._fields: list[NamedField] = []

    def field(self, name: str, schema: Schema, *, required: bool = True) -> DynamicStructureBuilder:
        self._fields.append(NamedField(name, schema, required))
        return self

    def optional_field(self, name: str, schema: Schema) -> DynamicStructureBuilder:
        return self.field(name, schema, required=False)

    def add(self, named: NamedField) -> DynamicStructureBuilder:
        self._fields.append(named)
        return self

    def build(self) -> DynamicStructure:
        return DynamicStructure(self._name, self._description, tuple(self._fields))
