"""Per-provider schema adaptation.

Each backend accepts a different subset of JSON-Schema keywords. An adapter
walks a canonical ``Schema`` depth-first and returns a new, provider-legal
tree together with every constraint it had to strip, so the caller can turn
those into prompt instructions (``prompts.constraints_to_instructions``).

Usage:
    from llm_agent.schema_adapters import adapter_for_provider

    result = adapter_for_provider("openai").adapt(schema)
    result.schema             # legal for OpenAI strict mode
    result.removed_constraints  # [RemovedConstraint(MIN_LENGTH, "name", 3), ...]

Field paths: ``parent.child`` for object properties, ``parent[]`` for array
items, empty string for the root.

Adapters are idempotent: adapting an already-adapted schema removes nothing.
"""

from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from llm_agent.schema import Schema, SchemaKind

logger = logging.getLogger(__name__)


class ConstraintType(str, enum.Enum):
    MINIMUM = "minimum"
    MAXIMUM = "maximum"
    EXCLUSIVE_MINIMUM = "exclusiveMinimum"
    EXCLUSIVE_MAXIMUM = "exclusiveMaximum"
    MIN_ITEMS = "minItems"
    MAX_ITEMS = "maxItems"
    MIN_LENGTH = "minLength"
    MAX_LENGTH = "maxLength"
    PATTERN = "pattern"
    FORMAT = "format"
    ADDITIONAL_PROPERTIES = "additionalProperties"


# Schema attribute holding each constraint.
_ATTR: dict[ConstraintType, str] = {
    ConstraintType.MINIMUM: "minimum",
    ConstraintType.MAXIMUM: "maximum",
    ConstraintType.EXCLUSIVE_MINIMUM: "exclusive_minimum",
    ConstraintType.EXCLUSIVE_MAXIMUM: "exclusive_maximum",
    ConstraintType.MIN_ITEMS: "min_items",
    ConstraintType.MAX_ITEMS: "max_items",
    ConstraintType.MIN_LENGTH: "min_length",
    ConstraintType.MAX_LENGTH: "max_length",
    ConstraintType.PATTERN: "pattern",
    ConstraintType.FORMAT: "format",
    ConstraintType.ADDITIONAL_PROPERTIES: "additional_properties",
}


@dataclass(frozen=True)
class RemovedConstraint:
    """A constraint stripped from ``field_path`` by an adapter."""

    constraint_type: ConstraintType
    field_path: str
    value: Any


@dataclass(frozen=True)
class SchemaAdaptationResult:
    schema: Schema
    removed_constraints: tuple[RemovedConstraint, ...] = field(default_factory=tuple)

    @property
    def has_removed_constraints(self) -> bool:
        return bool(self.removed_constraints)


def child_path(parent: str, name: str) -> str:
    return f"{parent}.{name}" if parent else name


def items_path(parent: str) -> str:
    return f"{parent}[]"


class SchemaAdapter(ABC):
    """Canonical schema -> provider-legal schema plus removed constraints."""

    provider: str = ""

    def adapt(self, schema: Schema, field_path: str = "") -> SchemaAdaptationResult:
        removed: list[RemovedConstraint] = []
        adapted = self._adapt_node(schema, field_path, removed)
        if removed:
            logger.debug(
                "%s adapter removed %d constraint(s): %s",
                self.provider,
                len(removed),
                ", ".join(f"{r.field_path or '<root>'}:{r.constraint_type.value}" for r in removed),
            )
        return SchemaAdaptationResult(adapted, tuple(removed))

    def _adapt_node(
        self, schema: Schema, path: str, removed: list[RemovedConstraint],
    ) -> Schema:
        changes: dict[str, Any] = {}

        if schema.properties is not None:
            changes["properties"] = {
                name: self._adapt_node(prop, child_path(path, name), removed)
                for name, prop in schema.properties.items()
            }
        if schema.items is not None:
            changes["items"] = self._adapt_node(schema.items, items_path(path), removed)

        for constraint in self._dropped(schema):
            value = getattr(schema, _ATTR[constraint])
            removed.append(RemovedConstraint(constraint, path, value))
            changes[_ATTR[constraint]] = None

        changes.update(self._forced(schema, changes))
        return schema.replace(**changes)

    @abstractmethod
    def _dropped(self, schema: Schema) -> list[ConstraintType]:
        """Constraints present on this node that the provider rejects."""

    def _forced(self, schema: Schema, changes: dict[str, Any]) -> dict[str, Any]:
        """Values the provider requires regardless of the input."""
        return {}


def _present(schema: Schema, *constraints: ConstraintType) -> list[ConstraintType]:
    return [c for c in constraints if getattr(schema, _ATTR[c]) is not None]


class AnthropicSchemaAdapter(SchemaAdapter):
    """Keeps pattern, enum, format and additionalProperties.

    Array minimum counts survive only as 0 or 1; maximum counts, numeric
    bounds and string length bounds are all dropped.
    """

    provider = "anthropic"

    def _dropped(self, schema: Schema) -> list[ConstraintType]:
        dropped: list[ConstraintType] = []
        if schema.min_items is not None and schema.min_items not in (0, 1):
            dropped.append(ConstraintType.MIN_ITEMS)
        dropped += _present(
            schema,
            ConstraintType.MAX_ITEMS,
            ConstraintType.MINIMUM,
            ConstraintType.MAXIMUM,
            ConstraintType.EXCLUSIVE_MINIMUM,
            ConstraintType.EXCLUSIVE_MAXIMUM,
            ConstraintType.MIN_LENGTH,
            ConstraintType.MAX_LENGTH,
        )
        return dropped


class OpenAISchemaAdapter(SchemaAdapter):
    """Strict structured outputs: closed objects, every property required.

    Only ``enum`` survives among the value constraints. Forcing ``required``
    and ``additionalProperties`` is not reported as a removal.
    """

    provider = "openai"

    def _dropped(self, schema: Schema) -> list[ConstraintType]:
        return _present(
            schema,
            ConstraintType.MINIMUM,
            ConstraintType.MAXIMUM,
            ConstraintType.EXCLUSIVE_MINIMUM,
            ConstraintType.EXCLUSIVE_MAXIMUM,
            ConstraintType.MIN_LENGTH,
            ConstraintType.MAX_LENGTH,
            ConstraintType.PATTERN,
            ConstraintType.MIN_ITEMS,
            ConstraintType.MAX_ITEMS,
            ConstraintType.FORMAT,
        )

    def _forced(self, schema: Schema, changes: dict[str, Any]) -> dict[str, Any]:
        if schema.kind is not SchemaKind.OBJECT:
            return {}
        forced: dict[str, Any] = {"additional_properties": False}
        properties = changes.get("properties")
        if properties is not None:
            forced["required"] = frozenset(properties)
        return forced


GEMINI_ALLOWED_FORMATS: frozenset[str] = frozenset({"date-time", "date", "time"})
"""String formats Gemini accepts in a response schema."""


class GeminiSchemaAdapter(SchemaAdapter):
    """Keeps numeric min/max and item-count bounds; drops string bounds.

    ``additionalProperties`` is removed everywhere. ``format`` survives only
    for date/time values.
    """

    provider = "gemini"

    def _dropped(self, schema: Schema) -> list[ConstraintType]:
        dropped = _present(
            schema,
            ConstraintType.EXCLUSIVE_MINIMUM,
            ConstraintType.EXCLUSIVE_MAXIMUM,
            ConstraintType.MIN_LENGTH,
            ConstraintType.MAX_LENGTH,
            ConstraintType.PATTERN,
        )
        if schema.format is not None and schema.format not in GEMINI_ALLOWED_FORMATS:
            dropped.append(ConstraintType.FORMAT)
        if schema.additional_properties is not None:
            dropped.append(ConstraintType.ADDITIONAL_PROPERTIES)
        return dropped


_ADAPTERS: dict[str, type[SchemaAdapter]] = {
    "anthropic": AnthropicSchemaAdapter,
    "openai": OpenAISchemaAdapter,
    "gemini": GeminiSchemaAdapter,
}


def adapter_for_provider(provider: str) -> SchemaAdapter:
    """Return the adapter for ``"anthropic"``, ``"openai"`` or ``"gemini"``."""
    key = provider.strip().lower()
    try:
        return _ADAPTERS[key]()
    except KeyError:
        raise ValueError(
            f"Unknown provider {provider!r}. Supported: {', '.join(sorted(_ADAPTERS))}"
        ) from None
