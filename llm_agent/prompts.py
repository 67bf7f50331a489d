"""Prompt text: removed-constraint instructions and YAML/Jinja2 templates.

Constraints a provider cannot enforce through its schema are restated as
natural-language instructions appended to the system prompt:

    from llm_agent.prompts import append_instructions

    result = adapter.adapt(schema)
    system_prompt = append_instructions(system_prompt, result.removed_constraints)

Ordering is deterministic (field path, then constraint type) so the same
schema always produces byte-identical prompts.

Prompt templates are YAML files with Jinja2 content::

    name: researcher
    messages:
      - role: system
        content: |
          You research {{ topic }}.
      - role: user
        content: |
          Summarize {{ topic }} in {{ n }} bullet points.

    prompt = render_prompt("prompts/researcher.yaml", topic="tides", n=3)
    run = scheduler.start(prompt.messages)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

import yaml  # type: ignore[import-untyped]
from jinja2 import BaseLoader, Environment, StrictUndefined, TemplateNotFound

from llm_agent.messages import Message, Role
from llm_agent.schema_adapters import ConstraintType, RemovedConstraint

logger = logging.getLogger(__name__)


class _InlineLoader(BaseLoader):
    """Jinja2 loader for inline strings (no filesystem template inheritance)."""

    def get_source(
        self, environment: Environment, template: str
    ) -> tuple[str, str | None, None]:
        raise TemplateNotFound(template)


# Single shared environment, StrictUndefined so missing vars fail loud.
_env = Environment(
    loader=_InlineLoader(),
    undefined=StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
)

ROOT_FIELD_NAME = "response"
"""How the root path is named in instructions."""

_PHRASES: dict[ConstraintType, str] = {
    ConstraintType.MINIMUM: "The '{field}' field must be at least {value}.",
    ConstraintType.MAXIMUM: "The '{field}' field must be at most {value}.",
    ConstraintType.EXCLUSIVE_MINIMUM: "The '{field}' field must be greater than {value} (exclusive).",
    ConstraintType.EXCLUSIVE_MAXIMUM: "The '{field}' field must be less than {value} (exclusive).",
    ConstraintType.MIN_ITEMS: "The '{field}' array must have at least {value} item(s).",
    ConstraintType.MAX_ITEMS: "The '{field}' array must have at most {value} item(s).",
    ConstraintType.MIN_LENGTH: "The '{field}' field must be at least {value} character(s) long.",
    ConstraintType.MAX_LENGTH: "The '{field}' field must be at most {value} character(s) long.",
    ConstraintType.PATTERN: "The '{field}' field must match the pattern: {value}",
    ConstraintType.FORMAT: "The '{field}' field must be in {value} format.",
}

_INSTRUCTIONS_TEMPLATE = _env.from_string(
    """\
Output constraints (not enforced by the response schema, follow them exactly):
{% for group in groups %}
{% for line in group %}
- {{ line }}
{% endfor %}
{% endfor %}"""
)


def _display_path(path: str) -> str:
    return ROOT_FIELD_NAME if path in ("", "$") else path


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def describe_constraint(constraint: RemovedConstraint) -> str:
    """One instruction sentence for a removed constraint."""
    name = _display_path(constraint.field_path)
    if constraint.constraint_type is ConstraintType.ADDITIONAL_PROPERTIES:
        if constraint.value:
            return f"The '{name}' object may contain properties beyond those listed."
        return f"The '{name}' object must not contain properties beyond those listed."
    return _PHRASES[constraint.constraint_type].format(
        field=name, value=_format_value(constraint.value),
    )


def constraints_to_instructions(removed: Iterable[RemovedConstraint]) -> str | None:
    """Render removed constraints as an instruction block, or None if there are none."""
    ordered = sorted(removed, key=lambda r: (r.field_path, r.constraint_type.value))
    if not ordered:
        return None

    groups: list[list[str]] = []
    current_path: str | None = None
    for constraint in ordered:
        if constraint.field_path != current_path:
            groups.append([])
            current_path = constraint.field_path
        groups[-1].append(describe_constraint(constraint))

    return _INSTRUCTIONS_TEMPLATE.render(groups=groups).strip()


def append_instructions(
    system_prompt: str | None,
    removed: Iterable[RemovedConstraint],
) -> str | None:
    """Concatenate the instruction block onto ``system_prompt``."""
    block = constraints_to_instructions(removed)
    if block is None:
        return system_prompt
    if not system_prompt:
        return block
    return f"{system_prompt.rstrip()}\n\n{block}"


# ---------------------------------------------------------------------------
# YAML prompt templates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RenderedPrompt:
    """A rendered template: system prompt plus the conversation opening."""

    system_prompt: str | None
    messages: list[Message] = field(default_factory=list)


def render_prompt(template_path: str | Path, **context: Any) -> RenderedPrompt:
    """Load a YAML prompt template and render its Jinja2 placeholders.

    ``system`` entries are joined into ``system_prompt``; ``user`` and
    ``assistant`` entries become text messages in order.

    Raises:
        FileNotFoundError: If template_path doesn't exist.
        yaml.YAMLError: If YAML is malformed.
        jinja2.UndefinedError: If a template variable is missing from context.
        ValueError: If YAML structure is invalid (no messages key, bad role).
    """
    path = Path(template_path)
    if not path.is_absolute():
        path = Path.cwd() / path

    if not path.exists():
        raise FileNotFoundError(f"Prompt template not found: {path}")

    raw = yaml.safe_load(path.read_text(encoding="utf-8"))

    if not isinstance(raw, dict):
        raise ValueError(f"Prompt YAML must be a mapping, got {type(raw).__name__}: {path}")

    messages_raw = raw.get("messages")
    if not messages_raw:
        raise ValueError(f"Prompt YAML missing 'messages' key: {path}")

    if not isinstance(messages_raw, list):
        raise ValueError(f"'messages' must be a list, got {type(messages_raw).__name__}: {path}")

    system_parts: list[str] = []
    messages: list[Message] = []
    for i, msg in enumerate(messages_raw):
        if not isinstance(msg, dict) or "role" not in msg or "content" not in msg:
            raise ValueError(f"Message {i} must have 'role' and 'content' keys: {path}")

        rendered = _env.from_string(str(msg["content"])).render(**context).strip()
        role = str(msg["role"])
        if role == "system":
            system_parts.append(rendered)
        elif role in (Role.USER.value, Role.ASSISTANT.value):
            messages.append(Message.text(Role(role), rendered))
        else:
            raise ValueError(f"Message {i} has unsupported role {role!r}: {path}")

    logger.debug(
        "Rendered prompt %s (%d messages, %d system part(s))",
        path.name,
        len(messages),
        len(system_parts),
    )

    return RenderedPrompt(
        system_prompt="\n\n".join(system_parts) if system_parts else None,
        messages=messages,
    )
