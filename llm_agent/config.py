"""Typed runtime configuration for llm_agent."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

MAX_STEPS_ENV = "LLM_AGENT_MAX_STEPS"
MAX_DUPLICATE_TOOL_CALLS_ENV = "LLM_AGENT_MAX_DUPLICATE_TOOL_CALLS"
MAX_CONSECUTIVE_SAME_CALLS_ENV = "LLM_AGENT_MAX_CONSECUTIVE_SAME_CALLS"
MAX_TOOL_CALLS_PER_TOOL_ENV = "LLM_AGENT_MAX_TOOL_CALLS_PER_TOOL"
MAX_DECODE_RETRIES_ENV = "LLM_AGENT_MAX_DECODE_RETRIES"
TOOL_RESULT_MAX_LENGTH_ENV = "LLM_AGENT_TOOL_RESULT_MAX_LENGTH"
MCP_TIMEOUT_ENV = "LLM_AGENT_MCP_TIMEOUT"

DEFAULT_MAX_STEPS: int = 10
"""Maximum backend calls per run before failing with StepLimitExceededError."""

DEFAULT_MAX_DUPLICATE_TOOL_CALLS: int = 2
"""Identical calls (name + arguments) allowed anywhere in one run."""

DEFAULT_MAX_CONSECUTIVE_SAME_CALLS: int = 3
"""Abort when the same call would repeat this many times in a row."""

DEFAULT_MAX_TOOL_CALLS_PER_TOOL: int | None = 5
"""Total calls allowed per tool name. None disables the limit."""

DEFAULT_MAX_DECODE_RETRIES: int = 2
"""Final-output requests sent after an undecodable payload before failing."""

DEFAULT_TOOL_RESULT_MAX_LENGTH: int = 50_000
"""Maximum character length for a single tool result. Longer results are truncated."""

DEFAULT_MCP_TIMEOUT: float = 30.0
"""Seconds to wait for an MCP server to initialize."""


@dataclass(frozen=True)
class AgentConfig:
    """Loop policy resolved once and passed explicitly to schedulers and sessions."""

    max_steps: int = DEFAULT_MAX_STEPS
    max_duplicate_tool_calls: int = DEFAULT_MAX_DUPLICATE_TOOL_CALLS
    max_consecutive_same_calls: int = DEFAULT_MAX_CONSECUTIVE_SAME_CALLS
    max_tool_calls_per_tool: int | None = DEFAULT_MAX_TOOL_CALLS_PER_TOOL
    max_decode_retries: int = DEFAULT_MAX_DECODE_RETRIES
    tool_result_max_length: int = DEFAULT_TOOL_RESULT_MAX_LENGTH
    mcp_timeout: float = DEFAULT_MCP_TIMEOUT

    def __post_init__(self) -> None:
        if self.max_steps < 1:
            raise ValueError(f"max_steps must be >= 1, got {self.max_steps}")
        if self.max_decode_retries < 0:
            raise ValueError(f"max_decode_retries must be >= 0, got {self.max_decode_retries}")

    @classmethod
    def from_env(cls) -> "AgentConfig":
        """Build typed config from LLM_AGENT_* environment variables."""
        per_tool_raw = os.environ.get(MAX_TOOL_CALLS_PER_TOOL_ENV, "").strip().lower()
        max_tool_calls_per_tool: int | None
        if per_tool_raw in {"none", "off", "0"}:
            max_tool_calls_per_tool = None
        else:
            max_tool_calls_per_tool = _int_env(
                MAX_TOOL_CALLS_PER_TOOL_ENV, DEFAULT_MAX_TOOL_CALLS_PER_TOOL or 0,
            )

        return cls(
            max_steps=_int_env(MAX_STEPS_ENV, DEFAULT_MAX_STEPS, minimum=1),
            max_duplicate_tool_calls=_int_env(
                MAX_DUPLICATE_TOOL_CALLS_ENV, DEFAULT_MAX_DUPLICATE_TOOL_CALLS, minimum=1,
            ),
            max_consecutive_same_calls=_int_env(
                MAX_CONSECUTIVE_SAME_CALLS_ENV, DEFAULT_MAX_CONSECUTIVE_SAME_CALLS, minimum=1,
            ),
            max_tool_calls_per_tool=max_tool_calls_per_tool,
            max_decode_retries=_int_env(MAX_DECODE_RETRIES_ENV, DEFAULT_MAX_DECODE_RETRIES),
            tool_result_max_length=_int_env(
                TOOL_RESULT_MAX_LENGTH_ENV, DEFAULT_TOOL_RESULT_MAX_LENGTH, minimum=1,
            ),
            mcp_timeout=_float_env(MCP_TIMEOUT_ENV, DEFAULT_MCP_TIMEOUT),
        )


def _int_env(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid %s=%r; expected integer. Defaulting to %d.", name, raw, default)
        return default
    if value < minimum:
        logger.warning("Invalid %s=%r; expected >= %d. Defaulting to %d.", name, raw, minimum, default)
        return default
    return value


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid %s=%r; expected number. Defaulting to %s.", name, raw, default)
        return default
    if value <= 0:
        logger.warning("Invalid %s=%r; expected > 0. Defaulting to %s.", name, raw, default)
        return default
    return value
