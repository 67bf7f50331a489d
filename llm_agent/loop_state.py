"""Per-run agent loop state: step budget and tool-call history.

All mutations go through an ``asyncio.Lock`` so reads used by termination
policies always see the latest recorded call. The state belongs to one run
(one scheduler task); ``snapshot()`` is the way to look at it from outside.
"""

from __future__ import annotations

import asyncio
import hashlib
import json as _json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

from llm_agent.errors import StepLimitExceededError
from llm_agent.messages import ToolCall

logger = logging.getLogger(__name__)


def hash_arguments(arguments: str | bytes | dict[str, Any] | None) -> str:
    """Stable hash of tool arguments.

    JSON input is canonicalized (sorted keys, compact separators) so key order
    and whitespace differences hash the same. Undecodable input is hashed as
    raw text.
    """
    if isinstance(arguments, (bytes, bytearray)):
        arguments = bytes(arguments).decode("utf-8", errors="replace")
    payload: Any = arguments
    if arguments is None:
        payload = {}
    elif isinstance(arguments, str):
        try:
            payload = _json.loads(arguments) if arguments.strip() else {}
        except _json.JSONDecodeError:
            return "sha256:" + hashlib.sha256(arguments.encode("utf-8")).hexdigest()
    raw = _json.dumps(
        payload,
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
        default=str,
    )
    return "sha256:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ToolCallRecord:
    """One executed tool call. Identity is ``(name, input_hash)``."""

    name: str
    input_hash: str
    timestamp: float = field(default_factory=time.time, compare=False)

    @classmethod
    def from_call(cls, call: ToolCall) -> ToolCallRecord:
        return cls(call.name, hash_arguments(call.arguments))


@dataclass(frozen=True)
class AgentLoopSnapshot:
    current_step: int
    max_steps: int
    tool_call_history: tuple[ToolCallRecord, ...]
    is_completed: bool

    @property
    def remaining_steps(self) -> int:
        return max(0, self.max_steps - self.current_step)

    @property
    def is_at_limit(self) -> bool:
        return self.current_step >= self.max_steps


class AgentLoopState:
    """Mutation-serialized step counter and tool-call history."""

    def __init__(self, max_steps: int) -> None:
        if max_steps < 1:
            raise ValueError(f"max_steps must be >= 1, got {max_steps}")
        self._max_steps = max_steps
        self._current_step = 0
        self._history: list[ToolCallRecord] = []
        self._is_completed = False
        self._lock = asyncio.Lock()

    @property
    def max_steps(self) -> int:
        return self._max_steps

    async def increment_step(self) -> int:
        """Advance the step counter.

        Raises StepLimitExceededError instead of moving past ``max_steps``;
        the counter is left at ``max_steps``.
        """
        async with self._lock:
            if self._current_step >= self._max_steps:
                raise StepLimitExceededError(self._max_steps)
            self._current_step += 1
            return self._current_step

    async def record_tool_call(self, call: ToolCall | ToolCallRecord) -> None:
        record = call if isinstance(call, ToolCallRecord) else ToolCallRecord.from_call(call)
        async with self._lock:
            self._history.append(record)

    async def record_tool_calls(self, calls: Iterable[ToolCall | ToolCallRecord]) -> None:
        records = [
            c if isinstance(c, ToolCallRecord) else ToolCallRecord.from_call(c) for c in calls
        ]
        async with self._lock:
            self._history.extend(records)

    async def mark_completed(self) -> None:
        async with self._lock:
            self._is_completed = True

    async def count_tool_calls(self, name: str) -> int:
        async with self._lock:
            return sum(1 for r in self._history if r.name == name)

    async def count_duplicate_tool_calls(self, name: str, input_hash: str) -> int:
        async with self._lock:
            return sum(1 for r in self._history if r.name == name and r.input_hash == input_hash)

    async def count_consecutive_same_tool_calls(self) -> int:
        """Length of the run of identical calls at the end of the history."""
        async with self._lock:
            if not self._history:
                return 0
            last = self._history[-1]
            count = 0
            for record in reversed(self._history):
                if record != last:
                    break
                count += 1
            return count

    async def last_tool_call(self, name: str | None = None) -> ToolCallRecord | None:
        async with self._lock:
            for record in reversed(self._history):
                if name is None or record.name == name:
                    return record
            return None

    async def snapshot(self) -> AgentLoopSnapshot:
        async with self._lock:
            return AgentLoopSnapshot(
                current_step=self._current_step,
                max_steps=self._max_steps,
                tool_call_history=tuple(self._history),
                is_completed=self._is_completed,
            )

    async def reset(self) -> None:
        """Back to the initial state. Only between independent runs."""
        async with self._lock:
            self._current_step = 0
            self._history.clear()
            self._is_completed = False
        logger.debug("Loop state reset (max_steps=%d)", self._max_steps)
