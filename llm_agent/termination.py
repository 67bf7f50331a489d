"""Loop-termination policies.

After every backend turn the scheduler asks a policy what to do next:
execute the requested tool calls, try to finish with the turn's text, or
stop. ``DuplicateDetectionPolicy`` guards against models that keep asking
for the same tool call.
"""

from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from llm_agent.config import (
    DEFAULT_MAX_CONSECUTIVE_SAME_CALLS,
    DEFAULT_MAX_DUPLICATE_TOOL_CALLS,
    DEFAULT_MAX_TOOL_CALLS_PER_TOOL,
    AgentConfig,
)
from llm_agent.loop_state import AgentLoopState, ToolCallRecord
from llm_agent.messages import ModelTurn, StopReason, ToolCall
from llm_agent.tools import ASK_USER_TOOL_NAME

logger = logging.getLogger(__name__)


class DecisionKind(str, enum.Enum):
    CONTINUE_WITH_TOOLS = "continue_with_tools"
    TERMINATE_WITH_OUTPUT = "terminate_with_output"
    TERMINATE = "terminate"


class TerminationReasonKind(str, enum.Enum):
    COMPLETED = "completed"
    DUPLICATE_TOOL_CALL = "duplicate_tool_call"
    CONSECUTIVE_TOOL_CALL = "consecutive_tool_call"
    MAX_TOOL_CALLS_PER_TOOL = "max_tool_calls_per_tool"
    UNEXPECTED_STOP_REASON = "unexpected_stop_reason"
    EMPTY_RESPONSE = "empty_response"


LOOP_REASONS = frozenset({
    TerminationReasonKind.DUPLICATE_TOOL_CALL,
    TerminationReasonKind.CONSECUTIVE_TOOL_CALL,
    TerminationReasonKind.MAX_TOOL_CALLS_PER_TOOL,
})


@dataclass(frozen=True)
class TerminationReason:
    kind: TerminationReasonKind
    tool_name: str | None = None
    count: int = 0
    detail: str | None = None

    @property
    def is_tool_loop(self) -> bool:
        return self.kind in LOOP_REASONS

    def describe(self) -> str:
        if self.kind is TerminationReasonKind.DUPLICATE_TOOL_CALL:
            return "same arguments repeated"
        if self.kind is TerminationReasonKind.CONSECUTIVE_TOOL_CALL:
            return "same call repeated consecutively"
        if self.kind is TerminationReasonKind.MAX_TOOL_CALLS_PER_TOOL:
            return "per-tool call limit reached"
        if self.detail:
            return f"{self.kind.value}: {self.detail}"
        return self.kind.value


@dataclass(frozen=True)
class TerminationDecision:
    kind: DecisionKind
    tool_calls: tuple[ToolCall, ...] = ()
    output: str | None = None
    reason: TerminationReason | None = None

    @classmethod
    def continue_with_tools(cls, calls: tuple[ToolCall, ...]) -> TerminationDecision:
        return cls(DecisionKind.CONTINUE_WITH_TOOLS, tool_calls=calls)

    @classmethod
    def terminate_with_output(cls, text: str) -> TerminationDecision:
        return cls(DecisionKind.TERMINATE_WITH_OUTPUT, output=text)

    @classmethod
    def terminate(
        cls,
        kind: TerminationReasonKind,
        *,
        tool_name: str | None = None,
        count: int = 0,
        detail: str | None = None,
    ) -> TerminationDecision:
        return cls(
            DecisionKind.TERMINATE,
            reason=TerminationReason(kind, tool_name, count, detail),
        )


class TerminationPolicy(ABC):
    @abstractmethod
    async def decide(self, turn: ModelTurn, state: AgentLoopState) -> TerminationDecision:
        """Decide how the loop proceeds after ``turn``."""


class StandardTerminationPolicy(TerminationPolicy):
    """Tool calls continue the loop; text ends it.

    Some providers report ``end_turn`` even when they request tools, so tool
    calls win regardless of the stop reason.
    """

    async def decide(self, turn: ModelTurn, state: AgentLoopState) -> TerminationDecision:
        if turn.tool_calls:
            return TerminationDecision.continue_with_tools(turn.tool_calls)

        text = turn.text
        if text.strip():
            return TerminationDecision.terminate_with_output(text)

        if turn.stop_reason is StopReason.TOOL_USE:
            return TerminationDecision.terminate(
                TerminationReasonKind.UNEXPECTED_STOP_REASON,
                detail="tool_use without tool calls",
            )
        if turn.stop_reason is StopReason.MAX_TOKENS:
            return TerminationDecision.terminate(
                TerminationReasonKind.UNEXPECTED_STOP_REASON, detail="max_tokens",
            )
        if turn.stop_reason is None:
            return TerminationDecision.terminate(TerminationReasonKind.EMPTY_RESPONSE)
        return TerminationDecision.terminate(TerminationReasonKind.COMPLETED)


class DuplicateDetectionPolicy(TerminationPolicy):
    """Wraps a base policy and stops repeated tool calls before they run.

    Checked per requested call, against the run's history plus the calls
    earlier in the same turn:

    * a tool already called ``max_tool_calls_per_tool`` times (None disables),
    * the same name and arguments already called ``max_duplicates`` times,
    * the same call would be the ``max_consecutive``-th in a row.

    ``ask_user`` calls are never counted as duplicates.
    """

    def __init__(
        self,
        base: TerminationPolicy | None = None,
        *,
        max_duplicates: int = DEFAULT_MAX_DUPLICATE_TOOL_CALLS,
        max_consecutive: int = DEFAULT_MAX_CONSECUTIVE_SAME_CALLS,
        max_tool_calls_per_tool: int | None = DEFAULT_MAX_TOOL_CALLS_PER_TOOL,
    ) -> None:
        self.base = base or StandardTerminationPolicy()
        self.max_duplicates = max_duplicates
        self.max_consecutive = max_consecutive
        self.max_tool_calls_per_tool = max_tool_calls_per_tool

    @classmethod
    def from_config(cls, config: AgentConfig) -> DuplicateDetectionPolicy:
        return cls(
            max_duplicates=config.max_duplicate_tool_calls,
            max_consecutive=config.max_consecutive_same_calls,
            max_tool_calls_per_tool=config.max_tool_calls_per_tool,
        )

    async def decide(self, turn: ModelTurn, state: AgentLoopState) -> TerminationDecision:
        decision = await self.base.decide(turn, state)
        if decision.kind is not DecisionKind.CONTINUE_WITH_TOOLS:
            return decision

        history = list((await state.snapshot()).tool_call_history)
        for call in decision.tool_calls:
            if call.name == ASK_USER_TOOL_NAME:
                continue
            record = ToolCallRecord.from_call(call)

            if self.max_tool_calls_per_tool is not None:
                total = sum(1 for r in history if r.name == call.name)
                if total >= self.max_tool_calls_per_tool:
                    return self._abort(TerminationReasonKind.MAX_TOOL_CALLS_PER_TOOL, call, total + 1)

            duplicates = sum(1 for r in history if r == record)
            if duplicates >= self.max_duplicates:
                return self._abort(TerminationReasonKind.DUPLICATE_TOOL_CALL, call, duplicates + 1)

            consecutive = 0
            for previous in reversed(history):
                if previous != record:
                    break
                consecutive += 1
            if consecutive + 1 >= self.max_consecutive:
                return self._abort(TerminationReasonKind.CONSECUTIVE_TOOL_CALL, call, consecutive + 1)

            history.append(record)

        return decision

    @staticmethod
    def _abort(kind: TerminationReasonKind, call: ToolCall, count: int) -> TerminationDecision:
        logger.warning("Stopping agent loop: %s on tool %s (attempt %d)", kind.value, call.name, count)
        return TerminationDecision.terminate(kind, tool_name=call.name, count=count)
