"""Steps emitted by a running agent and phases reported by a session.

Both are closed sets of frozen dataclasses; consumers dispatch with
``match`` or ``isinstance``:

    async for step in scheduler.start(messages):
        match step:
            case ToolCallStep(call=call):
                print("calling", call.name)
            case FinalResponse(output=output):
                print(output)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar, Union

from llm_agent.messages import Message, ModelTurn, ToolCall, Usage
from llm_agent.tools import ToolResult

OutputT = TypeVar("OutputT")


# ---------------------------------------------------------------------------
# Agent steps
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Thinking:
    """The raw backend turn, emitted once per step."""

    turn: ModelTurn


@dataclass(frozen=True)
class ToolCallStep:
    call: ToolCall


@dataclass(frozen=True)
class ToolResultStep:
    call: ToolCall
    result: ToolResult


@dataclass(frozen=True)
class Interrupted:
    message: str


@dataclass(frozen=True)
class AskingUser:
    question: str


@dataclass(frozen=True)
class AwaitingUserInput:
    question: str


@dataclass(frozen=True)
class TextResponse:
    text: str


@dataclass(frozen=True)
class FinalResponse(Generic[OutputT]):
    output: OutputT


AgentStep = Union[
    Thinking,
    ToolCallStep,
    ToolResultStep,
    Interrupted,
    AskingUser,
    AwaitingUserInput,
    TextResponse,
    FinalResponse,
]


# ---------------------------------------------------------------------------
# Session phases
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Running:
    step: AgentStep


@dataclass(frozen=True)
class WaitingForUser:
    question: str


@dataclass(frozen=True)
class Paused:
    pass


@dataclass(frozen=True)
class Completed(Generic[OutputT]):
    output: OutputT | None = None
    text: str | None = None


@dataclass(frozen=True)
class Failed:
    error: str
    exception: BaseException | None = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class Cancelled:
    pass


SessionPhase = Union[Idle, Running, WaitingForUser, Paused, Completed, Failed, Cancelled]


# ---------------------------------------------------------------------------
# Run results
# ---------------------------------------------------------------------------


class RunStatus(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    AWAITING_USER_INPUT = "awaiting_user_input"


@dataclass
class AgentRunResult(Generic[OutputT]):
    """Outcome of one scheduler run.

    ``messages`` is the full conversation at the end of the run, a valid
    prefix to resume from even after cancellation or failure.
    """

    status: RunStatus
    messages: list[Message]
    output: OutputT | None = None
    text: str | None = None
    error: Exception | None = None
    pending_question: str | None = None
    pending_call: ToolCall | None = None
    steps: int = 0
    usage: Usage = field(default_factory=Usage)

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.COMPLETED

    @property
    def error_description(self) -> str | None:
        if self.error is None:
            return None
        return f"{type(self.error).__name__}: {self.error}"

    def unwrap(self) -> Any:
        """The typed output, or raise the run's error."""
        if self.error is not None:
            raise self.error
        return self.output
