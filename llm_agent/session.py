"""Conversational session: a multi-turn agent with pause, resume and interrupts.

Usage:
    session = ConversationalSession(
        LiteLLMBackend(), "gpt-4o", tools=tools, output=Plan, interactive=True,
    )
    async for phase in session.run("Plan a trip to Kyoto"):
        match phase:
            case Running(step=step):
                render(step)
            case WaitingForUser(question=q):
                session.reply(await prompt_user(q))   # loop continues
            case Completed(output=plan):
                show(plan)
            case Failed(error=message):
                show_error(message)

``interactive=True`` gives the model an ``ask_user`` tool. While the
session waits for an answer the phase stream stays open; ``reply()``
delivers the answer as that tool's result and the run continues.

``cancel()`` keeps the conversation so ``resume()`` can pick it up later.
Tool uses left without a result by the cancellation are answered with a
synthetic result first.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import AsyncIterator, Sequence

from llm_agent.backends import AgentBackend
from llm_agent.config import AgentConfig
from llm_agent.errors import SessionStateError
from llm_agent.loop_state import AgentLoopState
from llm_agent.messages import Message, Role, ToolResultContent
from llm_agent.scheduler import AgentRun, AgentScheduler, OutputSpec, tool_result_message
from llm_agent.steps import (
    AwaitingUserInput,
    Cancelled,
    Completed,
    Failed,
    Idle,
    Paused,
    Running,
    RunStatus,
    SessionPhase,
    ToolResultStep,
    WaitingForUser,
)
from llm_agent.tools import AskUserTool, ToolResult, ToolSet

logger = logging.getLogger(__name__)

NO_ANSWER = "No answer provided"
"""Tool result sent for an empty reply."""

INTERRUPTED_TOOL_RESULT = "Session was interrupted. Continuing from where we left off."
"""Synthetic result for tool uses left unanswered by a cancellation."""

CONTINUE_MESSAGE = "Please continue where you left off."


class SessionStatus(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    AWAITING_USER_INPUT = "awaiting_user_input"
    PAUSED = "paused"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (SessionStatus.RUNNING, SessionStatus.AWAITING_USER_INPUT)

    @property
    def can_run(self) -> bool:
        return self is SessionStatus.IDLE

    @property
    def can_resume(self) -> bool:
        return self in (SessionStatus.IDLE, SessionStatus.PAUSED, SessionStatus.FAILED)

    @property
    def can_interrupt(self) -> bool:
        return self.is_active

    @property
    def can_reply(self) -> bool:
        return self is SessionStatus.AWAITING_USER_INPUT

    @property
    def can_cancel(self) -> bool:
        return self.is_active

    @property
    def can_clear(self) -> bool:
        return not self.is_active


def repair_dangling_tool_uses(messages: Sequence[Message]) -> Message | None:
    """A user message answering every tool use that never got a result."""
    pending: dict[str, str] = {}
    for message in messages:
        if message.role is Role.ASSISTANT:
            for use in message.tool_uses:
                pending[use.id] = use.name
        else:
            for result in message.tool_results:
                pending.pop(result.tool_call_id, None)
    if not pending:
        return None
    return Message(
        Role.USER,
        tuple(
            ToolResultContent(call_id, name, INTERRUPTED_TOOL_RESULT)
            for call_id, name in pending.items()
        ),
    )


class ConversationalSession:
    """One conversation with an agent. Not safe for concurrent callers."""

    def __init__(
        self,
        backend: AgentBackend,
        model: str,
        *,
        tools: ToolSet | None = None,
        system_prompt: str | None = None,
        output: OutputSpec = None,
        interactive: bool = False,
        config: AgentConfig | None = None,
        initial_messages: Sequence[Message] = (),
    ) -> None:
        self.backend = backend
        self.model = model
        self.system_prompt = system_prompt
        self.output = output
        self.config = config or AgentConfig()
        tools = tools if tools is not None else ToolSet()
        self._tools = tools.appending(AskUserTool()) if interactive else tools
        self._resolved_tools: ToolSet | None = None
        self._messages: list[Message] = list(initial_messages)
        self._interrupts: asyncio.Queue[str] = asyncio.Queue()
        self._state = AgentLoopState(self.config.max_steps)
        self._status = SessionStatus.IDLE
        self._run: AgentRun | None = None
        self._resolving: asyncio.Future[ToolSet] | None = None
        self._cancel_requested = False
        self._answer: asyncio.Future[str] | None = None
        self._pending_question: str | None = None
        self._last_error: str | None = None
        self.turn_count = 0

    # -- read-only views ---------------------------------------------------

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def is_running(self) -> bool:
        return self._status.is_active

    @property
    def waiting_for_answer(self) -> bool:
        return self._status.can_reply

    @property
    def pending_question(self) -> str | None:
        return self._pending_question if self._status.can_reply else None

    @property
    def phase(self) -> SessionPhase:
        if self._status is SessionStatus.AWAITING_USER_INPUT:
            return WaitingForUser(self._pending_question or "")
        if self._status is SessionStatus.PAUSED:
            return Paused()
        if self._status is SessionStatus.FAILED:
            return Failed(self._last_error or "")
        return Idle()

    # -- control -----------------------------------------------------------

    def run(self, user_message: str) -> AsyncIterator[SessionPhase]:
        """Send a user message and stream the phases of the resulting run."""
        if not self._status.can_run:
            raise SessionStateError(f"Cannot run while session is {self._status.value}")
        self._messages.append(Message.user(user_message))
        self._status = SessionStatus.RUNNING
        self._cancel_requested = False
        return self._drive()

    def resume(self) -> AsyncIterator[SessionPhase]:
        """Continue a paused, failed or finished conversation."""
        if not self._status.can_resume:
            raise SessionStateError(f"Cannot resume while session is {self._status.value}")
        if not self._messages:
            raise SessionStateError("No conversation history to resume. Use run() instead.")
        repair = repair_dangling_tool_uses(self._messages)
        if repair is not None:
            logger.info("Answering %d interrupted tool use(s) before resuming", len(repair.contents))
            self._messages.append(repair)
        self._messages.append(Message.user(CONTINUE_MESSAGE))
        self._status = SessionStatus.RUNNING
        self._cancel_requested = False
        return self._drive()

    def interrupt(self, message: str) -> None:
        """Queue a message the next loop iteration handles before continuing."""
        if not self._status.can_interrupt:
            raise SessionStateError(f"Cannot interrupt while session is {self._status.value}")
        self._interrupts.put_nowait(message)

    def clear_interrupts(self) -> None:
        while not self._interrupts.empty():
            self._interrupts.get_nowait()

    def reply(self, answer: str) -> None:
        """Answer the pending ``ask_user`` question."""
        if not self._status.can_reply or self._answer is None or self._answer.done():
            raise SessionStateError(f"No question is waiting for an answer (status {self._status.value})")
        self._answer.set_result(answer)

    def cancel(self) -> None:
        """Stop the current run. History is kept so ``resume()`` can continue."""
        if not self._status.can_cancel:
            raise SessionStateError(f"Cannot cancel while session is {self._status.value}")
        self.clear_interrupts()
        if self._status is SessionStatus.AWAITING_USER_INPUT:
            self._status = SessionStatus.PAUSED
            if self._answer is not None and not self._answer.done():
                self._answer.set_result("")
            return
        self._cancel_requested = True
        if self._resolving is not None:
            self._resolving.cancel()
        if self._run is not None:
            self._run.cancel()

    def clear(self) -> None:
        """Drop the conversation, queued interrupts and loop state."""
        if not self._status.can_clear:
            raise SessionStateError(f"Cannot clear while session is {self._status.value}")
        self._messages.clear()
        self.clear_interrupts()
        self._state = AgentLoopState(self.config.max_steps)
        self._pending_question = None
        self._last_error = None
        self._status = SessionStatus.IDLE
        self.turn_count = 0

    # -- loop --------------------------------------------------------------

    async def _tools_for_run(self) -> ToolSet:
        if self._resolved_tools is None:
            from llm_agent.mcp_bridge import resolve_mcp_servers

            self._resolving = asyncio.ensure_future(
                resolve_mcp_servers(self._tools, config=self.config)
            )
            try:
                self._resolved_tools = await self._resolving
            finally:
                self._resolving = None
        return self._resolved_tools

    def _take_cancel_request(self) -> bool:
        """Consume a cancel requested while no scheduler run was active."""
        if not self._cancel_requested:
            return False
        self._cancel_requested = False
        self._status = SessionStatus.PAUSED
        logger.info("Session cancelled before the agent run started")
        return True

    async def _drive(self) -> AsyncIterator[SessionPhase]:
        phases = self._phases()
        try:
            async for phase in phases:
                yield phase
        finally:
            await phases.aclose()
            self._abandon()

    def _abandon(self) -> None:
        """Settle the status when the phase stream ends without a final phase."""
        if self._run is not None:
            logger.info("Phase stream closed mid-run; cancelling the agent run")
            self._messages = self._run.messages
            self._run.cancel()
            self._run = None
        if self._answer is not None and not self._answer.done():
            self._answer.cancel()
        self._answer = None
        if self._status.is_active:
            self._status = SessionStatus.PAUSED
            self._pending_question = None

    async def _phases(self) -> AsyncIterator[SessionPhase]:
        if self._take_cancel_request():
            yield Cancelled()
            return
        try:
            tools = await self._tools_for_run()
            scheduler = AgentScheduler(
                self.backend,
                self.model,
                tools=tools,
                system_prompt=self.system_prompt,
                output=self.output,
                config=self.config,
            )
        except asyncio.CancelledError:
            if not self._take_cancel_request():
                raise
            yield Cancelled()
            return
        except Exception as exc:
            self._fail(f"{type(exc).__name__}: {exc}")
            yield Failed(self._last_error or "", exc)
            return

        self._state = AgentLoopState(self.config.max_steps)
        while True:
            if self._take_cancel_request():
                yield Cancelled()
                return
            run = scheduler.start(self._messages, state=self._state, interrupts=self._interrupts)
            self._run = run
            async for step in run:
                if isinstance(step, AwaitingUserInput):
                    continue
                yield Running(step)
            self._run = None
            result = run.result
            self._messages = list(result.messages)

            if result.status is RunStatus.AWAITING_USER_INPUT:
                question = result.pending_question or ""
                self._pending_question = question
                self._status = SessionStatus.AWAITING_USER_INPUT
                self._answer = asyncio.get_running_loop().create_future()
                yield WaitingForUser(question)

                answer = await self._answer
                self._answer = None
                if self._status is SessionStatus.PAUSED:
                    logger.info("Session paused while waiting for user input")
                    yield Paused()
                    return

                self._pending_question = None
                self._status = SessionStatus.RUNNING
                if result.pending_call is None:
                    raise RuntimeError("Run paused for user input without a pending ask_user call")
                tool_result = ToolResult(answer if answer else NO_ANSWER)
                self._messages.append(tool_result_message(result.pending_call, tool_result))
                yield Running(ToolResultStep(result.pending_call, tool_result))
                continue

            if result.status is RunStatus.COMPLETED:
                self.turn_count += 1
                self._status = SessionStatus.IDLE
                yield Completed(output=result.output, text=result.text)
            elif result.status is RunStatus.CANCELLED:
                self._cancel_requested = False
                self._status = SessionStatus.PAUSED
                yield Cancelled()
            else:
                self._fail(result.error_description or "Agent run failed")
                yield Failed(self._last_error or "", result.error)
            return

    def _fail(self, description: str) -> None:
        logger.warning("Session failed: %s", description)
        self._last_error = description
        self._status = SessionStatus.FAILED
