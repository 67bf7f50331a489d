"""Agent step scheduler: the loop that alternates model turns and tool calls.

Usage:
    scheduler = AgentScheduler(
        LiteLLMBackend(), "gpt-4o",
        tools=await resolve_mcp_servers(tools),
        system_prompt="You are a careful researcher.",
        output=Report,                      # Schema, DynamicStructure or BaseModel
    )
    run = scheduler.start([Message.user("Research tides")])
    async for step in run:
        ...                                 # Thinking, ToolCallStep, ToolResultStep, ...
    report = run.result.unwrap()

Each iteration: take queued interrupts, spend one step of budget, call the
backend once, then either run the requested tools (sequentially, in order)
or try to finish with the turn's text. Tool failures are fed back to the
model as error results; backend failures end the run. Nothing is retried
here except asking the model to restate an undecodable final payload.

``ask_user`` calls pause the run with ``RunStatus.AWAITING_USER_INPUT``. The
caller appends the answer as that call's tool result and starts again with
the same ``AgentLoopState``.
"""

from __future__ import annotations

import asyncio
import json as _json
import logging
import re
from typing import Any, Callable, Sequence, Union

import jsonschema
from pydantic import BaseModel, ValidationError

from llm_agent.backends import AgentBackend
from llm_agent.config import AgentConfig
from llm_agent.errors import (
    AgentError,
    OutputDecodingError,
    StepLimitExceededError,
    ToolLoopDetectedError,
    UnresolvedMCPPlaceholdersError,
    wrap_error,
)
from llm_agent.loop_state import AgentLoopState
from llm_agent.messages import Message, ModelTurn, Role, ToolCall, ToolResultContent, Usage
from llm_agent.schema import DynamicStructure, Schema
from llm_agent.steps import (
    AgentRunResult,
    AgentStep,
    AskingUser,
    AwaitingUserInput,
    FinalResponse,
    Interrupted,
    RunStatus,
    TextResponse,
    Thinking,
    ToolCallStep,
    ToolResultStep,
)
from llm_agent.termination import (
    DecisionKind,
    DuplicateDetectionPolicy,
    TerminationDecision,
    TerminationPolicy,
    TerminationReasonKind,
)
from llm_agent.tools import ASK_USER_TOOL_NAME, ToolChoice, ToolResult, ToolSet, _truncate

logger = logging.getLogger(__name__)

FINAL_OUTPUT_REQUEST = "Please provide your final response in the required JSON format."
"""Sent after a final payload fails to decode or validate."""

DEFAULT_QUESTION = "Please provide additional information."
"""Question used when an ask_user call carries none."""

ONE_QUESTION_AT_A_TIME = "Only one question can be asked at a time. Ask again after the answer."

OutputSpec = Union[Schema, DynamicStructure, "type[BaseModel]", None]


def strip_fences(content: str) -> str:
    """Strip markdown code fences around a JSON payload."""
    content = content.strip()
    content = re.sub(r"^```(?:json|JSON)?\s*\n?", "", content)
    content = re.sub(r"\n?\s*```\s*$", "", content)
    return content.strip()


def _resolve_output(output: OutputSpec) -> tuple[Schema | None, Callable[[Any], Any] | None]:
    """Canonical schema plus a validator that returns the typed output."""
    if output is None:
        return None, None
    if isinstance(output, type) and issubclass(output, BaseModel):
        model = output
        return Schema.from_dict(model.model_json_schema()), model.model_validate
    if isinstance(output, DynamicStructure):
        output = output.to_schema()
    if isinstance(output, Schema):
        schema_dict = output.to_dict()

        def _validate(data: Any) -> Any:
            jsonschema.validate(data, schema_dict)
            return data

        return output, _validate
    raise TypeError(
        f"output must be a Schema, DynamicStructure or pydantic model class, got {output!r}"
    )


def question_from_call(call: ToolCall) -> str:
    try:
        question = call.parsed_arguments().get("question")
    except ValueError:
        question = None
    if isinstance(question, str) and question.strip():
        return question.strip()
    return DEFAULT_QUESTION


def tool_result_message(call: ToolCall, result: ToolResult) -> Message:
    return Message(
        Role.USER,
        (ToolResultContent(call.id, call.name, result.content, result.is_error),),
    )


class AgentScheduler:
    """Drives runs of one agent configuration. Holds no per-run state."""

    def __init__(
        self,
        backend: AgentBackend,
        model: str,
        *,
        tools: ToolSet | None = None,
        system_prompt: str | None = None,
        output: OutputSpec = None,
        tool_choice: ToolChoice | None = None,
        config: AgentConfig | None = None,
        termination_policy: TerminationPolicy | None = None,
    ) -> None:
        self.backend = backend
        self.model = model
        self.tools = tools if tools is not None else ToolSet()
        self.system_prompt = system_prompt
        self.tool_choice = tool_choice
        self.config = config or AgentConfig()
        self.termination_policy = termination_policy or DuplicateDetectionPolicy.from_config(self.config)
        self.output_schema, self._validate_output = _resolve_output(output)

    def start(
        self,
        messages: Sequence[Message],
        *,
        state: AgentLoopState | None = None,
        interrupts: asyncio.Queue[str] | None = None,
    ) -> AgentRun:
        """Begin a run. Iterate the returned ``AgentRun`` to drive it.

        Raises UnresolvedMCPPlaceholdersError or DuplicateToolNameError
        (both ValueErrors) when the tool set is not ready to use.
        """
        if self.tools.has_placeholders:
            names = ", ".join(t.name for t in self.tools.placeholders)
            raise UnresolvedMCPPlaceholdersError(
                f"Tool set still contains MCP placeholders ({names}). "
                "Call resolve_mcp_servers() first."
            )
        self.tools.ensure_unique_names()
        return AgentRun(
            self,
            list(messages),
            state or AgentLoopState(self.config.max_steps),
            interrupts,
        )

    def decode_output(self, text: str) -> Any:
        """Parse and validate a final payload against the canonical schema.

        Raises OutputDecodingError, or RuntimeError when no output type is configured.
        """
        if self._validate_output is None:
            raise RuntimeError("No output schema configured; there is no final payload to decode")
        payload = strip_fences(text)
        try:
            data = _json.loads(payload)
        except _json.JSONDecodeError as exc:
            raise OutputDecodingError(f"Final response is not valid JSON: {exc}", original=exc) from exc
        try:
            return self._validate_output(data)
        except (jsonschema.ValidationError, ValidationError) as exc:
            message = getattr(exc, "message", None) or str(exc)
            raise OutputDecodingError(
                f"Final response does not match the output schema: {message}", original=exc,
            ) from exc


_SENTINEL = object()


class AgentRun:
    """One run: an async iterator of ``AgentStep`` with a result at the end.

    The loop runs in its own task and feeds a queue; steps arrive in the
    order they happen. ``cancel()`` stops the loop at its current await
    point and ends the run as ``RunStatus.CANCELLED``.
    """

    def __init__(
        self,
        scheduler: AgentScheduler,
        messages: list[Message],
        state: AgentLoopState,
        interrupts: asyncio.Queue[str] | None,
    ) -> None:
        self._scheduler = scheduler
        self._messages = messages
        self.state = state
        self._interrupts = interrupts
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._result: AgentRunResult | None = None
        self._cancel_requested = False
        self._usage = Usage()
        self._steps = 0
        self._decode_retries = 0
        self.steps: list[AgentStep] = []

    # -- consumer side -----------------------------------------------------

    def _ensure_started(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._produce())

    def __aiter__(self) -> AgentRun:
        return self

    async def __anext__(self) -> AgentStep:
        self._ensure_started()
        item = await self._queue.get()
        if item is _SENTINEL:
            raise StopAsyncIteration
        return item

    async def wait(self) -> AgentRunResult:
        """Drive the run to the end and return its result."""
        async for _ in self:
            pass
        return self.result

    def cancel(self) -> None:
        """Request cancellation. Safe to call at any time."""
        self._cancel_requested = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        elif self._task is None:
            self._ensure_started()

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def result(self) -> AgentRunResult:
        """The run's outcome. Available after the steps are fully consumed."""
        if self._result is None:
            raise RuntimeError("Run not yet finished. Iterate first.")
        return self._result

    # -- producer side -----------------------------------------------------

    async def _emit(self, step: AgentStep) -> None:
        self.steps.append(step)
        await self._queue.put(step)

    def _finish(self, status: RunStatus, **fields: Any) -> None:
        self._result = AgentRunResult(
            status=status,
            messages=list(self._messages),
            steps=self._steps,
            usage=self._usage,
            **fields,
        )
        self._queue.put_nowait(_SENTINEL)

    async def _produce(self) -> None:
        try:
            await self._loop()
        except asyncio.CancelledError:
            logger.info("Agent run cancelled after %d step(s)", self._steps)
            self._finish(RunStatus.CANCELLED)
            raise
        except Exception as exc:
            error = exc if isinstance(exc, AgentError) else AgentError(str(exc), original=exc)
            logger.warning("Agent run failed after %d step(s): %s", self._steps, error)
            self._finish(RunStatus.FAILED, error=error)

    def _check_cancelled(self) -> None:
        if self._cancel_requested:
            raise asyncio.CancelledError()

    async def _drain_interrupts(self) -> None:
        if self._interrupts is None:
            return
        while True:
            try:
                text = self._interrupts.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._messages.append(Message.user(text))
            await self._emit(Interrupted(text))

    async def _loop(self) -> None:
        scheduler = self._scheduler
        while True:
            self._check_cancelled()
            await self._drain_interrupts()

            try:
                self._steps = await self.state.increment_step()
            except StepLimitExceededError as exc:
                logger.warning("Agent stopped: %s", exc)
                self._finish(RunStatus.FAILED, error=exc)
                return

            try:
                turn = await scheduler.backend.execute_step(
                    list(self._messages),
                    scheduler.model,
                    scheduler.system_prompt,
                    scheduler.tools,
                    scheduler.tool_choice,
                    scheduler.output_schema,
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error = wrap_error(exc)
                logger.warning("Backend call failed at step %d: %s", self._steps, error)
                self._finish(RunStatus.FAILED, error=error)
                return

            self._usage = self._usage + turn.usage
            logger.debug(
                "Step %d: %d text part(s), %d tool call(s), stop=%s",
                self._steps, len(turn.text_parts), len(turn.tool_calls),
                turn.stop_reason.value if turn.stop_reason else None,
            )
            await self._emit(Thinking(turn))
            assistant_message = turn.to_message()
            if assistant_message.contents:
                self._messages.append(assistant_message)

            decision = await scheduler.termination_policy.decide(turn, self.state)
            if decision.kind is DecisionKind.CONTINUE_WITH_TOOLS:
                if await self._run_tools(decision.tool_calls):
                    return
                continue

            if await self._finish_turn(turn, decision):
                return

    async def _run_tools(self, calls: tuple[ToolCall, ...]) -> bool:
        """Execute calls in order. True when the run paused for the user.

        An ``ask_user`` call is held back while the other calls of the turn
        run; its answer becomes its tool result once the caller replies.
        """
        tools = self._scheduler.tools
        pending: ToolCall | None = None
        question = ""
        for call in calls:
            self._check_cancelled()
            await self._emit(ToolCallStep(call))

            if call.name == ASK_USER_TOOL_NAME and ASK_USER_TOOL_NAME in tools:
                if pending is None:
                    pending = call
                    question = question_from_call(call)
                    await self._emit(AskingUser(question))
                    continue
                result = ToolResult.error(ONE_QUESTION_AT_A_TIME)
            else:
                try:
                    result = await tools.execute(call.name, call.arguments)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.warning("Tool %s failed: %s", call.name, exc)
                    result = ToolResult.error(f"Error: {exc}")
                limit = self._scheduler.config.tool_result_max_length
                if len(result.content) > limit:
                    result = ToolResult(_truncate(result.content, limit), result.is_error)
                await self.state.record_tool_call(call)

            self._messages.append(tool_result_message(call, result))
            await self._emit(ToolResultStep(call, result))

        if pending is None:
            return False
        await self._emit(AwaitingUserInput(question))
        logger.info("Agent waiting for user input: %s", question)
        self._finish(
            RunStatus.AWAITING_USER_INPUT,
            pending_question=question,
            pending_call=pending,
        )
        return True

    async def _finish_turn(self, turn: ModelTurn, decision: TerminationDecision) -> bool:
        """Handle a turn without tool calls. True when the run is over."""
        scheduler = self._scheduler
        reason = decision.reason

        if reason is not None and reason.is_tool_loop:
            error = ToolLoopDetectedError(reason.tool_name or "", reason.count, reason.describe())
            self._finish(RunStatus.FAILED, error=error)
            return True

        if scheduler.output_schema is None:
            if decision.kind is DecisionKind.TERMINATE_WITH_OUTPUT or (
                reason is not None and reason.kind is TerminationReasonKind.COMPLETED
            ):
                text = decision.output or ""
                await self._emit(TextResponse(text))
                await self.state.mark_completed()
                self._finish(RunStatus.COMPLETED, text=text)
                return True
            error = AgentError(f"Agent stopped without a response ({reason.describe() if reason else 'unknown'})")
            self._finish(RunStatus.FAILED, error=error)
            return True

        try:
            output = scheduler.decode_output(decision.output or "")
        except OutputDecodingError as exc:
            if self._decode_retries >= scheduler.config.max_decode_retries:
                logger.warning("Giving up on final output after %d retries: %s", self._decode_retries, exc)
                self._finish(RunStatus.FAILED, error=exc)
                return True
            self._decode_retries += 1
            logger.info(
                "Final output rejected (%s); requesting again (%d/%d)",
                exc, self._decode_retries, scheduler.config.max_decode_retries,
            )
            self._messages.append(Message.user(FINAL_OUTPUT_REQUEST))
            return False

        await self._emit(FinalResponse(output))
        await self.state.mark_completed()
        self._finish(RunStatus.COMPLETED, output=output, text=turn.text)
        return True


async def run_agent(
    backend: AgentBackend,
    model: str,
    messages: str | Sequence[Message],
    *,
    tools: ToolSet | None = None,
    system_prompt: str | None = None,
    output: OutputSpec = None,
    tool_choice: ToolChoice | None = None,
    config: AgentConfig | None = None,
) -> AgentRunResult:
    """Resolve MCP servers, run the agent to the end and return its result."""
    from llm_agent.mcp_bridge import resolve_mcp_servers

    if isinstance(messages, str):
        messages = [Message.user(messages)]
    resolved = await resolve_mcp_servers(tools, config=config) if tools is not None else None
    scheduler = AgentScheduler(
        backend,
        model,
        tools=resolved,
        system_prompt=system_prompt,
        output=output,
        tool_choice=tool_choice,
        config=config,
    )
    return await scheduler.start(messages).wait()
