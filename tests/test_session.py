"""Tests for ConversationalSession. All mocked (scripted backends, no LLM calls)."""

from __future__ import annotations

import asyncio
from typing import Any, Sequence
from unittest.mock import AsyncMock, patch

import pytest

from llm_agent.config import AgentConfig
from llm_agent.errors import BackendServerError, SessionStateError
from llm_agent.mcp_bridge import MCPServer
from llm_agent.messages import Message, ModelTurn, Role, StopReason, ToolCall, ToolResultContent
from llm_agent.schema import Schema
from llm_agent.session import (
    CONTINUE_MESSAGE,
    INTERRUPTED_TOOL_RESULT,
    NO_ANSWER,
    ConversationalSession,
    SessionStatus,
    repair_dangling_tool_uses,
)
from llm_agent.steps import (
    AskingUser,
    Cancelled,
    Completed,
    Failed,
    Idle,
    Interrupted,
    Paused,
    Running,
    TextResponse,
    Thinking,
    ToolCallStep,
    ToolResultStep,
    WaitingForUser,
)
from llm_agent.tools import ToolResult, ToolSet


class ScriptedBackend:
    """Returns scripted turns in order; exceptions in the script are raised."""

    def __init__(self, script: Sequence[ModelTurn | Exception]) -> None:
        self.script = list(script)
        self.calls: list[list[Message]] = []

    async def execute_step(self, messages, model, system_prompt, tools, tool_choice, output_schema):  # type: ignore[no-untyped-def]
        self.calls.append(list(messages))
        item = self.script.pop(0) if self.script else ModelTurn(stop_reason=StopReason.END_TURN)
        if isinstance(item, Exception):
            raise item
        return item


def _text(text: str) -> ModelTurn:
    return ModelTurn(text_parts=[text], stop_reason=StopReason.END_TURN)


def _ask(question: str, call_id: str = "a1") -> ModelTurn:
    return ModelTurn(
        tool_calls=[ToolCall(call_id, "ask_user", f'{{"question": "{question}"}}')],
        stop_reason=StopReason.TOOL_USE,
    )


async def _collect(phases: Any) -> list[Any]:
    return [phase async for phase in phases]


# ---------------------------------------------------------------------------
# Status table
# ---------------------------------------------------------------------------


class TestSessionStatus:
    def test_active_statuses(self) -> None:
        assert SessionStatus.RUNNING.is_active
        assert SessionStatus.AWAITING_USER_INPUT.is_active
        assert not SessionStatus.PAUSED.is_active

    def test_permissions(self) -> None:
        assert SessionStatus.IDLE.can_run
        assert not SessionStatus.PAUSED.can_run
        assert SessionStatus.PAUSED.can_resume
        assert SessionStatus.FAILED.can_resume
        assert not SessionStatus.RUNNING.can_resume
        assert SessionStatus.AWAITING_USER_INPUT.can_reply
        assert not SessionStatus.RUNNING.can_reply
        assert SessionStatus.RUNNING.can_interrupt
        assert not SessionStatus.IDLE.can_interrupt
        assert SessionStatus.FAILED.can_clear
        assert not SessionStatus.AWAITING_USER_INPUT.can_clear


# ---------------------------------------------------------------------------
# Basic turns
# ---------------------------------------------------------------------------


class TestRun:
    @pytest.mark.asyncio
    async def test_single_turn(self) -> None:
        session = ConversationalSession(ScriptedBackend([_text("Hi there")]), "m")
        phases = await _collect(session.run("Hello"))

        assert [type(p) for p in phases] == [Running, Running, Completed]
        assert isinstance(phases[0].step, Thinking)
        assert phases[1].step == TextResponse("Hi there")
        assert phases[-1] == Completed(output=None, text="Hi there")
        assert session.status is SessionStatus.IDLE
        assert session.phase == Idle()
        assert session.turn_count == 1
        assert [m.role for m in session.messages] == [Role.USER, Role.ASSISTANT]

    @pytest.mark.asyncio
    async def test_history_carries_across_turns(self) -> None:
        backend = ScriptedBackend([_text("One"), _text("Two")])
        session = ConversationalSession(backend, "m", system_prompt="Count.")
        await _collect(session.run("first"))
        await _collect(session.run("second"))

        assert session.turn_count == 2
        assert backend.calls[1] == [
            Message.user("first"),
            Message.assistant("One"),
            Message.user("second"),
        ]

    @pytest.mark.asyncio
    async def test_each_run_gets_fresh_step_budget(self) -> None:
        backend = ScriptedBackend([_text("a"), _text("b")])
        session = ConversationalSession(backend, "m", config=AgentConfig(max_steps=1))
        first = await _collect(session.run("x"))
        second = await _collect(session.run("y"))
        assert isinstance(first[-1], Completed)
        assert isinstance(second[-1], Completed)

    @pytest.mark.asyncio
    async def test_structured_output(self) -> None:
        schema = Schema.object({"n": Schema.integer()}, ["n"])
        session = ConversationalSession(ScriptedBackend([_text('{"n": 4}')]), "m", output=schema)
        phases = await _collect(session.run("count"))
        assert phases[-1].output == {"n": 4}

    def test_run_rejected_when_not_idle(self) -> None:
        session = ConversationalSession(ScriptedBackend([]), "m")
        session._status = SessionStatus.PAUSED
        with pytest.raises(SessionStateError):
            session.run("x")

    def test_resume_without_history(self) -> None:
        session = ConversationalSession(ScriptedBackend([]), "m")
        with pytest.raises(SessionStateError, match="No conversation history"):
            session.resume()

    def test_interrupt_rejected_when_idle(self) -> None:
        session = ConversationalSession(ScriptedBackend([]), "m")
        with pytest.raises(SessionStateError):
            session.interrupt("stop")

    def test_reply_rejected_when_not_waiting(self) -> None:
        session = ConversationalSession(ScriptedBackend([]), "m")
        with pytest.raises(SessionStateError):
            session.reply("answer")


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailure:
    @pytest.mark.asyncio
    async def test_backend_failure_then_clear(self) -> None:
        backend = ScriptedBackend([RuntimeError("503 server error")])
        session = ConversationalSession(backend, "m")
        phases = await _collect(session.run("go"))

        failed = phases[-1]
        assert isinstance(failed, Failed)
        assert "BackendServerError" in failed.error
        assert isinstance(failed.exception, BackendServerError)
        assert session.status is SessionStatus.FAILED
        assert isinstance(session.phase, Failed)
        with pytest.raises(SessionStateError):
            session.run("again")

        session.clear()
        assert session.status is SessionStatus.IDLE
        assert session.messages == []
        assert session.turn_count == 0

    @pytest.mark.asyncio
    async def test_resume_after_failure(self) -> None:
        backend = ScriptedBackend([RuntimeError("503 server error"), _text("Recovered")])
        session = ConversationalSession(backend, "m")
        await _collect(session.run("go"))
        phases = await _collect(session.resume())

        assert phases[-1] == Completed(text="Recovered")
        assert backend.calls[1][-1] == Message.user(CONTINUE_MESSAGE)

    @pytest.mark.asyncio
    async def test_tool_resolution_failure(self) -> None:
        tools = ToolSet.builder().mcp(MCPServer.stdio("files", "npx")).build()
        session = ConversationalSession(ScriptedBackend([]), "m", tools=tools)
        with patch(
            "llm_agent.mcp_bridge.resolve_mcp_servers",
            new=AsyncMock(side_effect=RuntimeError("spawn failed")),
        ):
            phases = await _collect(session.run("go"))
        assert isinstance(phases[-1], Failed)
        assert "spawn failed" in phases[-1].error
        assert session.status is SessionStatus.FAILED


# ---------------------------------------------------------------------------
# ask_user
# ---------------------------------------------------------------------------


class TestAskUser:
    @pytest.mark.asyncio
    async def test_reply_continues_run(self) -> None:
        backend = ScriptedBackend([_ask("Which city?"), _text("Tokyo, noted.")])
        session = ConversationalSession(backend, "m", interactive=True)

        phases: list[Any] = []
        async for phase in session.run("Plan a trip"):
            phases.append(phase)
            if isinstance(phase, WaitingForUser):
                assert session.status is SessionStatus.AWAITING_USER_INPUT
                assert session.waiting_for_answer
                assert session.pending_question == "Which city?"
                assert session.phase == WaitingForUser("Which city?")
                session.reply("Tokyo")

        assert phases[2] == Running(AskingUser("Which city?"))
        assert phases[3] == WaitingForUser("Which city?")
        result_phase = phases[4]
        assert isinstance(result_phase, Running)
        assert isinstance(result_phase.step, ToolResultStep)
        assert result_phase.step.result == ToolResult("Tokyo")
        assert phases[-1] == Completed(text="Tokyo, noted.")

        answer_message = backend.calls[1][-1]
        assert answer_message.tool_results[0].tool_call_id == "a1"
        assert answer_message.tool_results[0].content == "Tokyo"
        assert session.status is SessionStatus.IDLE
        assert session.pending_question is None

    @pytest.mark.asyncio
    async def test_empty_reply(self) -> None:
        backend = ScriptedBackend([_ask("Anything else?"), _text("ok")])
        session = ConversationalSession(backend, "m", interactive=True)
        async for phase in session.run("go"):
            if isinstance(phase, WaitingForUser):
                session.reply("")
        assert backend.calls[1][-1].tool_results[0].content == NO_ANSWER

    @pytest.mark.asyncio
    async def test_interrupt_while_waiting(self) -> None:
        backend = ScriptedBackend([_ask("Budget?"), _text("ok")])
        session = ConversationalSession(backend, "m", interactive=True)
        phases: list[Any] = []
        async for phase in session.run("go"):
            phases.append(phase)
            if isinstance(phase, WaitingForUser):
                session.interrupt("Keep it cheap")
                session.reply("500")

        assert Running(Interrupted("Keep it cheap")) in phases
        assert backend.calls[1][-1] == Message.user("Keep it cheap")

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_then_resume(self) -> None:
        backend = ScriptedBackend([_ask("Dates?"), _text("Resumed.")])
        session = ConversationalSession(backend, "m", interactive=True)

        phases: list[Any] = []
        async for phase in session.run("Plan"):
            phases.append(phase)
            if isinstance(phase, WaitingForUser):
                session.cancel()

        assert phases[-1] == Paused()
        assert session.status is SessionStatus.PAUSED
        assert session.phase == Paused()
        assert session.pending_question is None

        resumed = await _collect(session.resume())
        assert resumed[-1] == Completed(text="Resumed.")
        sent = backend.calls[1]
        assert sent[-2].tool_results[0].tool_call_id == "a1"
        assert sent[-2].tool_results[0].content == INTERRUPTED_TOOL_RESULT
        assert sent[-1] == Message.user(CONTINUE_MESSAGE)

    @pytest.mark.asyncio
    async def test_not_interactive_has_no_ask_user(self) -> None:
        backend = ScriptedBackend([_ask("?"), _text("ok")])
        session = ConversationalSession(backend, "m")
        phases = await _collect(session.run("go"))
        result_steps = [
            p.step for p in phases if isinstance(p, Running) and isinstance(p.step, ToolResultStep)
        ]
        assert result_steps[0].result.is_error
        assert not any(isinstance(p, WaitingForUser) for p in phases)


# ---------------------------------------------------------------------------
# Cancellation while running
# ---------------------------------------------------------------------------


class TestCancelWhileRunning:
    @pytest.mark.asyncio
    async def test_cancel_then_resume(self) -> None:
        gate = asyncio.Event()

        async def slow(path: str) -> str:
            """Read a slow file."""
            await gate.wait()
            return "contents"

        tools = ToolSet.builder().function(slow).build()
        backend = ScriptedBackend([
            ModelTurn(
                tool_calls=[ToolCall("t1", "slow", '{"path": "a.txt"}')],
                stop_reason=StopReason.TOOL_USE,
            ),
            _text("Picked up again."),
        ])
        session = ConversationalSession(backend, "m", tools=tools)

        phases: list[Any] = []
        async for phase in session.run("read it"):
            phases.append(phase)
            if isinstance(phase, Running) and isinstance(phase.step, ToolCallStep):
                with pytest.raises(SessionStateError):
                    session.clear()
                session.cancel()

        assert phases[-1] == Cancelled()
        assert session.status is SessionStatus.PAUSED
        assert session.turn_count == 0

        resumed = await _collect(session.resume())
        assert resumed[-1] == Completed(text="Picked up again.")
        repaired = backend.calls[1][-2]
        assert repaired.tool_results[0].tool_call_id == "t1"
        assert repaired.tool_results[0].content == INTERRUPTED_TOOL_RESULT

    @pytest.mark.asyncio
    async def test_cancel_before_first_phase(self) -> None:
        backend = ScriptedBackend([_text("done"), _text("Back.")])
        session = ConversationalSession(backend, "m")

        phases = session.run("hi")
        session.cancel()
        collected = await _collect(phases)

        assert collected == [Cancelled()]
        assert backend.calls == []
        assert session.status is SessionStatus.PAUSED

        resumed = await _collect(session.resume())
        assert resumed[-1] == Completed(text="done")

    @pytest.mark.asyncio
    async def test_cancel_during_tool_resolution(self) -> None:
        tools = ToolSet.builder().mcp(MCPServer.stdio("files", "npx")).build()
        backend = ScriptedBackend([_text("never")])
        session = ConversationalSession(backend, "m", tools=tools)
        started = asyncio.Event()

        async def hanging_resolve(tool_set: ToolSet, config: AgentConfig | None = None) -> ToolSet:
            started.set()
            await asyncio.Event().wait()
            return tool_set

        with patch("llm_agent.mcp_bridge.resolve_mcp_servers", new=hanging_resolve):
            task = asyncio.create_task(_collect(session.run("go")))
            await started.wait()
            session.cancel()
            phases = await asyncio.wait_for(task, timeout=5)

        assert phases == [Cancelled()]
        assert backend.calls == []
        assert session.status is SessionStatus.PAUSED

    @pytest.mark.asyncio
    async def test_cancel_between_reply_and_next_step(self) -> None:
        backend = ScriptedBackend([_ask("City?"), _text("never")])
        session = ConversationalSession(backend, "m", interactive=True)

        phases: list[Any] = []
        async for phase in session.run("Plan"):
            phases.append(phase)
            if isinstance(phase, WaitingForUser):
                session.reply("Oslo")
            elif isinstance(phase, Running) and isinstance(phase.step, ToolResultStep):
                session.cancel()

        assert phases[-1] == Cancelled()
        assert len(backend.calls) == 1
        assert session.status is SessionStatus.PAUSED
        assert session.messages[-1].tool_results[0].content == "Oslo"

    def test_cancel_rejected_when_idle(self) -> None:
        session = ConversationalSession(ScriptedBackend([]), "m")
        with pytest.raises(SessionStateError):
            session.cancel()


# ---------------------------------------------------------------------------
# Closing the phase stream early
# ---------------------------------------------------------------------------


class TestClosePhaseStream:
    @pytest.mark.asyncio
    async def test_close_mid_run_pauses_session(self) -> None:
        gate = asyncio.Event()

        async def slow(path: str) -> str:
            """Read a slow file."""
            await gate.wait()
            return "contents"

        tools = ToolSet.builder().function(slow).build()
        backend = ScriptedBackend([
            ModelTurn(
                tool_calls=[ToolCall("t1", "slow", '{"path": "a.txt"}')],
                stop_reason=StopReason.TOOL_USE,
            ),
            _text("Back again."),
        ])
        session = ConversationalSession(backend, "m", tools=tools)

        phases = session.run("read it")
        async for phase in phases:
            if isinstance(phase, Running) and isinstance(phase.step, ToolCallStep):
                break
        await phases.aclose()  # type: ignore[attr-defined]

        assert session.status is SessionStatus.PAUSED
        assert not session.is_running

        resumed = await _collect(session.resume())
        assert resumed[-1] == Completed(text="Back again.")
        repaired = backend.calls[1][-2]
        assert repaired.tool_results[0].tool_call_id == "t1"
        assert repaired.tool_results[0].content == INTERRUPTED_TOOL_RESULT

    @pytest.mark.asyncio
    async def test_close_while_waiting_for_answer(self) -> None:
        session = ConversationalSession(ScriptedBackend([_ask("Dates?")]), "m", interactive=True)

        phases = session.run("Plan")
        async for phase in phases:
            if isinstance(phase, WaitingForUser):
                break
        await phases.aclose()  # type: ignore[attr-defined]

        assert session.status is SessionStatus.PAUSED
        assert session.pending_question is None
        with pytest.raises(SessionStateError):
            session.reply("too late")
        session.clear()
        assert session.status is SessionStatus.IDLE


# ---------------------------------------------------------------------------
# Tool resolution and history repair
# ---------------------------------------------------------------------------


class TestToolResolution:
    @pytest.mark.asyncio
    async def test_mcp_resolved_once(self) -> None:
        tools = ToolSet.builder().mcp(MCPServer.stdio("files", "npx")).build()
        backend = ScriptedBackend([_text("a"), _text("b")])
        session = ConversationalSession(backend, "m", tools=tools)

        resolver = AsyncMock(return_value=ToolSet())
        with patch("llm_agent.mcp_bridge.resolve_mcp_servers", new=resolver):
            await _collect(session.run("one"))
            await _collect(session.run("two"))
        resolver.assert_awaited_once()


class TestRepairDanglingToolUses:
    def test_nothing_dangling(self) -> None:
        assert repair_dangling_tool_uses([Message.user("hi"), Message.assistant("yo")]) is None

    def test_answers_only_missing_results(self) -> None:
        turn = ModelTurn(tool_calls=[ToolCall("1", "a"), ToolCall("2", "b")])
        answered = Message(Role.USER, (ToolResultContent("1", "a", "done"),))
        repair = repair_dangling_tool_uses([Message.user("x"), turn.to_message(), answered])
        assert repair is not None
        assert [r.tool_call_id for r in repair.tool_results] == ["2"]
        assert repair.role is Role.USER
