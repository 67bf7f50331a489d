"""Tests for termination policies and duplicate-call detection."""

from __future__ import annotations

import pytest

from llm_agent.config import AgentConfig
from llm_agent.loop_state import AgentLoopState
from llm_agent.messages import ModelTurn, StopReason, ToolCall
from llm_agent.termination import (
    DecisionKind,
    DuplicateDetectionPolicy,
    StandardTerminationPolicy,
    TerminationReasonKind,
)


def _call(name: str = "search", args: str = '{"q": "x"}', call_id: str = "c") -> ToolCall:
    return ToolCall(call_id, name, args)


def _tool_turn(*calls: ToolCall) -> ModelTurn:
    return ModelTurn(tool_calls=calls, stop_reason=StopReason.TOOL_USE)


# ---------------------------------------------------------------------------
# StandardTerminationPolicy
# ---------------------------------------------------------------------------


class TestStandardPolicy:
    @pytest.mark.asyncio
    async def test_tool_calls_continue_even_with_end_turn(self) -> None:
        turn = ModelTurn(tool_calls=[_call()], stop_reason=StopReason.END_TURN)
        decision = await StandardTerminationPolicy().decide(turn, AgentLoopState(5))
        assert decision.kind is DecisionKind.CONTINUE_WITH_TOOLS
        assert decision.tool_calls == (_call(),)

    @pytest.mark.asyncio
    async def test_text_terminates_with_output(self) -> None:
        turn = ModelTurn(text_parts=["Done."], stop_reason=StopReason.END_TURN)
        decision = await StandardTerminationPolicy().decide(turn, AgentLoopState(5))
        assert decision.kind is DecisionKind.TERMINATE_WITH_OUTPUT
        assert decision.output == "Done."

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("stop_reason", "kind"),
        [
            (StopReason.TOOL_USE, TerminationReasonKind.UNEXPECTED_STOP_REASON),
            (StopReason.MAX_TOKENS, TerminationReasonKind.UNEXPECTED_STOP_REASON),
            (None, TerminationReasonKind.EMPTY_RESPONSE),
            (StopReason.END_TURN, TerminationReasonKind.COMPLETED),
            (StopReason.STOP_SEQUENCE, TerminationReasonKind.COMPLETED),
        ],
    )
    async def test_empty_turns(self, stop_reason: StopReason | None, kind: TerminationReasonKind) -> None:
        turn = ModelTurn(text_parts=["  "], stop_reason=stop_reason)
        decision = await StandardTerminationPolicy().decide(turn, AgentLoopState(5))
        assert decision.kind is DecisionKind.TERMINATE
        assert decision.reason is not None
        assert decision.reason.kind is kind
        assert not decision.reason.is_tool_loop


# ---------------------------------------------------------------------------
# DuplicateDetectionPolicy
# ---------------------------------------------------------------------------


class TestDuplicateDetection:
    @pytest.mark.asyncio
    async def test_passes_through_non_tool_decisions(self) -> None:
        turn = ModelTurn(text_parts=["hi"], stop_reason=StopReason.END_TURN)
        decision = await DuplicateDetectionPolicy().decide(turn, AgentLoopState(5))
        assert decision.kind is DecisionKind.TERMINATE_WITH_OUTPUT

    @pytest.mark.asyncio
    async def test_duplicate_limit(self) -> None:
        state = AgentLoopState(10)
        policy = DuplicateDetectionPolicy()
        await state.record_tool_calls([_call(), _call()])
        decision = await policy.decide(_tool_turn(_call()), state)
        assert decision.kind is DecisionKind.TERMINATE
        assert decision.reason is not None
        assert decision.reason.kind is TerminationReasonKind.DUPLICATE_TOOL_CALL
        assert decision.reason.tool_name == "search"
        assert decision.reason.count == 3
        assert decision.reason.is_tool_loop

    @pytest.mark.asyncio
    async def test_second_identical_call_allowed(self) -> None:
        state = AgentLoopState(10)
        await state.record_tool_call(_call())
        decision = await DuplicateDetectionPolicy().decide(_tool_turn(_call()), state)
        assert decision.kind is DecisionKind.CONTINUE_WITH_TOOLS

    @pytest.mark.asyncio
    async def test_argument_order_does_not_evade_detection(self) -> None:
        state = AgentLoopState(10)
        await state.record_tool_calls([
            _call(args='{"a": 1, "b": 2}'),
            _call(args='{"b":2,"a":1}'),
        ])
        decision = await DuplicateDetectionPolicy().decide(
            _tool_turn(_call(args='{ "a" : 1, "b" : 2 }')), state,
        )
        assert decision.reason is not None
        assert decision.reason.kind is TerminationReasonKind.DUPLICATE_TOOL_CALL

    @pytest.mark.asyncio
    async def test_consecutive_limit(self) -> None:
        state = AgentLoopState(10)
        policy = DuplicateDetectionPolicy(max_duplicates=10, max_consecutive=3)
        await state.record_tool_calls([_call(), _call()])
        decision = await policy.decide(_tool_turn(_call()), state)
        assert decision.reason is not None
        assert decision.reason.kind is TerminationReasonKind.CONSECUTIVE_TOOL_CALL
        assert decision.reason.count == 3

    @pytest.mark.asyncio
    async def test_interleaved_calls_are_not_consecutive(self) -> None:
        state = AgentLoopState(10)
        policy = DuplicateDetectionPolicy(max_duplicates=10, max_consecutive=3)
        await state.record_tool_calls([_call(), _call(args='{"q": "y"}'), _call()])
        decision = await policy.decide(_tool_turn(_call()), state)
        assert decision.kind is DecisionKind.CONTINUE_WITH_TOOLS

    @pytest.mark.asyncio
    async def test_per_tool_limit(self) -> None:
        state = AgentLoopState(10)
        policy = DuplicateDetectionPolicy(max_tool_calls_per_tool=2)
        await state.record_tool_calls([_call(args='{"q": "1"}'), _call(args='{"q": "2"}')])
        decision = await policy.decide(_tool_turn(_call(args='{"q": "3"}')), state)
        assert decision.reason is not None
        assert decision.reason.kind is TerminationReasonKind.MAX_TOOL_CALLS_PER_TOOL

    @pytest.mark.asyncio
    async def test_per_tool_limit_disabled(self) -> None:
        state = AgentLoopState(20)
        policy = DuplicateDetectionPolicy(max_tool_calls_per_tool=None)
        await state.record_tool_calls([_call(args=f'{{"q": {i}}}') for i in range(10)])
        decision = await policy.decide(_tool_turn(_call(args='{"q": 99}')), state)
        assert decision.kind is DecisionKind.CONTINUE_WITH_TOOLS

    @pytest.mark.asyncio
    async def test_calls_within_one_turn_count(self) -> None:
        state = AgentLoopState(10)
        decision = await DuplicateDetectionPolicy().decide(
            _tool_turn(_call(call_id="1"), _call(call_id="2"), _call(call_id="3")), state,
        )
        assert decision.reason is not None
        assert decision.reason.kind is TerminationReasonKind.DUPLICATE_TOOL_CALL

    @pytest.mark.asyncio
    async def test_ask_user_never_counted(self) -> None:
        state = AgentLoopState(10)
        ask = _call(name="ask_user", args='{"question": "?"}')
        decision = await DuplicateDetectionPolicy(max_duplicates=1, max_consecutive=1).decide(
            _tool_turn(ask, ask, ask), state,
        )
        assert decision.kind is DecisionKind.CONTINUE_WITH_TOOLS

    def test_from_config(self) -> None:
        config = AgentConfig(
            max_duplicate_tool_calls=4, max_consecutive_same_calls=6, max_tool_calls_per_tool=None,
        )
        policy = DuplicateDetectionPolicy.from_config(config)
        assert policy.max_duplicates == 4
        assert policy.max_consecutive == 6
        assert policy.max_tool_calls_per_tool is None
