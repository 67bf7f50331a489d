"""Tests for messages, function tools, tool sets and the ask_user tool."""

from __future__ import annotations

import json
from typing import Literal, Optional

import pytest
from pydantic import BaseModel

from llm_agent.errors import DuplicateToolNameError, ToolExecutionError, ToolNotFoundError
from llm_agent.messages import Message, ModelTurn, Role, ToolCall, ToolUseContent, Usage
from llm_agent.schema import Schema, SchemaKind
from llm_agent.schema_adapters import ConstraintType, OpenAISchemaAdapter
from llm_agent.tools import (
    ASK_USER_TOOL_NAME,
    AskUserTool,
    FunctionTool,
    ToolChoice,
    ToolChoiceKind,
    ToolSet,
    _truncate,
    callable_to_schema,
)


class Address(BaseModel):
    city: str
    zip_code: Optional[str] = None


def search(query: str, limit: int = 10, mode: Literal["fast", "deep"] = "fast") -> list[str]:
    """Search the index.

    Longer explanation that is not part of the description.
    """
    return [f"{query}:{i}" for i in range(min(limit, 2))]


async def lookup(address: Address) -> dict:
    """Look up an address."""
    return {"city": address.city, "zip": address.zip_code}


def explode(reason: str) -> str:
    raise RuntimeError(reason)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class TestMessages:
    def test_tool_call_parsed_arguments(self) -> None:
        assert ToolCall("1", "t", '{"a": 1}').parsed_arguments() == {"a": 1}
        assert ToolCall("1", "t", "  ").parsed_arguments() == {}
        with pytest.raises(ValueError):
            ToolCall("1", "t", "[1]").parsed_arguments()
        with pytest.raises(ValueError):
            ToolCall("1", "t", "{bad").parsed_arguments()

    def test_turn_to_message(self) -> None:
        call = ToolCall("c1", "search", '{"query": "x"}')
        turn = ModelTurn(text_parts=["Let me ", "look."], tool_calls=[call])
        message = turn.to_message()
        assert message.role is Role.ASSISTANT
        assert message.text_content == "Let me look."
        assert message.tool_uses == [ToolUseContent("c1", "search", '{"query": "x"}')]
        assert turn.has_tool_calls

    def test_usage_adds(self) -> None:
        total = Usage(10, 2) + Usage(5, 1)
        assert total == Usage(15, 3)
        assert total.total_tokens == 18

    def test_message_factories(self) -> None:
        assert Message.user("hi").role is Role.USER
        assert Message.assistant("ok").text_content == "ok"


# ---------------------------------------------------------------------------
# Schema generation from callables
# ---------------------------------------------------------------------------


class TestCallableToSchema:
    def test_required_from_defaults(self) -> None:
        schema = callable_to_schema(search)
        assert schema.required == frozenset({"query"})
        assert schema.properties["limit"].kind is SchemaKind.INTEGER
        assert schema.properties["mode"].enum == ("fast", "deep")

    def test_pydantic_parameter_resolves_refs(self) -> None:
        schema = callable_to_schema(lookup)
        address = schema.properties["address"]
        assert address.is_object
        assert address.required == frozenset({"city"})
        assert address.properties["zip_code"].kind is SchemaKind.STRING

    def test_untyped_parameter_rejected(self) -> None:
        def untyped(x):  # type: ignore[no-untyped-def]
            return x

        with pytest.raises(ValueError, match="no type annotation"):
            callable_to_schema(untyped)

    def test_unsupported_type_rejected(self) -> None:
        def odd(x: set) -> None:  # type: ignore[type-arg]
            return None

        with pytest.raises(ValueError, match="Unsupported type"):
            callable_to_schema(odd)


# ---------------------------------------------------------------------------
# FunctionTool
# ---------------------------------------------------------------------------


class TestFunctionTool:
    def test_name_and_description(self) -> None:
        tool = FunctionTool.from_callable(search)
        assert tool.name == "search"
        assert tool.description == "Search the index."

    def test_tool_description_override(self) -> None:
        def helper(x: str) -> str:
            """Docstring."""
            return x

        helper.__tool_description__ = "Custom text"  # type: ignore[attr-defined]
        assert FunctionTool(helper).description == "Custom text"

    @pytest.mark.asyncio
    async def test_sync_function(self) -> None:
        result = await FunctionTool(search).execute('{"query": "tides", "limit": 5}')
        assert not result.is_error
        assert json.loads(result.content) == ["tides:0", "tides:1"]

    @pytest.mark.asyncio
    async def test_async_function_with_model_argument(self) -> None:
        result = await FunctionTool(lookup).execute(b'{"address": {"city": "Oslo"}}')
        assert json.loads(result.content) == {"city": "Oslo", "zip": None}

    @pytest.mark.asyncio
    async def test_invalid_json_is_error_result(self) -> None:
        result = await FunctionTool(search).execute("{not json")
        assert result.is_error
        assert "Invalid JSON" in result.content

    @pytest.mark.asyncio
    async def test_non_object_is_error_result(self) -> None:
        result = await FunctionTool(search).execute("[1, 2]")
        assert result.is_error
        assert "JSON object" in result.content

    @pytest.mark.asyncio
    async def test_argument_validation(self) -> None:
        result = await FunctionTool(search).execute('{"q": "x"}')
        assert result.is_error
        assert result.content == (
            "Validation error: unsupported args: q; missing required args: query; "
            "allowed args: limit, mode, query"
        )

    @pytest.mark.asyncio
    async def test_body_failure_raises_tool_execution_error(self) -> None:
        with pytest.raises(ToolExecutionError) as exc_info:
            await FunctionTool(explode).execute('{"reason": "boom"}')
        assert exc_info.value.tool_name == "explode"
        assert isinstance(exc_info.value.cause, RuntimeError)

    @pytest.mark.asyncio
    async def test_result_truncated(self) -> None:
        def big() -> str:
            return "x" * 100

        result = await FunctionTool(big, max_result_length=10).execute("{}")
        assert result.content == "x" * 10 + "\n... [truncated at 10 chars]"


class TestTruncate:
    def test_short_text_untouched(self) -> None:
        assert _truncate("abc", 3) == "abc"

    def test_long_text_marked(self) -> None:
        assert _truncate("abcdef", 3) == "abc\n... [truncated at 3 chars]"


# ---------------------------------------------------------------------------
# AskUserTool and ToolChoice
# ---------------------------------------------------------------------------


class TestAskUserTool:
    def test_schema(self) -> None:
        tool = AskUserTool()
        assert tool.name == ASK_USER_TOOL_NAME
        assert tool.input_schema.required == frozenset({"question"})
        assert tool.input_schema.properties["question"].kind is SchemaKind.STRING

    @pytest.mark.asyncio
    async def test_direct_execution_reports_no_user(self) -> None:
        result = await AskUserTool().execute('{"question": "?"}')
        assert result.is_error


class TestToolChoice:
    def test_named_tool(self) -> None:
        choice = ToolChoice.tool("search")
        assert choice.kind is ToolChoiceKind.TOOL
        assert choice.tool_name == "search"
        assert ToolChoice.required().kind is ToolChoiceKind.REQUIRED


# ---------------------------------------------------------------------------
# ToolSet
# ---------------------------------------------------------------------------


class TestToolSet:
    def test_builder_preserves_order(self) -> None:
        tools = ToolSet.builder().function(search).function(lookup).ask_user().build()
        assert tools.names == ["search", "lookup", "ask_user"]
        assert len(tools) == 3
        assert "lookup" in tools
        assert "missing" not in tools

    def test_empty_set_is_falsy(self) -> None:
        assert not ToolSet()

    def test_concatenation(self) -> None:
        a = ToolSet([FunctionTool(search)])
        b = ToolSet([FunctionTool(lookup)])
        assert (a + b).names == ["search", "lookup"]

    def test_duplicate_names(self) -> None:
        tools = ToolSet([FunctionTool(search), FunctionTool(search)])
        with pytest.raises(DuplicateToolNameError):
            tools.ensure_unique_names()
        with pytest.raises(ValueError):
            tools.ensure_unique_names()

    @pytest.mark.asyncio
    async def test_execute_unknown_tool(self) -> None:
        with pytest.raises(ToolNotFoundError):
            await ToolSet([FunctionTool(search)]).execute("nope", "{}")

    @pytest.mark.asyncio
    async def test_execute_call(self) -> None:
        tools = ToolSet([FunctionTool(search)])
        result = await tools.execute_call(ToolCall("1", "search", '{"query": "a", "limit": 1}'))
        assert json.loads(result.content) == ["a:0"]

    def test_definitions_adapted(self) -> None:
        def bounded(n: int) -> int:
            return n

        tool = FunctionTool(bounded, input_schema=Schema.object(
            {"n": Schema.integer(minimum=1)}, ["n"],
        ))
        tools = ToolSet([tool])
        raw = tools.definitions()[0]
        assert raw.input_schema.properties["n"].minimum == 1
        assert raw.removed_constraints == ()

        adapted = tools.definitions(OpenAISchemaAdapter())[0]
        assert adapted.input_schema.properties["n"].minimum is None
        assert adapted.removed_constraints[0].constraint_type is ConstraintType.MINIMUM
        assert adapted.removed_constraints[0].field_path == "n"
