"""Tests for the litellm backend adapter. All mocked (no real LLM calls)."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from llm_agent.backends import (
    AgentBackend,
    LiteLLMBackend,
    messages_to_openai,
    provider_for_model,
    response_to_turn,
    tool_choice_to_openai,
    tools_to_openai,
)
from llm_agent.errors import BackendDecodingError, BackendUnauthorizedError
from llm_agent.messages import Message, ModelTurn, Role, StopReason, ToolCall, ToolResultContent, Usage
from llm_agent.schema import Schema
from llm_agent.schema_adapters import AnthropicSchemaAdapter, OpenAISchemaAdapter
from llm_agent.tools import FunctionTool, ToolChoice, ToolSet


def _response(
    content: str | None = None,
    tool_calls: list[Any] | None = None,
    finish_reason: str = "stop",
    usage: Any = None,
) -> Any:
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message, finish_reason=finish_reason)],
        usage=usage,
    )


def _tc(call_id: str, name: str, arguments: str) -> Any:
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


def count_words(text: str, min_length: int = 1) -> int:
    """Count words."""
    return len([w for w in text.split() if len(w) >= min_length])


# ---------------------------------------------------------------------------
# Provider detection
# ---------------------------------------------------------------------------


class TestProviderForModel:
    @pytest.mark.parametrize(
        ("model", "provider"),
        [
            ("anthropic/claude-sonnet-4-5-20250929", "anthropic"),
            ("claude-3-haiku", "anthropic"),
            ("gemini/gemini-2.5-flash", "gemini"),
            ("vertex_ai/gemini-pro", "gemini"),
            ("gpt-4o", "openai"),
            ("azure/gpt-4o", "openai"),
            ("openrouter/some-model", "openai"),
        ],
    )
    def test_detection(self, model: str, provider: str) -> None:
        assert provider_for_model(model) == provider


# ---------------------------------------------------------------------------
# Request conversion
# ---------------------------------------------------------------------------


class TestMessagesToOpenAI:
    def test_conversation(self) -> None:
        call = ToolCall("c1", "count_words", '{"text": "a b"}')
        messages = [
            Message.user("Count"),
            ModelTurn(text_parts=["On it."], tool_calls=[call]).to_message(),
            Message(Role.USER, (ToolResultContent("c1", "count_words", "2"),)),
            Message.assistant("Two words."),
        ]
        out = messages_to_openai(messages, "Be exact.")
        assert out == [
            {"role": "system", "content": "Be exact."},
            {"role": "user", "content": "Count"},
            {
                "role": "assistant",
                "content": "On it.",
                "tool_calls": [{
                    "id": "c1",
                    "type": "function",
                    "function": {"name": "count_words", "arguments": '{"text": "a b"}'},
                }],
            },
            {"role": "tool", "tool_call_id": "c1", "content": "2"},
            {"role": "assistant", "content": "Two words."},
        ]

    def test_no_system_prompt(self) -> None:
        assert messages_to_openai([Message.user("hi")], None) == [
            {"role": "user", "content": "hi"},
        ]

    def test_tool_only_assistant_message_has_null_content(self) -> None:
        message = ModelTurn(tool_calls=[ToolCall("c", "t")]).to_message()
        assert messages_to_openai([message], None)[0]["content"] is None


class TestToolsToOpenAI:
    def test_removed_constraints_restated_in_description(self) -> None:
        tool = FunctionTool(count_words, input_schema=Schema.object(
            {"text": Schema.string(max_length=100)}, ["text"],
        ))
        out = tools_to_openai(ToolSet([tool]), AnthropicSchemaAdapter())
        function = out[0]["function"]
        assert function["name"] == "count_words"
        assert function["parameters"]["properties"]["text"] == {"type": "string"}
        assert function["description"].startswith("Count words.\n\nOutput constraints")
        assert "The 'text' field must be at most 100 character(s) long." in function["description"]

    def test_openai_strict_parameters(self) -> None:
        out = tools_to_openai(ToolSet([FunctionTool(count_words)]), OpenAISchemaAdapter())
        params = out[0]["function"]["parameters"]
        assert params["additionalProperties"] is False
        assert params["required"] == ["min_length", "text"]

    def test_tool_choice(self) -> None:
        assert tool_choice_to_openai(None) is None
        assert tool_choice_to_openai(ToolChoice.auto()) == "auto"
        assert tool_choice_to_openai(ToolChoice.none()) == "none"
        assert tool_choice_to_openai(ToolChoice.tool("count_words")) == {
            "type": "function",
            "function": {"name": "count_words"},
        }


# ---------------------------------------------------------------------------
# Response conversion
# ---------------------------------------------------------------------------


class TestResponseToTurn:
    def test_text_response(self) -> None:
        usage = SimpleNamespace(prompt_tokens=12, completion_tokens=4)
        turn = response_to_turn(_response("Hello", usage=usage))
        assert turn.text == "Hello"
        assert turn.stop_reason is StopReason.END_TURN
        assert turn.usage == Usage(12, 4)
        assert not turn.has_tool_calls

    def test_tool_calls(self) -> None:
        turn = response_to_turn(_response(
            None,
            tool_calls=[_tc("c1", "count_words", '{"text": "x"}'), _tc(None, "other", "{}")],
            finish_reason="tool_calls",
        ))
        assert turn.text_parts == ()
        assert turn.stop_reason is StopReason.TOOL_USE
        assert turn.tool_calls[0] == ToolCall("c1", "count_words", '{"text": "x"}')
        assert turn.tool_calls[1].id.startswith("call_")

    def test_length_maps_to_max_tokens(self) -> None:
        assert response_to_turn(_response("x", finish_reason="length")).stop_reason is StopReason.MAX_TOKENS

    def test_unknown_finish_reason(self) -> None:
        assert response_to_turn(_response("x", finish_reason="weird")).stop_reason is None

    def test_malformed(self) -> None:
        with pytest.raises(BackendDecodingError):
            response_to_turn(SimpleNamespace(choices=[]))


# ---------------------------------------------------------------------------
# LiteLLMBackend
# ---------------------------------------------------------------------------


class TestLiteLLMBackend:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(LiteLLMBackend(), AgentBackend)

    def test_request_with_output_schema(self) -> None:
        schema = Schema.object({"age": Schema.integer(minimum=0)}, ["age"])
        kwargs = LiteLLMBackend(temperature=0.0, num_retries=2).build_request(
            [Message.user("How old?")], "gpt-4o", "Be exact.", ToolSet(), None, schema,
        )
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["temperature"] == 0.0
        assert kwargs["num_retries"] == 2
        assert "tools" not in kwargs
        fmt = kwargs["response_format"]
        assert fmt["type"] == "json_schema"
        assert fmt["json_schema"]["name"] == "response"
        assert fmt["json_schema"]["strict"] is True
        assert "minimum" not in fmt["json_schema"]["schema"]["properties"]["age"]
        system = kwargs["messages"][0]["content"]
        assert system.startswith("Be exact.\n\n")
        assert "The 'age' field must be at least 0." in system

    def test_non_openai_not_strict(self) -> None:
        kwargs = LiteLLMBackend().build_request(
            [Message.user("x")], "anthropic/claude-3-haiku", None, ToolSet(), None,
            Schema.object({"a": Schema.string()}, ["a"]),
        )
        assert kwargs["response_format"]["json_schema"]["strict"] is False
        assert kwargs["messages"][0] == {"role": "user", "content": "x"}

    def test_request_with_tools(self) -> None:
        kwargs = LiteLLMBackend().build_request(
            [Message.user("x")], "gpt-4o", None, ToolSet([FunctionTool(count_words)]),
            ToolChoice.required(), None,
        )
        assert kwargs["tools"][0]["function"]["name"] == "count_words"
        assert kwargs["tool_choice"] == "required"
        assert "response_format" not in kwargs

    @pytest.mark.asyncio
    async def test_execute_step(self) -> None:
        mock = AsyncMock(return_value=_response("Hi"))
        with patch("llm_agent.backends.litellm.acompletion", mock):
            turn = await LiteLLMBackend(timeout=30).execute_step(
                [Message.user("Hello")], "gpt-4o", None, ToolSet(), None, None,
            )
        assert turn.text == "Hi"
        assert mock.call_args.kwargs["timeout"] == 30
        assert mock.call_args.kwargs["messages"] == [{"role": "user", "content": "Hello"}]

    @pytest.mark.asyncio
    async def test_execute_step_wraps_errors(self) -> None:
        mock = AsyncMock(side_effect=Exception("401 Unauthorized: bad key"))
        with patch("llm_agent.backends.litellm.acompletion", mock):
            with pytest.raises(BackendUnauthorizedError) as exc_info:
                await LiteLLMBackend().execute_step(
                    [Message.user("Hello")], "gpt-4o", None, ToolSet(), None, None,
                )
        assert str(exc_info.value.original) == "401 Unauthorized: bad key"
