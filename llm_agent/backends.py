"""Backend adapters: the one call the agent loop makes to an LLM provider.

The scheduler only knows ``AgentBackend.execute_step``. Anything that can
turn (messages, tools, output schema) into a ``ModelTurn`` qualifies, which
is also how tests script model behaviour.

``LiteLLMBackend`` is the default implementation, routing every provider
through ``litellm.acompletion``:

    backend = LiteLLMBackend(num_retries=2)
    turn = await backend.execute_step(
        messages, "anthropic/claude-sonnet-4-5-20250929", "You are terse.",
        tools, None, schema,
    )

Provider schema limits are handled here: tool and output schemas go through
the provider's ``SchemaAdapter`` and the removed constraints are restated
in the prompt.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Protocol, runtime_checkable

import litellm

from llm_agent.errors import BackendDecodingError, wrap_error
from llm_agent.messages import (
    Message,
    ModelTurn,
    Role,
    StopReason,
    TextContent,
    ToolCall,
    ToolResultContent,
    Usage,
)
from llm_agent.prompts import append_instructions, constraints_to_instructions
from llm_agent.schema import Schema
from llm_agent.schema_adapters import SchemaAdapter, adapter_for_provider
from llm_agent.tools import ToolChoice, ToolChoiceKind, ToolSet

logger = logging.getLogger(__name__)


@runtime_checkable
class AgentBackend(Protocol):
    """Single entry point the agent loop calls once per step."""

    async def execute_step(
        self,
        messages: list[Message],
        model: str,
        system_prompt: str | None,
        tools: ToolSet,
        tool_choice: ToolChoice | None,
        output_schema: Schema | None,
    ) -> ModelTurn: ...


# ---------------------------------------------------------------------------
# Provider detection
# ---------------------------------------------------------------------------

_PROVIDER_PREFIXES = {
    "anthropic/": "anthropic",
    "bedrock/anthropic": "anthropic",
    "gemini/": "gemini",
    "vertex_ai/": "gemini",
    "openai/": "openai",
    "azure/": "openai",
}


def provider_for_model(model: str) -> str:
    """Schema dialect for a litellm model string: anthropic, gemini or openai."""
    lower = model.lower()
    for prefix, provider in _PROVIDER_PREFIXES.items():
        if lower.startswith(prefix):
            return provider
    if "claude" in lower:
        return "anthropic"
    if "gemini" in lower:
        return "gemini"
    return "openai"


# ---------------------------------------------------------------------------
# Request conversion
# ---------------------------------------------------------------------------


def messages_to_openai(messages: list[Message], system_prompt: str | None) -> list[dict[str, Any]]:
    """Convert the conversation to OpenAI chat format (litellm's lingua franca)."""
    out: list[dict[str, Any]] = []
    if system_prompt:
        out.append({"role": "system", "content": system_prompt})

    for message in messages:
        if message.role is Role.ASSISTANT:
            entry: dict[str, Any] = {
                "role": "assistant",
                "content": message.text_content or None,
            }
            tool_uses = message.tool_uses
            if tool_uses:
                entry["tool_calls"] = [
                    {
                        "id": use.id,
                        "type": "function",
                        "function": {"name": use.name, "arguments": use.arguments},
                    }
                    for use in tool_uses
                ]
            out.append(entry)
            continue

        for content in message.contents:
            if isinstance(content, ToolResultContent):
                out.append({
                    "role": "tool",
                    "tool_call_id": content.tool_call_id,
                    "content": content.content,
                })
        text = "".join(c.text for c in message.contents if isinstance(c, TextContent))
        if text:
            out.append({"role": "user", "content": text})
    return out


def tools_to_openai(tools: ToolSet, adapter: SchemaAdapter) -> list[dict[str, Any]]:
    """Function-calling tool list with provider-adapted parameter schemas."""
    out: list[dict[str, Any]] = []
    for definition in tools.definitions(adapter):
        description = definition.description
        extra = constraints_to_instructions(definition.removed_constraints)
        if extra:
            description = f"{description}\n\n{extra}" if description else extra
        out.append({
            "type": "function",
            "function": {
                "name": definition.name,
                "description": description,
                "parameters": definition.input_schema.to_dict(),
            },
        })
    return out


def tool_choice_to_openai(choice: ToolChoice | None) -> Any:
    if choice is None:
        return None
    if choice.kind is ToolChoiceKind.TOOL:
        return {"type": "function", "function": {"name": choice.tool_name}}
    return choice.kind.value


_FINISH_REASONS: dict[str, StopReason] = {
    "stop": StopReason.END_TURN,
    "end_turn": StopReason.END_TURN,
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
    "tool_use": StopReason.TOOL_USE,
    "length": StopReason.MAX_TOKENS,
    "max_tokens": StopReason.MAX_TOKENS,
    "stop_sequence": StopReason.STOP_SEQUENCE,
}


def _extract_usage(response: Any) -> Usage:
    usage = getattr(response, "usage", None)
    if usage is None:
        return Usage()
    return Usage(
        input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
        output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
    )


def _extract_tool_calls(message: Any) -> list[ToolCall]:
    calls: list[ToolCall] = []
    for tc in getattr(message, "tool_calls", None) or []:
        arguments = tc.function.arguments
        calls.append(ToolCall(
            id=tc.id or f"call_{uuid.uuid4().hex[:12]}",
            name=tc.function.name,
            arguments=arguments if isinstance(arguments, str) else "{}",
        ))
    return calls


def response_to_turn(response: Any) -> ModelTurn:
    """Map a litellm ModelResponse to a ModelTurn."""
    try:
        choice = response.choices[0]
        message = choice.message
    except (AttributeError, IndexError, TypeError) as exc:
        raise BackendDecodingError(f"Malformed completion response: {exc}", original=exc) from exc

    content = getattr(message, "content", None) or ""
    return ModelTurn(
        text_parts=(content,) if content else (),
        tool_calls=tuple(_extract_tool_calls(message)),
        usage=_extract_usage(response),
        stop_reason=_FINISH_REASONS.get(getattr(choice, "finish_reason", None) or ""),
        raw=response,
    )


# ---------------------------------------------------------------------------
# LiteLLM backend
# ---------------------------------------------------------------------------


class LiteLLMBackend:
    """``AgentBackend`` over ``litellm.acompletion``.

    Retries are litellm's (``num_retries``); the agent loop never retries a
    failed step. Exceptions are classified into ``BackendError`` subtypes.
    """

    def __init__(
        self,
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        timeout: float | None = None,
        num_retries: int = 0,
        **completion_kwargs: Any,
    ) -> None:
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.num_retries = num_retries
        self.completion_kwargs = completion_kwargs

    def build_request(
        self,
        messages: list[Message],
        model: str,
        system_prompt: str | None,
        tools: ToolSet,
        tool_choice: ToolChoice | None,
        output_schema: Schema | None,
    ) -> dict[str, Any]:
        provider = provider_for_model(model)
        adapter = adapter_for_provider(provider)

        if output_schema is not None:
            adapted = adapter.adapt(output_schema)
            system_prompt = append_instructions(system_prompt, adapted.removed_constraints)

        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages_to_openai(messages, system_prompt),
            **self.completion_kwargs,
        }
        if tools:
            kwargs["tools"] = tools_to_openai(tools, adapter)
            choice = tool_choice_to_openai(tool_choice)
            if choice is not None:
                kwargs["tool_choice"] = choice
        if output_schema is not None:
            kwargs["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": "response",
                    "schema": adapted.schema.to_dict(),
                    "strict": provider == "openai",
                },
            }
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        if self.max_tokens is not None:
            kwargs["max_tokens"] = self.max_tokens
        if self.timeout is not None:
            kwargs["timeout"] = self.timeout
        if self.num_retries:
            kwargs["num_retries"] = self.num_retries
        return kwargs

    async def execute_step(
        self,
        messages: list[Message],
        model: str,
        system_prompt: str | None,
        tools: ToolSet,
        tool_choice: ToolChoice | None,
        output_schema: Schema | None,
    ) -> ModelTurn:
        kwargs = self.build_request(
            messages, model, system_prompt, tools, tool_choice, output_schema,
        )
        logger.debug(
            "litellm.acompletion model=%s messages=%d tools=%d schema=%s",
            model, len(kwargs["messages"]), len(kwargs.get("tools", [])),
            output_schema is not None,
        )
        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as exc:
            raise wrap_error(exc) from exc
        return response_to_turn(response)


__all__ = [
    "AgentBackend",
    "LiteLLMBackend",
    "messages_to_openai",
    "provider_for_model",
    "response_to_turn",
    "tool_choice_to_openai",
    "tools_to_openai",
]
