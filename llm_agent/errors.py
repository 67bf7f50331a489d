"""Structured error types for llm_agent.

Callers can catch specific error types instead of parsing raw backend
exceptions:

    from llm_agent.errors import BackendRateLimitError, StepLimitExceededError

    result = await run_agent(backend, "gpt-4o", messages, output=Person)
    if result.status is RunStatus.FAILED:
        if isinstance(result.error, StepLimitExceededError):
            # Restart with a larger budget
            ...
        elif isinstance(result.error, BackendRateLimitError):
            # Backend adapter already gave up, caller may wait longer
            ...

Tool-level failures (``ToolExecutionError`` and per-call MCP failures) never
end a run: they are fed back to the model as error tool results.
"""

from __future__ import annotations

from typing import Any


class AgentError(Exception):
    """Base for all llm_agent errors."""

    def __init__(self, message: str, original: Exception | None = None) -> None:
        super().__init__(message)
        self.original = original


class StepLimitExceededError(AgentError):
    """The run used up its step budget."""

    def __init__(self, max_steps: int) -> None:
        super().__init__(f"Agent exceeded maximum steps limit ({max_steps})")
        self.max_steps = max_steps


class OutputDecodingError(AgentError):
    """Final payload did not decode or did not match the output schema."""


class SessionStateError(AgentError):
    """Session operation is not valid in the current status."""


# ---------------------------------------------------------------------------
# Backend errors: surfaced verbatim, never retried by the loop
# ---------------------------------------------------------------------------


class BackendError(AgentError):
    """Base for errors raised by a backend adapter."""


class BackendUnauthorizedError(BackendError):
    """Authentication failed (401/403): API key invalid or forbidden."""


class BackendRateLimitError(BackendError):
    """Rate limited (429) or quota exhausted."""


class BackendInvalidRequestError(BackendError):
    """Request rejected by the provider (400), e.g. an illegal schema."""


class BackendModelNotFoundError(BackendError):
    """Model doesn't exist (404)."""


class BackendServerError(BackendError):
    """Server error (5xx), timeout or connection failure."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        original: Exception | None = None,
    ) -> None:
        super().__init__(message, original=original)
        self.status_code = status_code


class BackendDecodingError(BackendError):
    """Provider response could not be decoded into a model turn."""


# ---------------------------------------------------------------------------
# Tool errors
# ---------------------------------------------------------------------------


class ToolExecutionError(AgentError):
    """A tool body raised. Recorded as an error tool result, the loop continues."""

    def __init__(self, tool_name: str, cause: Exception) -> None:
        super().__init__(f"Tool execution failed ({tool_name}): {cause}", original=cause)
        self.tool_name = tool_name
        self.cause = cause


class ToolNotFoundError(AgentError):
    """No tool with the requested name exists in the tool set."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class DuplicateToolNameError(AgentError, ValueError):
    """Two tools in one resolved tool set share a name."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Duplicate tool name {tool_name!r} in tool set")
        self.tool_name = tool_name


class ToolLoopDetectedError(AgentError):
    """The model kept requesting the same tool call."""

    def __init__(self, tool_name: str, count: int, reason: str) -> None:
        super().__init__(f"Tool loop detected: {tool_name} ({reason}, attempt {count})")
        self.tool_name = tool_name
        self.count = count
        self.reason = reason


# ---------------------------------------------------------------------------
# MCP errors
# ---------------------------------------------------------------------------


class MCPError(AgentError):
    """Base for MCP bridge errors."""


class MCPPlaceholderError(MCPError):
    """An MCP placeholder tool was executed before resolution."""

    def __init__(self, server_name: str) -> None:
        super().__init__(
            f"MCP server {server_name!r} placeholder cannot be executed directly. "
            "Call resolve_mcp_servers() first."
        )
        self.server_name = server_name


class MCPConnectionError(MCPError):
    """Could not open or initialize a connection to an MCP server."""


class MCPToolFetchError(MCPError):
    """Listing tools on an MCP server failed."""


class MCPToolExecutionError(MCPError):
    """Calling a remote MCP tool failed."""


class MCPToolNotFoundError(MCPError):
    """The remote server does not expose the requested tool."""


class UnresolvedMCPPlaceholdersError(MCPError, ValueError):
    """Scheduler was started with MCP placeholders still in the tool set."""


# Patterns that indicate permanent quota exhaustion (reported as rate limiting).
_QUOTA_PATTERNS = [
    "quota",
    "billing",
    "insufficient",
    "exceeded your current",
    "plan and billing",
]


def _litellm_error_types(module: Any, names: tuple[str, ...]) -> tuple[type[BaseException], ...]:
    """Resolve optional litellm exception classes without static attribute coupling."""
    out: list[type[BaseException]] = []
    for name in names:
        candidate = getattr(module, name, None)
        if isinstance(candidate, type) and issubclass(candidate, BaseException):
            out.append(candidate)
    return tuple(out)


def _status_code(error: Exception) -> int | None:
    code = getattr(error, "status_code", None)
    return code if isinstance(code, int) else None


def classify_error(error: Exception) -> type[BackendError]:
    """Classify any backend exception into a BackendError subtype.

    Uses litellm exception types when available, falls back to string matching.
    """
    try:
        import litellm as _lt

        auth_types = _litellm_error_types(_lt, ("AuthenticationError", "PermissionDeniedError"))
        if auth_types and isinstance(error, auth_types):
            return BackendUnauthorizedError

        not_found_types = _litellm_error_types(_lt, ("NotFoundError",))
        if not_found_types and isinstance(error, not_found_types):
            return BackendModelNotFoundError

        rate_types = _litellm_error_types(_lt, ("RateLimitError", "BudgetExceededError"))
        if rate_types and isinstance(error, rate_types):
            return BackendRateLimitError

        bad_request_types = _litellm_error_types(
            _lt, ("BadRequestError", "UnprocessableEntityError", "ContentPolicyViolationError"),
        )
        if bad_request_types and isinstance(error, bad_request_types):
            return BackendInvalidRequestError

        server_types = _litellm_error_types(
            _lt,
            (
                "InternalServerError",
                "ServiceUnavailableError",
                "APIConnectionError",
                "BadGatewayError",
                "Timeout",
            ),
        )
        if server_types and isinstance(error, server_types):
            return BackendServerError
    except ImportError:
        pass

    if isinstance(error, (ValueError, TypeError, KeyError)) and "json" in str(error).lower():
        return BackendDecodingError

    # Fallback: string pattern matching
    error_str = str(error).lower()

    if any(p in error_str for p in _QUOTA_PATTERNS):
        return BackendRateLimitError
    if "401" in error_str or "authentication" in error_str or "unauthorized" in error_str:
        return BackendUnauthorizedError
    if "403" in error_str or "forbidden" in error_str or "permission" in error_str:
        return BackendUnauthorizedError
    if "404" in error_str or "not found" in error_str or "does not exist" in error_str:
        return BackendModelNotFoundError
    if ("rate" in error_str and "limit" in error_str) or "429" in error_str:
        return BackendRateLimitError
    if "400" in error_str or "invalid request" in error_str or "bad request" in error_str:
        return BackendInvalidRequestError
    if "decode" in error_str or "malformed" in error_str:
        return BackendDecodingError
    if any(p in error_str for p in ("timeout", "timed out", "connection", "500", "502", "503", "server error")):
        return BackendServerError

    return BackendError


def wrap_error(error: Exception) -> AgentError:
    """Wrap an exception in the appropriate BackendError subclass.

    If the error is already an AgentError, returns it unchanged.
    """
    if isinstance(error, AgentError):
        return error
    cls = classify_error(error)
    if cls is BackendServerError:
        return BackendServerError(str(error), status_code=_status_code(error), original=error)
    return cls(str(error), original=error)
