"""Multi-backend LLM agent loop with tools, MCP servers and structured output.

Swap the backend or model string; tools, schemas and the loop stay the same.

Usage:
    from llm_agent import LiteLLMBackend, Schema, ToolSet, run_agent

    async def get_weather(city: str) -> dict:
        '''Current weather for a city.'''
        ...

    tools = ToolSet.builder().function(get_weather).build()
    result = await run_agent(
        LiteLLMBackend(), "anthropic/claude-sonnet-4-5-20250929",
        "Should I bring an umbrella in Oslo?",
        tools=tools,
        output=Schema.object({"answer": Schema.boolean()}, ["answer"]),
    )
    print(result.unwrap())

    # Step by step
    from llm_agent import AgentScheduler, Message

    run = AgentScheduler(LiteLLMBackend(), "gpt-4o", tools=tools).start(
        [Message.user("Hello")]
    )
    async for step in run:
        print(step)

    # Multi-turn, with pause/resume and ask_user
    from llm_agent import ConversationalSession

    session = ConversationalSession(LiteLLMBackend(), "gpt-4o", interactive=True)
    async for phase in session.run("Plan my week"):
        ...
"""

from llm_agent.backends import (
    AgentBackend,
    LiteLLMBackend,
    provider_for_model,
)
from llm_agent.config import AgentConfig
from llm_agent.errors import (
    AgentError,
    BackendDecodingError,
    BackendError,
    BackendInvalidRequestError,
    BackendModelNotFoundError,
    BackendRateLimitError,
    BackendServerError,
    BackendUnauthorizedError,
    DuplicateToolNameError,
    MCPConnectionError,
    MCPError,
    MCPPlaceholderError,
    MCPToolExecutionError,
    MCPToolFetchError,
    MCPToolNotFoundError,
    OutputDecodingError,
    SessionStateError,
    StepLimitExceededError,
    ToolExecutionError,
    ToolLoopDetectedError,
    ToolNotFoundError,
    UnresolvedMCPPlaceholdersError,
    classify_error,
    wrap_error,
)
from llm_agent.loop_state import AgentLoopSnapshot, AgentLoopState, ToolCallRecord
from llm_agent.mcp_bridge import (
    MCPAuthorization,
    MCPPreset,
    MCPServer,
    MCPServerPlaceholder,
    MCPTool,
    MCPToolCapabilities,
    MCPToolSelection,
    resolve_mcp_servers,
)
from llm_agent.messages import (
    Message,
    ModelTurn,
    Role,
    StopReason,
    TextContent,
    ToolCall,
    ToolResultContent,
    ToolUseContent,
    Usage,
)
from llm_agent.prompts import (
    RenderedPrompt,
    append_instructions,
    constraints_to_instructions,
    render_prompt,
)
from llm_agent.scheduler import AgentRun, AgentScheduler, run_agent
from llm_agent.schema import (
    DynamicStructure,
    DynamicStructureBuilder,
    NamedField,
    Schema,
    SchemaKind,
)
from llm_agent.schema_adapters import (
    AnthropicSchemaAdapter,
    ConstraintType,
    GeminiSchemaAdapter,
    OpenAISchemaAdapter,
    RemovedConstraint,
    SchemaAdaptationResult,
    SchemaAdapter,
    adapter_for_provider,
)
from llm_agent.session import ConversationalSession, SessionStatus
from llm_agent.steps import (
    AgentRunResult,
    AgentStep,
    AskingUser,
    AwaitingUserInput,
    Cancelled,
    Completed,
    Failed,
    FinalResponse,
    Idle,
    Interrupted,
    Paused,
    Running,
    RunStatus,
    SessionPhase,
    TextResponse,
    Thinking,
    ToolCallStep,
    ToolResultStep,
    WaitingForUser,
)
from llm_agent.termination import (
    DuplicateDetectionPolicy,
    StandardTerminationPolicy,
    TerminationDecision,
    TerminationPolicy,
    TerminationReason,
    TerminationReasonKind,
)
from llm_agent.toolkits import (
    BuiltInTool,
    MemoryToolKit,
    ToolAnnotations,
    ToolKit,
    UtilityToolKit,
)
from llm_agent.tools import (
    AskUserTool,
    FunctionTool,
    Tool,
    ToolChoice,
    ToolResult,
    ToolSet,
    ToolSetBuilder,
)

__all__ = [
    # backends
    "AgentBackend",
    "LiteLLMBackend",
    "provider_for_model",
    # config
    "AgentConfig",
    # errors
    "AgentError",
    "BackendDecodingError",
    "BackendError",
    "BackendInvalidRequestError",
    "BackendModelNotFoundError",
    "BackendRateLimitError",
    "BackendServerError",
    "BackendUnauthorizedError",
    "DuplicateToolNameError",
    "MCPConnectionError",
    "MCPError",
    "MCPPlaceholderError",
    "MCPToolExecutionError",
    "MCPToolFetchError",
    "MCPToolNotFoundError",
    "OutputDecodingError",
    "SessionStateError",
    "StepLimitExceededError",
    "ToolExecutionError",
    "ToolLoopDetectedError",
    "ToolNotFoundError",
    "UnresolvedMCPPlaceholdersError",
    "classify_error",
    "wrap_error",
    # loop state
    "AgentLoopSnapshot",
    "AgentLoopState",
    "ToolCallRecord",
    # mcp
    "MCPAuthorization",
    "MCPPreset",
    "MCPServer",
    "MCPServerPlaceholder",
    "MCPTool",
    "MCPToolCapabilities",
    "MCPToolSelection",
    "resolve_mcp_servers",
    # messages
    "Message",
    "ModelTurn",
    "Role",
    "StopReason",
    "TextContent",
    "ToolCall",
    "ToolResultContent",
    "ToolUseContent",
    "Usage",
    # prompts
    "RenderedPrompt",
    "append_instructions",
    "constraints_to_instructions",
    "render_prompt",
    # scheduler
    "AgentRun",
    "AgentScheduler",
    "run_agent",
    # schema
    "DynamicStructure",
    "DynamicStructureBuilder",
    "NamedField",
    "Schema",
    "SchemaKind",
    # schema adapters
    "AnthropicSchemaAdapter",
    "ConstraintType",
    "GeminiSchemaAdapter",
    "OpenAISchemaAdapter",
    "RemovedConstraint",
    "SchemaAdaptationResult",
    "SchemaAdapter",
    "adapter_for_provider",
    # session
    "ConversationalSession",
    "SessionStatus",
    # steps and phases
    "AgentRunResult",
    "AgentStep",
    "AskingUser",
    "AwaitingUserInput",
    "Cancelled",
    "Completed",
    "Failed",
    "FinalResponse",
    "Idle",
    "Interrupted",
    "Paused",
    "Running",
    "RunStatus",
    "SessionPhase",
    "TextResponse",
    "Thinking",
    "ToolCallStep",
    "ToolResultStep",
    "WaitingForUser",
    # termination
    "DuplicateDetectionPolicy",
    "StandardTerminationPolicy",
    "TerminationDecision",
    "TerminationPolicy",
    "TerminationReason",
    "TerminationReasonKind",
    # toolkits
    "BuiltInTool",
    "MemoryToolKit",
    "ToolAnnotations",
    "ToolKit",
    "UtilityToolKit",
    # tools
    "AskUserTool",
    "FunctionTool",
    "Tool",
    "ToolChoice",
    "ToolResult",
    "ToolSet",
    "ToolSetBuilder",
]
