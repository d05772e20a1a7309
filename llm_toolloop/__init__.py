"""Tool-augmented multi-turn completion loop over litellm and MCP.

Give a model a set of tools, local or served by an MCP tool provider, and let
it call them until it answers or the turn budget runs out.

Usage:
    from llm_toolloop import (
        LiteLLMCompletionModel, ToolRegistry, connect, function_tool, run_tool_loop,
    )

    def add(a: int, b: int) -> int:
        '''Add two integers.'''
        return a + b

    registry = ToolRegistry([function_tool(add)])
    outcome = await run_tool_loop("What is 2+2?", registry, LiteLLMCompletionModel("gpt-4o"))
    print(outcome.state, outcome.text)

    # Remote tools over stdio
    async with await connect({"command": "python", "args": ["toolloop_demo_server.py"]}) as conn:
        registry = ToolRegistry(conn.list_tools())
        outcome = await run_tool_loop("Divide 1 by 0", registry, model, max_turns=3)

    # Blocking
    outcome = run_tool_loop_sync("What is 2+2?", registry, model)
"""

__version__ = "0.1.0"

from llm_toolloop.config import DEFAULT_MAX_TURNS, LoopConfig
from llm_toolloop.conversation import (
    Conversation,
    Message,
    Role,
    ToolCallIntent,
    ToolFailure,
    ToolResult,
)
from llm_toolloop.errors import (
    ConfigurationError,
    ConnectError,
    LoopCancelledError,
    MalformedResponseError,
    ModelAuthError,
    ModelContentFilterError,
    ModelError,
    ModelNotFoundError,
    ModelQuotaExhaustedError,
    ModelRateLimitError,
    ModelTimeoutError,
    ModelTransientError,
    ToolExecutionError,
    ToolLoopError,
    ToolNotFoundError,
    TransportError,
    classify_error,
    wrap_error,
)
from llm_toolloop.loop import (
    LoopOutcome,
    LoopState,
    run_agent,
    run_tool_loop,
    run_tool_loop_sync,
)
from llm_toolloop.model import (
    CompletionModel,
    LiteLLMCompletionModel,
    ModelResponse,
    classify_response,
    collect_warnings,
    parse_tool_calls,
    record_warning,
    render_messages,
)
from llm_toolloop.registry import (
    ToolDescriptor,
    ToolRegistry,
    ToolState,
    function_tool,
    prepare_tools,
)
from llm_toolloop.remote import (
    HttpTransportConfig,
    RemoteToolConnection,
    RemoteToolPool,
    StdioTransportConfig,
    connect,
    parse_transport_config,
)
from llm_toolloop.retry import NO_RETRY, RetryPolicy
from llm_toolloop.skills import (
    AgentConfig,
    Document,
    Skill,
    load_skill,
    merge_preamble,
)

__all__ = [
    "__version__",
    # Loop
    "run_tool_loop",
    "run_tool_loop_sync",
    "run_agent",
    "LoopOutcome",
    "LoopState",
    "LoopConfig",
    "DEFAULT_MAX_TURNS",
    # Conversation
    "Conversation",
    "Message",
    "Role",
    "ToolCallIntent",
    "ToolFailure",
    "ToolResult",
    # Registry
    "ToolDescriptor",
    "ToolRegistry",
    "ToolState",
    "function_tool",
    "prepare_tools",
    # Remote tools
    "connect",
    "parse_transport_config",
    "StdioTransportConfig",
    "HttpTransportConfig",
    "RemoteToolConnection",
    "RemoteToolPool",
    # Model
    "CompletionModel",
    "LiteLLMCompletionModel",
    "ModelResponse",
    "classify_response",
    "parse_tool_calls",
    "render_messages",
    "record_warning",
    "collect_warnings",
    "RetryPolicy",
    "NO_RETRY",
    # Skills
    "AgentConfig",
    "Document",
    "Skill",
    "load_skill",
    "merge_preamble",
    # Errors
    "ToolLoopError",
    "ConfigurationError",
    "ConnectError",
    "ModelError",
    "ModelAuthError",
    "ModelContentFilterError",
    "ModelNotFoundError",
    "ModelQuotaExhaustedError",
    "ModelRateLimitError",
    "ModelTimeoutError",
    "ModelTransientError",
    "MalformedResponseError",
    "LoopCancelledError",
    "ToolExecutionError",
    "ToolNotFoundError",
    "TransportError",
    "classify_error",
    "wrap_error",
]
