"""Conduit engine: agent loop, hooks, HIL and tool dispatch for MCP tools."""
from .models import (
    AbortedOperation,
    Conversation,
    Hook,
    HookGate,
    HookPoint,
    Message,
    MessageRole,
    ToolCallOrigin,
    ToolCallRequest,
    ToolExecutionResult,
    ToolSpec,
)
from .config import EngineConfig, EventCallback, fire_event
from .cancellation import AbortState, PhaseState
from .errors import (
    ConduitError,
    ElicitationCancelled,
    HookExecutionError,
    HookInvalidDirective,
    ProviderTransportError,
    ToolArgumentParseError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolTimeoutError,
)

__all__ = [
    # Session (lazy import)
    "Session",
    # Models
    "AbortedOperation",
    "Conversation",
    "Hook",
    "HookGate",
    "HookPoint",
    "Message",
    "MessageRole",
    "ToolCallOrigin",
    "ToolCallRequest",
    "ToolExecutionResult",
    "ToolSpec",
    # Config / state
    "EngineConfig",
    "EventCallback",
    "fire_event",
    "AbortState",
    "PhaseState",
    # Components (lazy import)
    "AgentLoop",
    "HookEngine",
    "HumanInTheLoopGate",
    "ElicitationBridge",
    "ToolDispatcher",
    "IpcToolRouter",
    "McpToolExecutor",
    # YAML config (lazy import)
    "ConduitConfig",
    "load_yaml_config",
    # Errors
    "ConduitError",
    "ElicitationCancelled",
    "HookExecutionError",
    "HookInvalidDirective",
    "ProviderTransportError",
    "ToolArgumentParseError",
    "ToolExecutionError",
    "ToolNotFoundError",
    "ToolTimeoutError",
]


def __getattr__(name: str):
    if name == "Session":
        from .session import Session
        return Session
    if name == "AgentLoop":
        from .agent_loop import AgentLoop
        return AgentLoop
    if name == "HookEngine":
        from .hooks import HookEngine
        return HookEngine
    if name == "HumanInTheLoopGate":
        from .hil import HumanInTheLoopGate
        return HumanInTheLoopGate
    if name == "ElicitationBridge":
        from .elicitation import ElicitationBridge
        return ElicitationBridge
    if name == "ToolDispatcher":
        from .tool_dispatch import ToolDispatcher
        return ToolDispatcher
    if name == "IpcToolRouter":
        from .ipc.router import IpcToolRouter
        return IpcToolRouter
    if name == "McpToolExecutor":
        from .mcp_client.executor import McpToolExecutor
        return McpToolExecutor
    if name == "ConduitConfig":
        from .yaml_config import ConduitConfig
        return ConduitConfig
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
