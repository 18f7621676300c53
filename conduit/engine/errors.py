"""Exception hierarchy for the tool-execution engine.

Specific exceptions for each failure mode. None of these terminate the
process: the agent loop, hook engine and IPC router each catch the ones
raised at their boundary and turn them into events or tool results.
"""
from __future__ import annotations


class ConduitError(Exception):
    """Base exception for all engine errors."""


class ProviderTransportError(ConduitError):
    """The model provider stream failed; ends the current turn only."""
    def __init__(self, provider: str, reason: str):
        self.provider = provider
        self.reason = reason
        super().__init__(f"Provider '{provider}' transport error: {reason}")


class ToolArgumentParseError(ConduitError):
    """Buffered tool-call arguments were not valid JSON."""
    def __init__(self, tool_name: str, raw: str, reason: str):
        self.tool_name = tool_name
        self.raw = raw
        self.reason = reason
        super().__init__(
            f"Could not parse arguments for tool '{tool_name}': {reason}"
        )


class ToolExecutionError(ConduitError):
    """A tool call failed inside the tool execution collaborator."""
    def __init__(self, tool_name: str, reason: str):
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(f'Error executing tool "{tool_name}": {reason}')


class ToolTimeoutError(ToolExecutionError):
    """A single tool call exceeded its time budget."""
    def __init__(self, tool_name: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            tool_name,
            f"timed out after {timeout_seconds}s",
        )


class ToolForceStoppedError(ToolExecutionError):
    """The user force-stopped a call still running after an abort."""
    def __init__(self, tool_name: str, elapsed_seconds: float):
        self.elapsed_seconds = elapsed_seconds
        super().__init__(
            tool_name,
            f"force stopped by user after {int(elapsed_seconds)} seconds",
        )


class ToolNotFoundError(ToolExecutionError):
    """No connected server exposes the requested tool."""
    def __init__(self, tool_name: str):
        super().__init__(tool_name, "tool not found in any server")


class HookInvalidDirective(ConduitError):
    """A hook's run directive could not be parsed."""
    def __init__(self, directive: str, reason: str):
        self.directive = directive
        self.reason = reason
        super().__init__(f"Invalid hook directive {directive!r}: {reason}")


class HookExecutionError(ConduitError):
    """A hook-triggered tool call failed."""
    def __init__(self, hook_id: str, tool_name: str, reason: str):
        self.hook_id = hook_id
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(
            f"Hook {hook_id} failed running '{tool_name}': {reason}"
        )


class ElicitationCancelled(ConduitError):
    """A pending elicitation prompt was cancelled from outside."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Elicitation cancelled: {reason}")
