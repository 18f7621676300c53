"""Core data models for the tool-execution engine.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import uuid
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

TOOL_NAME_SEPARATOR = "__"


class MessageRole(str, Enum):
    """Who authored a conversation message."""
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolCallOrigin(str, Enum):
    """Where a tool call request came from."""
    MODEL = "model"
    HOOK = "hook"
    IPC = "ipc"


class HookPoint(str, Enum):
    """When a hook fires relative to its target tool."""
    BEFORE = "before"
    AFTER = "after"


def _make_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Content blocks ──


@dataclass
class TextBlock:
    text: str
    type: str = field(default="text", init=False)


@dataclass
class ThinkingBlock:
    text: str
    signature: str | None = None
    type: str = field(default="thinking", init=False)


@dataclass
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    type: str = field(default="tool_use", init=False)


@dataclass
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False
    type: str = field(default="tool_result", init=False)


@dataclass
class ImageBlock:
    data: str
    mime_type: str
    type: str = field(default="image", init=False)


ContentBlock = TextBlock | ThinkingBlock | ToolUseBlock | ToolResultBlock | ImageBlock


# ── Conversation ──


@dataclass
class Message:
    """One entry of a conversation.

    ``raw`` keeps the provider's own payload for the turn so that it can
    be replayed verbatim (e.g. signed thinking blocks).
    """
    role: MessageRole
    text: str = ""
    blocks: list[ContentBlock] = field(default_factory=list)
    raw: Any = None
    synthetic: bool = False
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.blocks if isinstance(b, ToolUseBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.blocks if isinstance(b, ToolResultBlock)]


class Conversation:
    """Ordered message history owned by exactly one session.

    Append-only, apart from ``truncate`` which is reserved for external
    summarization.
    """

    def __init__(self, messages: list[Message] | None = None) -> None:
        self._messages: list[Message] = list(messages or [])

    def append(self, message: Message) -> None:
        self._messages.append(message)

    def truncate(self, keep_last: int) -> list[Message]:
        """Drop all but the last ``keep_last`` messages; returns the dropped ones."""
        if keep_last < 0:
            raise ValueError("keep_last must be >= 0")
        cut = max(0, len(self._messages) - keep_last)
        dropped = self._messages[:cut]
        self._messages = self._messages[cut:]
        return dropped

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def last(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def tool_results(self) -> list[ToolResultBlock]:
        results: list[ToolResultBlock] = []
        for message in self._messages:
            if message.role == MessageRole.TOOL:
                results.extend(message.tool_results)
        return results

    def __iter__(self) -> Iterator[Message]:
        return iter(self._messages)

    def __len__(self) -> int:
        return len(self._messages)


# ── Tools ──


def split_tool_name(name: str) -> tuple[str | None, str]:
    """Split ``server__tool`` into ``(server, tool)``.

    Names without the separator return ``(None, name)``.
    """
    if TOOL_NAME_SEPARATOR not in name:
        return None, name
    server, tool = name.split(TOOL_NAME_SEPARATOR, 1)
    if not server or not tool:
        return None, name
    return server, tool


def join_tool_name(server: str, tool: str) -> str:
    return f"{server}{TOOL_NAME_SEPARATOR}{tool}"


@dataclass
class ToolSpec:
    """A tool offered to the model, namespaced as ``server__tool``."""
    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


@dataclass
class ToolCallRequest:
    """A request to invoke a namespaced tool."""
    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    request_id: str = field(default_factory=_make_id)
    origin: ToolCallOrigin = ToolCallOrigin.MODEL


@dataclass
class ToolExecutionResult:
    """Outcome of one tool execution.

    ``content_blocks`` are MCP-style dicts (``{"type": "text", ...}``).
    ``tool_input`` is the argument snapshot used for hook matching and
    history.
    """
    tool_name: str
    display_text: str
    content_blocks: list[dict[str, Any]] = field(default_factory=list)
    success: bool = True
    tool_input: dict[str, Any] = field(default_factory=dict)


# ── Hooks ──


@dataclass
class HookGate:
    """Conditional branch attached to an after-hook.

    The gate tool runs first; its output is matched against ``when`` and
    either ``on_pass`` or ``on_fail`` directives run.
    """
    run: str
    when: dict[str, Any] = field(default_factory=dict)
    on_pass: list[str] = field(default_factory=list)
    on_fail: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HookGate:
        return cls(
            run=str(data.get("run", "")),
            when=dict(data.get("when") or data.get("whenOutput") or {}),
            on_pass=[str(c) for c in data.get("on_pass") or data.get("onPass") or []],
            on_fail=[str(c) for c in data.get("on_fail") or data.get("onFail") or []],
        )


@dataclass
class Hook:
    """Rule that triggers an automatic tool call around another tool."""
    point: HookPoint
    tool: str
    run: str = ""
    id: str = field(default_factory=lambda: _make_id()[:8])
    enabled: bool = True
    when: dict[str, Any] | None = None
    when_input: dict[str, Any] | None = None
    gate: HookGate | None = None
    description: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Hook:
        """Build a hook from its config shape.

        Accepts ``before: tool`` or ``after: tool`` to pick the trigger
        point, and the camelCase ``whenOutput``/``whenInput`` spellings.
        """
        if data.get("before"):
            point, tool = HookPoint.BEFORE, str(data["before"])
        elif data.get("after"):
            point, tool = HookPoint.AFTER, str(data["after"])
        else:
            raise ValueError("hook needs a 'before' or 'after' tool name")
        gate_data = data.get("gate")
        kwargs: dict[str, Any] = {}
        if data.get("id"):
            kwargs["id"] = str(data["id"])
        return cls(
            point=point,
            tool=tool,
            run=str(data.get("run") or ""),
            enabled=data.get("enabled", True) is not False,
            when=data.get("when") or data.get("whenOutput"),
            when_input=data.get("when_input") or data.get("whenInput"),
            gate=HookGate.from_dict(gate_data) if gate_data else None,
            description=str(data.get("description") or ""),
            **kwargs,
        )


# ── IPC ──


@dataclass
class AbortedOperation:
    """Typed status returned at the IPC boundary when the session aborted."""
    error: str = "[ABORTED] User cancelled operation"
    status: str = "aborted"

    def to_payload(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": self.error,
            "status": self.status,
            "aborted": True,
        }
