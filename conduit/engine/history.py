"""History logging interface and an in-memory implementation.

File-backed chat history lives outside the engine; anything that
implements ``HistoryLogger`` can be plugged into a Session.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class HistoryLogger(Protocol):
    def add_user_message(self, text: str) -> None: ...

    def add_assistant_message(self, text: str) -> None: ...

    def add_tool_execution(
        self,
        name: str,
        tool_input: dict[str, Any],
        output: str,
        from_orchestrator_mode: bool = False,
        from_ipc: bool = False,
        input_timestamp: datetime | None = None,
        from_hook: str | None = None,
    ) -> None: ...

    def add_elicitation_event(
        self,
        action: str,
        server_message: str | None = None,
        reason: str | None = None,
    ) -> None: ...

    def add_phase_event(
        self,
        kind: str,
        phase_name: str,
        trigger: dict[str, Any] | None = None,
    ) -> None: ...


@dataclass
class HistoryEntry:
    """One recorded history event."""
    kind: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class InMemoryHistory:
    """HistoryLogger that keeps entries in a list."""

    def __init__(self) -> None:
        self.entries: list[HistoryEntry] = []

    def _add(self, kind: str, **data: Any) -> None:
        self.entries.append(HistoryEntry(kind=kind, data=data))

    def add_user_message(self, text: str) -> None:
        self._add("user", text=text)

    def add_assistant_message(self, text: str) -> None:
        self._add("assistant", text=text)

    def add_tool_execution(
        self,
        name: str,
        tool_input: dict[str, Any],
        output: str,
        from_orchestrator_mode: bool = False,
        from_ipc: bool = False,
        input_timestamp: datetime | None = None,
        from_hook: str | None = None,
    ) -> None:
        self._add(
            "tool",
            name=name,
            input=dict(tool_input),
            output=output,
            from_orchestrator_mode=from_orchestrator_mode,
            from_ipc=from_ipc,
            input_timestamp=input_timestamp,
            from_hook=from_hook,
        )

    def add_elicitation_event(
        self,
        action: str,
        server_message: str | None = None,
        reason: str | None = None,
    ) -> None:
        self._add(
            "elicitation", action=action,
            server_message=server_message, reason=reason,
        )

    def add_phase_event(
        self,
        kind: str,
        phase_name: str,
        trigger: dict[str, Any] | None = None,
    ) -> None:
        self._add("phase", type=kind, phase_name=phase_name, trigger=trigger)

    def of_kind(self, kind: str) -> list[HistoryEntry]:
        return [e for e in self.entries if e.kind == kind]

    def clear(self) -> None:
        self.entries.clear()
