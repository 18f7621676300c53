"""Human-in-the-loop confirmation before tool execution."""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from rich.console import Console
from rich.text import Text

logger = logging.getLogger(__name__)

_ARG_DISPLAY_LIMIT = 80


class LineReader(Protocol):
    """Async line input. ``ask`` must be cancellable."""

    async def ask(self, prompt: str) -> str: ...


class HilDecision(str, Enum):
    EXECUTE = "execute"
    SKIP = "skip"


@dataclass
class HilResult:
    decision: HilDecision
    message: str | None = None

    @property
    def execute(self) -> bool:
        return self.decision == HilDecision.EXECUTE


class HumanInTheLoopGate:
    """Blocks each tool call on a y/n/a answer unless disabled.

    Answers:
        y, yes            run this call
        n, no             skip this call
        n <msg>, msg <msg>  skip, returning <msg> to the model
        a, all, session   run this and every later call until reset_session()
    Anything else runs the call once.
    """

    def __init__(
        self,
        reader: LineReader,
        enabled: bool = False,
        console: Console | None = None,
    ) -> None:
        self._reader = reader
        self.enabled = enabled
        self._console = console or Console()
        self._session_approved = False
        self._lock = asyncio.Lock()

    @property
    def session_approved(self) -> bool:
        return self._session_approved

    def reset_session(self) -> None:
        self._session_approved = False

    async def confirm(self, tool_name: str, args: dict[str, Any]) -> HilResult:
        if not self.enabled or self._session_approved:
            return HilResult(HilDecision.EXECUTE)

        async with self._lock:
            # Another prompt may have granted session approval while we waited.
            if self._session_approved:
                return HilResult(HilDecision.EXECUTE)
            self._render(tool_name, args)
            answer = (await self._reader.ask("  Action? [y/n/a] ")).strip()
            return self._interpret(tool_name, answer)

    def _interpret(self, tool_name: str, answer: str) -> HilResult:
        lowered = answer.lower()
        for prefix in ("msg ", "n ", "no "):
            if lowered.startswith(prefix):
                message = answer[len(prefix):].strip()
                logger.info("HIL: %s rejected with message", tool_name)
                self._console.print(Text(f"  Tool rejected: {message}", style="yellow"))
                return HilResult(HilDecision.SKIP, message or None)

        if lowered in ("n", "no"):
            logger.info("HIL: %s rejected", tool_name)
            self._console.print(Text("  Tool call rejected", style="yellow"))
            return HilResult(HilDecision.SKIP)
        if lowered in ("a", "all", "session"):
            self._session_approved = True
            logger.info("HIL: session-wide approval granted at %s", tool_name)
            self._console.print(Text("  Approved for the rest of this request", style="magenta"))
        return HilResult(HilDecision.EXECUTE)

    def _render(self, tool_name: str, args: dict[str, Any]) -> None:
        self._console.print()
        self._console.print(Text("  Tool Confirmation", style="bold yellow"))
        line = Text("  Tool: ", style="cyan")
        line.append(tool_name, style="bold")
        self._console.print(line)
        if args:
            self._console.print(Text("  Arguments:", style="cyan"))
            for key, value in args.items():
                display = value if isinstance(value, str) else json.dumps(value, default=str)
                if len(display) > _ARG_DISPLAY_LIMIT:
                    display = display[:_ARG_DISPLAY_LIMIT - 3] + "..."
                self._console.print(f"    {key}: {display}", markup=False, highlight=False)
        self._console.print(
            Text.assemble(
                ("    y", "green"), " run  ",
                ("n", "red"), " skip  ",
                ("a", "magenta"), " approve all  ",
                ("msg <text>", "blue"), " skip with message",
            )
        )
