"""Terminal I/O: prompt_toolkit line input and rich rendering of loop events."""
from __future__ import annotations

import json
import logging
from collections.abc import Callable

from prompt_toolkit import PromptSession
from prompt_toolkit.history import InMemoryHistory
from rich.console import Console
from rich.text import Text

from ..engine.agent_loop import (
    AssistantText,
    HookInjected,
    IterationLimitReached,
    LoopError,
    LoopEvent,
    LoopFinished,
    ToolCallFinished,
    ToolCallStarted,
    TurnAborted,
)

logger = logging.getLogger(__name__)

_RESULT_PREVIEW = 400
_ARGS_PREVIEW = 120


class TerminalLineReader:
    """LineReader for HIL and elicitation answers, backed by prompt_toolkit.

    Cancelling ``ask`` exits the prompt application, so a cancelled
    prompt never swallows the next line typed. Ctrl+C at the prompt
    reads as end of input.
    """

    def __init__(
        self,
        session: PromptSession | None = None,
        on_prompt_start: Callable[[], None] | None = None,
        on_prompt_end: Callable[[], None] | None = None,
    ) -> None:
        self._session = session
        self._on_prompt_start = on_prompt_start
        self._on_prompt_end = on_prompt_end

    def set_prompt_callbacks(
        self,
        on_start: Callable[[], None] | None,
        on_end: Callable[[], None] | None,
    ) -> None:
        self._on_prompt_start = on_start
        self._on_prompt_end = on_end

    async def ask(self, prompt: str) -> str:
        if self._session is None:
            self._session = PromptSession()
        if self._on_prompt_start is not None:
            self._on_prompt_start()
        try:
            return await self._session.prompt_async(prompt, handle_sigint=False)
        except KeyboardInterrupt as exc:
            raise EOFError("prompt interrupted") from exc
        finally:
            if self._on_prompt_end is not None:
                self._on_prompt_end()


def create_prompt_session() -> PromptSession:
    """Main REPL input session: line editing and in-session history."""
    return PromptSession(history=InMemoryHistory())


def _truncate(text: str, limit: int) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def format_arguments(arguments: dict) -> str:
    if not arguments:
        return ""
    try:
        return _truncate(json.dumps(arguments, default=str, ensure_ascii=False), _ARGS_PREVIEW)
    except (TypeError, ValueError):
        return _truncate(str(arguments), _ARGS_PREVIEW)


class ConsoleRenderer:
    """Renders agent loop events on a rich Console."""

    def __init__(self, console: Console | None = None, show_thinking: bool = True) -> None:
        self.console = console or Console()
        self.show_thinking = show_thinking
        self._mid_line = False

    def _newline(self) -> None:
        if self._mid_line:
            self.console.print()
            self._mid_line = False

    def error(self, message: str) -> None:
        self._newline()
        self.console.print(Text(message, style="bold red"))

    def info(self, message: str) -> None:
        self._newline()
        self.console.print(Text(message, style="dim"))

    def render(self, event: LoopEvent) -> None:
        if isinstance(event, AssistantText):
            if event.channel == "thinking":
                if not self.show_thinking:
                    return
                self.console.print(Text(event.text, style="dim italic"), end="")
            else:
                self.console.print(event.text, end="", markup=False, highlight=False)
            self._mid_line = not event.text.endswith("\n")
        elif isinstance(event, ToolCallStarted):
            self._newline()
            line = Text("⏺ ", style="cyan")
            line.append(event.tool_name, style="bold")
            args = format_arguments(event.arguments)
            if args:
                line.append(f"({args})", style="dim")
            self.console.print(line)
        elif isinstance(event, ToolCallFinished):
            preview = _truncate(event.result_text, _RESULT_PREVIEW)
            if event.is_error:
                self.console.print(Text(f"  ⎿ {preview}", style="red"))
            else:
                self.console.print(Text(f"  ⎿ {preview}", style="dim"))
        elif isinstance(event, HookInjected):
            self._newline()
            self.console.print(Text(
                f"  [hook {event.hook_id}] {event.tool_name} result added to context",
                style="magenta",
            ))
        elif isinstance(event, TurnAborted):
            self._newline()
            skipped = f" ({len(event.skipped_calls)} tool call(s) skipped)" if event.skipped_calls else ""
            self.console.print(Text(f"[Aborted: {event.reason or 'user'}]{skipped}", style="yellow"))
        elif isinstance(event, IterationLimitReached):
            self._newline()
            self.console.print(Text(
                f"[Stopped after {event.iterations} iterations; raise max_iterations to continue]",
                style="yellow",
            ))
        elif isinstance(event, LoopError):
            self.error(f"Error: {event.error}")
        elif isinstance(event, LoopFinished):
            self._newline()
            if event.usage:
                parts = ", ".join(f"{k}={v}" for k, v in sorted(event.usage.items()))
                self.console.print(Text(f"[{event.iterations} turn(s); {parts}]", style="dim"))
