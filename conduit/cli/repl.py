"""Interactive chat REPL.

Reads a line, runs it through the session's agent loop with the
keyboard monitor and abort-mode SIGINT active, and renders events as
they arrive. Lines starting with ``/`` are REPL commands.
"""
from __future__ import annotations

import copy
import logging
from pathlib import Path

from prompt_toolkit import PromptSession
from rich.text import Text

from ..engine.directives import parse_run_directive
from ..engine.errors import HookInvalidDirective
from ..engine.models import Hook, HookPoint
from ..engine.session import Session
from ..shared.commands import COMMAND_HELP, ParsedCommand, parse_command
from ..shared.services.preferences import ClientPreferences
from .keyboard import KeyboardMonitor
from .signals import SignalHandler
from .terminal import ConsoleRenderer, create_prompt_session

logger = logging.getLogger(__name__)

PROMPT = "› "


class ChatRepl:
    def __init__(
        self,
        session: Session,
        renderer: ConsoleRenderer,
        monitor: KeyboardMonitor | None = None,
        signals: SignalHandler | None = None,
        prefs: ClientPreferences | None = None,
        prefs_path: Path | None = None,
        ablation_hooks: list[Hook] | None = None,
        input_session: PromptSession | None = None,
    ) -> None:
        self.session = session
        self.renderer = renderer
        self.console = renderer.console
        self.monitor = monitor
        self.signals = signals
        self.prefs = prefs or ClientPreferences()
        self._prefs_path = prefs_path
        self.ablation_hooks = list(ablation_hooks or [])
        self._input = input_session
        self._prefill = ""

    async def run(self) -> None:
        self.console.print(Text(
            "conduit: Ctrl+A aborts a running query, /help lists commands, Ctrl+D quits",
            style="dim",
        ))
        if self._input is None:
            self._input = create_prompt_session()
        while True:
            try:
                line = await self._input.prompt_async(
                    PROMPT, default=self._prefill, handle_sigint=False,
                )
            except EOFError:
                self.console.print()
                return
            except KeyboardInterrupt:
                self._prefill = ""
                continue
            self._prefill = ""
            if not await self.handle_line(line):
                return

    async def handle_line(self, line: str) -> bool:
        """Process one input line. Returns False when the REPL should exit."""
        text = line.strip()
        if not text:
            return True
        command = parse_command(text)
        if command is None:
            await self._run_events(self.session.run_query(text))
            return True
        return await self._handle_command(command)

    async def _run_events(self, events) -> None:
        started = self.monitor.start() if self.monitor is not None else False
        if self.signals is not None:
            self.signals.set_abort_mode(True)
        try:
            async for event in events:
                self.renderer.render(event)
        finally:
            if self.signals is not None:
                self.signals.set_abort_mode(False)
            if started:
                self._prefill = self.monitor.stop()

    # ── Commands ──

    async def _handle_command(self, cmd: ParsedCommand) -> bool:
        name = cmd.name
        if name in ("exit", "quit"):
            return False
        if name == "help":
            for key, text in COMMAND_HELP.items():
                self.console.print(Text(f"  /{key:<11} {text}"))
        elif name == "hil":
            self._cmd_hil(cmd.args)
        elif name == "hooks":
            self._cmd_hooks(cmd)
        elif name == "ablation":
            await self._cmd_ablation(cmd.rest)
        elif name == "tools":
            self._cmd_tools()
        elif name == "timeout":
            self._cmd_timeout(cmd.args)
        elif name == "iterations":
            self._cmd_iterations(cmd.args)
        elif name == "ipc":
            ipc = self.session.ipc
            self.renderer.info(f"IPC router: {ipc.url}" if ipc else "IPC router disabled")
        elif name == "clear":
            self.session.conversation.truncate(0)
            self.renderer.info("Conversation cleared")
        else:
            self.renderer.error(f"Unknown command: /{name} (try /help)")
        return True

    def _save_prefs(self) -> None:
        self.prefs.validate()
        self.prefs.save(self._prefs_path)

    def _cmd_hil(self, args: list[str]) -> None:
        if args and args[0].lower() in ("on", "off"):
            enabled = args[0].lower() == "on"
        elif args:
            self.renderer.error("Usage: /hil [on|off]")
            return
        else:
            enabled = not self.session.hil.enabled
        self.session.set_hil(enabled)
        self.prefs.hil_enabled = enabled
        self._save_prefs()
        self.renderer.info(f"HIL {'on' if enabled else 'off'}")

    def _cmd_hooks(self, cmd: ParsedCommand) -> None:
        hooks = self.session.hooks
        action = cmd.args[0].lower() if cmd.args else "list"
        if action == "list":
            listed = hooks.list_hooks()
            if not listed:
                self.renderer.info("No hooks")
            for hook in listed:
                state = "on " if hook.enabled else "off"
                line = f"  {hook.id}  [{state}] {hook.point.value:<6} {hook.tool}  {hook.run}"
                if hook.when:
                    line += f"  when={hook.when}"
                self.console.print(Text(line, style="" if hook.enabled else "dim"))
            if hooks.suspended:
                self.renderer.info("(user hooks suspended)")
        elif action == "add":
            # Raw split; the directive keeps its quotes.
            parts = cmd.rest.split(None, 3)
            if len(parts) < 4 or parts[1].lower() not in ("before", "after"):
                self.renderer.error("Usage: /hooks add before|after SERVER__TOOL RUN")
                return
            run = parts[3]
            try:
                parse_run_directive(run)
            except HookInvalidDirective as exc:
                self.renderer.error(str(exc))
                return
            hook = hooks.add_hook(Hook(point=HookPoint(parts[1].lower()), tool=parts[2], run=run))
            self.renderer.info(f"Added hook {hook.id}")
        elif action in ("remove", "enable", "disable"):
            if len(cmd.args) < 2:
                self.renderer.error(f"Usage: /hooks {action} ID")
                return
            handler = {
                "remove": hooks.remove_hook,
                "enable": hooks.enable_hook,
                "disable": hooks.disable_hook,
            }[action]
            if handler(cmd.args[1]):
                self.renderer.info(f"Hook {cmd.args[1]}: {action}d")
            else:
                self.renderer.error(f"No hook matching {cmd.args[1]}")
        else:
            self.renderer.error("Usage: /hooks [list|add|remove|enable|disable]")

    async def _cmd_ablation(self, prompt: str) -> None:
        if not self.ablation_hooks:
            self.renderer.error("No ablation_hooks configured")
            return
        if not prompt:
            self.renderer.error("Usage: /ablation PROMPT")
            return
        hooks = [copy.deepcopy(h) for h in self.ablation_hooks]
        await self._run_events(self.session.run_phase(prompt, hooks, name="ablation"))
        phase = self.session.phase
        self.renderer.info(
            f"Ablation run finished (phase_complete={phase.phase_complete}, "
            f"aborted={phase.run_abort_requested})"
        )
        phase.reset()

    def _cmd_tools(self) -> None:
        tools = self.session.dispatcher.list_tools()
        if not tools:
            self.renderer.info("No tools available")
        for spec in tools:
            line = Text(f"  {spec.name}", style="bold")
            if spec.description:
                line.append(f"  {spec.description.splitlines()[0]}", style="dim")
            self.console.print(line)

    def _cmd_timeout(self, args: list[str]) -> None:
        try:
            value = float(args[0])
        except (IndexError, ValueError):
            self.renderer.error("Usage: /timeout SECONDS (-1 for none)")
            return
        self.prefs.tool_timeout_seconds = value
        self._save_prefs()
        value = self.prefs.tool_timeout_seconds
        self.session.config.tool_timeout_seconds = value
        if hasattr(self.session.executor, "timeout_seconds"):
            self.session.executor.timeout_seconds = value
        self.renderer.info(f"Tool timeout: {'none' if value == -1 else f'{value:g}s'}")

    def _cmd_iterations(self, args: list[str]) -> None:
        try:
            value = int(args[0])
        except (IndexError, ValueError):
            self.renderer.error("Usage: /iterations N (0 for unlimited)")
            return
        self.prefs.max_iterations = value
        self._save_prefs()
        value = self.prefs.max_iterations
        self.session.config.max_iterations = value
        self.session.loop.max_iterations = value
        self.renderer.info(f"Max iterations: {value or 'unlimited'}")
