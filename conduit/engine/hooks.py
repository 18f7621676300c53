"""Hook engine: automatic tool calls around other tools.

Two hook sets are consulted, in this order:

1. Persistent user hooks. ``suspend()`` / ``resume()`` toggle them,
   e.g. while an ablation run drives the session.
2. Ablation hooks, loaded for one scripted run and always active while
   loaded.

Matching hooks run sequentially in registration order. Control
directives update the shared ``PhaseState``; tool directives call back
into the tool dispatcher. A failure in one hook is logged and never
stops its siblings. While hooks are running, nested ``run_hooks`` calls
(from the hook-triggered tool calls themselves) return empty effects.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .cancellation import PhaseState
from .directives import (
    ABORT,
    COMPLETE_PHASE,
    ControlDirective,
    ToolDirective,
    is_control_directive,
    matches_when,
    matches_when_input,
    parse_run_directive,
)
from .errors import HookExecutionError, HookInvalidDirective
from .history import HistoryLogger
from .models import Hook, HookGate, HookPoint, ToolExecutionResult

logger = logging.getLogger(__name__)

# (tool_name, args, hook_id) -> result
HookToolRunner = Callable[[str, dict[str, Any], str], Awaitable[ToolExecutionResult]]


@dataclass
class HookContext:
    """What a hook sees about the call that triggered it."""
    tool_input: dict[str, Any] = field(default_factory=dict)
    display_text: str | None = None
    run_tool: HookToolRunner | None = None


@dataclass
class HookInjection:
    """A hook tool result to be added to the conversation."""
    hook_id: str
    tool_name: str
    args: dict[str, Any]
    result: ToolExecutionResult


@dataclass
class HookEffects:
    """Aggregate outcome of one ``run_hooks`` call."""
    fired: list[str] = field(default_factory=list)
    injections: list[HookInjection] = field(default_factory=list)
    phase_completed: bool = False
    run_abort: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.fired or self.injections or self.errors)

    def merge(self, other: HookEffects) -> HookEffects:
        self.fired.extend(other.fired)
        self.injections.extend(other.injections)
        self.errors.extend(other.errors)
        self.phase_completed = self.phase_completed or other.phase_completed
        self.run_abort = self.run_abort or other.run_abort
        return self


class HookEngine:
    """Matches tool events against hooks and runs their directives."""

    def __init__(
        self,
        phase: PhaseState | None = None,
        history: HistoryLogger | None = None,
        hooks: list[Hook] | None = None,
    ) -> None:
        self.phase = phase or PhaseState()
        self._history = history
        self._hooks: list[Hook] = list(hooks or [])
        self._ablation_hooks: list[Hook] = []
        self._suspended = False
        self._executing = False
        # Control hooks already fired by pre_evaluate_when_input, keyed
        # by tool name, so the after pass does not fire them twice.
        self._prefired: dict[str, set[str]] = {}

    # ── Management ──

    def list_hooks(self) -> list[Hook]:
        return list(self._hooks)

    def add_hook(self, hook: Hook) -> Hook:
        self._hooks.append(hook)
        logger.info(
            "Hook added id=%s %s %s run=%s",
            hook.id, hook.point.value, hook.tool, hook.run,
        )
        return hook

    def get_hook(self, hook_id: str) -> Hook | None:
        for hook in self._hooks:
            if hook.id == hook_id or hook.id.startswith(hook_id):
                return hook
        return None

    def remove_hook(self, hook_id: str) -> bool:
        hook = self.get_hook(hook_id)
        if hook is None:
            return False
        self._hooks.remove(hook)
        logger.info("Hook removed id=%s", hook.id)
        return True

    def enable_hook(self, hook_id: str) -> bool:
        return self._set_enabled(hook_id, True)

    def disable_hook(self, hook_id: str) -> bool:
        return self._set_enabled(hook_id, False)

    def _set_enabled(self, hook_id: str, enabled: bool) -> bool:
        hook = self.get_hook(hook_id)
        if hook is None:
            return False
        hook.enabled = enabled
        return True

    # ── Suspension / ablation ──

    @property
    def suspended(self) -> bool:
        return self._suspended

    @property
    def executing(self) -> bool:
        return self._executing

    def suspend(self) -> None:
        self._suspended = True

    def resume(self) -> None:
        self._suspended = False

    def load_ablation_hooks(self, hooks: list[Hook]) -> None:
        self._ablation_hooks = []
        for index, hook in enumerate(hooks):
            hook.id = f"_ablation_{index}"
            hook.enabled = True
            self._ablation_hooks.append(hook)
        logger.info("Loaded %d ablation hooks", len(self._ablation_hooks))

    def clear_ablation_hooks(self) -> None:
        self._ablation_hooks = []
        self._prefired.clear()

    def _active_hooks(self) -> list[Hook]:
        hooks: list[Hook] = []
        if not self._suspended:
            hooks.extend(self._hooks)
        hooks.extend(self._ablation_hooks)
        return hooks

    # ── Execution ──

    def pre_evaluate_when_input(self, tool_name: str, args: dict[str, Any]) -> bool:
        """Fire input-conditioned control after-hooks before the tool runs.

        Input arguments are known up front, so ``@complete-phase`` and
        ``@abort`` hooks keyed on them can take effect while the tool is
        still running (e.g. to auto-decline its elicitations). Returns
        True if any control directive fired.
        """
        triggered = False
        for hook in self._active_hooks():
            if not hook.enabled or hook.point != HookPoint.AFTER or hook.tool != tool_name:
                continue
            if hook.gate or not hook.when_input or not is_control_directive(hook.run):
                continue
            if not matches_when_input(hook.when_input, args):
                continue
            directive = parse_run_directive(hook.run)
            effects = HookEffects()
            self._apply_control(directive, tool_name, effects, hook.when_input)
            self._prefired.setdefault(tool_name, set()).add(hook.id)
            triggered = True
        return triggered

    async def run_hooks(
        self,
        point: HookPoint,
        tool_name: str,
        context: HookContext,
    ) -> HookEffects:
        effects = HookEffects()
        if self._executing:
            logger.debug("Hook run for %s skipped: hooks already executing", tool_name)
            return effects

        prefired = self._prefired.pop(tool_name, set()) if point == HookPoint.AFTER else set()
        candidates = [
            h for h in self._active_hooks()
            if h.enabled and h.point == point and h.tool == tool_name
        ]
        if not candidates:
            return effects

        self._executing = True
        try:
            for hook in candidates:
                if not self._conditions_match(hook, context):
                    continue
                if hook.gate is not None and point == HookPoint.AFTER:
                    effects.fired.append(hook.id)
                    await self._run_gate(hook, hook.gate, tool_name, context, effects)
                    continue
                if not hook.run:
                    continue
                if hook.id in prefired and is_control_directive(hook.run):
                    continue
                await self._run_directive(hook, hook.run, point, tool_name, context, effects)
        finally:
            self._executing = False
        return effects

    def _conditions_match(self, hook: Hook, context: HookContext) -> bool:
        if hook.when_input and not matches_when_input(hook.when_input, context.tool_input):
            return False
        if hook.point == HookPoint.AFTER and hook.when:
            return matches_when(hook.when, context.display_text)
        return True

    async def _run_directive(
        self,
        hook: Hook,
        run: str,
        point: HookPoint,
        tool_name: str,
        context: HookContext,
        effects: HookEffects,
        allow_inject: bool = True,
    ) -> None:
        try:
            directive = parse_run_directive(run)
        except HookInvalidDirective as exc:
            logger.warning("Hook %s skipped: %s", hook.id, exc)
            effects.errors.append(str(exc))
            return

        effects.fired.append(hook.id)
        if isinstance(directive, ControlDirective):
            self._apply_control(directive, tool_name, effects, hook.when)
            return

        result = await self._run_tool(hook, directive, tool_name, context, effects)
        if result is None:
            return
        inject = (
            allow_inject
            and point == HookPoint.AFTER
            and directive.inject_result
            and bool(result.content_blocks)
        )
        if inject:
            effects.injections.append(HookInjection(
                hook_id=hook.id,
                tool_name=directive.tool_name,
                args=dict(directive.args),
                result=result,
            ))
            logger.info("Hook %s result from %s queued for injection", hook.id, directive.tool_name)

    async def _run_tool(
        self,
        hook: Hook,
        directive: ToolDirective,
        trigger_tool: str,
        context: HookContext,
        effects: HookEffects,
    ) -> ToolExecutionResult | None:
        if context.run_tool is None:
            err = HookExecutionError(hook.id, directive.tool_name, "no tool runner bound")
            logger.warning("%s", err)
            effects.errors.append(str(err))
            return None

        logger.info(
            "Hook %s triggered by %s: running %s",
            hook.id, trigger_tool, directive.tool_name,
        )
        try:
            result = await context.run_tool(directive.tool_name, dict(directive.args), hook.id)
        except Exception as exc:
            err = HookExecutionError(hook.id, directive.tool_name, str(exc))
            logger.warning("%s", err)
            effects.errors.append(str(err))
            return None
        if not result.success:
            err = HookExecutionError(hook.id, directive.tool_name, result.display_text)
            logger.warning("%s", err)
            effects.errors.append(str(err))
            return None
        logger.info("Hook %s completed: %s", hook.id, directive.tool_name)
        return result

    async def _run_gate(
        self,
        hook: Hook,
        gate: HookGate,
        tool_name: str,
        context: HookContext,
        effects: HookEffects,
    ) -> None:
        """Run the gate tool and then its on_pass or on_fail directives."""
        try:
            directive = parse_run_directive(gate.run)
        except HookInvalidDirective as exc:
            logger.warning("Gate on hook %s skipped: %s", hook.id, exc)
            effects.errors.append(str(exc))
            return
        if not isinstance(directive, ToolDirective):
            logger.warning("Gate on hook %s must run a tool, got %r", hook.id, gate.run)
            effects.errors.append(f"gate run is not a tool directive: {gate.run}")
            return

        result = await self._run_tool(hook, directive, tool_name, context, effects)
        passed = result is not None and matches_when(gate.when, result.display_text)
        commands = gate.on_pass if passed else gate.on_fail
        logger.info(
            "Gate %s on hook %s: %d command(s)",
            "PASS" if passed else "FAIL", hook.id, len(commands),
        )
        for command in commands:
            await self._run_directive(
                hook, command, HookPoint.AFTER, tool_name, context, effects,
                allow_inject=False,
            )

    def _apply_control(
        self,
        directive: ControlDirective,
        trigger_tool: str,
        effects: HookEffects,
        predicate: dict[str, Any] | None = None,
    ) -> None:
        trigger: dict[str, Any] = {"after": trigger_tool}
        if predicate:
            trigger["when"] = predicate

        if directive.kind == COMPLETE_PHASE:
            if not self.phase.complete_phase(directive.phase):
                return
            label = directive.phase or self.phase.current_phase or "current"
            logger.info("Hook complete-phase: ending phase %s", label)
            effects.phase_completed = True
            if self._history is not None:
                self._history.add_phase_event("phase-complete", label, trigger)
        elif directive.kind == ABORT:
            label = self.phase.current_phase or "unknown"
            logger.warning("Hook abort: skipping remaining phases after %s", label)
            self.phase.request_run_abort()
            effects.run_abort = True
            if self._history is not None:
                self._history.add_phase_event("phase-abort", label, trigger)
