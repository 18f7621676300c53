"""Single boundary between callers and the tool executor.

Every tool call, whether issued by the model, a hook, or an IPC client,
goes through ``ToolDispatcher.dispatch``:

    before-hooks -> HIL gate -> execute -> history -> after-hooks

Hook-triggered calls skip hooks and the HIL gate; they are configured
by the user and already run inside a hook pass.

Once an abort is requested, a call still running after
``FORCE_STOP_TIMEOUT_SECONDS`` prompts the user to force-stop it. A
force-stopped call is cancelled and reported to the model as an error
result telling it to move on.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from .cancellation import AbortState, PhaseState
from .config import EventCallback, fire_event
from .errors import ToolExecutionError, ToolForceStoppedError
from .hil import HumanInTheLoopGate, LineReader
from .history import HistoryLogger
from .hooks import HookContext, HookEffects, HookEngine
from .models import (
    HookPoint,
    ToolCallOrigin,
    ToolCallRequest,
    ToolExecutionResult,
    ToolSpec,
)

logger = logging.getLogger(__name__)

_EVENT_ARG_LIMIT = 2000
_EVENT_RESULT_LIMIT = 500

FORCE_STOP_TIMEOUT_SECONDS = 10.0
_ABORT_POLL_SECONDS = 0.5


class ToolExecutor(Protocol):
    async def execute(self, name: str, args: dict[str, Any]) -> ToolExecutionResult: ...

    def list_tools(self) -> list[ToolSpec]: ...


@dataclass
class DispatchOutcome:
    """What happened to one tool call."""
    request: ToolCallRequest
    result: ToolExecutionResult
    executed: bool = True
    effects: HookEffects = field(default_factory=HookEffects)

    @property
    def is_error(self) -> bool:
        return not self.result.success


def error_result(tool_name: str, text: str, args: dict[str, Any] | None = None) -> ToolExecutionResult:
    return ToolExecutionResult(
        tool_name=tool_name,
        display_text=text,
        content_blocks=[{"type": "text", "text": text}],
        success=False,
        tool_input=dict(args or {}),
    )


def force_stop_text(tool_name: str, exc: ToolForceStoppedError) -> str:
    return json.dumps({
        "error": "force_stopped",
        "message": (
            f"Tool execution was force stopped by the user. The tool \"{tool_name}\" "
            "was taking too long and the user chose to abort. Continue with other "
            "tasks or try a different approach."
        ),
        "details": str(exc),
    })


class ToolDispatcher:
    """Runs tool calls with hooks, confirmation and history around them."""

    def __init__(
        self,
        executor: ToolExecutor,
        hooks: HookEngine,
        hil: HumanInTheLoopGate | None = None,
        history: HistoryLogger | None = None,
        phase: PhaseState | None = None,
        event_callback: EventCallback | None = None,
        orchestrator_mode: bool = False,
        abort: AbortState | None = None,
        reader: LineReader | None = None,
        force_stop_timeout: float = FORCE_STOP_TIMEOUT_SECONDS,
    ) -> None:
        self.executor = executor
        self.hooks = hooks
        self.hil = hil
        self._history = history
        self._phase = phase or hooks.phase
        self._event_callback = event_callback
        self.orchestrator_mode = orchestrator_mode
        self._abort = abort
        self._reader = reader
        self.force_stop_timeout = force_stop_timeout

    def list_tools(self) -> list[ToolSpec]:
        return self.executor.list_tools()

    async def dispatch(
        self,
        request: ToolCallRequest,
        hook_id: str | None = None,
    ) -> DispatchOutcome:
        name, args = request.tool_name, request.arguments
        from_hook = request.origin == ToolCallOrigin.HOOK
        input_timestamp = datetime.now(timezone.utc)
        effects = HookEffects()

        if not from_hook:
            effects.merge(await self._run_hooks(HookPoint.BEFORE, name, args))

            if self.hil is not None:
                decision = await self.hil.confirm(name, args)
                if not decision.execute:
                    text = "Tool call rejected by user"
                    if decision.message:
                        text += f": {decision.message}"
                    logger.info("Tool %s skipped by HIL gate", name)
                    return DispatchOutcome(
                        request=request,
                        result=error_result(name, text, args),
                        executed=False,
                        effects=effects,
                    )

        result = await self._execute(request, from_hook)

        if self._history is not None:
            self._history.add_tool_execution(
                name,
                args,
                result.display_text,
                from_orchestrator_mode=self.orchestrator_mode,
                from_ipc=request.origin == ToolCallOrigin.IPC,
                input_timestamp=input_timestamp,
                from_hook=hook_id,
            )

        if not from_hook and result.success:
            effects.merge(
                await self._run_hooks(HookPoint.AFTER, name, args, result.display_text)
            )
        return DispatchOutcome(request=request, result=result, effects=effects)

    async def _execute(self, request: ToolCallRequest, from_hook: bool) -> ToolExecutionResult:
        name, args = request.tool_name, request.arguments

        auto_declined = False
        previous_auto_decline = self._phase.auto_decline
        if not from_hook:
            try:
                auto_declined = self.hooks.pre_evaluate_when_input(name, args)
            except Exception:
                logger.exception("Pre-evaluating input hooks for %s failed", name)
            if auto_declined:
                self._phase.auto_decline = True

        try:
            args_str = json.dumps(args, default=str)
        except (TypeError, ValueError):
            args_str = str(args)
        await fire_event(self._event_callback, {
            "event": "tool_call_started",
            "tool_id": request.request_id,
            "tool_name": name,
            "origin": request.origin.value,
            "arguments": args_str[:_EVENT_ARG_LIMIT],
        })

        try:
            result = await self._run_tool(name, args)
        except ToolForceStoppedError as exc:
            logger.warning("%s", exc)
            result = error_result(name, force_stop_text(name, exc), args)
        except ToolExecutionError as exc:
            logger.warning("%s", exc)
            result = error_result(name, str(exc), args)
        except Exception as exc:
            logger.exception("Unexpected error executing tool %s", name)
            result = error_result(name, str(ToolExecutionError(name, str(exc))), args)
        finally:
            if auto_declined:
                self._phase.auto_decline = previous_auto_decline

        if not result.tool_input:
            result.tool_input = dict(args)

        await fire_event(self._event_callback, {
            "event": "tool_call_completed",
            "tool_id": request.request_id,
            "tool_name": name,
            "origin": request.origin.value,
            "result": result.display_text[:_EVENT_RESULT_LIMIT],
            "is_error": not result.success,
        })
        return result

    async def _run_tool(self, name: str, args: dict[str, Any]) -> ToolExecutionResult:
        if self._abort is None or self._reader is None:
            return await self.executor.execute(name, args)

        loop = asyncio.get_running_loop()
        task = asyncio.ensure_future(self.executor.execute(name, args))
        poll = min(_ABORT_POLL_SECONDS, self.force_stop_timeout)
        abort_seen: float | None = None
        try:
            while not task.done():
                await asyncio.wait({task}, timeout=poll)
                if task.done() or not self._abort.requested:
                    continue
                if abort_seen is None:
                    abort_seen = loop.time()
                elapsed = loop.time() - abort_seen
                if elapsed < self.force_stop_timeout:
                    continue
                if await self._confirm_force_stop(name, elapsed) and not task.done():
                    task.cancel()
                    raise ToolForceStoppedError(name, elapsed)
                abort_seen = loop.time()
            return task.result()
        finally:
            if not task.done():
                task.cancel()

    async def _confirm_force_stop(self, name: str, elapsed: float) -> bool:
        prompt = (
            f"Tool {name} is still running {int(elapsed)}s after abort. "
            "Force stop? [y/N] "
        )
        try:
            answer = await self._reader.ask(prompt)
        except EOFError:
            return False
        return answer.strip().lower() in ("y", "yes")

    async def _run_hooks(
        self,
        point: HookPoint,
        name: str,
        args: dict[str, Any],
        display_text: str | None = None,
    ) -> HookEffects:
        context = HookContext(
            tool_input=dict(args),
            display_text=display_text,
            run_tool=self._run_hook_tool,
        )
        try:
            return await self.hooks.run_hooks(point, name, context)
        except Exception:
            # Hooks never block the call they are attached to.
            logger.exception("%s-hooks for %s failed", point.value, name)
            return HookEffects()

    async def _run_hook_tool(
        self, name: str, args: dict[str, Any], hook_id: str,
    ) -> ToolExecutionResult:
        outcome = await self.dispatch(
            ToolCallRequest(tool_name=name, arguments=args, origin=ToolCallOrigin.HOOK),
            hook_id=hook_id,
        )
        return outcome.result
