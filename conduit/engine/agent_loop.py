"""Agent loop: drives model and tool turns over one conversation.

Each iteration streams a model turn, buffers tool-call arguments until
the provider marks each call complete, then runs the requested calls in
order through the ToolDispatcher. Exactly one tool-result message is
appended per requested call, in request order; hook injections follow
the turn's tool results. The loop ends when the model stops asking for
tools, the iteration cap is hit, the provider fails, or AbortState is
set at a checkpoint.

``AgentLoop.run`` is an async generator of loop events for the REPL.
"""
from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from .cancellation import AbortState
from .errors import ProviderTransportError, ToolArgumentParseError
from .history import HistoryLogger
from .hooks import HookInjection
from .models import (
    Conversation,
    ImageBlock,
    Message,
    MessageRole,
    TextBlock,
    ThinkingBlock,
    ToolCallOrigin,
    ToolCallRequest,
    ToolResultBlock,
    ToolSpec,
    ToolUseBlock,
)
from .providers.base import (
    STOP_TOOL_USE,
    ModelProvider,
    TextDelta,
    ToolCallArgsDelta,
    ToolCallEnd,
    ToolCallStart,
    TurnEnd,
)
from .tool_dispatch import ToolDispatcher

logger = logging.getLogger(__name__)

ABORTED_RESULT = "[ABORTED] User cancelled operation"


# ── Loop events ──


@dataclass
class AssistantText:
    text: str
    channel: str = "text"


@dataclass
class ToolCallStarted:
    call_id: str
    tool_name: str
    arguments: dict[str, Any]


@dataclass
class ToolCallFinished:
    call_id: str
    tool_name: str
    result_text: str
    is_error: bool = False
    executed: bool = True


@dataclass
class HookInjected:
    hook_id: str
    tool_name: str
    text: str


@dataclass
class TurnAborted:
    reason: str | None
    skipped_calls: list[str] = field(default_factory=list)


@dataclass
class IterationLimitReached:
    iterations: int


@dataclass
class LoopError:
    error: str


@dataclass
class LoopFinished:
    stop_reason: str
    iterations: int
    usage: dict[str, int] = field(default_factory=dict)


LoopEvent = (
    AssistantText | ToolCallStarted | ToolCallFinished | HookInjected
    | TurnAborted | IterationLimitReached | LoopError | LoopFinished
)


# ── Turn accumulation ──


@dataclass
class _PendingCall:
    call_id: str
    name: str
    fragments: list[str] = field(default_factory=list)
    arguments: dict[str, Any] | None = None
    error: ToolArgumentParseError | None = None
    closed: bool = False

    def close(self, arguments: dict[str, Any] | None = None) -> None:
        if self.closed:
            return
        self.closed = True
        if arguments is not None:
            self.arguments = dict(arguments)
            return
        raw = "".join(self.fragments)
        try:
            parsed = json.loads(raw or "{}")
        except json.JSONDecodeError as exc:
            self.error = ToolArgumentParseError(self.name, raw, str(exc))
            return
        if not isinstance(parsed, dict):
            self.error = ToolArgumentParseError(self.name, raw, "arguments must be a JSON object")
            return
        self.arguments = parsed


@dataclass
class _Turn:
    text: list[str] = field(default_factory=list)
    thinking: list[str] = field(default_factory=list)
    calls: dict[str, _PendingCall] = field(default_factory=dict)
    end: TurnEnd | None = None

    def ordered_calls(self) -> list[_PendingCall]:
        for call in self.calls.values():
            call.close()
        return list(self.calls.values())


def _add_usage(total: dict[str, int], usage: dict[str, int]) -> None:
    for key, value in usage.items():
        if isinstance(value, int):
            total[key] = total.get(key, 0) + value


def injection_message(injection: HookInjection) -> Message:
    """Synthetic user message carrying a hook tool's result."""
    args = json.dumps(injection.args, default=str) if injection.args else ""
    header = f"[Hook tool result: {injection.tool_name}({args})]"
    blocks: list[Any] = []
    texts: list[str] = []
    for block in injection.result.content_blocks:
        if block.get("type") == "text" and block.get("text"):
            texts.append(block["text"])
        elif block.get("type") == "image" and block.get("data"):
            blocks.append(ImageBlock(
                data=block["data"],
                mime_type=block.get("mimeType") or block.get("mime_type") or "image/png",
            ))
    body = "\n".join(texts) or injection.result.display_text
    text = f"{header}\n{body}"
    return Message(
        role=MessageRole.USER,
        text=text,
        blocks=[TextBlock(text), *blocks],
        synthetic=True,
    )


class AgentLoop:
    """Runs model turns until the model stops requesting tools."""

    def __init__(
        self,
        provider: ModelProvider,
        dispatcher: ToolDispatcher,
        abort: AbortState,
        max_iterations: int | None = None,
        max_tokens: int = 4096,
        history: HistoryLogger | None = None,
    ) -> None:
        self.provider = provider
        self.dispatcher = dispatcher
        self.abort = abort
        self.max_iterations = max_iterations
        self.max_tokens = max_tokens
        self._history = history

    def _cap_reached(self, iterations: int) -> bool:
        cap = self.max_iterations
        return cap is not None and cap > 0 and iterations >= cap

    async def run(
        self,
        conversation: Conversation,
        tools: list[ToolSpec],
    ) -> AsyncIterator[LoopEvent]:
        usage: dict[str, int] = {}
        iterations = 0

        while True:
            if self.abort.requested:
                logger.info("Loop aborted before iteration %d", iterations + 1)
                yield TurnAborted(self.abort.reason)
                return
            if self._cap_reached(iterations):
                logger.warning("Iteration limit reached (%d)", iterations)
                yield IterationLimitReached(iterations)
                return
            iterations += 1

            turn = _Turn()
            try:
                async for event in self.provider.stream_turn(conversation, tools, self.max_tokens):
                    if isinstance(event, TextDelta):
                        (turn.thinking if event.channel == "thinking" else turn.text).append(event.text)
                        yield AssistantText(event.text, event.channel)
                    elif isinstance(event, ToolCallStart):
                        turn.calls[event.call_id] = _PendingCall(event.call_id, event.name)
                    elif isinstance(event, ToolCallArgsDelta):
                        call = turn.calls.get(event.call_id)
                        if call is not None:
                            call.fragments.append(event.fragment)
                    elif isinstance(event, ToolCallEnd):
                        call = turn.calls.get(event.call_id)
                        if call is not None:
                            call.close(event.arguments)
                    elif isinstance(event, TurnEnd):
                        turn.end = event
            except ProviderTransportError as exc:
                logger.warning("%s", exc)
                yield LoopError(str(exc))
                return
            except Exception as exc:
                logger.exception("Provider %s stream failed", self.provider.name)
                yield LoopError(str(ProviderTransportError(self.provider.name, str(exc))))
                return

            end = turn.end or TurnEnd(stop_reason="end_turn")
            _add_usage(usage, end.usage)
            calls = turn.ordered_calls()
            text = "".join(turn.text)

            if end.stop_reason != STOP_TOOL_USE or not calls:
                if text or end.raw:
                    self._append_assistant(conversation, turn, text, [], end.raw)
                yield LoopFinished(end.stop_reason, iterations, dict(usage))
                return

            self._append_assistant(conversation, turn, text, calls, end.raw)
            aborted = False
            injections: list[HookInjection] = []
            for index, call in enumerate(calls):
                if self.abort.requested:
                    skipped = calls[index:]
                    for rest in skipped:
                        self._append_result(conversation, rest.call_id, ABORTED_RESULT, True)
                    logger.info("Turn aborted; %d call(s) not executed", len(skipped))
                    yield TurnAborted(self.abort.reason, [c.call_id for c in skipped])
                    aborted = True
                    break

                if call.error is not None:
                    message = str(call.error)
                    logger.warning("%s", message)
                    self._append_result(conversation, call.call_id, message, True)
                    yield ToolCallFinished(call.call_id, call.name, message, is_error=True, executed=False)
                    continue

                args = call.arguments or {}
                yield ToolCallStarted(call.call_id, call.name, args)
                outcome = await self.dispatcher.dispatch(ToolCallRequest(
                    tool_name=call.name,
                    arguments=args,
                    request_id=call.call_id,
                    origin=ToolCallOrigin.MODEL,
                ))
                result_text = outcome.result.display_text
                self._append_result(conversation, call.call_id, result_text, outcome.is_error)
                injections.extend(outcome.effects.injections)
                yield ToolCallFinished(
                    call.call_id, call.name, result_text,
                    is_error=outcome.is_error, executed=outcome.executed,
                )

            for injection in injections:
                message = injection_message(injection)
                conversation.append(message)
                yield HookInjected(injection.hook_id, injection.tool_name, message.text)

            if aborted:
                return

    def _append_assistant(
        self,
        conversation: Conversation,
        turn: _Turn,
        text: str,
        calls: list[_PendingCall],
        raw: Any,
    ) -> None:
        blocks: list[Any] = []
        if turn.thinking:
            blocks.append(ThinkingBlock("".join(turn.thinking)))
        if text:
            blocks.append(TextBlock(text))
        for call in calls:
            blocks.append(ToolUseBlock(call.call_id, call.name, dict(call.arguments or {})))
        conversation.append(Message(
            role=MessageRole.ASSISTANT, text=text, blocks=blocks, raw=raw,
        ))
        if text and self._history is not None:
            self._history.add_assistant_message(text)

    @staticmethod
    def _append_result(
        conversation: Conversation, call_id: str, content: str, is_error: bool,
    ) -> None:
        conversation.append(Message(
            role=MessageRole.TOOL,
            text=content,
            blocks=[ToolResultBlock(call_id, content, is_error)],
        ))
