"""OpenAI chat-completions provider.

Streams ``chat.completions.create(stream=True)`` chunks. Several tool
calls may be open at once; each is keyed by its ``index`` in
``delta.tool_calls`` and only the first fragment carries the id and
name. ``finish_reason`` closes every open call. Usage arrives in a
trailing chunk with no choices, so the turn ends when the stream does.
"""
from __future__ import annotations

import json
import logging
import os
from collections.abc import AsyncIterator
from typing import Any

import openai

from ..errors import ProviderTransportError
from ..models import Conversation, MessageRole, ToolSpec
from .base import (
    STOP_END_TURN,
    STOP_MAX_TOKENS,
    STOP_TOOL_USE,
    SdkStreamingProvider,
    StreamEvent,
    TextDelta,
    ToolCallArgsDelta,
    ToolCallEnd,
    ToolCallStart,
    TurnEnd,
    event_to_dict,
)

logger = logging.getLogger(__name__)

_FINISH_REASONS = {
    "stop": STOP_END_TURN,
    "tool_calls": STOP_TOOL_USE,
    "function_call": STOP_TOOL_USE,
    "length": STOP_MAX_TOKENS,
}


def to_openai_messages(conversation: Conversation) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for message in conversation:
        if message.role == MessageRole.ASSISTANT:
            entry: dict[str, Any] = {"role": "assistant", "content": message.text or None}
            calls = [
                {
                    "id": block.id,
                    "type": "function",
                    "function": {"name": block.name, "arguments": json.dumps(block.input)},
                }
                for block in message.tool_uses
            ]
            if calls:
                entry["tool_calls"] = calls
            out.append(entry)
        elif message.role == MessageRole.TOOL:
            for block in message.tool_results:
                out.append({
                    "role": "tool",
                    "tool_call_id": block.tool_use_id,
                    "content": block.content,
                })
        else:
            out.append({"role": "user", "content": message.text})
    return out


def to_openai_tools(tools: list[ToolSpec]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": t.name,
                "description": t.description,
                "parameters": t.input_schema,
            },
        }
        for t in tools
    ]


class OpenAINormalizer:
    """Stateful translator from chat-completion chunks to canonical events."""

    def __init__(self) -> None:
        self._open: dict[int, str] = {}
        self._calls: dict[str, dict[str, Any]] = {}
        self._order: list[str] = []
        self._text: list[str] = []
        self._finish: str | None = None
        self._usage: dict[str, int] = {}

    def feed(self, chunk: dict[str, Any]) -> list[StreamEvent]:
        if chunk.get("error"):
            error = chunk["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ProviderTransportError("openai", message or "stream error")

        usage = chunk.get("usage")
        if isinstance(usage, dict):
            self._usage = {
                "input_tokens": int(usage.get("prompt_tokens") or 0),
                "output_tokens": int(usage.get("completion_tokens") or 0),
            }

        events: list[StreamEvent] = []
        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            reasoning = delta.get("reasoning_content") or delta.get("reasoning")
            if reasoning:
                events.append(TextDelta(reasoning, channel="thinking"))
            if delta.get("content"):
                self._text.append(delta["content"])
                events.append(TextDelta(delta["content"]))
            for call in delta.get("tool_calls") or []:
                events.extend(self._tool_fragment(call))
            if choice.get("finish_reason"):
                self._finish = choice["finish_reason"]
                events.extend(self._close_all())
        return events

    def _tool_fragment(self, call: dict[str, Any]) -> list[StreamEvent]:
        index = call.get("index", 0)
        function = call.get("function") or {}
        events: list[StreamEvent] = []
        call_id = self._open.get(index)
        if call_id is None:
            call_id = call.get("id") or f"call_{len(self._order)}"
            self._open[index] = call_id
            self._calls[call_id] = {"name": function.get("name") or "", "arguments": ""}
            self._order.append(call_id)
            events.append(ToolCallStart(call_id, function.get("name") or ""))
        fragment = function.get("arguments")
        if fragment:
            self._calls[call_id]["arguments"] += fragment
            events.append(ToolCallArgsDelta(call_id, fragment))
        return events

    def _close_all(self) -> list[StreamEvent]:
        events: list[StreamEvent] = [ToolCallEnd(call_id) for call_id in self._open.values()]
        self._open.clear()
        return events

    def finish(self) -> list[StreamEvent]:
        """Events to emit once the stream is exhausted."""
        events = self._close_all()
        if self._finish is None and self._order:
            self._finish = "tool_calls"
        stop_reason = _FINISH_REASONS.get(self._finish or "stop", STOP_END_TURN)
        raw = {
            "role": "assistant",
            "content": "".join(self._text) or None,
            "tool_calls": [
                {
                    "id": call_id,
                    "type": "function",
                    "function": dict(self._calls[call_id]),
                }
                for call_id in self._order
            ],
        }
        events.append(TurnEnd(stop_reason=stop_reason, usage=dict(self._usage), raw=raw))
        return events


def transport_error(exc: openai.OpenAIError) -> ProviderTransportError:
    if isinstance(exc, openai.APIStatusError):
        return ProviderTransportError("openai", f"HTTP {exc.status_code}: {exc.message}")
    return ProviderTransportError("openai", str(exc) or type(exc).__name__)


class OpenAIProvider(SdkStreamingProvider):
    """OpenAI-compatible chat completions through ``openai.AsyncOpenAI``.

    ``base_url`` follows the SDK convention and includes the version
    prefix (``http://localhost:8000/v1``).
    """

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float = 600.0,
        client: Any = None,
    ) -> None:
        super().__init__(model, base_url, timeout_seconds, client)
        self._api_key = api_key or os.getenv("OPENAI_API_KEY", "")

    @property
    def name(self) -> str:
        return "openai"

    def _create_client(self) -> openai.AsyncOpenAI:
        return openai.AsyncOpenAI(
            api_key=self._api_key,
            base_url=self.base_url,
            timeout=self.timeout_seconds,
        )

    def build_payload(
        self, conversation: Conversation, tools: list[ToolSpec], max_tokens: int,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": to_openai_messages(conversation),
            "max_tokens": max_tokens,
            "stream_options": {"include_usage": True},
        }
        if tools:
            payload["tools"] = to_openai_tools(tools)
        return payload

    async def stream_turn(
        self,
        conversation: Conversation,
        tools: list[ToolSpec],
        max_tokens: int,
    ) -> AsyncIterator[StreamEvent]:
        if not self._api_key:
            raise ProviderTransportError(self.name, "OPENAI_API_KEY is not set")
        normalizer = OpenAINormalizer()
        payload = self.build_payload(conversation, tools, max_tokens)
        logger.debug("openai: chat.completions.create model=%s tools=%d", self.model, len(tools))
        try:
            stream = await self.client.chat.completions.create(**payload, stream=True)
            async for chunk in stream:
                for canonical in normalizer.feed(event_to_dict(chunk)):
                    yield canonical
        except openai.OpenAIError as exc:
            raise transport_error(exc) from exc
        for canonical in normalizer.finish():
            yield canonical
