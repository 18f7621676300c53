"""Ollama chat provider.

Streams ``AsyncClient.chat(stream=True)`` responses. Tool calls arrive
whole (name plus an already-decoded argument object), so each one maps
to a ``ToolCallStart`` immediately followed by a ``ToolCallEnd`` that
carries the arguments. Ollama has no tool-call ids; they are generated.
"""
from __future__ import annotations

import json
import logging
import os
import uuid
from collections.abc import AsyncIterator
from typing import Any

import httpx
import ollama

from ..errors import ProviderTransportError
from ..models import Conversation, MessageRole, ToolSpec
from .base import (
    STOP_END_TURN,
    STOP_MAX_TOKENS,
    STOP_TOOL_USE,
    SdkStreamingProvider,
    StreamEvent,
    TextDelta,
    ToolCallEnd,
    ToolCallStart,
    TurnEnd,
    event_to_dict,
)
from .openai_provider import to_openai_tools

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:11434"


def to_ollama_messages(conversation: Conversation) -> list[dict[str, Any]]:
    names: dict[str, str] = {}
    out: list[dict[str, Any]] = []
    for message in conversation:
        if message.role == MessageRole.ASSISTANT:
            entry: dict[str, Any] = {"role": "assistant", "content": message.text}
            if message.tool_uses:
                entry["tool_calls"] = [
                    {"function": {"name": block.name, "arguments": block.input}}
                    for block in message.tool_uses
                ]
                names.update({block.id: block.name for block in message.tool_uses})
            out.append(entry)
        elif message.role == MessageRole.TOOL:
            for block in message.tool_results:
                entry = {"role": "tool", "content": block.content}
                if block.tool_use_id in names:
                    entry["tool_name"] = names[block.tool_use_id]
                out.append(entry)
        else:
            out.append({"role": "user", "content": message.text})
    return out


class OllamaNormalizer:
    """Stateful translator from Ollama chat lines to canonical events."""

    def __init__(self) -> None:
        self._text: list[str] = []
        self._calls: list[dict[str, Any]] = []
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def feed(self, line: dict[str, Any]) -> list[StreamEvent]:
        if line.get("error"):
            raise ProviderTransportError("ollama", str(line["error"]))

        events: list[StreamEvent] = []
        message = line.get("message") or {}
        if message.get("thinking"):
            events.append(TextDelta(message["thinking"], channel="thinking"))
        if message.get("content"):
            self._text.append(message["content"])
            events.append(TextDelta(message["content"]))
        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            arguments = function.get("arguments")
            if isinstance(arguments, str):
                try:
                    arguments = json.loads(arguments or "{}")
                except json.JSONDecodeError:
                    arguments = None
            call_id = call.get("id") or f"ollama_{uuid.uuid4().hex[:12]}"
            name = function.get("name", "")
            self._calls.append({"id": call_id, "name": name, "arguments": arguments})
            events.append(ToolCallStart(call_id, name))
            events.append(ToolCallEnd(call_id, arguments if isinstance(arguments, dict) else None))

        if line.get("done"):
            self._done = True
            if self._calls:
                stop_reason = STOP_TOOL_USE
            elif line.get("done_reason") == "length":
                stop_reason = STOP_MAX_TOKENS
            else:
                stop_reason = STOP_END_TURN
            usage = {
                "input_tokens": int(line.get("prompt_eval_count") or 0),
                "output_tokens": int(line.get("eval_count") or 0),
            }
            raw = {
                "role": "assistant",
                "content": "".join(self._text),
                "tool_calls": [
                    {"function": {"name": c["name"], "arguments": c["arguments"]}}
                    for c in self._calls
                ],
            }
            events.append(TurnEnd(stop_reason=stop_reason, usage=usage, raw=raw))
        return events


class OllamaProvider(SdkStreamingProvider):
    """Local Ollama server through ``ollama.AsyncClient``."""

    def __init__(
        self,
        model: str,
        base_url: str | None = None,
        timeout_seconds: float = 600.0,
        client: Any = None,
    ) -> None:
        url = base_url or os.getenv("OLLAMA_HOST") or DEFAULT_BASE_URL
        if "://" not in url:
            url = f"http://{url}"
        super().__init__(model, url, timeout_seconds, client)

    @property
    def name(self) -> str:
        return "ollama"

    def _create_client(self) -> ollama.AsyncClient:
        return ollama.AsyncClient(host=self.base_url, timeout=self.timeout_seconds)

    def build_payload(
        self, conversation: Conversation, tools: list[ToolSpec], max_tokens: int,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": to_ollama_messages(conversation),
            "options": {"num_predict": max_tokens},
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
        normalizer = OllamaNormalizer()
        payload = self.build_payload(conversation, tools, max_tokens)
        logger.debug("ollama: chat host=%s model=%s tools=%d", self.base_url, self.model, len(tools))
        try:
            stream = await self.client.chat(**payload, stream=True)
            async for part in stream:
                for canonical in normalizer.feed(event_to_dict(part)):
                    yield canonical
        except ollama.ResponseError as exc:
            raise ProviderTransportError(self.name, f"HTTP {exc.status_code}: {exc.error}") from exc
        except (ollama.RequestError, ConnectionError, httpx.HTTPError) as exc:
            raise ProviderTransportError(self.name, str(exc) or type(exc).__name__) from exc
        if not normalizer.done:
            raise ProviderTransportError(self.name, "stream ended before done")
