"""Anthropic Messages API provider.

Streams ``messages.create(stream=True)`` and normalizes the raw
content-block event vocabulary:

    message_start / content_block_start / content_block_delta /
    content_block_stop / message_delta / message_stop

Tool arguments arrive as ``input_json_delta`` fragments. Thinking blocks
(with their signatures) are kept in the raw assistant payload so they
can be replayed verbatim on the next request.
"""
from __future__ import annotations

import json
import logging
import os
from collections.abc import AsyncIterator
from typing import Any

import anthropic

from ..errors import ProviderTransportError
from ..models import (
    Conversation,
    ImageBlock,
    MessageRole,
    TextBlock,
    ThinkingBlock,
    ToolSpec,
    ToolUseBlock,
)
from .base import (
    STOP_END_TURN,
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


def to_anthropic_messages(conversation: Conversation) -> list[dict[str, Any]]:
    """Serialize a conversation, merging consecutive same-role messages."""
    out: list[dict[str, Any]] = []
    for message in conversation:
        if message.role == MessageRole.ASSISTANT:
            role = "assistant"
            if isinstance(message.raw, list) and message.raw:
                content = [dict(b) for b in message.raw]
            else:
                content = []
                for block in message.blocks:
                    if isinstance(block, ThinkingBlock) and block.signature:
                        content.append({
                            "type": "thinking",
                            "thinking": block.text,
                            "signature": block.signature,
                        })
                    elif isinstance(block, TextBlock) and block.text:
                        content.append({"type": "text", "text": block.text})
                    elif isinstance(block, ToolUseBlock):
                        content.append({
                            "type": "tool_use", "id": block.id,
                            "name": block.name, "input": block.input,
                        })
                if not content and message.text:
                    content.append({"type": "text", "text": message.text})
        elif message.role == MessageRole.TOOL:
            role = "user"
            content = [
                {
                    "type": "tool_result",
                    "tool_use_id": block.tool_use_id,
                    "content": block.content,
                    "is_error": block.is_error,
                }
                for block in message.tool_results
            ]
        else:
            role = "user"
            content = []
            if message.text:
                content.append({"type": "text", "text": message.text})
            for block in message.blocks:
                if isinstance(block, ImageBlock):
                    content.append({
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": block.mime_type,
                            "data": block.data,
                        },
                    })
                elif isinstance(block, TextBlock) and block.text != message.text:
                    content.append({"type": "text", "text": block.text})

        if not content:
            continue
        if out and out[-1]["role"] == role:
            out[-1]["content"].extend(content)
        else:
            out.append({"role": role, "content": content})
    return out


def to_anthropic_tools(tools: list[ToolSpec]) -> list[dict[str, Any]]:
    return [
        {"name": t.name, "description": t.description, "input_schema": t.input_schema}
        for t in tools
    ]


class AnthropicNormalizer:
    """Stateful translator from Anthropic stream events to canonical events."""

    def __init__(self) -> None:
        self._blocks: dict[int, dict[str, Any]] = {}
        self._tool_ids: dict[int, str] = {}
        self._tool_json: dict[int, list[str]] = {}
        self._stop_reason: str | None = None
        self._usage: dict[str, int] = {}

    def feed(self, event: dict[str, Any]) -> list[StreamEvent]:
        kind = event.get("type")
        if kind == "message_start":
            usage = (event.get("message") or {}).get("usage") or {}
            self._add_usage(usage)
            return []
        if kind == "content_block_start":
            return self._block_start(event.get("index", 0), event.get("content_block") or {})
        if kind == "content_block_delta":
            return self._block_delta(event.get("index", 0), event.get("delta") or {})
        if kind == "content_block_stop":
            return self._block_stop(event.get("index", 0))
        if kind == "message_delta":
            delta = event.get("delta") or {}
            if delta.get("stop_reason"):
                self._stop_reason = delta["stop_reason"]
            self._add_usage(event.get("usage") or {})
            return []
        if kind == "message_stop":
            return [self._turn_end()]
        if kind == "error":
            error = event.get("error") or {}
            raise ProviderTransportError(
                "anthropic", f"{error.get('type', 'error')}: {error.get('message', '')}",
            )
        return []

    def _add_usage(self, usage: dict[str, Any]) -> None:
        for key in ("input_tokens", "output_tokens"):
            value = usage.get(key)
            if isinstance(value, int):
                self._usage[key] = value

    def _block_start(self, index: int, block: dict[str, Any]) -> list[StreamEvent]:
        block_type = block.get("type")
        if block_type == "tool_use":
            self._blocks[index] = {
                "type": "tool_use", "id": block.get("id", ""),
                "name": block.get("name", ""), "input": {},
            }
            self._tool_ids[index] = block.get("id", "")
            self._tool_json[index] = []
            return [ToolCallStart(call_id=block.get("id", ""), name=block.get("name", ""))]
        if block_type == "thinking":
            self._blocks[index] = {"type": "thinking", "thinking": "", "signature": ""}
        elif block_type == "redacted_thinking":
            self._blocks[index] = dict(block)
        else:
            self._blocks[index] = {"type": "text", "text": block.get("text", "")}
        return []

    def _block_delta(self, index: int, delta: dict[str, Any]) -> list[StreamEvent]:
        delta_type = delta.get("type")
        block = self._blocks.setdefault(index, {"type": "text", "text": ""})
        if delta_type == "text_delta":
            text = delta.get("text", "")
            block["text"] = block.get("text", "") + text
            return [TextDelta(text)]
        if delta_type == "thinking_delta":
            text = delta.get("thinking", "")
            block["thinking"] = block.get("thinking", "") + text
            return [TextDelta(text, channel="thinking")]
        if delta_type == "signature_delta":
            block["signature"] = block.get("signature", "") + delta.get("signature", "")
            return []
        if delta_type == "input_json_delta" and index in self._tool_ids:
            fragment = delta.get("partial_json", "")
            self._tool_json[index].append(fragment)
            return [ToolCallArgsDelta(self._tool_ids[index], fragment)]
        return []

    def _block_stop(self, index: int) -> list[StreamEvent]:
        if index not in self._tool_ids:
            return []
        raw = "".join(self._tool_json.get(index, [])) or "{}"
        try:
            self._blocks[index]["input"] = json.loads(raw)
        except json.JSONDecodeError:
            # The loop reports the parse failure for this call.
            self._blocks[index]["input"] = {}
        return [ToolCallEnd(self._tool_ids[index])]

    def _turn_end(self) -> TurnEnd:
        raw = [self._blocks[i] for i in sorted(self._blocks)]
        raw = [b for b in raw if not (b.get("type") == "text" and not b.get("text"))]
        return TurnEnd(
            stop_reason=self._stop_reason or STOP_END_TURN,
            usage=dict(self._usage),
            raw=raw,
        )


def transport_error(exc: anthropic.APIError) -> ProviderTransportError:
    if isinstance(exc, anthropic.APIStatusError):
        return ProviderTransportError("anthropic", f"HTTP {exc.status_code}: {exc.message}")
    return ProviderTransportError("anthropic", exc.message or type(exc).__name__)


class AnthropicProvider(SdkStreamingProvider):
    """Anthropic Messages API through ``anthropic.AsyncAnthropic``."""

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float = 600.0,
        client: Any = None,
    ) -> None:
        super().__init__(model, base_url, timeout_seconds, client)
        self._api_key = api_key or os.getenv("ANTHROPIC_API_KEY", "")

    @property
    def name(self) -> str:
        return "anthropic"

    def _create_client(self) -> anthropic.AsyncAnthropic:
        return anthropic.AsyncAnthropic(
            api_key=self._api_key,
            base_url=self.base_url,
            timeout=self.timeout_seconds,
        )

    def build_payload(
        self, conversation: Conversation, tools: list[ToolSpec], max_tokens: int,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": to_anthropic_messages(conversation),
        }
        if tools:
            payload["tools"] = to_anthropic_tools(tools)
        return payload

    async def stream_turn(
        self,
        conversation: Conversation,
        tools: list[ToolSpec],
        max_tokens: int,
    ) -> AsyncIterator[StreamEvent]:
        if not self._api_key:
            raise ProviderTransportError(self.name, "ANTHROPIC_API_KEY is not set")
        normalizer = AnthropicNormalizer()
        payload = self.build_payload(conversation, tools, max_tokens)
        logger.debug("anthropic: messages.create model=%s tools=%d", self.model, len(tools))
        ended = False
        try:
            stream = await self.client.messages.create(**payload, stream=True)
            async for event in stream:
                for canonical in normalizer.feed(event_to_dict(event)):
                    ended = ended or isinstance(canonical, TurnEnd)
                    yield canonical
        except anthropic.APIError as exc:
            raise transport_error(exc) from exc
        if not ended:
            raise ProviderTransportError(self.name, "stream ended before message_stop")
