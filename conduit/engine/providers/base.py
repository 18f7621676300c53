"""Abstract base for model providers and the canonical stream events.

Each backend streams its own vocabulary (Anthropic content-block
events, OpenAI chat-completion chunks, Ollama chat responses) through
its SDK. A provider-specific normalizer turns that vocabulary into the
five canonical events below, so the agent loop never branches on
provider identity:

    TextDelta          text (channel="text") or reasoning (channel="thinking")
    ToolCallStart      a tool call with this id and name begins
    ToolCallArgsDelta  a fragment of that call's JSON arguments
    ToolCallEnd        the call's arguments are complete
    TurnEnd            the turn is over; stop_reason, usage, raw payload
"""
from __future__ import annotations

import abc
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from ..models import Conversation, ToolSpec

logger = logging.getLogger(__name__)

STOP_END_TURN = "end_turn"
STOP_TOOL_USE = "tool_use"
STOP_MAX_TOKENS = "max_tokens"


# ── Canonical events ──


@dataclass
class TextDelta:
    text: str
    channel: str = "text"


@dataclass
class ToolCallStart:
    call_id: str
    name: str


@dataclass
class ToolCallArgsDelta:
    call_id: str
    fragment: str


@dataclass
class ToolCallEnd:
    """End of a tool call.

    Backends that deliver complete argument objects set ``arguments``
    directly; otherwise the loop parses the buffered fragments.
    """
    call_id: str
    arguments: dict[str, Any] | None = None


@dataclass
class TurnEnd:
    stop_reason: str
    usage: dict[str, int] = field(default_factory=dict)
    raw: Any = None


StreamEvent = TextDelta | ToolCallStart | ToolCallArgsDelta | ToolCallEnd | TurnEnd


# ── Provider interface ──


class ModelProvider(abc.ABC):
    """Streams one model turn as canonical events."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name (e.g. 'anthropic', 'openai')."""

    @abc.abstractmethod
    def stream_turn(
        self,
        conversation: Conversation,
        tools: list[ToolSpec],
        max_tokens: int,
    ) -> AsyncIterator[StreamEvent]:
        """Submit the conversation and yield canonical events.

        Transport failures raise ProviderTransportError.
        """

    async def close(self) -> None:
        """Release network resources."""


class SdkStreamingProvider(ModelProvider):
    """Shared client lifecycle for backends driven through a vendor SDK.

    The SDK client is built on first use so constructing a provider
    never touches the network or requires credentials.
    """

    def __init__(
        self,
        model: str,
        base_url: str | None = None,
        timeout_seconds: float = 600.0,
        client: Any = None,
    ) -> None:
        self.model = model
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self._client = client

    @abc.abstractmethod
    def _create_client(self) -> Any:
        """Build the SDK's async client."""

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = self._create_client()
            logger.debug("%s: client created (base_url=%s)", self.name, self.base_url or "default")
        return self._client

    async def close(self) -> None:
        client, self._client = self._client, None
        close = getattr(client, "close", None)
        if close is not None:
            await close()


def event_to_dict(event: Any) -> dict[str, Any]:
    """Plain-dict view of one SDK stream item, as the normalizers expect."""
    if isinstance(event, dict):
        return event
    dump = getattr(event, "model_dump", None)
    if dump is None:
        raise TypeError(f"unsupported stream item {type(event).__name__}")
    return dump(exclude_none=True)
