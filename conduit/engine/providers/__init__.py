"""Model provider abstraction: canonical stream events and backends."""
from .base import (
    ModelProvider,
    StreamEvent,
    TextDelta,
    ToolCallArgsDelta,
    ToolCallEnd,
    ToolCallStart,
    TurnEnd,
)
from .registry import ProviderRegistry, build_default_registry
from .anthropic_provider import AnthropicProvider
from .openai_provider import OpenAIProvider
from .ollama_provider import OllamaProvider

__all__ = [
    "ModelProvider",
    "StreamEvent",
    "TextDelta",
    "ToolCallStart",
    "ToolCallArgsDelta",
    "ToolCallEnd",
    "TurnEnd",
    "ProviderRegistry",
    "build_default_registry",
    "AnthropicProvider",
    "OpenAIProvider",
    "OllamaProvider",
]
