"""Provider registry: maps provider names to ModelProvider factories."""
from __future__ import annotations

import logging
from collections.abc import Callable

from ..config import EngineConfig
from .anthropic_provider import AnthropicProvider
from .base import ModelProvider
from .ollama_provider import OllamaProvider
from .openai_provider import OpenAIProvider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[EngineConfig], ModelProvider]


class ProviderRegistry:
    """Registry of available model providers.

    Maps short names (e.g. 'anthropic', 'ollama') to factories that
    build a provider for a given EngineConfig.
    """

    def __init__(self) -> None:
        self._factories: dict[str, ProviderFactory] = {}

    def register(self, name: str, factory: ProviderFactory) -> None:
        """Register a provider factory by name."""
        self._factories[name] = factory
        logger.debug("Provider registered: %s", name)

    def list_names(self) -> list[str]:
        """Return all registered provider names."""
        return list(self._factories.keys())

    def create(self, config: EngineConfig) -> ModelProvider:
        """Build the provider named by ``config.provider``.

        Raises KeyError if the name is unknown.
        """
        factory = self._factories.get(config.provider)
        if factory is None:
            available = ", ".join(self._factories.keys())
            raise KeyError(
                f"Provider '{config.provider}' not found. "
                f"Available: {available or 'none'}"
            )
        provider = factory(config)
        logger.info("Using provider %s model=%s", provider.name, config.model)
        return provider


def build_default_registry() -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(
        "anthropic",
        lambda c: AnthropicProvider(c.model, base_url=c.base_url),
    )
    registry.register(
        "openai",
        lambda c: OpenAIProvider(c.model, base_url=c.base_url),
    )
    registry.register(
        "ollama",
        lambda c: OllamaProvider(c.model, base_url=c.base_url),
    )
    return registry
