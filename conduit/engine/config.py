"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CONDUIT_* env vars.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


# Optional async callback for real-time event observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]

_TRUTHY = {"1", "true", "yes", "on"}


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set. Callback errors never reach the engine."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        logger.debug("Event callback failed for %s", event.get("event"), exc_info=True)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in _TRUTHY


@dataclass
class EngineConfig:
    """Tool-execution engine configuration."""

    # Model binding
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-5"
    max_tokens: int = 4096
    # Base URL override for the provider's HTTP API (None = provider default).
    base_url: str | None = None

    # Agent loop iteration cap. 0 (or a negative value) means unlimited.
    max_iterations: int = 100
    # Max wall-clock time for any single tool call. -1 means unlimited.
    tool_timeout_seconds: float = 600.0

    # Human-in-the-loop confirmation before each model-issued tool call.
    hil_enabled: bool = False

    # Loopback IPC tool router.
    ipc_enabled: bool = True
    ipc_host: str = "127.0.0.1"

    # Logging
    log_level: str = "INFO"

    # Optional async callback for real-time event observation.
    # Receives dicts like {"event": "tool_call_started", "tool_name": "...", ...}
    event_callback: EventCallback | None = field(default=None, repr=False)

    @property
    def unlimited_iterations(self) -> bool:
        return self.max_iterations <= 0

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from CONDUIT_* environment variables."""
        conduit_vars = {
            k: v for k, v in os.environ.items() if k.startswith("CONDUIT_")
        }
        if conduit_vars:
            logger.info(
                "EngineConfig.from_env: CONDUIT_* env overrides: %s",
                ", ".join(
                    f"{k}={'***' if 'KEY' in k else v}"
                    for k, v in sorted(conduit_vars.items())
                ),
            )
        else:
            logger.debug("EngineConfig.from_env: no CONDUIT_* env vars set, using defaults")

        config = cls(
            provider=os.getenv("CONDUIT_PROVIDER", cls.provider),
            model=os.getenv("CONDUIT_MODEL", cls.model),
            max_tokens=int(os.getenv(
                "CONDUIT_MAX_TOKENS", str(cls.max_tokens)
            )),
            base_url=os.getenv("CONDUIT_BASE_URL") or None,
            max_iterations=int(os.getenv(
                "CONDUIT_MAX_ITERATIONS", str(cls.max_iterations)
            )),
            tool_timeout_seconds=float(os.getenv(
                "CONDUIT_TOOL_TIMEOUT", str(cls.tool_timeout_seconds)
            )),
            hil_enabled=_env_bool("CONDUIT_HIL", cls.hil_enabled),
            ipc_enabled=_env_bool("CONDUIT_IPC_ENABLED", cls.ipc_enabled),
            log_level=os.getenv("CONDUIT_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "EngineConfig.from_env: provider=%s model=%s max_iterations=%d "
            "tool_timeout=%.1f hil=%s ipc=%s",
            config.provider, config.model, config.max_iterations,
            config.tool_timeout_seconds, config.hil_enabled, config.ipc_enabled,
        )
        return config

    def apply_overrides(self, overrides: dict[str, Any]) -> None:
        """Apply known keys from a mapping (e.g. the YAML ``engine:`` section)."""
        for key, value in overrides.items():
            if key == "event_callback" or not hasattr(self, key):
                logger.warning("Ignoring unknown engine setting: %s", key)
                continue
            current = getattr(self, key)
            if isinstance(current, bool):
                value = value if isinstance(value, bool) else str(value).lower() in _TRUTHY
            elif isinstance(current, int) and not isinstance(current, bool):
                value = int(value)
            elif isinstance(current, float):
                value = float(value)
            setattr(self, key, value)
