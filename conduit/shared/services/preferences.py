"""Client preferences: persistent settings stored in ~/.conduit/preferences.json.

The engine only reads these (HIL toggle, tool timeout, iteration cap);
the REPL's settings commands write them back.
"""
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

PREFS_PATH = Path.home() / ".conduit" / "preferences.json"

# Tool timeouts are clamped to this range; -1 disables the timeout.
MIN_TOOL_TIMEOUT = 1.0
MAX_TOOL_TIMEOUT = 3600.0 * 24


@dataclass
class ClientPreferences:
    """User preference settings.

    Attributes:
        hil_enabled: Ask before each model-issued tool call.
        tool_timeout_seconds: Per-call tool timeout; -1 means unlimited.
        max_iterations: Agent loop cap; 0 or below means unlimited.
    """

    hil_enabled: bool = False
    tool_timeout_seconds: float = 600.0
    max_iterations: int = 100

    def validate(self) -> None:
        """Ensure all values are within allowed ranges."""
        if not isinstance(self.hil_enabled, bool):
            self.hil_enabled = False
        try:
            timeout = float(self.tool_timeout_seconds)
        except (TypeError, ValueError):
            timeout = 600.0
        if timeout != -1:
            timeout = min(max(timeout, MIN_TOOL_TIMEOUT), MAX_TOOL_TIMEOUT)
        self.tool_timeout_seconds = timeout
        try:
            self.max_iterations = int(self.max_iterations)
        except (TypeError, ValueError):
            self.max_iterations = 100
        if self.max_iterations < 0:
            self.max_iterations = 0

    def save(self, path: Path | None = None) -> None:
        """Persist preferences to disk."""
        target = path or PREFS_PATH
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            target.write_text(json.dumps(asdict(self), indent=2))
        except Exception:
            logger.debug("Failed to save preferences to %s", target)

    @classmethod
    def load(cls, path: Path | None = None) -> ClientPreferences:
        """Load preferences from disk, returning defaults if missing/corrupt."""
        target = path or PREFS_PATH
        try:
            if target.exists():
                data = json.loads(target.read_text())
                prefs = cls(**{
                    k: v for k, v in data.items()
                    if k in cls.__dataclass_fields__
                })
                prefs.validate()
                logger.debug("Loaded preferences from %s", target)
                return prefs
            else:
                logger.debug("Preferences file not found at %s; using defaults", target)
        except Exception:
            logger.warning("Failed to load preferences from %s; using defaults", target)
        return cls()
