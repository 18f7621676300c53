"""Cooperative cancellation state.

Two independent flags live here:

- ``AbortState`` is session scoped. The keyboard monitor, the SIGINT
  handler and the IPC router write it; the agent loop and the router
  poll it at execution checkpoints. It stays set until ``reset()``.
- ``PhaseState`` carries the ablation-run flags written by hook control
  directives (``@complete-phase``, ``@abort``) and read by an external
  multi-phase driver and the elicitation bridge.

Both are plain objects passed by handle so every session (and every
test) gets isolated instances.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


class AbortState:
    """Sticky abort flag with an optional reason."""

    def __init__(self) -> None:
        self._requested = False
        self._reason: str | None = None
        self._source: str | None = None
        self._requested_at: datetime | None = None

    @property
    def requested(self) -> bool:
        return self._requested

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def source(self) -> str | None:
        return self._source

    @property
    def requested_at(self) -> datetime | None:
        return self._requested_at

    def request(self, reason: str = "user", source: str | None = None) -> bool:
        """Set the flag. Returns False if it was already set."""
        if self._requested:
            return False
        self._requested = True
        self._reason = reason
        self._source = source
        self._requested_at = datetime.now(timezone.utc)
        logger.info("Abort requested reason=%s source=%s", reason, source or "-")
        return True

    def reset(self) -> None:
        if self._requested:
            logger.debug("Abort state reset (was reason=%s)", self._reason)
        self._requested = False
        self._reason = None
        self._source = None
        self._requested_at = None

    def __bool__(self) -> bool:
        return self._requested

    def __repr__(self) -> str:
        return f"AbortState(requested={self._requested}, reason={self._reason!r})"


class PhaseState:
    """Flags shared between hook control directives and a phase driver."""

    def __init__(self) -> None:
        self.phase_complete = False
        self.current_phase: str | None = None
        self.run_abort_requested = False
        self.auto_decline = False

    def begin_phase(self, name: str | None) -> None:
        """Enter a new phase, clearing the per-phase flags."""
        self.current_phase = name
        self.phase_complete = False
        self.auto_decline = False
        logger.info("Phase started: %s", name or "<unnamed>")

    def end_phase(self) -> None:
        logger.info(
            "Phase ended: %s complete=%s",
            self.current_phase or "<unnamed>", self.phase_complete,
        )
        self.current_phase = None
        self.auto_decline = False

    def complete_phase(self, name: str | None = None) -> bool:
        """Mark the phase complete.

        A named completion only applies when no phase is active or the
        active phase has the same name. Returns whether the flag was set.
        """
        if name and self.current_phase and name != self.current_phase:
            logger.info(
                "Ignoring @complete-phase:%s during phase %s",
                name, self.current_phase,
            )
            return False
        self.phase_complete = True
        return True

    def request_run_abort(self) -> None:
        self.run_abort_requested = True

    def reset(self) -> None:
        self.phase_complete = False
        self.current_phase = None
        self.run_abort_requested = False
        self.auto_decline = False
