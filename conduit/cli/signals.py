"""SIGINT / SIGTERM handling on the asyncio loop.

Outside a query, Ctrl+C shuts the client down: the cleanup callback runs
once and the process exits. While a query runs ("abort mode"), SIGINT
sets the session AbortState instead, so the agent loop stops at its next
checkpoint and the conversation stays well-formed.
"""
from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Callable
from contextlib import contextmanager

from ..engine.cancellation import AbortState

logger = logging.getLogger(__name__)

EXIT_SIGINT = 130
EXIT_SIGTERM = 143


class SignalHandler:
    def __init__(
        self,
        abort: AbortState,
        cleanup: Callable[[], None] | None = None,
        on_abort: Callable[[], None] | None = None,
        exit_func: Callable[[int], None] = sys.exit,
    ) -> None:
        self._abort = abort
        self._cleanup = cleanup
        self._on_abort = on_abort
        self._exit = exit_func
        self._abort_mode = False
        self._cleaned_up = False
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def abort_mode(self) -> bool:
        return self._abort_mode

    def set_abort_mode(self, enabled: bool) -> None:
        self._abort_mode = enabled

    @contextmanager
    def abort_mode_enabled(self):
        previous = self._abort_mode
        self._abort_mode = True
        try:
            yield self
        finally:
            self._abort_mode = previous

    def install(self, loop: asyncio.AbstractEventLoop | None = None) -> bool:
        """Register handlers on the loop. Returns False where unsupported."""
        loop = loop or asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self.handle_interrupt)
            loop.add_signal_handler(signal.SIGTERM, self.handle_terminate)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handlers unavailable on this platform", exc_info=True)
            return False
        self._loop = loop
        return True

    def uninstall(self) -> None:
        if self._loop is None:
            return
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                self._loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                logger.debug("Failed to remove handler for %s", sig, exc_info=True)
        self._loop = None

    def handle_interrupt(self) -> None:
        if self._abort_mode:
            if self._abort.request("interrupt", source="sigint"):
                logger.info("SIGINT during query; abort requested")
                if self._on_abort is not None:
                    self._on_abort()
            return
        self._shutdown(EXIT_SIGINT)

    def handle_terminate(self) -> None:
        self._shutdown(EXIT_SIGTERM)

    def run_cleanup(self) -> None:
        """Run the cleanup callback at most once."""
        if self._cleaned_up:
            return
        self._cleaned_up = True
        if self._cleanup is None:
            return
        try:
            self._cleanup()
        except Exception:
            logger.exception("Cleanup failed")

    def _shutdown(self, code: int) -> None:
        logger.info("Shutting down (exit code %d)", code)
        self.run_cleanup()
        self._exit(code)
