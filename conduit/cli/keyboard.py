"""Raw-mode keyboard monitor active while the agent loop runs.

While a query is in flight the terminal is switched to raw mode so the
abort key (Ctrl+A) can be seen without waiting for Enter. Anything else
the user types is buffered and handed back on ``stop()`` so it can be
replayed into the next prompt.

Raw capture sits behind ``RawKeyCapture`` so tests can feed keys
without a terminal.
"""
from __future__ import annotations

import asyncio
import logging
import os
import sys
from collections.abc import Callable
from typing import Protocol

from ..engine.cancellation import AbortState

logger = logging.getLogger(__name__)

ABORT_KEY = "\x01"
CTRL_C = "\x03"
ESCAPE = "\x1b"
_BACKSPACE = ("\x7f", "\x08")
_ENTER = ("\r", "\n")


class RawKeyCapture(Protocol):
    def is_interactive_terminal(self) -> bool: ...

    def start_raw_key_capture(self, on_key: Callable[[str], None]) -> None: ...

    def stop_raw_key_capture(self) -> str:
        """Restore line mode; returns any input read but not yet delivered."""
        ...


class TermiosKeyCapture:
    """RawKeyCapture over termios and ``loop.add_reader`` (POSIX only)."""

    def __init__(self, stream=None) -> None:
        self._stream = stream or sys.stdin
        self._fd: int | None = None
        self._saved_attrs: list | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def is_interactive_terminal(self) -> bool:
        try:
            return os.isatty(self._stream.fileno())
        except (AttributeError, ValueError, OSError):
            return False

    def start_raw_key_capture(self, on_key: Callable[[str], None]) -> None:
        import termios

        fd = self._stream.fileno()
        self._saved_attrs = termios.tcgetattr(fd)
        attrs = termios.tcgetattr(fd)
        # Input: no CR translation or flow control. Local: no echo, no
        # line buffering, no signal keys. Output processing stays on.
        attrs[0] &= ~(termios.BRKINT | termios.ICRNL | termios.INPCK | termios.ISTRIP | termios.IXON)
        attrs[3] &= ~(termios.ECHO | termios.ICANON | termios.IEXTEN | termios.ISIG)
        attrs[6][termios.VMIN] = 1
        attrs[6][termios.VTIME] = 0
        termios.tcsetattr(fd, termios.TCSADRAIN, attrs)
        self._fd = fd

        def _readable() -> None:
            try:
                data = os.read(fd, 1024)
            except OSError:
                logger.debug("Raw key read failed", exc_info=True)
                return
            for ch in data.decode("utf-8", errors="ignore"):
                on_key(ch)

        self._loop = asyncio.get_running_loop()
        self._loop.add_reader(fd, _readable)

    def stop_raw_key_capture(self) -> str:
        if self._fd is None:
            return ""
        import termios

        if self._loop is not None:
            self._loop.remove_reader(self._fd)
            self._loop = None
        try:
            termios.tcsetattr(self._fd, termios.TCSADRAIN, self._saved_attrs)
        except termios.error:
            logger.debug("Failed to restore terminal attributes", exc_info=True)
        self._fd = None
        self._saved_attrs = None
        return ""


class KeyboardMonitor:
    """Watches for the abort key while buffering other keystrokes."""

    def __init__(
        self,
        abort: AbortState,
        capture: RawKeyCapture,
        on_abort: Callable[[], None] | None = None,
        on_interrupt: Callable[[], None] | None = None,
    ) -> None:
        self._abort = abort
        self._capture = capture
        self._on_abort = on_abort
        self._on_interrupt = on_interrupt
        self._buffer: list[str] = []
        self._active = False
        self._paused = False
        self._pause_depth = 0
        self._escape: str | None = None

    @property
    def active(self) -> bool:
        return self._active

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def buffer(self) -> str:
        return "".join(self._buffer)

    def start(self) -> bool:
        """Enter raw mode. Returns False when stdin is not a terminal."""
        if self._active:
            return True
        if not self._capture.is_interactive_terminal():
            return False
        self._buffer.clear()
        self._escape = None
        self._capture.start_raw_key_capture(self.handle_key)
        self._active = True
        self._paused = False
        self._pause_depth = 0
        return True

    def stop(self) -> str:
        """Leave raw mode and return buffered input for replay."""
        if not self._active:
            return ""
        leftover = ""
        if not self._paused:
            leftover = self._capture.stop_raw_key_capture()
        for ch in leftover:
            self.handle_key(ch)
        self._active = False
        self._paused = False
        self._pause_depth = 0
        text = self.buffer
        self._buffer.clear()
        return text

    def pause(self) -> None:
        """Hand the terminal back for a line prompt (HIL, elicitation).

        Pauses nest: an elicitation form pauses once for the whole form
        and once more per field, and raw mode returns only when the
        outermost ``resume`` runs.
        """
        if not self._active:
            return
        self._pause_depth += 1
        if not self._paused:
            for ch in self._capture.stop_raw_key_capture():
                self.handle_key(ch)
            self._paused = True

    def resume(self) -> None:
        if not self._active or self._pause_depth == 0:
            return
        self._pause_depth -= 1
        if self._pause_depth == 0 and self._paused:
            self._capture.start_raw_key_capture(self.handle_key)
            self._paused = False

    def handle_key(self, ch: str) -> None:
        if self._escape is not None:
            if self._consume_escape(ch):
                return

        if ch == ABORT_KEY:
            if self._abort.request("user", source="keyboard"):
                logger.info("Abort key pressed")
                if self._on_abort is not None:
                    self._on_abort()
            return
        if ch == CTRL_C:
            if self._on_interrupt is not None:
                self._on_interrupt()
            return
        if ch in _BACKSPACE:
            if self._buffer:
                self._buffer.pop()
            return
        if ch == ESCAPE:
            self._buffer.clear()
            self._escape = ""
            return
        if ch in _ENTER or ord(ch) < 0x20:
            return
        self._buffer.append(ch)

    def _consume_escape(self, ch: str) -> bool:
        """Swallow the tail of an escape sequence (arrow keys etc.)."""
        seq = self._escape
        if seq == "":
            if ch in "[O":
                self._escape = ch
                return True
            self._escape = None
            return False
        if "\x40" <= ch <= "\x7e" and not (seq == "[" and ch == "["):
            self._escape = None
        else:
            self._escape = seq + ch
        return True
