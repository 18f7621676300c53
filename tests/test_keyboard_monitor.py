from __future__ import annotations

from unittest.mock import MagicMock

from conduit.cli.keyboard import ABORT_KEY, CTRL_C, ESCAPE, KeyboardMonitor
from conduit.engine.cancellation import AbortState


class FakeCapture:
    def __init__(self, interactive: bool = True, leftover: str = "") -> None:
        self.interactive = interactive
        self.leftover = leftover
        self.on_key = None
        self.starts = 0
        self.stops = 0

    def is_interactive_terminal(self) -> bool:
        return self.interactive

    def start_raw_key_capture(self, on_key) -> None:
        self.on_key = on_key
        self.starts += 1

    def stop_raw_key_capture(self) -> str:
        self.stops += 1
        leftover, self.leftover = self.leftover, ""
        return leftover

    def feed(self, text: str) -> None:
        for ch in text:
            self.on_key(ch)


def _monitor(**kwargs):
    abort = AbortState()
    capture = FakeCapture(**{k: kwargs.pop(k) for k in ("interactive", "leftover") if k in kwargs})
    return KeyboardMonitor(abort, capture, **kwargs), abort, capture


def test_non_interactive_terminal_is_not_monitored() -> None:
    monitor, _, capture = _monitor(interactive=False)
    assert monitor.start() is False
    assert not monitor.active
    assert capture.starts == 0
    assert monitor.stop() == ""


def test_abort_key_sets_state_once() -> None:
    on_abort = MagicMock()
    monitor, abort, capture = _monitor(on_abort=on_abort)
    assert monitor.start()

    capture.feed(ABORT_KEY + ABORT_KEY)

    assert abort.requested
    assert abort.source == "keyboard"
    on_abort.assert_called_once()
    assert monitor.buffer == ""


def test_start_does_not_reset_abort() -> None:
    monitor, abort, _ = _monitor()
    abort.request("earlier")
    monitor.start()
    assert abort.requested
    assert abort.reason == "earlier"


def test_ctrl_c_is_forwarded() -> None:
    on_interrupt = MagicMock()
    monitor, abort, capture = _monitor(on_interrupt=on_interrupt)
    monitor.start()
    capture.feed(CTRL_C)
    on_interrupt.assert_called_once()
    assert not abort.requested


def test_typed_text_is_buffered_and_returned_on_stop() -> None:
    monitor, _, capture = _monitor(leftover="!")
    monitor.start()
    capture.feed("helo\x7flo world\r")

    assert monitor.buffer == "hello world"
    assert monitor.stop() == "hello world!"
    assert not monitor.active
    assert monitor.buffer == ""
    assert capture.stops == 1


def test_escape_clears_buffer_and_swallows_arrow_keys() -> None:
    monitor, _, capture = _monitor()
    monitor.start()
    capture.feed("draft")
    capture.feed(ESCAPE + "[A")
    assert monitor.buffer == ""
    capture.feed("ok" + ESCAPE + "[1;5C" + "!")
    assert monitor.buffer == "!"
    capture.feed(ESCAPE + "q")
    assert monitor.buffer == "q"


def test_pause_and_resume_release_the_terminal() -> None:
    monitor, _, capture = _monitor()
    monitor.start()
    capture.feed("ab")
    monitor.pause()
    assert monitor.paused
    assert capture.stops == 1

    monitor.resume()
    assert not monitor.paused
    assert capture.starts == 2
    capture.feed("c")
    assert monitor.stop() == "abc"


def test_stop_while_paused_does_not_touch_capture() -> None:
    monitor, _, capture = _monitor()
    monitor.start()
    monitor.pause()
    monitor.stop()
    assert capture.stops == 1


def test_nested_pauses_keep_terminal_until_outermost_resume() -> None:
    monitor, _, capture = _monitor()
    monitor.start()
    monitor.pause()
    monitor.pause()
    assert capture.stops == 1

    monitor.resume()
    assert monitor.paused
    assert capture.starts == 1

    monitor.resume()
    assert not monitor.paused
    assert capture.starts == 2
    monitor.resume()
    assert capture.starts == 2
