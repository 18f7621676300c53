from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from conduit.cli.signals import EXIT_SIGINT, EXIT_SIGTERM, SignalHandler
from conduit.engine.cancellation import AbortState


def _handler(**kwargs):
    abort = AbortState()
    cleanup = MagicMock()
    exit_func = MagicMock()
    return SignalHandler(abort, cleanup=cleanup, exit_func=exit_func, **kwargs), abort, cleanup, exit_func


def test_sigint_in_abort_mode_requests_abort() -> None:
    on_abort = MagicMock()
    handler, abort, cleanup, exit_func = _handler(on_abort=on_abort)

    with handler.abort_mode_enabled():
        handler.handle_interrupt()
        handler.handle_interrupt()

    assert abort.requested
    assert abort.source == "sigint"
    on_abort.assert_called_once()
    cleanup.assert_not_called()
    exit_func.assert_not_called()
    assert not handler.abort_mode


def test_sigint_outside_query_cleans_up_and_exits() -> None:
    handler, abort, cleanup, exit_func = _handler()
    handler.handle_interrupt()
    handler.handle_interrupt()

    assert not abort.requested
    cleanup.assert_called_once()
    exit_func.assert_called_with(EXIT_SIGINT)
    assert EXIT_SIGINT == 130


def test_sigterm_exits_with_143() -> None:
    handler, _, cleanup, exit_func = _handler()
    handler.set_abort_mode(True)
    handler.handle_terminate()
    cleanup.assert_called_once()
    exit_func.assert_called_once_with(EXIT_SIGTERM)
    assert EXIT_SIGTERM == 143


def test_cleanup_errors_are_logged(caplog: pytest.LogCaptureFixture) -> None:
    exit_func = MagicMock()
    handler = SignalHandler(
        AbortState(), cleanup=MagicMock(side_effect=RuntimeError("tty gone")), exit_func=exit_func,
    )
    handler.handle_interrupt()
    exit_func.assert_called_once_with(EXIT_SIGINT)
    assert "Cleanup failed" in caplog.text


@pytest.mark.asyncio
async def test_install_and_uninstall_on_running_loop() -> None:
    handler, _, _, _ = _handler()
    if handler.install():
        handler.uninstall()
    handler.uninstall()
