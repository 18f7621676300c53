"""conduit: main application entry point."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_DIR = Path.home() / ".conduit" / "logs"

# Preference fields and the env vars that take precedence over them.
_PREF_ENV_VARS = {
    "hil_enabled": "CONDUIT_HIL",
    "tool_timeout_seconds": "CONDUIT_TOOL_TIMEOUT",
    "max_iterations": "CONDUIT_MAX_ITERATIONS",
}


def configure_logging(level: str = "INFO", verbose: bool = False, log_dir: Path | None = None) -> Path:
    """Log to a rotating file, plus stderr when ``verbose``. Returns the log path."""
    log_dir = log_dir or LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "conduit.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    if verbose:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)
    return log_file


def build_config(args, prefs):
    """Resolve settings: defaults < preferences < env < YAML < flags."""
    from conduit.engine.config import EngineConfig
    from conduit.engine.yaml_config import ConduitConfig, load_yaml_config

    engine = EngineConfig.from_env()
    for field_name, env_var in _PREF_ENV_VARS.items():
        if env_var not in os.environ:
            setattr(engine, field_name, getattr(prefs, field_name))

    if args.config:
        config = load_yaml_config(args.config, engine=engine)
    else:
        config = ConduitConfig(engine=engine)

    engine = config.engine
    if args.provider:
        engine.provider = args.provider
    if args.model:
        engine.model = args.model
    if args.hil is not None:
        engine.hil_enabled = args.hil
    if args.no_ipc:
        engine.ipc_enabled = False
    if args.max_iterations is not None:
        engine.max_iterations = args.max_iterations
    if args.tool_timeout is not None:
        engine.tool_timeout_seconds = args.tool_timeout
    return config


async def run_chat(config, prefs, once: str | None = None) -> int:
    from rich.console import Console

    from conduit.cli.keyboard import KeyboardMonitor, TermiosKeyCapture
    from conduit.cli.repl import ChatRepl
    from conduit.cli.signals import SignalHandler
    from conduit.cli.terminal import ConsoleRenderer, TerminalLineReader
    from conduit.engine.session import Session

    logger = logging.getLogger(__name__)
    console = Console()
    reader = TerminalLineReader()
    try:
        session = await Session.open(config, reader, console=console)
    except KeyError as exc:
        console.print(f"[bold red]{exc.args[0]}[/]")
        return 2

    renderer = ConsoleRenderer(console)
    signals = SignalHandler(session.abort, cleanup=lambda: monitor.stop())
    monitor = KeyboardMonitor(
        session.abort,
        TermiosKeyCapture(),
        on_abort=lambda: renderer.info("[Abort requested; stopping after the current tool]"),
        on_interrupt=signals.handle_interrupt,
    )
    reader.set_prompt_callbacks(monitor.pause, monitor.resume)
    session.bridge.set_callbacks(monitor.pause, monitor.resume)
    signals.install()

    if session.ipc is not None:
        logger.info("IPC router available at %s", session.ipc.url)

    repl = ChatRepl(
        session,
        renderer,
        monitor=monitor,
        signals=signals,
        prefs=prefs,
        ablation_hooks=config.ablation_hooks,
    )
    try:
        if once is not None:
            await repl.handle_line(once)
        else:
            await repl.run()
    finally:
        signals.uninstall()
        monitor.stop()
        await session.close()
    return 0


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="conduit",
        description="conduit: streaming agent client for MCP tool servers",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file for engine settings, MCP servers and hooks",
    )
    parser.add_argument("--provider", help="Model provider (anthropic, openai, ollama)")
    parser.add_argument("--model", help="Model name for the provider")
    hil = parser.add_mutually_exclusive_group()
    hil.add_argument(
        "--hil", dest="hil", action="store_true", default=None,
        help="Confirm each tool call before it runs",
    )
    hil.add_argument(
        "--no-hil", dest="hil", action="store_false",
        help="Run tool calls without confirmation",
    )
    parser.add_argument(
        "--no-ipc", action="store_true",
        help="Do not start the loopback tool router",
    )
    parser.add_argument(
        "--max-iterations", type=int, metavar="N",
        help="Agent loop iteration cap (0 = unlimited)",
    )
    parser.add_argument(
        "--tool-timeout", type=float, metavar="SECONDS",
        help="Per-tool timeout in seconds (-1 = unlimited)",
    )
    parser.add_argument(
        "-p", "--prompt", metavar="TEXT",
        help="Run a single prompt and exit",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Also log to stderr",
    )
    args = parser.parse_args()

    log_level = os.getenv("CONDUIT_LOG_LEVEL", "INFO")
    log_file = configure_logging(log_level, args.verbose)
    logger = logging.getLogger(__name__)
    logger.info("Starting conduit cwd=%s config=%s log=%s", Path.cwd(), args.config, log_file)

    import yaml

    from conduit.shared.services.preferences import ClientPreferences

    prefs = ClientPreferences.load()
    try:
        config = build_config(args, prefs)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(f"Error: could not load config: {exc}", file=sys.stderr)
        sys.exit(2)
    if config.engine.log_level.upper() != log_level.upper():
        logging.getLogger().setLevel(
            getattr(logging, config.engine.log_level.upper(), logging.INFO)
        )

    sys.exit(asyncio.run(run_chat(config, prefs, once=args.prompt)))


if __name__ == "__main__":
    main()
