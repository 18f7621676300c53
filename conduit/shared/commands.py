"""Slash command parser and help table for the chat REPL."""

from __future__ import annotations

import shlex
from dataclasses import dataclass


@dataclass
class ParsedCommand:
    """A parsed slash command."""

    name: str
    args: list[str]
    raw: str

    @property
    def rest(self) -> str:
        """Everything after the command name, unsplit."""
        parts = self.raw.split(None, 1)
        return parts[1] if len(parts) > 1 else ""


def parse_command(text: str) -> ParsedCommand | None:
    """Parse a /command from input text.

    Returns None if text does not start with '/'. Arguments are split
    shell-style so hook directives can be quoted; unbalanced quotes fall
    back to whitespace splitting.
    """
    stripped = text.strip()
    if not stripped.startswith("/"):
        return None
    try:
        parts = shlex.split(stripped)
    except ValueError:
        parts = stripped.split()
    name = parts[0][1:].lower()  # remove leading '/'
    args = parts[1:] if len(parts) > 1 else []
    return ParsedCommand(name=name, args=args, raw=stripped)


COMMAND_HELP: dict[str, str] = {
    "hil": "/hil [on|off]: toggle confirmation before each tool call",
    "hooks": "/hooks [list|add|remove|enable|disable]: manage tool hooks for this session",
    "ablation": "/ablation PROMPT: run PROMPT with the configured ablation hooks only",
    "tools": "List tools from connected MCP servers",
    "timeout": "/timeout SECONDS: per-tool timeout (-1 for none)",
    "iterations": "/iterations N: agent loop iteration cap (0 for unlimited)",
    "ipc": "Show the loopback tool router address",
    "clear": "Start a fresh conversation",
    "help": "Show this help message",
    "exit": "Quit (also /quit, Ctrl+D)",
}
