"""Hook run-directive parser and predicate matchers.

A hook's ``run`` string is one of:

    @complete-phase            mark the active phase complete
    @complete-phase:<name>     ...only if <name> is the active phase
    @abort                     request an ablation-run abort
    @tool:<invocation>         run a tool, inject its result into context
    @tool-exec:<invocation>    run a tool, do not inject

where ``<invocation>`` is ``server__tool(k='v', n=42)``,
``server__tool {"k": "v"}`` or a bare ``server__tool``.

``parse_run_directive`` is the only entry point that callers need; it
returns a ``ControlDirective`` or ``ToolDirective`` and raises
``HookInvalidDirective`` for anything else.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from .errors import HookInvalidDirective

logger = logging.getLogger(__name__)

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")

_TOOL_NAME = r"[a-zA-Z0-9_-]+__[a-zA-Z0-9_]+"
_CALL_FORM_RE = re.compile(rf"^({_TOOL_NAME})\s*\((.*)\)\s*$", re.DOTALL)
_JSON_FORM_RE = re.compile(rf"^({_TOOL_NAME})\s*(\{{.*\}})?\s*$", re.DOTALL)

COMPLETE_PHASE = "complete_phase"
ABORT = "abort"

_COMPLETE_PHASE_PREFIX = "@complete-phase"
_TOOL_PREFIX = "@tool:"
_TOOL_EXEC_PREFIX = "@tool-exec:"


@dataclass(frozen=True)
class ControlDirective:
    """``@complete-phase[:name]`` or ``@abort``."""
    kind: str
    phase: str | None = None


@dataclass(frozen=True)
class ToolDirective:
    """A direct tool invocation requested by a hook."""
    tool_name: str
    args: dict[str, Any] = field(default_factory=dict)
    inject_result: bool = True


RunDirective = ControlDirective | ToolDirective


def parse_run_directive(run: str) -> RunDirective:
    """Parse a hook ``run`` string into a structured directive."""
    text = (run or "").strip()
    if not text:
        raise HookInvalidDirective(run, "empty directive")

    if text == _COMPLETE_PHASE_PREFIX:
        return ControlDirective(COMPLETE_PHASE)
    if text.startswith(_COMPLETE_PHASE_PREFIX + ":"):
        phase = text[len(_COMPLETE_PHASE_PREFIX) + 1:].strip()
        return ControlDirective(COMPLETE_PHASE, phase or None)
    if text == "@abort":
        return ControlDirective(ABORT)

    if text.startswith(_TOOL_EXEC_PREFIX):
        inject = False
        rest = text[len(_TOOL_EXEC_PREFIX):].strip()
    elif text.startswith(_TOOL_PREFIX):
        inject = True
        rest = text[len(_TOOL_PREFIX):].strip()
    else:
        raise HookInvalidDirective(run, "unknown directive prefix")

    tool_name, args = _parse_invocation(run, rest)
    return ToolDirective(tool_name=tool_name, args=args, inject_result=inject)


def is_control_directive(run: str) -> bool:
    """Cheap check used before a tool is executed."""
    text = (run or "").strip()
    return (
        text == "@abort"
        or text == _COMPLETE_PHASE_PREFIX
        or text.startswith(_COMPLETE_PHASE_PREFIX + ":")
    )


def _parse_invocation(run: str, rest: str) -> tuple[str, dict[str, Any]]:
    match = _CALL_FORM_RE.match(rest)
    if match:
        body = match.group(2).strip()
        return match.group(1), parse_call_args(body) if body else {}

    match = _JSON_FORM_RE.match(rest)
    if match:
        raw = match.group(2) or "{}"
        try:
            args = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise HookInvalidDirective(run, f"invalid JSON arguments: {exc}") from exc
        if not isinstance(args, dict):
            raise HookInvalidDirective(run, "JSON arguments must be an object")
        return match.group(1), args

    raise HookInvalidDirective(run, "expected server__tool invocation")


def parse_call_args(text: str) -> dict[str, Any]:
    """Scan ``k='v', n=42, flag=True`` into a dict.

    Only flat literals are supported: quoted strings (with backslash
    escapes), numbers, ``true/True``, ``false/False``, ``null/None``.
    Any other bare value is kept as a string; an empty one is 0.
    """
    args: dict[str, Any] = {}
    i, n = 0, len(text)
    while i < n:
        while i < n and text[i] in " ,\t":
            i += 1
        if i >= n:
            break

        key_start = i
        while i < n and text[i] not in "= ":
            i += 1
        key = text[key_start:i].strip()
        if not key:
            break

        while i < n and text[i] == " ":
            i += 1
        if i >= n or text[i] != "=":
            break
        i += 1
        while i < n and text[i] == " ":
            i += 1

        if i < n and text[i] in "'\"":
            quote = text[i]
            i += 1
            chars: list[str] = []
            while i < n and text[i] != quote:
                if text[i] == "\\" and i + 1 < n:
                    i += 1
                chars.append(text[i])
                i += 1
            i += 1
            args[key] = "".join(chars)
        else:
            value_start = i
            while i < n and text[i] not in ",)":
                i += 1
            args[key] = _scalar(text[value_start:i].strip())
    return args


def _scalar(raw: str) -> Any:
    # An empty unquoted value (`k=`) reads as 0; quote it for an empty string.
    if raw == "":
        return 0
    if raw in ("true", "True"):
        return True
    if raw in ("false", "False"):
        return False
    if raw in ("null", "None"):
        return None
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        return raw


# ── Predicates ──


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def _same(expected: Any, actual: Any) -> bool:
    # bool is an int subclass; True must not match 1.
    if isinstance(expected, bool) or isinstance(actual, bool):
        return type(expected) is type(actual) and expected == actual
    return expected == actual


def _matches(predicate: dict[str, Any], obj: Any) -> bool:
    if not isinstance(obj, dict):
        return False
    for key, value in predicate.items():
        if key not in obj or not _same(value, obj[key]):
            return False
    return True


def matches_when(predicate: dict[str, Any], display_text: str | None) -> bool:
    """Match a tool's display text against a ``when`` predicate.

    The text is stripped of ANSI colour codes and parsed as JSON; only
    an object whose every predicate key equals the expected value
    matches.
    """
    if not display_text:
        return False
    try:
        parsed = json.loads(strip_ansi(display_text))
    except (json.JSONDecodeError, ValueError):
        return False
    return _matches(predicate, parsed)


def matches_when_input(
    predicate: dict[str, Any], tool_input: dict[str, Any] | None,
) -> bool:
    return _matches(predicate, tool_input or {})


def decode_tool_text(text: str) -> Any:
    """Return JSON-decoded ``text`` (ANSI stripped) or the raw string."""
    clean = strip_ansi(text)
    try:
        return json.loads(clean)
    except (json.JSONDecodeError, ValueError):
        return text
