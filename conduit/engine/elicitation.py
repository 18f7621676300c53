"""Interactive bridge for server-initiated elicitation requests.

An MCP server may pause a tool call to ask the user for structured
input. The bridge first asks whether to accept, decline or cancel, then
walks the requested schema field by field, re-prompting until each
answer validates.

The per-field parsing is done by pure functions (``parse_field_input``
and friends) so it can be tested without a terminal.
"""
from __future__ import annotations

import asyncio
import logging
import math
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any
from urllib.parse import urlparse

from rich.console import Console
from rich.text import Text

from .cancellation import PhaseState
from .errors import ElicitationCancelled
from .hil import LineReader
from .history import HistoryLogger

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_RULE = "─" * 60


class ElicitationAction(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"
    CANCEL = "cancel"


@dataclass
class ElicitationOutcome:
    action: ElicitationAction
    content: dict[str, Any] | None = None
    cancelled: bool = False
    reason: str | None = None


@dataclass
class PendingElicitation:
    """The prompt currently waiting on the user."""
    message: str
    task: asyncio.Task | None = None
    cancel_reason: str | None = None


class InvalidFieldInput(ValueError):
    """User input did not satisfy the field schema; re-prompt."""


class _Omit:
    def __repr__(self) -> str:
        return "OMIT"


# Returned by parse_field_input when an optional field is left empty.
OMIT: Any = _Omit()


# ── Pure validators ──


def validate_format(value: str, fmt: str | None) -> bool:
    if not fmt:
        return True
    if fmt == "email":
        return bool(_EMAIL_RE.match(value))
    if fmt == "uri":
        parsed = urlparse(value)
        return bool(parsed.scheme) and bool(parsed.netloc or parsed.path)
    if fmt == "date":
        if not _DATE_RE.match(value):
            return False
        try:
            date.fromisoformat(value)
        except ValueError:
            return False
        return True
    if fmt == "date-time":
        candidate = value[:-1] + "+00:00" if value.endswith(("Z", "z")) else value
        try:
            datetime.fromisoformat(candidate)
        except ValueError:
            return False
        return True
    return True


def _empty(schema: dict[str, Any], required: bool) -> Any:
    if "default" in schema:
        return schema["default"]
    if not required:
        return OMIT
    raise InvalidFieldInput("This field is required")


def parse_boolean(raw: str, schema: dict[str, Any], required: bool = False) -> Any:
    text = raw.strip().lower()
    if text == "":
        return bool(schema["default"]) if "default" in schema else _empty(schema, required)
    if text in ("y", "yes", "true"):
        return True
    if text in ("n", "no", "false"):
        return False
    raise InvalidFieldInput("Please enter y or n")


def parse_number(raw: str, schema: dict[str, Any], required: bool = False) -> Any:
    text = raw.strip()
    if text == "":
        return _empty(schema, required)
    try:
        number = float(text)
    except ValueError:
        raise InvalidFieldInput("Please enter a valid number") from None
    if not math.isfinite(number):
        raise InvalidFieldInput("Please enter a valid number")
    if schema.get("type") == "integer":
        if not number.is_integer():
            raise InvalidFieldInput("Please enter an integer")
        number = int(number)
    minimum = schema.get("minimum")
    maximum = schema.get("maximum")
    if minimum is not None and number < minimum:
        raise InvalidFieldInput(f"Value must be >= {minimum}")
    if maximum is not None and number > maximum:
        raise InvalidFieldInput(f"Value must be <= {maximum}")
    return number


def parse_string(raw: str, schema: dict[str, Any], required: bool = False) -> Any:
    text = raw.strip()
    if text == "":
        return _empty(schema, required)
    min_length = schema.get("minLength")
    max_length = schema.get("maxLength")
    if min_length is not None and len(text) < min_length:
        raise InvalidFieldInput(f"Value must be at least {min_length} characters")
    if max_length is not None and len(text) > max_length:
        raise InvalidFieldInput(f"Value must be at most {max_length} characters")
    fmt = schema.get("format")
    if not validate_format(text, fmt):
        raise InvalidFieldInput(f"Please enter a valid {fmt}")
    return text


def _select_index(text: str, count: int) -> int | None:
    try:
        index = int(text)
    except ValueError:
        return None
    return index - 1 if 1 <= index <= count else None


def parse_enum(raw: str, schema: dict[str, Any], required: bool = False) -> Any:
    options = [str(o) for o in schema.get("enum") or []]
    text = raw.strip()
    if text == "":
        return _empty(schema, required)
    index = _select_index(text, len(options))
    if index is not None:
        return options[index]
    if text in options:
        return text
    raise InvalidFieldInput(f"Please select a valid option (1-{len(options)})")


def parse_one_of(raw: str, schema: dict[str, Any], required: bool = False) -> Any:
    options = schema.get("oneOf") or []
    text = raw.strip()
    if text == "":
        return _empty(schema, required)
    index = _select_index(text, len(options))
    if index is None:
        raise InvalidFieldInput(f"Please select a valid option (1-{len(options)})")
    return options[index].get("const")


def array_options(schema: dict[str, Any]) -> list[tuple[str, str]]:
    """(value, title) pairs for an array-of-enum field."""
    items = schema.get("items") or {}
    if items.get("enum"):
        return [(str(v), str(v)) for v in items["enum"]]
    if items.get("anyOf"):
        return [
            (str(o.get("const")), str(o.get("title") or o.get("const")))
            for o in items["anyOf"]
        ]
    return []


def parse_array(raw: str, schema: dict[str, Any], required: bool = False) -> Any:
    options = array_options(schema)
    text = raw.strip()
    if text == "":
        return _empty(schema, required)
    selected: list[str] = []
    for part in (p.strip() for p in text.split(",")):
        index = _select_index(part, len(options))
        if index is None:
            raise InvalidFieldInput(f"Invalid selection: {part}")
        selected.append(options[index][0])
    min_items = schema.get("minItems")
    max_items = schema.get("maxItems")
    if min_items is not None and len(selected) < min_items:
        raise InvalidFieldInput(f"Please select at least {min_items} item(s)")
    if max_items is not None and len(selected) > max_items:
        raise InvalidFieldInput(f"Please select at most {max_items} item(s)")
    return selected


def field_kind(schema: dict[str, Any]) -> str | None:
    kind = schema.get("type")
    if kind == "boolean":
        return "boolean"
    if kind in ("number", "integer"):
        return "number"
    if kind == "array":
        return "array" if array_options(schema) else None
    if kind == "string":
        if schema.get("enum"):
            return "enum"
        if schema.get("oneOf"):
            return "one_of"
        return "string"
    return None


_PARSERS: dict[str, Callable[[str, dict[str, Any], bool], Any]] = {
    "boolean": parse_boolean,
    "number": parse_number,
    "array": parse_array,
    "enum": parse_enum,
    "one_of": parse_one_of,
    "string": parse_string,
}


def parse_field_input(schema: dict[str, Any], raw: str, required: bool = False) -> Any:
    """Validate one answer. Raises InvalidFieldInput; returns OMIT for skipped optionals."""
    kind = field_kind(schema)
    if kind is None:
        return OMIT
    return _PARSERS[kind](raw, schema, required)


# ── Bridge ──


class ElicitationBridge:
    """Presents elicitation requests on the terminal."""

    def __init__(
        self,
        reader: LineReader,
        phase: PhaseState | None = None,
        history: HistoryLogger | None = None,
        console: Console | None = None,
    ) -> None:
        self._reader = reader
        self._phase = phase or PhaseState()
        self._history = history
        self._console = console or Console()
        self._pending: PendingElicitation | None = None
        self._on_start: Callable[[], None] | None = None
        self._on_end: Callable[[], None] | None = None

    def set_callbacks(
        self,
        on_start: Callable[[], None] | None,
        on_end: Callable[[], None] | None,
    ) -> None:
        """Hooks run around each interactive prompt (pause/resume key monitor)."""
        self._on_start = on_start
        self._on_end = on_end

    @property
    def pending(self) -> PendingElicitation | None:
        return self._pending

    def cancel_pending(self, reason: str = "cancelled") -> bool:
        """Cancel the prompt waiting on the user, if any."""
        pending = self._pending
        if pending is None or pending.task is None or pending.task.done():
            return False
        pending.cancel_reason = reason
        pending.task.cancel()
        logger.info("Cancelling pending elicitation: %s", reason)
        return True

    async def handle(
        self,
        message: str,
        schema: dict[str, Any] | None,
        url: str | None = None,
    ) -> ElicitationOutcome:
        if self._phase.auto_decline:
            reason = "phase already complete"
            self._console.print(Text("[Elicitation auto-declined: phase already complete]", style="dim"))
            self._record("auto-decline", message, reason)
            return ElicitationOutcome(ElicitationAction.DECLINE, reason=reason)

        if url:
            reason = "URL elicitation not supported"
            logger.warning("Declining URL elicitation: %s", url)
            self._console.print(Text("[Server Request] URL elicitation not supported", style="yellow"))
            self._record("decline", None, reason)
            return ElicitationOutcome(ElicitationAction.DECLINE, reason=reason)

        if self._pending is not None:
            logger.warning("Elicitation already pending; declining new request")
            self._record("decline", message, "another elicitation is pending")
            return ElicitationOutcome(
                ElicitationAction.DECLINE, reason="another elicitation is pending",
            )

        self._console.print(_RULE, style="dim")
        self._console.print(Text("[Server Request]", style="bold"))
        self._console.print(message, markup=False)
        self._console.print()
        if self._on_start is not None:
            self._on_start()

        pending = PendingElicitation(message=message)
        pending.task = asyncio.ensure_future(self._interact(message, schema or {}))
        self._pending = pending
        try:
            return await self._await_pending(pending)
        except ElicitationCancelled as exc:
            self._console.print(Text("  [Elicitation auto-declined (cancelled)]", style="yellow"))
            self._record("auto-decline-cancelled", message, exc.reason)
            return ElicitationOutcome(
                ElicitationAction.DECLINE, cancelled=True, reason=exc.reason,
            )
        finally:
            self._pending = None
            self._console.print(_RULE, style="dim")
            if self._on_end is not None:
                self._on_end()

    async def _await_pending(self, pending: PendingElicitation) -> ElicitationOutcome:
        try:
            return await pending.task
        except asyncio.CancelledError:
            if pending.cancel_reason is None:
                raise
            raise ElicitationCancelled(pending.cancel_reason) from None

    async def _interact(self, message: str, schema: dict[str, Any]) -> ElicitationOutcome:
        action = await self._prompt_action()
        if action != ElicitationAction.ACCEPT:
            self._record(action.value, message)
            return ElicitationOutcome(action)
        content = await self._collect(schema)
        self._record("accept", message)
        return ElicitationOutcome(ElicitationAction.ACCEPT, content=content)

    async def _prompt_action(self) -> ElicitationAction:
        while True:
            answer = (await self._reader.ask("[A]ccept / [D]ecline / [C]ancel: ")).strip().lower()
            if answer in ("a", "accept"):
                return ElicitationAction.ACCEPT
            if answer in ("d", "decline"):
                return ElicitationAction.DECLINE
            if answer in ("c", "cancel"):
                return ElicitationAction.CANCEL
            self._warn("Please enter A, D, or C")

    async def _collect(self, schema: dict[str, Any]) -> dict[str, Any]:
        required = set(schema.get("required") or [])
        properties: dict[str, Any] = schema.get("properties") or {}
        content: dict[str, Any] = {}
        self._console.print("Please provide the requested information:")
        for name, field_schema in properties.items():
            value = await self._prompt_field(name, field_schema or {}, name in required)
            if value is not OMIT:
                content[name] = value
        return content

    async def _prompt_field(self, name: str, schema: dict[str, Any], required: bool) -> Any:
        kind = field_kind(schema)
        if kind is None:
            logger.warning("Unsupported elicitation field %s: %r", name, schema.get("type"))
            return OMIT

        header = Text(str(schema.get("title") or name), style="bold")
        if required:
            header.append(" *", style="red")
        if schema.get("description"):
            header.append(f" ({schema['description']})", style="dim")
        self._console.print(header)
        prompt = self._describe(kind, schema)

        while True:
            raw = await self._reader.ask(prompt)
            try:
                return parse_field_input(schema, raw, required)
            except InvalidFieldInput as exc:
                self._warn(str(exc))

    def _describe(self, kind: str, schema: dict[str, Any]) -> str:
        """Print option lists and return the input prompt for a field."""
        default = schema.get("default")
        if kind == "boolean":
            if default is None:
                return "  [y/n]: "
            return f"  [y/n] (default: {'Y' if default else 'N'}): "
        if kind == "number":
            lo, hi = schema.get("minimum"), schema.get("maximum")
            prompt = "  "
            if lo is not None and hi is not None:
                prompt += f"[{lo}-{hi}]"
            elif lo is not None:
                prompt += f"[>={lo}]"
            elif hi is not None:
                prompt += f"[<={hi}]"
            if default is not None:
                prompt += f" (default: {default})"
            return prompt + ": "
        if kind == "enum":
            names = schema.get("enumNames") or []
            self._console.print("  Options:")
            for i, option in enumerate(schema["enum"]):
                label = names[i] if i < len(names) and names[i] else option
                marker = " (default)" if option == default else ""
                self._console.print(f"    {i + 1}. {label}{marker}", markup=False)
            return "  Select (number or value): "
        if kind == "one_of":
            self._console.print("  Options:")
            for i, option in enumerate(schema["oneOf"]):
                marker = " (default)" if option.get("const") == default else ""
                label = option.get("title") or option.get("const")
                self._console.print(f"    {i + 1}. {label}{marker}", markup=False)
            return "  Select (number): "
        if kind == "array":
            self._console.print("  Select multiple (comma-separated numbers):")
            for i, (value, title) in enumerate(array_options(schema)):
                marker = " (default)" if default and value in default else ""
                self._console.print(f"    {i + 1}. {title}{marker}", markup=False)
            limits = []
            if schema.get("minItems") is not None:
                limits.append(f"min: {schema['minItems']}")
            if schema.get("maxItems") is not None:
                limits.append(f"max: {schema['maxItems']}")
            if limits:
                self._console.print(f"  ({', '.join(limits)})")
            return "  Select: "
        prompt = "  "
        if schema.get("format"):
            prompt += f"[{schema['format']}] "
        if default:
            prompt += f"(default: {default}) "
        return prompt + ": "

    def _warn(self, text: str) -> None:
        self._console.print(Text(f"  {text}", style="yellow"))

    def _record(self, action: str, message: str | None, reason: str | None = None) -> None:
        logger.info("Elicitation %s%s", action, f" ({reason})" if reason else "")
        if self._history is not None:
            self._history.add_elicitation_event(action, message, reason)
