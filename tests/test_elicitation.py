from __future__ import annotations

import asyncio
import io
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from rich.console import Console

from conduit.engine.cancellation import PhaseState
from conduit.engine.elicitation import (
    OMIT,
    ElicitationAction,
    ElicitationBridge,
    InvalidFieldInput,
    parse_field_input,
    validate_format,
)
from conduit.engine.history import InMemoryHistory


def _bridge(*answers: str, phase: PhaseState | None = None):
    reader = SimpleNamespace(ask=AsyncMock(side_effect=list(answers)))
    history = InMemoryHistory()
    bridge = ElicitationBridge(
        reader, phase=phase, history=history, console=Console(file=io.StringIO()),
    )
    return bridge, reader, history


# ── Field parsing ──


def test_boolean_default_on_empty() -> None:
    assert parse_field_input({"type": "boolean", "default": True}, "") is True
    assert parse_field_input({"type": "boolean"}, "no") is False
    assert parse_field_input({"type": "boolean"}, "") is OMIT
    with pytest.raises(InvalidFieldInput):
        parse_field_input({"type": "boolean"}, "maybe")


def test_required_empty_string_is_rejected() -> None:
    with pytest.raises(InvalidFieldInput, match="required"):
        parse_field_input({"type": "string"}, "  ", required=True)
    assert parse_field_input({"type": "string"}, "") is OMIT
    assert parse_field_input({"type": "string", "default": "x"}, "", required=True) == "x"


def test_string_length_and_formats() -> None:
    schema = {"type": "string", "minLength": 2, "maxLength": 4}
    assert parse_field_input(schema, "abc") == "abc"
    with pytest.raises(InvalidFieldInput):
        parse_field_input(schema, "a")
    with pytest.raises(InvalidFieldInput):
        parse_field_input(schema, "abcde")

    assert validate_format("me@example.com", "email")
    assert not validate_format("me@example", "email")
    assert validate_format("https://example.com/x", "uri")
    assert not validate_format("example.com", "uri")
    assert validate_format("2024-02-29", "date")
    assert not validate_format("2023-02-29", "date")
    assert not validate_format("2024-2-1", "date")
    assert validate_format("2024-05-01T10:00:00Z", "date-time")
    assert not validate_format("yesterday", "date-time")


def test_number_bounds_and_integers() -> None:
    schema = {"type": "integer", "minimum": 1, "maximum": 10}
    assert parse_field_input(schema, "4") == 4
    assert parse_field_input(schema, "4.0") == 4
    with pytest.raises(InvalidFieldInput):
        parse_field_input(schema, "4.5")
    with pytest.raises(InvalidFieldInput):
        parse_field_input(schema, "11")
    assert parse_field_input({"type": "number"}, "2.5") == 2.5
    with pytest.raises(InvalidFieldInput):
        parse_field_input({"type": "number"}, "abc")
    assert parse_field_input({"type": "number", "default": 3}, "") == 3


def test_enum_by_index_or_value() -> None:
    schema = {"type": "string", "enum": ["red", "green", "blue"]}
    assert parse_field_input(schema, "2") == "green"
    assert parse_field_input(schema, "blue") == "blue"
    with pytest.raises(InvalidFieldInput):
        parse_field_input(schema, "4")
    with pytest.raises(InvalidFieldInput):
        parse_field_input(schema, "purple")


def test_one_of_by_index() -> None:
    schema = {"type": "string", "oneOf": [
        {"const": "s", "title": "Small"},
        {"const": "l", "title": "Large"},
    ]}
    assert parse_field_input(schema, "2") == "l"
    with pytest.raises(InvalidFieldInput):
        parse_field_input(schema, "Large")


def test_array_selection_and_limits() -> None:
    schema = {
        "type": "array",
        "items": {"anyOf": [{"const": "a", "title": "A"}, {"const": "b"}, {"const": "c"}]},
        "minItems": 1,
        "maxItems": 2,
    }
    assert parse_field_input(schema, "1, 3") == ["a", "c"]
    with pytest.raises(InvalidFieldInput):
        parse_field_input(schema, "1,2,3")
    with pytest.raises(InvalidFieldInput):
        parse_field_input(schema, "0")
    enum_schema = {"type": "array", "items": {"enum": ["x", "y"]}, "default": ["y"]}
    assert parse_field_input(enum_schema, "") == ["y"]


# ── Bridge ──


@pytest.mark.asyncio
async def test_accept_walks_schema_and_reprompts() -> None:
    schema = {
        "type": "object",
        "properties": {
            "name": {"type": "string"},
            "count": {"type": "integer", "minimum": 1},
            "confirm": {"type": "boolean", "default": True},
            "note": {"type": "string"},
        },
        "required": ["name", "count"],
    }
    bridge, reader, history = _bridge("x", "a", "", "Ada", "0", "3", "", "")
    start, end = MagicMock(), MagicMock()
    bridge.set_callbacks(start, end)

    outcome = await bridge.handle("Who is this?", schema)

    assert outcome.action == ElicitationAction.ACCEPT
    assert outcome.content == {"name": "Ada", "count": 3, "confirm": True}
    assert reader.ask.await_count == 8
    start.assert_called_once()
    end.assert_called_once()
    assert history.of_kind("elicitation")[-1].data["action"] == "accept"
    assert bridge.pending is None


@pytest.mark.asyncio
@pytest.mark.parametrize("answer,action", [
    ("d", ElicitationAction.DECLINE),
    ("cancel", ElicitationAction.CANCEL),
])
async def test_decline_and_cancel(answer: str, action: ElicitationAction) -> None:
    bridge, _, history = _bridge(answer)
    outcome = await bridge.handle("Proceed?", {"type": "object", "properties": {}})
    assert outcome.action == action
    assert outcome.content is None
    assert history.of_kind("elicitation")[-1].data["action"] == action.value


@pytest.mark.asyncio
async def test_auto_decline_skips_prompt() -> None:
    phase = PhaseState()
    phase.auto_decline = True
    bridge, reader, history = _bridge(phase=phase)

    outcome = await bridge.handle("Proceed?", {})

    assert outcome.action == ElicitationAction.DECLINE
    reader.ask.assert_not_awaited()
    event = history.of_kind("elicitation")[-1].data
    assert event["action"] == "auto-decline"


@pytest.mark.asyncio
async def test_url_elicitation_is_declined() -> None:
    bridge, reader, _ = _bridge()
    outcome = await bridge.handle("Log in", None, url="https://example.com/login")
    assert outcome.action == ElicitationAction.DECLINE
    assert outcome.reason == "URL elicitation not supported"
    reader.ask.assert_not_awaited()


@pytest.mark.asyncio
async def test_cancel_pending_resolves_as_tagged_decline() -> None:
    asked = asyncio.Event()

    async def ask(prompt: str) -> str:
        asked.set()
        await asyncio.sleep(3600)
        return "a"

    history = InMemoryHistory()
    bridge = ElicitationBridge(
        SimpleNamespace(ask=ask), history=history, console=Console(file=io.StringIO()),
    )
    end = MagicMock()
    bridge.set_callbacks(None, end)

    task = asyncio.create_task(bridge.handle("Waiting", {}))
    await asyncio.wait_for(asked.wait(), 1)
    assert bridge.cancel_pending("tool timeout")

    outcome = await asyncio.wait_for(task, 1)
    assert outcome.action == ElicitationAction.DECLINE
    assert outcome.cancelled
    assert outcome.reason == "tool timeout"
    event = history.of_kind("elicitation")[-1].data
    assert event["action"] == "auto-decline-cancelled"
    assert event["reason"] == "tool timeout"
    end.assert_called_once()
    assert not bridge.cancel_pending("again")
