from __future__ import annotations

import pytest

from conduit.engine.directives import (
    ABORT,
    COMPLETE_PHASE,
    ControlDirective,
    ToolDirective,
    decode_tool_text,
    is_control_directive,
    matches_when,
    matches_when_input,
    parse_call_args,
    parse_run_directive,
)
from conduit.engine.errors import HookInvalidDirective


def test_call_form_parses_literals_and_quoted_commas() -> None:
    directive = parse_run_directive("@tool:srv__tool(x=1, y='a,b')")
    assert directive == ToolDirective("srv__tool", {"x": 1, "y": "a,b"}, inject_result=True)


def test_tool_exec_json_form_does_not_inject() -> None:
    directive = parse_run_directive("@tool-exec:srv__tool {}")
    assert directive == ToolDirective("srv__tool", {}, inject_result=False)


def test_json_form_with_arguments() -> None:
    directive = parse_run_directive('@tool:robot__move {"x": 1.5, "fast": true}')
    assert isinstance(directive, ToolDirective)
    assert directive.tool_name == "robot__move"
    assert directive.args == {"x": 1.5, "fast": True}


def test_bare_tool_name() -> None:
    directive = parse_run_directive("@tool:my-server__get_state")
    assert directive == ToolDirective("my-server__get_state", {})


def test_python_style_literals() -> None:
    args = parse_call_args("a=True, b=False, c=None, d=null, e=-3, f=2.5, g=raw")
    assert args == {"a": True, "b": False, "c": None, "d": None, "e": -3, "f": 2.5, "g": "raw"}


def test_escaped_quote_inside_string() -> None:
    args = parse_call_args(r"msg='it\'s done', " + 'other="x"')
    assert args["msg"] == "it's done"
    assert args["other"] == "x"


def test_empty_bare_value_reads_as_zero() -> None:
    assert parse_call_args("k=, m='', n=") == {"k": 0, "m": "", "n": 0}


def test_control_directives() -> None:
    assert parse_run_directive("@complete-phase") == ControlDirective(COMPLETE_PHASE)
    assert parse_run_directive("@complete-phase:grasp") == ControlDirective(COMPLETE_PHASE, "grasp")
    assert parse_run_directive("  @abort ") == ControlDirective(ABORT)
    assert is_control_directive("@complete-phase:x")
    assert not is_control_directive("@tool:a__b")


@pytest.mark.parametrize("run", [
    "",
    "do something",
    "@tool:notnamespaced",
    "@tool:srv__tool [1, 2]",
    '@tool:srv__tool {"x": }',
])
def test_invalid_directives_raise(run: str) -> None:
    with pytest.raises(HookInvalidDirective):
        parse_run_directive(run)


def test_when_matches_subset_of_json_object() -> None:
    assert matches_when({"status": "done"}, '{"status": "done", "n": 3}')
    assert not matches_when({"status": "done"}, '{"status": "pending"}')
    assert not matches_when({"status": "done"}, "status: done")
    assert not matches_when({"status": "done"}, '["done"]')
    assert not matches_when({"status": "done"}, None)


def test_when_strips_ansi_colour_codes() -> None:
    text = '\x1b[32m{"status": "done"}\x1b[0m'
    assert matches_when({"status": "done"}, text)


def test_when_is_type_strict_for_booleans() -> None:
    assert not matches_when({"ok": True}, '{"ok": 1}')
    assert matches_when({"ok": True}, '{"ok": true}')


def test_when_input_matches_arguments() -> None:
    assert matches_when_input({"mode": "fast"}, {"mode": "fast", "x": 1})
    assert not matches_when_input({"mode": "fast"}, {"mode": "slow"})
    assert not matches_when_input({"mode": "fast"}, None)


def test_decode_tool_text() -> None:
    assert decode_tool_text('\x1b[1m{"a": 1}\x1b[0m') == {"a": 1}
    assert decode_tool_text("plain text") == "plain text"
