from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from conduit.engine.cancellation import PhaseState
from conduit.engine.history import InMemoryHistory
from conduit.engine.hooks import HookContext, HookEngine
from conduit.engine.models import Hook, HookGate, HookPoint, ToolExecutionResult


def _result(name: str, text: str, success: bool = True) -> ToolExecutionResult:
    return ToolExecutionResult(
        tool_name=name,
        display_text=text,
        content_blocks=[{"type": "text", "text": text}],
        success=success,
    )


def _runner(text: str = "ok", success: bool = True) -> AsyncMock:
    async def run(name, args, hook_id):
        return _result(name, text, success)
    return AsyncMock(side_effect=run)


def _after(tool: str, run: str, **kwargs) -> Hook:
    return Hook(point=HookPoint.AFTER, tool=tool, run=run, **kwargs)


@pytest.mark.asyncio
async def test_after_hook_injects_tool_result() -> None:
    engine = HookEngine(hooks=[_after("robot__move", "@tool:robot__state(verbose=True)")])
    runner = _runner('{"x": 1}')

    effects = await engine.run_hooks(
        HookPoint.AFTER, "robot__move",
        HookContext(tool_input={}, display_text="moved", run_tool=runner),
    )

    runner.assert_awaited_once()
    name, args, hook_id = runner.await_args.args
    assert (name, args) == ("robot__state", {"verbose": True})
    assert hook_id == engine.list_hooks()[0].id
    assert len(effects.injections) == 1
    assert effects.injections[0].result.display_text == '{"x": 1}'


@pytest.mark.asyncio
async def test_tool_exec_runs_without_injection() -> None:
    engine = HookEngine(hooks=[_after("a__b", "@tool-exec:a__log {}")])
    runner = _runner()
    effects = await engine.run_hooks(
        HookPoint.AFTER, "a__b", HookContext(tool_input={}, display_text="", run_tool=runner),
    )
    runner.assert_awaited_once()
    assert effects.injections == []


@pytest.mark.asyncio
async def test_before_hooks_never_inject() -> None:
    engine = HookEngine(hooks=[Hook(point=HookPoint.BEFORE, tool="a__b", run="@tool:a__prep")])
    runner = _runner()
    effects = await engine.run_hooks(
        HookPoint.BEFORE, "a__b", HookContext(tool_input={}, run_tool=runner),
    )
    runner.assert_awaited_once()
    assert effects.injections == []


@pytest.mark.asyncio
async def test_when_predicate_gates_after_hook() -> None:
    engine = HookEngine(hooks=[_after("a__b", "@tool:a__next", when={"status": "done"})])
    runner = _runner()

    miss = await engine.run_hooks(
        HookPoint.AFTER, "a__b",
        HookContext(tool_input={}, display_text='{"status": "pending"}', run_tool=runner),
    )
    assert miss.fired == []
    runner.assert_not_awaited()

    hit = await engine.run_hooks(
        HookPoint.AFTER, "a__b",
        HookContext(tool_input={}, display_text='{"status": "done", "n": 3}', run_tool=runner),
    )
    assert len(hit.fired) == 1
    runner.assert_awaited_once()


@pytest.mark.asyncio
async def test_invalid_directive_does_not_block_siblings() -> None:
    engine = HookEngine(hooks=[
        _after("a__b", "not a directive"),
        _after("a__b", "@tool:a__ok"),
    ])
    runner = _runner()
    effects = await engine.run_hooks(
        HookPoint.AFTER, "a__b", HookContext(tool_input={}, display_text="", run_tool=runner),
    )
    assert len(effects.errors) == 1
    assert len(effects.injections) == 1


@pytest.mark.asyncio
async def test_failed_hook_tool_is_logged_and_siblings_continue() -> None:
    engine = HookEngine(hooks=[
        _after("a__b", "@tool:a__broken"),
        _after("a__b", "@tool:a__fine"),
    ])

    async def run(name, args, hook_id):
        if name == "a__broken":
            raise RuntimeError("boom")
        return _result(name, "fine")

    effects = await engine.run_hooks(
        HookPoint.AFTER, "a__b",
        HookContext(tool_input={}, display_text="", run_tool=AsyncMock(side_effect=run)),
    )
    assert any("boom" in e for e in effects.errors)
    assert [i.tool_name for i in effects.injections] == ["a__fine"]


@pytest.mark.asyncio
async def test_nested_run_hooks_returns_empty_effects() -> None:
    engine = HookEngine(hooks=[_after("a__b", "@tool:a__b")])
    nested = []

    async def run(name, args, hook_id):
        nested.append(await engine.run_hooks(
            HookPoint.AFTER, name, HookContext(tool_input={}, display_text=""),
        ))
        return _result(name, "ok")

    await engine.run_hooks(
        HookPoint.AFTER, "a__b",
        HookContext(tool_input={}, display_text="", run_tool=AsyncMock(side_effect=run)),
    )
    assert len(nested) == 1
    assert nested[0].empty
    assert not engine.executing


@pytest.mark.asyncio
async def test_suspended_user_hooks_leave_only_ablation_hooks() -> None:
    engine = HookEngine(hooks=[_after("a__b", "@tool:a__user")])
    engine.load_ablation_hooks([_after("a__b", "@tool:a__ablation")])
    engine.suspend()
    runner = _runner()

    effects = await engine.run_hooks(
        HookPoint.AFTER, "a__b", HookContext(tool_input={}, display_text="", run_tool=runner),
    )
    assert effects.fired == ["_ablation_0"]
    assert runner.await_args.args[0] == "a__ablation"

    engine.clear_ablation_hooks()
    engine.resume()
    effects = await engine.run_hooks(
        HookPoint.AFTER, "a__b", HookContext(tool_input={}, display_text="", run_tool=runner),
    )
    assert runner.await_args.args[0] == "a__user"


@pytest.mark.asyncio
async def test_complete_phase_respects_active_phase_name() -> None:
    phase = PhaseState()
    history = InMemoryHistory()
    engine = HookEngine(phase=phase, history=history, hooks=[_after("a__b", "@complete-phase:foo")])
    ctx = HookContext(tool_input={}, display_text="")

    phase.begin_phase("bar")
    effects = await engine.run_hooks(HookPoint.AFTER, "a__b", ctx)
    assert not phase.phase_complete
    assert not effects.phase_completed

    phase.begin_phase("foo")
    effects = await engine.run_hooks(HookPoint.AFTER, "a__b", ctx)
    assert phase.phase_complete
    assert effects.phase_completed
    events = history.of_kind("phase")
    assert events[-1].data["type"] == "phase-complete"
    assert events[-1].data["phase_name"] == "foo"


@pytest.mark.asyncio
async def test_unscoped_complete_phase_always_applies() -> None:
    phase = PhaseState()
    engine = HookEngine(phase=phase, hooks=[_after("a__b", "@complete-phase")])
    phase.begin_phase("bar")
    await engine.run_hooks(HookPoint.AFTER, "a__b", HookContext(tool_input={}, display_text=""))
    assert phase.phase_complete


@pytest.mark.asyncio
async def test_abort_directive_sets_run_abort_only() -> None:
    phase = PhaseState()
    engine = HookEngine(phase=phase, hooks=[_after("a__b", "@abort")])
    effects = await engine.run_hooks(
        HookPoint.AFTER, "a__b", HookContext(tool_input={}, display_text=""),
    )
    assert phase.run_abort_requested
    assert effects.run_abort
    assert not phase.phase_complete


@pytest.mark.asyncio
async def test_pre_evaluate_fires_control_hooks_once() -> None:
    phase = PhaseState()
    engine = HookEngine(phase=phase, hooks=[
        _after("a__b", "@complete-phase", when_input={"final": True}),
    ])

    assert not engine.pre_evaluate_when_input("a__b", {"final": False})
    assert engine.pre_evaluate_when_input("a__b", {"final": True})
    assert phase.phase_complete

    phase.phase_complete = False
    effects = await engine.run_hooks(
        HookPoint.AFTER, "a__b", HookContext(tool_input={"final": True}, display_text=""),
    )
    assert not phase.phase_complete
    assert effects.fired == []


@pytest.mark.asyncio
async def test_gate_runs_on_pass_or_on_fail() -> None:
    gate = HookGate(
        run="@tool:a__check",
        when={"ok": True},
        on_pass=["@tool-exec:a__pass"],
        on_fail=["@tool-exec:a__fail"],
    )
    engine = HookEngine(hooks=[_after("a__b", "", gate=gate)])

    calls: list[str] = []

    def runner_for(check_text: str, check_success: bool = True):
        async def run(name, args, hook_id):
            calls.append(name)
            if name == "a__check":
                return _result(name, check_text, check_success)
            return _result(name, "done")
        return AsyncMock(side_effect=run)

    await engine.run_hooks(
        HookPoint.AFTER, "a__b",
        HookContext(tool_input={}, display_text="", run_tool=runner_for('{"ok": true}')),
    )
    assert calls == ["a__check", "a__pass"]

    calls.clear()
    await engine.run_hooks(
        HookPoint.AFTER, "a__b",
        HookContext(tool_input={}, display_text="", run_tool=runner_for('{"ok": false}')),
    )
    assert calls == ["a__check", "a__fail"]

    calls.clear()
    await engine.run_hooks(
        HookPoint.AFTER, "a__b",
        HookContext(tool_input={}, display_text="", run_tool=runner_for("err", check_success=False)),
    )
    assert calls == ["a__check", "a__fail"]


def test_management_by_id_prefix() -> None:
    engine = HookEngine()
    hook = engine.add_hook(Hook(point=HookPoint.BEFORE, tool="a__b", run="@abort", id="abcdef12"))
    assert engine.get_hook("abc") is hook
    assert engine.disable_hook("abcd")
    assert not hook.enabled
    assert engine.enable_hook("abcdef12")
    assert hook.enabled
    assert engine.remove_hook("abc")
    assert engine.list_hooks() == []
    assert not engine.remove_hook("zzz")


def test_hook_from_dict_accepts_camel_case() -> None:
    hook = Hook.from_dict({
        "after": "a__b",
        "run": "@complete-phase",
        "whenOutput": {"done": True},
        "whenInput": {"mode": "x"},
    })
    assert hook.point == HookPoint.AFTER
    assert hook.when == {"done": True}
    assert hook.when_input == {"mode": "x"}
    with pytest.raises(ValueError):
        Hook.from_dict({"run": "@abort"})
