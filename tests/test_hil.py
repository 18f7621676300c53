from __future__ import annotations

import asyncio
import io
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from rich.console import Console

from conduit.engine.hil import HilDecision, HumanInTheLoopGate


def _gate(*answers: str, enabled: bool = True):
    reader = SimpleNamespace(ask=AsyncMock(side_effect=list(answers)))
    gate = HumanInTheLoopGate(reader, enabled=enabled, console=Console(file=io.StringIO()))
    return gate, reader


@pytest.mark.asyncio
async def test_disabled_gate_never_prompts() -> None:
    gate, reader = _gate(enabled=False)
    result = await gate.confirm("a__b", {"x": 1})
    assert result.decision == HilDecision.EXECUTE
    reader.ask.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.parametrize("answer,decision", [
    ("y", HilDecision.EXECUTE),
    ("yes", HilDecision.EXECUTE),
    ("n", HilDecision.SKIP),
    ("NO", HilDecision.SKIP),
    ("whatever", HilDecision.EXECUTE),
    ("", HilDecision.EXECUTE),
])
async def test_answers(answer: str, decision: HilDecision) -> None:
    gate, _ = _gate(answer)
    result = await gate.confirm("a__b", {})
    assert result.decision == decision
    assert not gate.session_approved


@pytest.mark.asyncio
async def test_skip_with_message() -> None:
    gate, _ = _gate("msg use the other arm", "n wrong file")
    first = await gate.confirm("a__b", {})
    assert first.decision == HilDecision.SKIP
    assert first.message == "use the other arm"
    second = await gate.confirm("a__b", {})
    assert second.message == "wrong file"


@pytest.mark.asyncio
async def test_session_approval_until_reset() -> None:
    gate, reader = _gate("a", "n")
    assert (await gate.confirm("a__b", {})).execute
    assert gate.session_approved

    assert (await gate.confirm("a__c", {"big": "x" * 500})).execute
    assert reader.ask.await_count == 1

    gate.reset_session()
    assert not (await gate.confirm("a__b", {})).execute
    assert reader.ask.await_count == 2


@pytest.mark.asyncio
async def test_prompts_are_serialised() -> None:
    active = 0
    peak = 0

    async def ask(prompt: str) -> str:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0)
        active -= 1
        return "y"

    gate = HumanInTheLoopGate(
        SimpleNamespace(ask=ask), enabled=True, console=Console(file=io.StringIO()),
    )
    results = await asyncio.gather(*(gate.confirm(f"a__t{i}", {}) for i in range(3)))
    assert all(r.execute for r in results)
    assert peak == 1
