from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from mcp import types

from conduit.engine.elicitation import ElicitationAction, ElicitationOutcome
from conduit.engine.errors import ToolExecutionError, ToolNotFoundError, ToolTimeoutError
from conduit.engine.mcp_client.executor import (
    McpToolExecutor,
    content_to_blocks,
    display_text_for,
)


def _session(call_tool=None) -> SimpleNamespace:
    listing = types.ListToolsResult(tools=[
        types.Tool(name="move", description="Move the arm", inputSchema={
            "type": "object", "properties": {"x": {"type": "number"}},
        }),
        types.Tool(name="state", inputSchema={"type": "object"}),
    ])
    return SimpleNamespace(
        list_tools=AsyncMock(return_value=listing),
        call_tool=call_tool or AsyncMock(return_value=types.CallToolResult(
            content=[types.TextContent(type="text", text='{"ok": true}')],
        )),
    )


@pytest.mark.asyncio
async def test_register_session_namespaces_tools() -> None:
    executor = McpToolExecutor()
    count = await executor.register_session("robot", _session())
    assert count == 2
    assert executor.servers == ["robot"]
    specs = {spec.name: spec for spec in executor.list_tools()}
    assert sorted(specs) == ["robot__move", "robot__state"]
    assert specs["robot__move"].description == "Move the arm"
    assert specs["robot__move"].input_schema["properties"]["x"]["type"] == "number"


@pytest.mark.asyncio
async def test_execute_routes_to_owning_session() -> None:
    session = _session()
    executor = McpToolExecutor()
    await executor.register_session("robot", session)

    result = await executor.execute("robot__move", {"x": 1})

    session.call_tool.assert_awaited_once_with("move", {"x": 1})
    assert result.success
    assert result.display_text == '{"ok": true}'
    assert result.tool_input == {"x": 1}


@pytest.mark.asyncio
async def test_unknown_tools_raise_not_found() -> None:
    executor = McpToolExecutor()
    await executor.register_session("robot", _session())
    with pytest.raises(ToolNotFoundError):
        await executor.execute("robot__fly", {})
    with pytest.raises(ToolNotFoundError):
        await executor.execute("camera__snap", {})
    with pytest.raises(ToolNotFoundError):
        await executor.execute("plain", {})


@pytest.mark.asyncio
async def test_error_results_are_unsuccessful() -> None:
    call_tool = AsyncMock(return_value=types.CallToolResult(
        content=[types.TextContent(type="text", text="arm jammed")], isError=True,
    ))
    executor = McpToolExecutor()
    await executor.register_session("robot", _session(call_tool))
    result = await executor.execute("robot__move", {})
    assert not result.success
    assert result.display_text == "arm jammed"


@pytest.mark.asyncio
async def test_session_failures_become_execution_errors() -> None:
    executor = McpToolExecutor()
    await executor.register_session(
        "robot", _session(AsyncMock(side_effect=ConnectionError("pipe closed"))),
    )
    with pytest.raises(ToolExecutionError, match="pipe closed"):
        await executor.execute("robot__move", {})


@pytest.mark.asyncio
async def test_timeout_cancels_pending_elicitation() -> None:
    async def slow(tool, args):
        await asyncio.sleep(3600)

    bridge = SimpleNamespace(cancel_pending=MagicMock(return_value=True))
    executor = McpToolExecutor(bridge=bridge, timeout_seconds=0.01)
    await executor.register_session("robot", _session(AsyncMock(side_effect=slow)))

    with pytest.raises(ToolTimeoutError) as excinfo:
        await executor.execute("robot__move", {})

    assert excinfo.value.timeout_seconds == 0.01
    bridge.cancel_pending.assert_called_once_with("tool timeout")


@pytest.mark.asyncio
async def test_elicitation_callback_forwards_to_bridge() -> None:
    bridge = SimpleNamespace(handle=AsyncMock(return_value=ElicitationOutcome(
        ElicitationAction.ACCEPT, content={"confirm": True},
    )))
    executor = McpToolExecutor(bridge=bridge)
    callback = executor._elicitation_callback("robot")
    params = SimpleNamespace(message="Confirm?", requestedSchema={"type": "object"})

    result = await callback(None, params)

    assert result.action == "accept"
    assert result.content == {"confirm": True}
    bridge.handle.assert_awaited_once_with("Confirm?", {"type": "object"}, url=None)

    bridge.handle.return_value = ElicitationOutcome(ElicitationAction.DECLINE)
    assert (await callback(None, params)).action == "decline"


@pytest.mark.asyncio
async def test_elicitation_without_bridge_declines() -> None:
    callback = McpToolExecutor()._elicitation_callback("robot")
    result = await callback(None, SimpleNamespace(message="x", requestedSchema={}))
    assert result.action == "decline"


def test_content_conversion() -> None:
    blocks = content_to_blocks([
        types.TextContent(type="text", text="hello"),
        types.ImageContent(type="image", data="aGk=", mimeType="image/png"),
        types.EmbeddedResource(
            type="resource",
            resource=types.TextResourceContents(uri="file:///tmp/a.txt", text="file body"),
        ),
    ])
    assert blocks == [
        {"type": "text", "text": "hello"},
        {"type": "image", "data": "aGk=", "mimeType": "image/png"},
        {"type": "text", "text": "file body"},
    ]
    assert display_text_for(blocks) == "hello\nfile body"
    assert display_text_for(blocks[1:2]) == "[1 image(s)]"
    assert display_text_for([], {"x": 1}) == '{"x": 1}'
    assert display_text_for([]) == ""
