from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock

import aiohttp
import pytest
from aiohttp.test_utils import AioHTTPTestCase
from mcp import types

from conduit.engine.cancellation import AbortState
from conduit.engine.hooks import HookEngine
from conduit.engine.ipc.router import IpcToolRouter
from conduit.engine.mcp_client.executor import McpToolExecutor
from conduit.engine.models import ToolCallOrigin, ToolCallRequest, ToolExecutionResult, ToolSpec
from conduit.engine.tool_dispatch import DispatchOutcome, ToolDispatcher, error_result


def _outcome(request, text: str, success: bool = True) -> DispatchOutcome:
    if not success:
        return DispatchOutcome(request=request, result=error_result(request.tool_name, text))
    return DispatchOutcome(
        request=request,
        result=ToolExecutionResult(tool_name=request.tool_name, display_text=text),
    )


class TestIpcToolRouter(AioHTTPTestCase):
    async def get_application(self):
        self.abort = AbortState()
        self.events: list[dict] = []
        self.replies: dict[str, tuple[str, bool]] = {
            "robot__state": ('{"x": 1, "y": 2}', True),
            "robot__move": ("plain text", True),
            "robot__fail": ('Error executing tool "robot__fail": jammed', False),
        }

        async def dispatch(request, hook_id=None):
            text, success = self.replies[request.tool_name]
            return _outcome(request, text, success)

        async def on_event(event: dict) -> None:
            self.events.append(event)

        self.dispatcher = SimpleNamespace(
            dispatch=AsyncMock(side_effect=dispatch),
            list_tools=lambda: [
                ToolSpec("robot__state", "Read state"),
                ToolSpec("robot__move", "Move"),
                ToolSpec("camera__snap"),
                ToolSpec("ungrouped"),
            ],
        )
        self.router = IpcToolRouter(self.dispatcher, self.abort, event_callback=on_event)
        return self.router.app

    async def test_health(self):
        resp = await self.client.get("/health")
        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "ok"
        assert data["timestamp"]

    async def test_list_tools_groups_by_server(self):
        resp = await self.client.get("/list_tools")
        assert resp.status == 200
        data = await resp.json()
        assert data["success"] is True
        assert sorted(data["servers"]) == ["camera", "robot"]
        assert [t["name"] for t in data["servers"]["robot"]] == ["state", "move"]
        assert data["servers"]["robot"][0]["description"] == "Read state"
        assert data["total_servers"] == 2
        assert data["total_tools"] == 4

    async def test_call_tool_decodes_json_result(self):
        resp = await self.client.post(
            "/call_tool", json={"server": "robot", "tool": "state", "arguments": {"v": 1}},
        )
        assert resp.status == 200
        assert await resp.json() == {"success": True, "result": {"x": 1, "y": 2}}

        request = self.dispatcher.dispatch.await_args.args[0]
        assert request.tool_name == "robot__state"
        assert request.arguments == {"v": 1}
        assert request.origin == ToolCallOrigin.IPC
        assert [e["event"] for e in self.events] == [
            "ipc_tool_call_started", "ipc_tool_call_completed",
        ]
        assert self.events[-1]["result"] == {"x": 1, "y": 2}

    async def test_call_tool_plain_text_and_default_arguments(self):
        resp = await self.client.post("/call_tool", json={"server": "robot", "tool": "move"})
        assert resp.status == 200
        assert (await resp.json())["result"] == "plain text"
        assert self.dispatcher.dispatch.await_args.args[0].arguments == {}

    async def test_call_tool_failure_returns_500(self):
        resp = await self.client.post("/call_tool", json={"server": "robot", "tool": "fail"})
        assert resp.status == 500
        data = await resp.json()
        assert data["success"] is False
        assert "jammed" in data["error"]
        assert "jammed" in self.events[-1]["error"]

    async def test_missing_fields_are_rejected(self):
        resp = await self.client.post("/call_tool", json={"server": "robot"})
        assert resp.status == 400
        assert "Missing required fields" in (await resp.json())["error"]
        self.dispatcher.dispatch.assert_not_awaited()

    async def test_non_object_body_is_rejected(self):
        resp = await self.client.post("/call_tool", data="[1, 2]")
        assert resp.status == 400
        resp = await self.client.post("/call_tool", data="not json")
        assert resp.status == 400
        resp = await self.client.post(
            "/call_tool", json={"server": "robot", "tool": "state", "arguments": [1]},
        )
        assert resp.status == 400
        self.dispatcher.dispatch.assert_not_awaited()

    async def test_aborted_session_refuses_calls(self):
        self.abort.request("user", source="keyboard")
        resp = await self.client.post("/call_tool", json={"server": "robot", "tool": "state"})
        assert resp.status == 500
        data = await resp.json()
        assert data["status"] == "aborted"
        assert data["aborted"] is True
        assert data["error"].startswith("[ABORTED]")
        self.dispatcher.dispatch.assert_not_awaited()

    async def test_abort_endpoint_sets_state(self):
        resp = await self.client.post("/abort")
        data = await resp.json()
        assert data == {"success": True, "aborted": True, "changed": True}
        assert self.abort.requested
        assert self.abort.source == "ipc"

        resp = await self.client.post("/abort")
        assert (await resp.json())["changed"] is False


@pytest.mark.asyncio
async def test_running_tool_can_call_back_through_router() -> None:
    listing = types.ListToolsResult(tools=[types.Tool(name="run_code", inputSchema={"type": "object"})])
    echo_listing = types.ListToolsResult(tools=[types.Tool(name="echo", inputSchema={"type": "object"})])
    echoed: list[dict] = []
    router: IpcToolRouter | None = None

    async def echo(tool, args):
        echoed.append(args)
        return types.CallToolResult(content=[types.TextContent(type="text", text="pong")])

    async def run_code(tool, args):
        async with aiohttp.ClientSession() as http:
            async with http.post(router.url + "/call_tool", json={
                "server": "srv", "tool": "echo", "arguments": {"msg": "ping"},
            }) as resp:
                data = await resp.json()
        return types.CallToolResult(content=[types.TextContent(type="text", text=data["result"])])

    executor = McpToolExecutor(timeout_seconds=5)
    await executor.register_session("srv", SimpleNamespace(
        list_tools=AsyncMock(return_value=echo_listing), call_tool=AsyncMock(side_effect=echo),
    ))
    await executor.register_session("orch", SimpleNamespace(
        list_tools=AsyncMock(return_value=listing), call_tool=AsyncMock(side_effect=run_code),
    ))
    dispatcher = ToolDispatcher(executor, HookEngine())
    router = IpcToolRouter(dispatcher, AbortState())
    await router.start()
    try:
        outcome = await dispatcher.dispatch(
            ToolCallRequest(tool_name="orch__run_code", arguments={}),
        )
    finally:
        await router.stop()

    assert outcome.result.success
    assert outcome.result.display_text == "pong"
    assert echoed == [{"msg": "ping"}]
