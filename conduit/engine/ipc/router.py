"""Loopback HTTP router exposing this session's tool connections.

An external cooperating process (e.g. a code-execution orchestrator)
calls tools through the same ToolDispatcher the agent loop uses, so
hooks, HIL confirmation and history behave identically for both.

Endpoints:
    GET  /health       liveness probe
    GET  /list_tools   tool catalog grouped by server
    POST /call_tool    {server, tool, arguments}
    POST /abort        set the session AbortState

The server binds 127.0.0.1 on an ephemeral port so concurrent sessions
never collide; read ``port`` after ``start()``.
"""
from __future__ import annotations

import logging
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Any

from aiohttp import web

from ..cancellation import AbortState
from ..config import EventCallback, fire_event
from ..directives import decode_tool_text
from ..models import AbortedOperation, ToolCallOrigin, ToolCallRequest, join_tool_name
from ..tool_dispatch import ToolDispatcher

logger = logging.getLogger(__name__)

_GROUP_RE = re.compile(r"^(.+?)__(.+)$")
_CLIENT_MAX_SIZE = 50 * 1024 * 1024


class IpcToolRouter:
    """aiohttp application serving tool calls on localhost."""

    def __init__(
        self,
        dispatcher: ToolDispatcher,
        abort: AbortState,
        event_callback: EventCallback | None = None,
        host: str = "127.0.0.1",
        port: int = 0,
    ) -> None:
        self._dispatcher = dispatcher
        self._abort = abort
        self._event_callback = event_callback
        self._host = host
        self._port = port
        self._runner: web.AppRunner | None = None
        self._app = web.Application(
            middlewares=[self._request_logging_middleware],
            client_max_size=_CLIENT_MAX_SIZE,
        )
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def port(self) -> int:
        return self._port

    @property
    def url(self) -> str:
        return f"http://{self._host}:{self._port}"

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-conduit-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("IPC %s %s req=%s", request.method, request.path_qs, req_id)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "IPC %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception(
                "IPC %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path_qs, req_id, elapsed_ms,
            )
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/list_tools", self._handle_list_tools)
        r.add_post("/call_tool", self._handle_call_tool)
        r.add_post("/abort", self._handle_abort)

    # ── Lifecycle ──

    async def start(self) -> int:
        """Start listening. Returns the bound port."""
        self._runner = web.AppRunner(self._app, access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        actual_port = self._resolve_port(site, self._runner)
        if actual_port is None:
            raise RuntimeError("IPC router started but no listening socket was reported.")
        self._port = actual_port
        logger.info("IPC router listening on %s", self.url)
        return self._port

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("IPC router stopped (port=%d)", self._port)

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    async def _handle_list_tools(self, request: web.Request) -> web.Response:
        try:
            tools = self._dispatcher.list_tools()
        except Exception as exc:
            logger.exception("Listing tools failed")
            return web.json_response({"success": False, "error": str(exc)}, status=500)

        servers: dict[str, list[dict[str, Any]]] = {}
        for spec in tools:
            match = _GROUP_RE.match(spec.name)
            if not match:
                continue
            servers.setdefault(match.group(1), []).append({
                "name": match.group(2),
                "description": spec.description,
                "input_schema": spec.input_schema,
            })
        return web.json_response({
            "success": True,
            "servers": servers,
            "total_servers": len(servers),
            "total_tools": len(tools),
        })

    def _aborted_response(self) -> web.Response:
        return web.json_response(AbortedOperation().to_payload(), status=500)

    async def _handle_call_tool(self, request: web.Request) -> web.Response:
        if self._abort.requested:
            return self._aborted_response()

        try:
            body = await request.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            return web.json_response(
                {"success": False, "error": "Request body must be a JSON object"},
                status=400,
            )
        server, tool = body.get("server"), body.get("tool")
        if not server or not tool:
            return web.json_response(
                {"success": False, "error": "Missing required fields: server, tool"},
                status=400,
            )
        args = body.get("arguments") or {}
        if not isinstance(args, dict):
            return web.json_response(
                {"success": False, "error": "arguments must be an object"},
                status=400,
            )

        tool_name = join_tool_name(str(server), str(tool))
        if self._abort.requested:
            return self._aborted_response()

        await fire_event(self._event_callback, {
            "event": "ipc_tool_call_started",
            "tool_name": tool_name,
            "arguments": args,
        })
        outcome = await self._dispatcher.dispatch(ToolCallRequest(
            tool_name=tool_name,
            arguments=args,
            origin=ToolCallOrigin.IPC,
        ))

        if outcome.is_error:
            error = outcome.result.display_text
            logger.warning("IPC tool call failed (%s): %s", tool_name, error)
            await fire_event(self._event_callback, {
                "event": "ipc_tool_call_completed",
                "tool_name": tool_name,
                "arguments": args,
                "error": error,
            })
            return web.json_response({"success": False, "error": error}, status=500)

        result = decode_tool_text(outcome.result.display_text)
        await fire_event(self._event_callback, {
            "event": "ipc_tool_call_completed",
            "tool_name": tool_name,
            "arguments": args,
            "result": result,
        })
        return web.json_response({"success": True, "result": result})

    async def _handle_abort(self, request: web.Request) -> web.Response:
        newly_set = self._abort.request("ipc", source="ipc")
        return web.json_response({"success": True, "aborted": True, "changed": newly_set})
