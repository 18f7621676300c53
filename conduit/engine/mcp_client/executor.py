"""Tool execution over MCP client sessions.

One ``mcp.ClientSession`` per configured stdio server. Tools are exposed
namespaced as ``server__tool``. Calls are not serialised: a running
tool may call back through the IPC router while its own request is still
in flight, and ``ClientSession`` matches responses by request id. Each
call is bounded by ``timeout_seconds`` (-1 disables the bound).

Server-initiated elicitation requests are forwarded to the
ElicitationBridge; a call that times out cancels whatever prompt the
bridge is showing for it.
"""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import AsyncExitStack
from typing import Any

from mcp import ClientSession, StdioServerParameters, types
from mcp.client.stdio import stdio_client

from ..elicitation import ElicitationAction, ElicitationBridge
from ..errors import ToolExecutionError, ToolNotFoundError, ToolTimeoutError
from ..models import ToolExecutionResult, ToolSpec, join_tool_name, split_tool_name
from ..yaml_config import ServerConfig

logger = logging.getLogger(__name__)


def content_to_blocks(content: list[Any]) -> list[dict[str, Any]]:
    """Convert MCP content items into plain ``{"type": ...}`` dicts."""
    blocks: list[dict[str, Any]] = []
    for item in content or []:
        kind = getattr(item, "type", None)
        if kind == "text":
            blocks.append({"type": "text", "text": item.text})
        elif kind == "image":
            blocks.append({"type": "image", "data": item.data, "mimeType": item.mimeType})
        elif kind == "resource":
            resource = getattr(item, "resource", None)
            text = getattr(resource, "text", None)
            if text is not None:
                blocks.append({"type": "text", "text": text})
            else:
                blocks.append({"type": "resource", "uri": str(getattr(resource, "uri", ""))})
        else:
            logger.debug("Skipping unsupported MCP content type %r", kind)
    return blocks


def display_text_for(blocks: list[dict[str, Any]], structured: Any = None) -> str:
    texts = [b["text"] for b in blocks if b.get("type") == "text"]
    if texts:
        return "\n".join(texts)
    if structured is not None:
        return json.dumps(structured, default=str)
    images = sum(1 for b in blocks if b.get("type") == "image")
    if images:
        return f"[{images} image(s)]"
    return ""


class McpToolExecutor:
    """Concrete ToolExecutor backed by MCP stdio servers."""

    def __init__(
        self,
        bridge: ElicitationBridge | None = None,
        timeout_seconds: float = 600.0,
    ) -> None:
        self._bridge = bridge
        self.timeout_seconds = timeout_seconds
        self._sessions: dict[str, Any] = {}
        self._tools: dict[str, ToolSpec] = {}
        self._stack = AsyncExitStack()

    @property
    def servers(self) -> list[str]:
        return list(self._sessions)

    # ── Connection ──

    async def connect(self, servers: dict[str, ServerConfig]) -> list[str]:
        """Connect every enabled server. Failures are logged and skipped."""
        connected: list[str] = []
        for name, server in servers.items():
            if not server.enabled:
                logger.info("MCP server %s disabled; skipping", name)
                continue
            try:
                await self.connect_stdio(server)
            except Exception:
                logger.exception("Failed to connect MCP server %s", name)
                continue
            connected.append(name)
        return connected

    async def connect_stdio(self, server: ServerConfig) -> None:
        params = StdioServerParameters(
            command=server.command,
            args=list(server.args),
            env=server.env,
            cwd=server.cwd,
        )
        read, write = await self._stack.enter_async_context(stdio_client(params))
        session = await self._stack.enter_async_context(
            ClientSession(
                read,
                write,
                elicitation_callback=self._elicitation_callback(server.name),
            )
        )
        await session.initialize()
        await self.register_session(server.name, session)

    async def register_session(self, server_name: str, session: Any) -> int:
        """Adopt an initialized session and index its tools."""
        listing = await session.list_tools()
        self._sessions[server_name] = session
        count = 0
        for tool in listing.tools:
            name = join_tool_name(server_name, tool.name)
            self._tools[name] = ToolSpec(
                name=name,
                description=tool.description or "",
                input_schema=dict(tool.inputSchema or {"type": "object", "properties": {}}),
            )
            count += 1
        logger.info("MCP server %s connected (%d tools)", server_name, count)
        return count

    def _elicitation_callback(self, server_name: str):
        async def callback(context: Any, params: Any) -> types.ElicitResult:
            if self._bridge is None:
                logger.info("Declining elicitation from %s: no bridge", server_name)
                return types.ElicitResult(action="decline")
            outcome = await self._bridge.handle(
                getattr(params, "message", ""),
                getattr(params, "requestedSchema", None),
                url=getattr(params, "url", None),
            )
            if outcome.action == ElicitationAction.ACCEPT:
                return types.ElicitResult(action="accept", content=outcome.content or {})
            return types.ElicitResult(action=outcome.action.value)
        return callback

    # ── ToolExecutor ──

    def list_tools(self) -> list[ToolSpec]:
        return list(self._tools.values())

    def _timeout(self) -> float | None:
        if self.timeout_seconds is None or self.timeout_seconds < 0:
            return None
        return self.timeout_seconds

    async def execute(self, name: str, args: dict[str, Any]) -> ToolExecutionResult:
        server, tool = split_tool_name(name)
        session = self._sessions.get(server) if server else None
        if session is None or name not in self._tools:
            raise ToolNotFoundError(name)

        try:
            result = await asyncio.wait_for(
                session.call_tool(tool, args),
                timeout=self._timeout(),
            )
        except asyncio.TimeoutError:
            logger.warning("Tool %s timed out after %ss", name, self.timeout_seconds)
            if self._bridge is not None:
                self._bridge.cancel_pending("tool timeout")
            raise ToolTimeoutError(name, self.timeout_seconds)
        except ToolExecutionError:
            raise
        except Exception as exc:
            raise ToolExecutionError(name, str(exc)) from exc

        blocks = content_to_blocks(getattr(result, "content", None) or [])
        text = display_text_for(blocks, getattr(result, "structuredContent", None))
        return ToolExecutionResult(
            tool_name=name,
            display_text=text,
            content_blocks=blocks,
            success=not getattr(result, "isError", False),
            tool_input=dict(args),
        )

    async def aclose(self) -> None:
        await self._stack.aclose()
        self._sessions.clear()
        self._tools.clear()
        logger.info("MCP sessions closed")
