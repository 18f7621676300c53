"""Session: owns one Conversation and wires the engine together.

Usage:
    session = await Session.open(conduit_config, reader)
    async for event in session.run_query("list the files"):
        ...
    await session.close()
"""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from rich.console import Console

from .agent_loop import AgentLoop, LoopEvent
from .cancellation import AbortState, PhaseState
from .config import EngineConfig
from .elicitation import ElicitationBridge
from .hil import HumanInTheLoopGate, LineReader
from .history import HistoryLogger, InMemoryHistory
from .hooks import HookEngine
from .ipc.router import IpcToolRouter
from .mcp_client.executor import McpToolExecutor
from .models import Conversation, Hook, Message, MessageRole
from .providers.base import ModelProvider
from .providers.registry import ProviderRegistry, build_default_registry
from .tool_dispatch import ToolDispatcher, ToolExecutor
from .yaml_config import ConduitConfig

logger = logging.getLogger(__name__)


class Session:
    """One interactive session: a conversation plus its tool machinery."""

    def __init__(
        self,
        config: EngineConfig,
        provider: ModelProvider,
        executor: ToolExecutor,
        reader: LineReader,
        history: HistoryLogger | None = None,
        console: Console | None = None,
        hooks: list[Hook] | None = None,
        bridge: ElicitationBridge | None = None,
        abort: AbortState | None = None,
        phase: PhaseState | None = None,
    ) -> None:
        self.config = config
        self.provider = provider
        self.executor = executor
        self.console = console or Console()
        self.history = history if history is not None else InMemoryHistory()
        self.abort = abort or AbortState()
        self.phase = phase or PhaseState()
        self.conversation = Conversation()

        self.hooks = HookEngine(phase=self.phase, history=self.history, hooks=hooks)
        self.hil = HumanInTheLoopGate(reader, enabled=config.hil_enabled, console=self.console)
        self.bridge = bridge or ElicitationBridge(
            reader, phase=self.phase, history=self.history, console=self.console,
        )
        self.dispatcher = ToolDispatcher(
            executor,
            self.hooks,
            hil=self.hil,
            history=self.history,
            phase=self.phase,
            event_callback=config.event_callback,
            abort=self.abort,
            reader=reader,
        )
        self.loop = AgentLoop(
            provider,
            self.dispatcher,
            self.abort,
            max_iterations=config.max_iterations,
            max_tokens=config.max_tokens,
            history=self.history,
        )
        self.ipc: IpcToolRouter | None = None

    @classmethod
    async def open(
        cls,
        conduit_config: ConduitConfig,
        reader: LineReader,
        console: Console | None = None,
        registry: ProviderRegistry | None = None,
        history: HistoryLogger | None = None,
    ) -> Session:
        """Build a session from parsed config: connect servers, start IPC."""
        config = conduit_config.engine
        console = console or Console()
        history = history if history is not None else InMemoryHistory()
        phase = PhaseState()
        bridge = ElicitationBridge(reader, phase=phase, history=history, console=console)

        executor = McpToolExecutor(bridge=bridge, timeout_seconds=config.tool_timeout_seconds)
        connected = await executor.connect(conduit_config.servers)
        logger.info(
            "Session: %d/%d MCP servers connected, %d tools",
            len(connected), len(conduit_config.servers), len(executor.list_tools()),
        )

        provider = (registry or build_default_registry()).create(config)
        session = cls(
            config,
            provider,
            executor,
            reader,
            history=history,
            console=console,
            hooks=conduit_config.hooks,
            bridge=bridge,
            phase=phase,
        )
        if config.ipc_enabled:
            await session.start_ipc()
        return session

    async def start_ipc(self) -> int:
        if self.ipc is None:
            self.ipc = IpcToolRouter(
                self.dispatcher,
                self.abort,
                event_callback=self.config.event_callback,
                host=self.config.ipc_host,
            )
            await self.ipc.start()
        return self.ipc.port

    async def close(self) -> None:
        if self.ipc is not None:
            await self.ipc.stop()
            self.ipc = None
        aclose = getattr(self.executor, "aclose", None)
        if aclose is not None:
            await aclose()
        await self.provider.close()
        logger.info("Session closed")

    # ── Settings ──

    def set_hil(self, enabled: bool) -> None:
        self.hil.enabled = enabled
        self.config.hil_enabled = enabled
        self.hil.reset_session()
        logger.info("HIL %s", "enabled" if enabled else "disabled")

    # ── Operations ──

    async def run_query(self, text: str) -> AsyncIterator[LoopEvent]:
        """Append a user message and drive the agent loop to completion."""
        self.abort.reset()
        self.hil.reset_session()
        self.conversation.append(Message(role=MessageRole.USER, text=text))
        self.history.add_user_message(text)
        async for event in self.loop.run(self.conversation, self.dispatcher.list_tools()):
            yield event

    async def run_phase(
        self,
        text: str,
        hooks: list[Hook],
        name: str | None = None,
    ) -> AsyncIterator[LoopEvent]:
        """Run one query with ablation hooks in place of the user's hooks.

        ``@complete-phase`` and ``@abort`` stop the loop at its next
        checkpoint; the conversation stays well-formed.
        """
        self.hooks.suspend()
        self.hooks.load_ablation_hooks(hooks)
        self.phase.begin_phase(name)
        try:
            async for event in self.run_query(text):
                yield event
                if self.phase.run_abort_requested:
                    self.abort.request("run aborted by hook", source="hook")
                elif self.phase.phase_complete:
                    self.abort.request("phase complete", source="hook")
        finally:
            self.bridge.cancel_pending("phase complete")
            self.phase.end_phase()
            self.hooks.clear_ablation_hooks()
            self.hooks.resume()
