"""
Runtime: the explicit object graph of one service / worker process.

Registry, MCP manager, providers and managers are constructed here and
passed around; nothing below this module keeps process-wide state.
"""

from __future__ import annotations

import logging
from typing import Optional

from .config import Settings, get_settings
from .interrupts import InterruptManager
from .manager import AgentManager
from .mcp.discovery import MCPToolDiscovery
from .mcp.manager import MCPClientManager
from .memory_manager import MemoryManager
from .providers import BaseProvider, build_provider
from .registry import AgentRegistry
from .state_manager import StateManager
from .storage.interrupt_store import init_interrupt_db
from .storage.job_store import init_job_db
from .storage.memory_store import init_memory_db
from .storage.session_store import init_db
from .storage.trace_store import init_trace_db
from .tracer import Tracer

logger = logging.getLogger("agent-adk")


class Runtime:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        provider: Optional[BaseProvider] = None,
        mcp_manager: Optional[MCPClientManager] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.provider = provider or build_provider()
        self.memory = MemoryManager()
        self.state = StateManager(self.memory)
        self.interrupts = InterruptManager(
            tool_permissions=self.settings.tool_permissions,
            default_ttl_hours=self.settings.interrupt_ttl_hours,
        )
        self.tracer = Tracer(enabled=self.settings.tracing_enabled)
        self.mcp = mcp_manager or MCPClientManager(
            self.settings.mcp_servers,
            cache_ttl=self.settings.mcp_discovery_cache_ttl,
        )
        self.mcp_discovery = MCPToolDiscovery(self.mcp)
        self.registry = AgentRegistry(runtime=self)
        self.manager = AgentManager(self)

    def init_storage(self) -> None:
        init_db()
        init_memory_db()
        init_interrupt_db()
        init_job_db()
        init_trace_db()

    def load_agents(self) -> None:
        """Register built-in, config-file and module-discovered agents."""
        self.registry.register_builtin_agents()
        self.registry.load_config_agents(self.settings.agents)
        if self.settings.agent_modules:
            self.registry.discover(self.settings.agent_modules)
        for name in self.registry.names():
            agent = self.registry.get_agent(name)
            unknown = self.mcp_discovery.unknown_servers(agent)
            if unknown:
                logger.warning("Agent %s declares unknown MCP servers: %s", name, ", ".join(unknown))

    def shutdown(self) -> None:
        self.mcp.disconnect_all()


_default_runtime: Optional[Runtime] = None


def get_runtime() -> Runtime:
    """Runtime used by fluent executors when none is passed explicitly."""
    global _default_runtime
    if _default_runtime is None:
        _default_runtime = Runtime()
    return _default_runtime


def set_runtime(runtime: Optional[Runtime]) -> None:
    global _default_runtime
    _default_runtime = runtime
