"""
Turn an agent's declared `mcp_servers()` into tool wrappers.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from agent_adk.mcp.manager import MCPClientManager
from agent_adk.tools.mcp_tool import MCPToolWrapper

logger = logging.getLogger("agent-adk")


def agent_mcp_servers(agent: Any) -> List[str]:
    servers = getattr(agent, "mcp_servers", None)
    if servers is None:
        return []
    if callable(servers):
        servers = servers()
    return [str(s) for s in (servers or [])]


class MCPToolDiscovery:
    def __init__(self, manager: MCPClientManager) -> None:
        self.manager = manager

    def agent_has_mcp_servers(self, agent: Any) -> bool:
        return bool(agent_mcp_servers(agent))

    def discover_tools_for_agent(self, agent: Any) -> List[MCPToolWrapper]:
        tools: List[MCPToolWrapper] = []
        for server_name in agent_mcp_servers(agent):
            if not self.manager.is_server_enabled(server_name):
                logger.info("Skipping disabled MCP server %s", server_name)
                continue
            definitions = self.manager.discover_tools(server_name)
            tools.extend(MCPToolWrapper(self.manager, server_name, d) for d in definitions)
            logger.info(
                "Discovered %d tools from MCP server %s for agent %s",
                len(definitions),
                server_name,
                getattr(agent, "name", "?"),
            )
        return tools

    def get_agent_mcp_tools_info(self, agent: Any) -> Dict[str, Any]:
        servers = agent_mcp_servers(agent)
        info: Dict[str, Any] = {
            "has_mcp_tools": bool(servers),
            "servers": servers,
            "total_tools": 0,
            "tools_by_server": {},
        }
        for server_name in servers:
            if not self.manager.is_server_enabled(server_name):
                continue
            tools = self.manager.discover_tools(server_name)
            info["tools_by_server"][server_name] = {
                "count": len(tools),
                "tools": [t.get("name") for t in tools],
                "enabled": True,
            }
            info["total_tools"] += len(tools)
        return info

    def validate_agent_mcp_servers(self, agent: Any) -> Dict[str, Dict[str, Any]]:
        return {name: self.manager.test_connection(name) for name in agent_mcp_servers(agent)}

    def unknown_servers(self, agent: Any) -> List[str]:
        """Declared servers with no configuration at all."""
        return [s for s in agent_mcp_servers(agent) if self.manager.get_server_config(s) is None]
