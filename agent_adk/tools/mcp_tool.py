"""
Adapter that exposes one tool discovered on an MCP server as a local tool.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from agent_adk.context import AgentContext
from agent_adk.exceptions import MCPException, ToolExecutionException
from agent_adk.mcp.manager import MCPClientManager
from agent_adk.tools.base import BaseTool

logger = logging.getLogger("agent-adk")

OVERRIDES_STATE_KEY = "mcp_config_overrides"


def _convert_input_schema(input_schema: Dict[str, Any]) -> Dict[str, Any]:
    if not input_schema:
        return {"type": "object", "properties": {}, "required": []}
    if "type" in input_schema or "properties" in input_schema:
        return input_schema
    return {"type": "object", "properties": input_schema, "required": []}


class MCPToolWrapper(BaseTool):
    def __init__(self, manager: MCPClientManager, server_name: str, tool_definition: Dict[str, Any]) -> None:
        self.manager = manager
        self.server_name = server_name
        self.tool_definition = dict(tool_definition)
        self.name = str(self.tool_definition.get("name") or "")
        self.description = self.tool_definition.get("description") or "MCP tool"
        self.parameters = _convert_input_schema(self.tool_definition.get("inputSchema") or {})

    def is_available(self) -> bool:
        return self.manager.is_server_enabled(self.server_name)

    def execute(self, arguments: Dict[str, Any], context: AgentContext) -> str:
        overrides = context.get_state(OVERRIDES_STATE_KEY) or {}
        logger.info(
            "Executing MCP tool %s server=%s session=%s overrides=%s",
            self.name,
            self.server_name,
            context.session_id,
            bool(overrides),
        )
        try:
            return self.manager.call_tool(self.server_name, self.name, arguments, overrides=overrides)
        except MCPException as exc:
            logger.error("MCP tool %s failed server=%s: %s", self.name, self.server_name, exc)
            raise ToolExecutionException(
                f"MCP tool '{self.name}' failed: {exc}",
                details={"server": self.server_name, "tool": self.name},
            ) from exc
