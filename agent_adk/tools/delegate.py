"""
delegate_to_sub_agent: hand a sub-task to one of the parent agent's sub-agents.

The sub-agent runs in a fresh AgentContext (same session id, empty state,
delegation_depth + 1). Failures come back as a JSON payload. An interrupt raised
by the sub-agent propagates so the run can be resumed once it is resolved.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from agent_adk.context import AgentContext
from agent_adk.exceptions import AgentNotFoundException, InterruptException
from agent_adk.tools.base import BaseTool

logger = logging.getLogger("agent-adk")

DEFAULT_MAX_DELEGATION_DEPTH = 5
DEPTH_STATE_KEY = "delegation_depth"


def _coerce(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return str(value)


class DelegateToSubAgentTool(BaseTool):
    name = "delegate_to_sub_agent"

    def __init__(self, parent_agent: Any, max_depth: Optional[int] = None) -> None:
        self.parent_agent = parent_agent
        self.max_depth = DEFAULT_MAX_DELEGATION_DEPTH if max_depth is None else max_depth

    def _available(self) -> list:
        return sorted(self.parent_agent.get_loaded_sub_agents())

    def definition(self) -> Dict[str, Any]:
        available = self._available()
        listing = "Available sub-agents: " + ", ".join(available) if available else "No sub-agents available"
        return {
            "name": self.name,
            "description": (
                "Delegates a specific task or question to a specialized sub-agent. Use this when a "
                f"sub-task requires expertise that one of your available sub-agents possesses. {listing}"
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "sub_agent_name": {
                        "type": "string",
                        "description": f"The registered name of the sub-agent to delegate to. {listing}",
                    },
                    "task_input": {
                        "type": "string",
                        "description": "The specific question, instruction, or data to pass to the sub-agent.",
                    },
                    "context_summary": {
                        "type": "string",
                        "description": "A brief summary of the relevant parent conversation for the sub-agent.",
                    },
                },
                "required": ["sub_agent_name", "task_input"],
            },
        }

    def execute(self, arguments: Dict[str, Any], context: AgentContext) -> str:
        return json.dumps(self.delegate(arguments, context), default=str)

    def delegate(self, arguments: Dict[str, Any], context: AgentContext) -> Dict[str, Any]:
        depth = context.delegation_depth
        if depth >= self.max_depth:
            return {
                "success": False,
                "error": (
                    f"Maximum delegation depth ({self.max_depth}) exceeded. "
                    "Cannot delegate further to prevent recursion."
                ),
                "current_depth": depth,
                "max_depth": self.max_depth,
            }

        sub_agent_name = _coerce(arguments.get("sub_agent_name"))
        task_input = _coerce(arguments.get("task_input"))
        context_summary = _coerce(arguments.get("context_summary"))

        if not sub_agent_name:
            return {
                "success": False,
                "error": "sub_agent_name is required",
                "available_sub_agents": self._available(),
            }
        if not task_input:
            return {"success": False, "error": "task_input is required"}

        try:
            sub_agent_name, task_input, context_summary = self.parent_agent.before_sub_agent_delegation(
                sub_agent_name, task_input, context_summary, context
            )
            sub_agent = self.parent_agent.get_sub_agent(sub_agent_name)
            if sub_agent is None:
                raise AgentNotFoundException(f"Sub-agent '{sub_agent_name}' not found")

            sub_context = AgentContext(context.session_id, user_input=task_input)
            sub_context.set_state(DEPTH_STATE_KEY, depth + 1)
            if context_summary:
                sub_context.add_message({"role": "system", "content": f"Context from parent agent: {context_summary}"})

            logger.info(
                "Delegating to sub-agent parent=%s sub_agent=%s depth=%d",
                getattr(self.parent_agent, "name", "?"),
                sub_agent_name,
                depth + 1,
            )
            result = sub_agent.execute(task_input, sub_context)
            result = self.parent_agent.after_sub_agent_delegation(
                sub_agent_name, task_input, result, context, sub_context
            )
        except InterruptException:
            logger.info("Sub-agent %s paused for human input", sub_agent_name)
            raise
        except Exception as exc:
            logger.warning("Sub-agent execution failed sub_agent=%s: %s", sub_agent_name, exc)
            return {
                "success": False,
                "error": f"Sub-agent execution failed: {exc}",
                "sub_agent": sub_agent_name,
                "task_input": task_input,
                "available_sub_agents": self._available(),
            }

        return {
            "success": True,
            "sub_agent": sub_agent_name,
            "task_input": task_input,
            "result": result,
        }
