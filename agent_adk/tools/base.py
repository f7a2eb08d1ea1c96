"""
Tool capability: a JSON-schema `definition()` plus `execute(arguments, context)`.

Tools always return a string; structured results are JSON-encoded.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, Optional

from agent_adk.context import AgentContext


class BaseTool:
    name: str = ""
    description: str = ""
    parameters: Dict[str, Any] = {"type": "object", "properties": {}, "required": []}

    def definition(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def execute(self, arguments: Dict[str, Any], context: AgentContext) -> str:  # pragma: no cover - interface only
        raise NotImplementedError


class FunctionTool(BaseTool):
    """Wrap a plain callable `fn(arguments, context) -> Any` as a tool."""

    def __init__(
        self,
        name: str,
        fn: Callable[[Dict[str, Any], AgentContext], Any],
        description: str = "",
        parameters: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.name = name
        self.fn = fn
        self.description = description
        self.parameters = parameters or {"type": "object", "properties": {}, "required": []}

    def execute(self, arguments: Dict[str, Any], context: AgentContext) -> str:
        result = self.fn(arguments, context)
        if isinstance(result, str):
            return result
        return json.dumps(result)
