"""
Exception hierarchy for the agent runtime.

Configuration problems fail at registration/setup time; protocol problems
raised by MCP servers share the MCPException family.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class AgentError(RuntimeError):
    """Base class for runtime errors that may carry structured details."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details


class AgentNotFoundException(AgentError):
    """Raised when an agent name or class cannot be resolved."""


class AgentConfigurationException(AgentError):
    """Raised when an agent definition is invalid (e.g. ad-hoc agent without instructions)."""


class ToolExecutionException(AgentError):
    """Raised when a tool fails while an agent is running."""


class MCPException(AgentError):
    """Protocol, transport or configuration failure talking to an MCP server."""


class MCPTimeoutException(MCPException):
    """The MCP server did not answer within the configured timeout."""


class SessionStateError(AgentError):
    """Raised when a stored session cannot be decoded."""


class InterruptStateError(AgentError):
    """Raised when an interrupt transition is not allowed (already resolved, expired)."""


class InterruptException(Exception):
    """
    Control-flow signal raised when an agent pauses for human input.

    Not an error: the caller unwinds and later resolves the interrupt through
    InterruptManager (approve / reject / respond).
    """

    def __init__(self, interrupt_id: str, reason: str, data: Optional[Dict[str, Any]] = None):
        super().__init__(f"Agent execution interrupted: {reason}")
        self.interrupt_id = interrupt_id
        self.reason = reason
        self.data = data or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"interrupt_id": self.interrupt_id, "reason": self.reason, "data": self.data}


class PlanExecutionException(AgentError):
    """A plan step failed or its dependencies were not satisfied."""

    @classmethod
    def for_step(cls, step_id: int, message: str) -> "PlanExecutionException":
        return cls(f"Step {step_id} failed: {message}", details={"step_id": step_id})

    @classmethod
    def unsatisfied_dependencies(cls, step_id: int, missing: Any) -> "PlanExecutionException":
        missing_ids = ", ".join(str(m) for m in missing)
        return cls(
            f"Step {step_id} has unsatisfied dependencies: {missing_ids}",
            details={"step_id": step_id, "missing": list(missing)},
        )
