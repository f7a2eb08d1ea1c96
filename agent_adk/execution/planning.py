from __future__ import annotations

import logging
from typing import Any, Dict

from agent_adk.context import AgentContext
from agent_adk.exceptions import InterruptException

from .executor import AgentExecutor

logger = logging.getLogger("agent-adk")

PRESETS = {
    "fast": (1, 0.6),
    "balanced": (3, 0.8),
    "high_accuracy": (5, 0.9),
}

PLANNING_STATE_KEYS = (
    "planning_max_attempts",
    "planning_threshold",
    "planner_instructions",
    "reflection_instructions",
)


def _summary(result: Any) -> Dict[str, Any]:
    if hasattr(result, "to_dict"):
        data = result.to_dict()
        return {key: data.get(key) for key in ("success", "attempts", "score", "goal")}
    return {"result": str(result)}


class PlanningAgentExecutor(AgentExecutor):
    """Executor for BasePlanningAgent subclasses; returns a PlanningResponse."""

    mode = "planning"
    session_prefix = "planning"

    def __init__(self, agent: Any, input: Any = None, runtime: Any = None) -> None:
        super().__init__(agent, input, runtime=runtime)
        self.planning: Dict[str, Any] = {}

    def max_attempts(self, attempts: int) -> "PlanningAgentExecutor":
        if attempts < 1:
            raise ValueError("Max attempts must be at least 1")
        self.planning["planning_max_attempts"] = int(attempts)
        return self

    def threshold(self, threshold: float) -> "PlanningAgentExecutor":
        if not 0 <= threshold <= 1:
            raise ValueError("Satisfaction threshold must be between 0 and 1")
        self.planning["planning_threshold"] = float(threshold)
        return self

    def preset(self, name: str) -> "PlanningAgentExecutor":
        if name not in PRESETS:
            raise ValueError(f"Unknown planning preset '{name}'")
        attempts, threshold = PRESETS[name]
        return self.max_attempts(attempts).threshold(threshold)

    def fast(self) -> "PlanningAgentExecutor":
        return self.preset("fast")

    def balanced(self) -> "PlanningAgentExecutor":
        return self.preset("balanced")

    def high_accuracy(self) -> "PlanningAgentExecutor":
        return self.preset("high_accuracy")

    def planner_instructions(self, instructions: str) -> "PlanningAgentExecutor":
        self.planning["planner_instructions"] = instructions
        return self

    def reflection_instructions(self, instructions: str) -> "PlanningAgentExecutor":
        self.planning["reflection_instructions"] = instructions
        return self

    def inject(self, context: AgentContext, execution_mode: str) -> None:
        super().inject(context, execution_mode)
        for key in PLANNING_STATE_KEYS:
            if key in self.planning:
                context.set_state(key, self.planning[key])
            else:
                context.forget_state(key)

    def job_payload(self) -> Dict[str, Any]:
        payload = super().job_payload()
        payload["planning"] = dict(self.planning)
        return payload

    @classmethod
    def from_payload(cls, agent_name: str, payload: Dict[str, Any], runtime: Any) -> "PlanningAgentExecutor":
        executor = super().from_payload(agent_name, payload, runtime)
        executor.planning = dict(payload.get("planning") or {})
        return executor

    def execute(self) -> Any:
        context = self.prepare_context()
        agent_name = self.agent_name()
        agent = self.runtime.registry.get_agent(agent_name)
        context.set_state("agent_name", agent_name)

        tracer = self.runtime.tracer
        span_id = tracer.start_span(
            "planning_execution",
            agent_name,
            input=self.input,
            metadata={k: v for k, v in self.planning.items() if k.startswith("planning_")},
            context=context,
        )
        try:
            result = agent.execute(self.input, context)
        except InterruptException:
            tracer.end_span(span_id, status="interrupted")
            raise
        except Exception as exc:
            tracer.fail_span(exc, span_id)
            logger.error("Planning run failed agent=%s session=%s: %s", agent_name, context.session_id, exc)
            raise
        else:
            tracer.end_span(span_id, output=_summary(result))
        finally:
            self.runtime.state.save_context(context, agent_name)

        self._fire_then(result, agent_name, context.session_id)
        return result
