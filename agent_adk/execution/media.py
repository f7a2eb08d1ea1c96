from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from agent_adk.exceptions import InterruptException

from .executor import AgentExecutor

logger = logging.getLogger("agent-adk")

SIZE_PRESETS = {
    "square": "1024x1024",
    "portrait": "1024x1792",
    "landscape": "1792x1024",
}


class MediaAgentExecutor(AgentExecutor):
    """Executor for media agents; options travel to the agent as `media_options` state."""

    mode = "media"
    session_prefix = "media"

    def __init__(self, agent: Any, input: Any = None, runtime: Any = None) -> None:
        super().__init__(agent, input, runtime=runtime)
        self.options: Dict[str, Any] = {}

    def option(self, key: str, value: Any) -> "MediaAgentExecutor":
        self.options[key] = value
        return self

    def size(self, size: str) -> "MediaAgentExecutor":
        return self.option("size", SIZE_PRESETS.get(size, size))

    def square(self) -> "MediaAgentExecutor":
        return self.size("square")

    def portrait(self) -> "MediaAgentExecutor":
        return self.size("portrait")

    def landscape(self) -> "MediaAgentExecutor":
        return self.size("landscape")

    def quality(self, quality: str) -> "MediaAgentExecutor":
        return self.option("quality", quality)

    def hd(self) -> "MediaAgentExecutor":
        return self.quality("hd")

    def style(self, style: str) -> "MediaAgentExecutor":
        return self.option("style", style)

    def using(self, model: str) -> "MediaAgentExecutor":
        return self.option("model", model)

    model = using

    def store(self, enabled: bool = True) -> "MediaAgentExecutor":
        return self.option("auto_store", enabled)

    def store_as(self, filename: str) -> "MediaAgentExecutor":
        self.options["store_filename"] = filename
        return self.store()

    def inject(self, context: Any, execution_mode: str) -> None:
        super().inject(context, execution_mode)
        if self.options:
            context.set_state("media_options", dict(self.options))
        else:
            context.forget_state("media_options")

    def job_payload(self) -> Dict[str, Any]:
        payload = super().job_payload()
        payload["media_options"] = dict(self.options)
        return payload

    @classmethod
    def from_payload(cls, agent_name: str, payload: Dict[str, Any], runtime: Any) -> "MediaAgentExecutor":
        executor = super().from_payload(agent_name, payload, runtime)
        executor.options = dict(payload.get("media_options") or {})
        return executor

    def execute(self) -> Any:
        context = self.prepare_context()
        agent_name = self.agent_name()
        agent = self.runtime.registry.get_agent(agent_name)
        context.set_state("agent_name", agent_name)

        tracer = self.runtime.tracer
        span_id: Optional[str] = tracer.start_span(
            "media_generation",
            agent_name,
            input=self.input,
            metadata=dict(self.options),
            context=context,
        )
        try:
            result = agent.execute(self.input, context)
        except InterruptException:
            tracer.end_span(span_id, status="interrupted")
            raise
        except Exception as exc:
            tracer.fail_span(exc, span_id)
            logger.error("Media generation failed agent=%s session=%s: %s", agent_name, context.session_id, exc)
            raise
        else:
            tracer.end_span(span_id, output=result.to_dict() if hasattr(result, "to_dict") else str(result))
        finally:
            self.runtime.state.save_context(context, agent_name)

        self._fire_then(result, agent_name, context.session_id)
        return result
