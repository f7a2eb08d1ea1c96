"""
AgentManager: load context, run the agent, always save.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

from .exceptions import InterruptException

logger = logging.getLogger("agent-adk")


class AgentManager:
    def __init__(self, runtime: Any) -> None:
        self.runtime = runtime

    def run(
        self,
        agent: Any,
        input: Any,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Any:
        """
        Run `agent` (name or class) for one turn.

        The context is saved in `finally`, so history and state written before
        an error or interrupt are kept. Memory updates are applied on save.
        """
        registry = self.runtime.registry
        agent_name = registry.resolve_agent_name(agent)
        instance = registry.get_agent(agent_name)

        context = self.runtime.state.load_context(agent_name, session_id, input, user_id)
        context.set_state("agent_name", agent_name)

        tracer = self.runtime.tracer
        tracer.start_trace(context, agent_name)
        started = time.time()
        logger.info("Agent run started agent=%s session=%s", agent_name, context.session_id)
        try:
            result = instance.execute(input, context)
        except InterruptException as exc:
            tracer.end_trace(output={"interrupted": exc.interrupt_id})
            logger.info("Agent run interrupted agent=%s interrupt=%s", agent_name, exc.interrupt_id)
            raise
        except Exception as exc:
            tracer.fail_trace(exc)
            logger.error("Agent run failed agent=%s session=%s: %s", agent_name, context.session_id, exc)
            raise
        finally:
            self.runtime.state.save_context(context, agent_name)

        tracer.end_trace(output=result if isinstance(result, (str, dict, list)) else str(result))
        logger.info(
            "Agent run finished agent=%s session=%s latency_ms=%.1f",
            agent_name,
            context.session_id,
            (time.time() - started) * 1000,
        )
        return result

    def has_agent(self, name: str) -> bool:
        return self.runtime.registry.has_agent(name)
