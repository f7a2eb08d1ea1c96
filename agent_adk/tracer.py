"""
Tracer: nested spans for one agent run, persisted to agent_trace_spans.

The active trace and span stack are thread-local. Storage failures are
logged and swallowed; tracing never breaks an agent run.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from agent_adk.context import AgentContext
from agent_adk.storage import trace_store
from agent_adk.storage.db import now_iso

logger = logging.getLogger("agent-adk")

TRACE_STATE_KEY = "trace_id"


def _precise_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class Tracer:
    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self._local = threading.local()

    # -- thread-local state ---------------------------------------------------

    @property
    def _stack(self) -> List[Dict[str, Any]]:
        stack = getattr(self._local, "stack", None)
        if stack is None:
            stack = []
            self._local.stack = stack
        return stack

    def get_current_trace_id(self) -> Optional[str]:
        return getattr(self._local, "trace_id", None)

    def get_current_span_id(self) -> Optional[str]:
        stack = self._stack
        return stack[-1]["span_id"] if stack else None

    def _safe(self, action: str, fn: Any, *args: Any, **kwargs: Any) -> None:
        try:
            fn(*args, **kwargs)
        except Exception as exc:
            logger.warning("Tracer failed to %s: %s", action, exc)

    # -- traces ---------------------------------------------------------------

    def start_trace(self, context: AgentContext, agent_name: str) -> Optional[str]:
        """Open a root span for an agent run. Nested runs reuse the active trace."""
        if not self.enabled:
            return None
        if self.get_current_trace_id() is not None:
            return self.start_span("agent_run", agent_name, input=context.user_input, context=context)
        trace_id = str(uuid.uuid4())
        self._local.trace_id = trace_id
        self._local.session_id = context.session_id
        self._local.agent_name = agent_name
        context.set_state(TRACE_STATE_KEY, trace_id)
        self.start_span("agent_run", agent_name, input=context.user_input, context=context)
        return trace_id

    def end_trace(self, output: Any = None) -> None:
        if not self.enabled or not self._stack:
            return
        self.end_span(output=output)
        if not self._stack:
            self._reset()

    def fail_trace(self, error: BaseException) -> None:
        if not self.enabled or not self._stack:
            return
        self.fail_span(error)
        if not self._stack:
            self._reset()

    def _reset(self) -> None:
        self._local.trace_id = None
        self._local.stack = []

    # -- spans ----------------------------------------------------------------

    def start_span(
        self,
        type: str,
        name: str,
        input: Any = None,
        metadata: Optional[Dict[str, Any]] = None,
        context: Optional[AgentContext] = None,
    ) -> Optional[str]:
        if not self.enabled:
            return None
        trace_id = self.get_current_trace_id()
        if trace_id is None:
            # A span outside any trace starts its own.
            trace_id = str(uuid.uuid4())
            self._local.trace_id = trace_id
        span = {
            "span_id": str(uuid.uuid4()),
            "trace_id": trace_id,
            "parent_span_id": self.get_current_span_id(),
            "session_id": context.session_id if context is not None else getattr(self._local, "session_id", None),
            "agent_name": getattr(self._local, "agent_name", None),
            "type": type,
            "name": name,
            "input": input,
            "metadata": metadata,
            "status": "running",
            "start_time": _precise_now(),
            "_started": time.monotonic(),
        }
        self._stack.append(span)
        self._safe("start span", trace_store.insert_span, span)
        return span["span_id"]

    def _pop(self, span_id: Optional[str]) -> Optional[Dict[str, Any]]:
        stack = self._stack
        if not stack:
            return None
        if span_id is None:
            return stack.pop()
        for i in range(len(stack) - 1, -1, -1):
            if stack[i]["span_id"] == span_id:
                span = stack[i]
                # Children left open are discarded with their parent.
                del stack[i:]
                return span
        return None

    def end_span(self, span_id: Optional[str] = None, output: Any = None, status: str = "success") -> None:
        if not self.enabled:
            return
        span = self._pop(span_id)
        if span is None:
            return
        duration = (time.monotonic() - span["_started"]) * 1000
        self._safe(
            "end span",
            trace_store.finish_span,
            span["span_id"],
            status,
            _precise_now(),
            round(duration, 2),
            output=output,
        )
        if not self._stack:
            self._reset()

    def fail_span(self, error: BaseException, span_id: Optional[str] = None) -> None:
        if not self.enabled:
            return
        span = self._pop(span_id)
        if span is None:
            return
        duration = (time.monotonic() - span["_started"]) * 1000
        self._safe(
            "fail span",
            trace_store.finish_span,
            span["span_id"],
            "error",
            _precise_now(),
            round(duration, 2),
            error={"type": type(error).__name__, "message": str(error)},
        )
        if not self._stack:
            self._reset()

    # -- queries --------------------------------------------------------------

    def get_spans(self, trace_id: str) -> List[Dict[str, Any]]:
        return trace_store.get_spans(trace_id)

    def cleanup(self, older_than_days: int = 30) -> int:
        return trace_store.delete_before(now_iso(-older_than_days * 86400))
