"""
Fluent execution builders.

    AgentExecutor(SupportAgent, "Where is my order?").for_user("u1").temperature(0.2).go()

`go()` either runs synchronously and returns the agent's result or, with
`async_()`, enqueues a job and returns a receipt. Errors propagate; only
`str(executor)` and `executor()` turn them into an "Error executing agent" string.
"""

from __future__ import annotations

import base64
import concurrent.futures
import logging
import mimetypes
import secrets
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from agent_adk.context import AgentContext
from agent_adk.exceptions import AgentError
from agent_adk.storage import job_store

logger = logging.getLogger("agent-adk")

Blob = Union[str, Path, bytes]


def _random(n: int) -> str:
    return secrets.token_hex(n)[:n]


def _attachment(kind: str, source: Blob, mime_type: Optional[str], title: Optional[str]) -> Dict[str, Any]:
    if isinstance(source, (str, Path)):
        path = Path(source)
        data = path.read_bytes()
        mime_type = mime_type or mimetypes.guess_type(path.name)[0]
        title = title or path.name
    else:
        data = bytes(source)
    return {
        "type": kind,
        "data": base64.b64encode(data).decode("ascii"),
        "mime_type": mime_type or "application/octet-stream",
        "title": title,
    }


class AgentExecutor:
    mode = "agent"
    session_prefix = "session"

    def __init__(self, agent: Any, input: Any = None, runtime: Any = None) -> None:
        self.agent = agent
        self.input = input
        self._runtime = runtime
        self.user_id: Optional[str] = None
        self.user_data: Optional[Dict[str, Any]] = None
        self.session_id: Optional[str] = None
        self.context: Dict[str, Any] = {}
        self.parameters: Dict[str, Any] = {}
        self.prompt_version_value: Optional[str] = None
        self.streaming_enabled = False
        self.attachments: List[Dict[str, Any]] = []
        self.is_async = False
        self.queue: Optional[str] = None
        self.delay_seconds = 0
        self.max_tries = 1
        self.timeout_seconds: Optional[int] = None
        self._then: Optional[Callable[..., Any]] = None

    @property
    def runtime(self) -> Any:
        if self._runtime is None:
            from agent_adk.runtime import get_runtime

            self._runtime = get_runtime()
        return self._runtime

    # -- builder --------------------------------------------------------------

    def for_user(self, user: Any) -> "AgentExecutor":
        """Accepts a user id or a mapping with `user_id` / `id` (plus name, email, ...)."""
        if user is None:
            return self
        if isinstance(user, dict):
            user_id = user.get("user_id", user.get("id"))
            self.user_data = dict(user)
        else:
            user_id = user
        self.user_id = str(user_id) if user_id is not None else None
        return self

    def with_session(self, session_id: str) -> "AgentExecutor":
        self.session_id = session_id
        return self

    def with_context(self, values: Dict[str, Any]) -> "AgentExecutor":
        self.context.update(values)
        return self

    def with_context_value(self, key: str, value: Any) -> "AgentExecutor":
        self.context[key] = value
        return self

    def temperature(self, value: float) -> "AgentExecutor":
        self.parameters["temperature"] = value
        return self

    def max_tokens(self, value: int) -> "AgentExecutor":
        self.parameters["max_tokens"] = value
        return self

    def top_p(self, value: float) -> "AgentExecutor":
        self.parameters["top_p"] = value
        return self

    def using(self, model: str) -> "AgentExecutor":
        self.parameters["model"] = model
        return self

    model = using

    def with_parameters(self, parameters: Dict[str, Any]) -> "AgentExecutor":
        self.parameters.update(parameters)
        return self

    def prompt_version(self, version: str) -> "AgentExecutor":
        self.prompt_version_value = version
        return self

    def streaming(self, enabled: bool = True) -> "AgentExecutor":
        self.streaming_enabled = enabled
        return self

    def with_image(self, source: Blob, mime_type: Optional[str] = None) -> "AgentExecutor":
        self.attachments.append(_attachment("image", source, mime_type, None))
        return self

    def with_document(self, source: Blob, mime_type: Optional[str] = None, title: Optional[str] = None) -> "AgentExecutor":
        self.attachments.append(_attachment("document", source, mime_type, title))
        return self

    def async_(self, enabled: bool = True) -> "AgentExecutor":
        self.is_async = enabled
        return self

    def on_queue(self, queue: str) -> "AgentExecutor":
        self.queue = queue
        self.is_async = True
        return self

    def delay(self, seconds: int) -> "AgentExecutor":
        self.delay_seconds = max(0, int(seconds))
        return self

    def tries(self, count: int) -> "AgentExecutor":
        self.max_tries = max(1, int(count))
        return self

    def timeout(self, seconds: int) -> "AgentExecutor":
        self.timeout_seconds = int(seconds)
        return self

    def then(self, callback: Callable[..., Any]) -> "AgentExecutor":
        self._then = callback
        return self

    # -- execution ------------------------------------------------------------

    def agent_name(self) -> str:
        return self.runtime.registry.resolve_agent_name(self.agent)

    def resolve_session_id(self) -> str:
        if self.session_id is None:
            if self.user_id is not None:
                self.session_id = f"user_{self.user_id}_{_random(8)}"
            else:
                self.session_id = f"{self.session_prefix}_{_random(12)}"
        return self.session_id

    def go(self) -> Any:
        if self.is_async:
            return self.dispatch()
        if self.timeout_seconds:
            pool = concurrent.futures.ThreadPoolExecutor(max_workers=1)
            future = pool.submit(self.execute)
            try:
                return future.result(timeout=self.timeout_seconds)
            except concurrent.futures.TimeoutError as exc:
                raise AgentError(f"Agent execution timed out after {self.timeout_seconds} seconds") from exc
            finally:
                # The abandoned run keeps its thread until the agent returns.
                pool.shutdown(wait=False)
        return self.execute()

    def prepare_context(self) -> AgentContext:
        """Load the session, inject this run's metadata and persist it before the agent runs."""
        agent_name = self.agent_name()
        session_id = self.resolve_session_id()
        state = self.runtime.state
        context = state.load_context(agent_name, session_id, self.input, self.user_id)
        self.inject(context, "async" if self.context.get("background_job") else "sync")
        state.save_context(context, agent_name, apply_memory_updates=False)
        return context

    def inject(self, context: AgentContext, execution_mode: str) -> None:
        context.set_state("execution_mode", execution_mode)
        if self.user_id is not None:
            context.set_state("user_id", self.user_id)
        if self.user_data:
            context.set_state("user_data", self.user_data)
            for key in ("name", "email"):
                if self.user_data.get(key):
                    context.set_state(f"user_{key}", self.user_data[key])
        for key, value in self.context.items():
            context.set_state(key, value)
        # Per-run settings replace whatever an earlier run on this session left behind.
        run_settings = {
            "attachments": self.attachments or None,
            "agent_parameters": dict(self.parameters) if self.parameters else None,
            "prompt_version": self.prompt_version_value,
            "streaming": True if self.streaming_enabled else None,
        }
        for key, value in run_settings.items():
            if value is None:
                context.forget_state(key)
            else:
                context.set_state(key, value)

    def execute(self) -> Any:
        context = self.prepare_context()
        agent_name = self.agent_name()
        result = self.runtime.manager.run(agent_name, self.input, context.session_id, self.user_id)
        self._fire_then(result, agent_name, context.session_id)
        return result

    def _fire_then(self, result: Any, agent_name: str, session_id: str) -> None:
        if self._then is not None:
            self._then(result, {"agent": agent_name, "session_id": session_id, "user_id": self.user_id})

    # -- async ----------------------------------------------------------------

    def job_payload(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "input": self.input,
            "session_id": self.resolve_session_id(),
            "user_id": self.user_id,
            "user_data": self.user_data,
            "context": self.context,
            "parameters": self.parameters,
            "prompt_version": self.prompt_version_value,
            "attachments": self.attachments,
        }

    def dispatch(self) -> Dict[str, Any]:
        agent_name = self.agent_name()
        queue = self.queue or self.runtime.settings.default_queue
        job_id = job_store.enqueue_job(
            queue,
            agent_name,
            self.job_payload(),
            delay_seconds=self.delay_seconds,
            max_tries=self.max_tries,
            timeout=self.timeout_seconds,
        )
        logger.info("Job dispatched id=%s agent=%s queue=%s mode=%s", job_id, agent_name, queue, self.mode)
        return {"job_dispatched": True, "job_id": job_id, "queue": queue, "agent": agent_name, "mode": self.mode}

    @classmethod
    def from_payload(cls, agent_name: str, payload: Dict[str, Any], runtime: Any) -> "AgentExecutor":
        executor = cls(agent_name, payload.get("input"), runtime=runtime)
        executor.session_id = payload.get("session_id")
        executor.user_id = payload.get("user_id")
        executor.user_data = payload.get("user_data")
        executor.context = dict(payload.get("context") or {})
        executor.parameters = dict(payload.get("parameters") or {})
        executor.prompt_version_value = payload.get("prompt_version")
        executor.attachments = list(payload.get("attachments") or [])
        return executor

    # -- conveniences ---------------------------------------------------------

    def __call__(self) -> Any:
        try:
            return self.go()
        except Exception as exc:
            return f"Error executing agent: {exc}"

    def __str__(self) -> str:
        return str(self())
