"""
Request pipeline for agent runs over HTTP.

`process_run_request` parses and validates the body, builds the right
executor for the agent kind and maps every failure to the standard error
envelope. Routers only translate its result into a JSONResponse.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, Dict, Optional, Tuple

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from .agents import BaseMediaAgent, BasePlanningAgent
from .dependencies import AuthError, enforce_auth
from .exceptions import (
    AgentConfigurationException,
    AgentNotFoundException,
    InterruptException,
    InterruptStateError,
    MCPException,
)
from .execution.executor import AgentExecutor
from .execution.media import MediaAgentExecutor
from .execution.planning import PlanningAgentExecutor
from .models import RunRequest

logger = logging.getLogger("agent-adk")


class ErrorEnvelope(Exception):
    """
    Internal control-flow exception.

    Raised anywhere in the pipeline and converted into the standard error
    envelope at the edge.
    """

    def __init__(self, status_code: int, code: str, message: str, details: Any = None):
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details
        super().__init__(message)


def new_request_id() -> str:
    return str(uuid.uuid4())


def build_success_envelope(
    output: Any,
    *,
    request_id: str,
    agent: str,
    latency_ms: float,
    session_id: Optional[str] = None,
) -> Dict[str, Any]:
    meta: Dict[str, Any] = {"request_id": request_id, "agent": agent, "latency_ms": latency_ms}
    if session_id is not None:
        meta["session_id"] = session_id
    return {"output": output, "meta": meta}


def build_error_envelope(
    *,
    request_id: str,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
    agent: Optional[str] = None,
) -> Tuple[int, Dict[str, Any]]:
    meta: Dict[str, Any] = {"request_id": request_id}
    if agent is not None:
        meta["agent"] = agent
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details,
        },
        "meta": meta,
    }
    return status_code, body


def envelope_for_exception(exc: BaseException) -> ErrorEnvelope:
    """Map framework exceptions onto HTTP status codes and error codes."""
    if isinstance(exc, ErrorEnvelope):
        return exc
    if isinstance(exc, AuthError):
        return ErrorEnvelope(401, "UNAUTHORIZED", str(exc))
    if isinstance(exc, InterruptException):
        return ErrorEnvelope(409, "INTERRUPTED", str(exc), details=exc.to_dict())
    if isinstance(exc, InterruptStateError):
        return ErrorEnvelope(409, "INTERRUPT_STATE", str(exc))
    if isinstance(exc, AgentNotFoundException):
        return ErrorEnvelope(404, "NOT_FOUND", str(exc), details=exc.details or None)
    if isinstance(exc, AgentConfigurationException):
        return ErrorEnvelope(500, "AGENT_CONFIGURATION_ERROR", str(exc))
    if isinstance(exc, MCPException):
        return ErrorEnvelope(502, "MCP_ERROR", str(exc))
    return ErrorEnvelope(500, "INTERNAL_ERROR", "Agent execution failed", details={"message": str(exc)})


def serialize_output(result: Any) -> Any:
    if hasattr(result, "to_dict"):
        return result.to_dict()
    if isinstance(result, (str, int, float, bool, dict, list)) or result is None:
        return result
    return str(result)


def build_executor(runtime: Any, agent_name: str, body: RunRequest) -> AgentExecutor:
    agent = runtime.registry.get_agent(agent_name)
    if isinstance(agent, BasePlanningAgent):
        executor: AgentExecutor = PlanningAgentExecutor(agent_name, body.input, runtime=runtime)
        options = body.options
        if options.get("preset"):
            executor.preset(str(options["preset"]))
        if options.get("max_attempts") is not None:
            executor.max_attempts(int(options["max_attempts"]))
        if options.get("threshold") is not None:
            executor.threshold(float(options["threshold"]))
    elif isinstance(agent, BaseMediaAgent):
        executor = MediaAgentExecutor(agent_name, body.input, runtime=runtime)
        for key, value in body.options.items():
            if key == "size":
                executor.size(str(value))
            else:
                executor.option(key, value)
    else:
        executor = AgentExecutor(agent_name, body.input, runtime=runtime)

    executor.for_user(body.user_id)
    if body.session_id:
        executor.with_session(body.session_id)
    executor.with_context(body.context).with_parameters(body.parameters)
    if body.timeout:
        executor.timeout(body.timeout)
    if body.run_async:
        executor.async_().delay(body.delay).tries(body.tries)
        if body.queue:
            executor.on_queue(body.queue)
    return executor


async def _parse_body(request: Request) -> RunRequest:
    raw = await request.body()
    try:
        payload = json.loads(raw.decode("utf-8") if raw else "{}")
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ErrorEnvelope(400, "MALFORMED_REQUEST", "Request body must be valid JSON", details={"message": str(exc)}) from exc
    if not isinstance(payload, dict) or "input" not in payload:
        raise ErrorEnvelope(
            422,
            "INPUT_VALIDATION_ERROR",
            "Request body must have a top-level 'input' field",
            details=[{"path": [], "message": "Missing 'input' field"}],
        )
    try:
        return RunRequest.model_validate(payload)
    except ValidationError as exc:
        details = [{"path": list(err["loc"]), "message": err["msg"]} for err in exc.errors()]
        raise ErrorEnvelope(422, "INPUT_VALIDATION_ERROR", "Request body failed validation", details=details) from exc


async def process_run_request(*, request: Request, runtime: Any, agent_name: str) -> Dict[str, Any]:
    """Run `agent_name` for one HTTP request and return {status_code, body}."""
    request_id = new_request_id()
    start = time.monotonic()
    try:
        enforce_auth(request)
        body = await _parse_body(request)
        if not runtime.registry.has_agent(agent_name):
            raise ErrorEnvelope(404, "NOT_FOUND", f"Agent '{agent_name}' is not registered")
        executor = build_executor(runtime, agent_name, body)
        result = await run_in_threadpool(executor.go)

        latency_ms = (time.monotonic() - start) * 1000.0
        if body.run_async:
            envelope = {**result, "meta": {"request_id": request_id, "agent": agent_name}}
            _log_run(request_id, agent_name, 202, latency_ms)
            return {"status_code": 202, "body": envelope}
        envelope = build_success_envelope(
            serialize_output(result),
            request_id=request_id,
            agent=agent_name,
            latency_ms=latency_ms,
            session_id=executor.session_id,
        )
        _log_run(request_id, agent_name, 200, latency_ms)
        return {"status_code": 200, "body": envelope}
    except Exception as exc:
        error = envelope_for_exception(exc)
        if error.status_code >= 500:
            logger.exception("run request_id=%s agent=%s failed", request_id, agent_name)
        status_code, body_out = build_error_envelope(
            request_id=request_id,
            status_code=error.status_code,
            code=error.code,
            message=error.message,
            details=error.details,
            agent=agent_name,
        )
        _log_run(request_id, agent_name, status_code, (time.monotonic() - start) * 1000.0)
        return {"status_code": status_code, "body": body_out}


def _log_run(request_id: str, agent: str, status_code: int, latency_ms: float) -> None:
    logger.info("run request_id=%s agent=%s status=%s latency_ms=%.2f", request_id, agent, status_code, latency_ms)


def error_response(status_code: int, code: str, message: str, details: Any = None) -> JSONResponse:
    _, body = build_error_envelope(
        request_id=new_request_id(),
        status_code=status_code,
        code=code,
        message=message,
        details=details,
    )
    return JSONResponse(status_code=status_code, content=body)
