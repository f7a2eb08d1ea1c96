"""
Human-in-the-loop API: list pending interrupts and resolve them.

Resolving endpoints are mutating and go through `enforce_auth`; with Clerk
configured the token subject is recorded as `resolved_by`.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Type

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from agent_adk.dependencies import AuthError, enforce_auth, get_runtime
from agent_adk.engine import error_response
from agent_adk.exceptions import InterruptStateError
from agent_adk.models import ApproveRequest, CancelRequest, RejectRequest, RespondRequest

logger = logging.getLogger("agent-adk")

router = APIRouter(prefix="/interrupts", tags=["interrupts"])


@router.get("")
async def list_interrupts(
    session_id: Optional[str] = None,
    agent: Optional[str] = None,
    runtime=Depends(get_runtime),
) -> JSONResponse:
    pending = runtime.interrupts.get_pending(session_id=session_id, agent_name=agent)
    return JSONResponse(status_code=200, content={"interrupts": pending})


@router.get("/{interrupt_id}")
async def get_interrupt(interrupt_id: str, runtime=Depends(get_runtime)) -> JSONResponse:
    record = runtime.interrupts.get(interrupt_id)
    if record is None:
        return error_response(404, "NOT_FOUND", f"Interrupt not found: {interrupt_id}")
    return JSONResponse(status_code=200, content=record)


async def _resolve(
    request: Request,
    interrupt_id: str,
    runtime: Any,
    model: Type[BaseModel],
    action: Callable[[BaseModel, Optional[str]], Any],
) -> JSONResponse:
    try:
        actor = enforce_auth(request)
    except AuthError as exc:
        return error_response(401, "UNAUTHORIZED", str(exc))

    if runtime.interrupts.get(interrupt_id) is None:
        return error_response(404, "NOT_FOUND", f"Interrupt not found: {interrupt_id}")

    raw = await request.body()
    try:
        body = model.model_validate_json(raw or b"{}")
    except ValidationError as exc:
        details = [{"path": list(err["loc"]), "message": err["msg"]} for err in exc.errors()]
        return error_response(400, "MALFORMED_REQUEST", "Request body failed validation", details=details)

    try:
        record = action(body, actor)
    except InterruptStateError as exc:
        return error_response(409, "INTERRUPT_STATE", str(exc), details=exc.details)
    return JSONResponse(status_code=200, content=record)


@router.post("/{interrupt_id}/approve")
async def approve(interrupt_id: str, request: Request, runtime=Depends(get_runtime)) -> JSONResponse:
    return await _resolve(
        request,
        interrupt_id,
        runtime,
        ApproveRequest,
        lambda body, actor: runtime.interrupts.approve(interrupt_id, body.modifications, resolved_by=actor),
    )


@router.post("/{interrupt_id}/reject")
async def reject(interrupt_id: str, request: Request, runtime=Depends(get_runtime)) -> JSONResponse:
    return await _resolve(
        request,
        interrupt_id,
        runtime,
        RejectRequest,
        lambda body, actor: runtime.interrupts.reject(interrupt_id, body.reason, resolved_by=actor),
    )


@router.post("/{interrupt_id}/respond")
async def respond(interrupt_id: str, request: Request, runtime=Depends(get_runtime)) -> JSONResponse:
    return await _resolve(
        request,
        interrupt_id,
        runtime,
        RespondRequest,
        lambda body, actor: runtime.interrupts.respond(interrupt_id, body.response, resolved_by=actor),
    )


@router.post("/{interrupt_id}/cancel")
async def cancel(interrupt_id: str, request: Request, runtime=Depends(get_runtime)) -> JSONResponse:
    return await _resolve(
        request,
        interrupt_id,
        runtime,
        CancelRequest,
        lambda body, actor: runtime.interrupts.cancel(interrupt_id, resolved_by=actor),
    )
