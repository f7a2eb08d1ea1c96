"""
Session and memory read API: GET /sessions/{session_id}, GET /memory/{agent_name}.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from agent_adk.engine import error_response
from agent_adk.state_manager import MEMORY_CONTEXT_KEY
from agent_adk.storage import memory_store, session_store

router = APIRouter(tags=["sessions"])


def _public(session: dict) -> dict:
    state = dict(session["state_data"])
    state.pop(MEMORY_CONTEXT_KEY, None)
    return {
        "session_id": session["session_id"],
        "agent_name": session["agent_name"],
        "user_id": session["user_id"],
        "state": state,
        "messages": session_store.get_messages(session["id"]),
        "created_at": session["created_at"],
        "updated_at": session["updated_at"],
    }


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, agent: Optional[str] = None) -> JSONResponse:
    """
    One session. Without `agent`, every agent row that shares the session id
    (an orchestrator and its sub-agents) is returned.
    """
    if agent:
        session = session_store.get_session(session_id, agent)
        if session is None:
            return error_response(404, "NOT_FOUND", f"Session not found: {session_id}")
        return JSONResponse(status_code=200, content=_public(session))

    sessions = session_store.find_sessions(session_id)
    if not sessions:
        return error_response(404, "NOT_FOUND", f"Session not found: {session_id}")
    return JSONResponse(status_code=200, content={"session_id": session_id, "agents": [_public(s) for s in sessions]})


@router.get("/memory/{agent_name}")
async def get_memory(agent_name: str, user_id: Optional[str] = None) -> JSONResponse:
    memory = memory_store.find_memory(agent_name, user_id)
    if memory is None:
        return error_response(404, "NOT_FOUND", f"No memory for agent '{agent_name}'")
    return JSONResponse(status_code=200, content=memory)
