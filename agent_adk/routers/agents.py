"""
Agent API: list registered agents, describe one, run one.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from agent_adk.agents import BaseLlmAgent, BaseMediaAgent, BasePlanningAgent
from agent_adk.dependencies import get_runtime
from agent_adk.engine import error_response, process_run_request

router = APIRouter(prefix="/agents", tags=["agents"])


def _kind(agent: Any) -> str:
    if isinstance(agent, BasePlanningAgent):
        return "planning"
    if isinstance(agent, BaseMediaAgent):
        return "media"
    if isinstance(agent, BaseLlmAgent):
        return "llm"
    return "custom"


@router.get("")
async def list_agents(runtime=Depends(get_runtime)) -> JSONResponse:
    return JSONResponse(status_code=200, content={"agents": runtime.registry.names()})


@router.get("/{agent_name}")
async def get_agent(agent_name: str, runtime=Depends(get_runtime)) -> JSONResponse:
    if not runtime.registry.has_agent(agent_name):
        return error_response(404, "NOT_FOUND", f"Agent '{agent_name}' is not registered")
    agent = runtime.registry.get_agent(agent_name)
    body: Dict[str, Any] = {
        "name": agent_name,
        "description": agent.description,
        "kind": _kind(agent),
    }
    if isinstance(agent, BaseLlmAgent):
        body["model"] = agent.model or None
        body["tools"] = sorted(agent.load_tools())
        body["sub_agents"] = sorted(agent.get_loaded_sub_agents())
        body["mcp_servers"] = agent.mcp_servers()
        schema = agent.get_output_schema()
        body["output_schema"] = schema.to_json_schema() if schema is not None else None
    return JSONResponse(status_code=200, content=body)


@router.post("/{agent_name}/run")
async def run_agent(agent_name: str, request: Request, runtime=Depends(get_runtime)) -> JSONResponse:
    """
    Run an agent for one turn.

    200 with {output, meta}; 202 with the job receipt for async runs; 409
    INTERRUPTED when the agent paused for approval.
    """
    result = await process_run_request(request=request, runtime=runtime, agent_name=agent_name)
    return JSONResponse(status_code=result["status_code"], content=result["body"])
