"""
MCP server API: configured servers and connection tests.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from agent_adk.dependencies import AuthError, enforce_auth, get_runtime
from agent_adk.engine import error_response

router = APIRouter(prefix="/mcp", tags=["mcp"])


@router.get("/servers")
async def list_servers(runtime=Depends(get_runtime)) -> JSONResponse:
    manager = runtime.mcp
    servers = [
        {
            "name": name,
            "transport": config.get("transport", "stdio"),
            "enabled": manager.is_server_enabled(name),
        }
        for name, config in sorted(manager.server_configs().items())
    ]
    return JSONResponse(status_code=200, content={"servers": servers})


@router.post("/servers/{server_name}/test")
async def test_server(server_name: str, request: Request, runtime=Depends(get_runtime)) -> JSONResponse:
    try:
        enforce_auth(request)
    except AuthError as exc:
        return error_response(401, "UNAUTHORIZED", str(exc))
    if runtime.mcp.get_server_config(server_name) is None:
        return error_response(404, "NOT_FOUND", f"MCP server not configured: {server_name}")
    result = await run_in_threadpool(runtime.mcp.test_connection, server_name)
    return JSONResponse(status_code=200, content=result)
