from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .engine import build_error_envelope, envelope_for_exception, new_request_id
from .exceptions import AgentError, InterruptException
from .routers import agents as agents_router
from .routers import interrupts as interrupts_router
from .routers import jobs as jobs_router
from .routers import mcp as mcp_router
from .routers import sessions as sessions_router
from .runtime import Runtime, set_runtime

logger = logging.getLogger("agent-adk")


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """
    Build the service. Without an explicit runtime one is created from the
    current settings when the app starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Create tables, register agents, and disconnect MCP clients on shutdown."""
        active = runtime or Runtime()
        active.init_storage()
        active.load_agents()
        app.state.runtime = active
        set_runtime(active)
        logger.info("Service started agents=%s provider=%s", ",".join(active.registry.names()), active.provider.name)
        yield
        active.shutdown()

    settings = get_settings()
    app = FastAPI(title="Agent Development Kit", version="0.1.0", lifespan=lifespan)

    # CORS: controlled by env CORS_ORIGINS (e.g. * or http://localhost:3000)
    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(agents_router.router)
    app.include_router(sessions_router.router)
    app.include_router(interrupts_router.router)
    app.include_router(jobs_router.router)
    app.include_router(mcp_router.router)

    @app.exception_handler(AgentError)
    @app.exception_handler(InterruptException)
    async def agent_error_handler(request: Request, exc: Exception) -> JSONResponse:
        error = envelope_for_exception(exc)
        status_code, body = build_error_envelope(
            request_id=new_request_id(),
            status_code=error.status_code,
            code=error.code,
            message=error.message,
            details=error.details,
        )
        return JSONResponse(status_code=status_code, content=body)

    @app.get("/")
    async def root() -> Dict[str, Any]:
        """Service metadata endpoint."""
        return {"service": settings.service_name, "docs": "/docs", "health": "/health", "agents": "/agents"}

    @app.get("/health")
    async def health(request: Request) -> JSONResponse:
        active = getattr(request.app.state, "runtime", None)
        if active is None:
            status_code, body = build_error_envelope(
                request_id=new_request_id(),
                status_code=503,
                code="INTERNAL_ERROR",
                message="Runtime not initialised",
            )
            return JSONResponse(status_code=status_code, content=body)
        return JSONResponse(
            status_code=200,
            content={"status": "ok", "provider": active.provider.name, "agents": len(active.registry.names())},
        )

    return app


def get_app() -> FastAPI:
    """Factory for external runners (`uvicorn agent_adk.main:get_app --factory`)."""
    return create_app()
