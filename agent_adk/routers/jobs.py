from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from agent_adk.engine import error_response
from agent_adk.storage import job_store

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("/{job_id}")
async def get_job(job_id: str) -> JSONResponse:
    """Status and, once finished, result or error of a queued agent run."""
    job = job_store.get_job(job_id)
    if job is None:
        return error_response(404, "NOT_FOUND", f"Job not found: {job_id}")
    return JSONResponse(status_code=200, content=job)
