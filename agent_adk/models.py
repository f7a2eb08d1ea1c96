"""
Request bodies for the HTTP service.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class RunRequest(BaseModel):
    """Body of POST /agents/{name}/run."""

    model_config = ConfigDict(populate_by_name=True)

    input: Any
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    # Media size/quality/style, or planning max_attempts/threshold/preset.
    options: Dict[str, Any] = Field(default_factory=dict)
    run_async: bool = Field(default=False, alias="async")
    queue: Optional[str] = None
    delay: int = Field(default=0, ge=0)
    tries: int = Field(default=1, ge=1)
    timeout: Optional[int] = Field(default=None, ge=1)


class ApproveRequest(BaseModel):
    modifications: Optional[Dict[str, Any]] = None


class RejectRequest(BaseModel):
    reason: Optional[str] = None


class RespondRequest(BaseModel):
    response: str


class CancelRequest(BaseModel):
    pass
