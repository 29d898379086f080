"""Schemas for submitting and polling background jobs."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field

from pcbcrm.schemas.base import CamelModel


class CreateJobRequest(CamelModel):
    job_type: str = Field(..., min_length=1, max_length=50)
    input: dict[str, Any] = Field(default_factory=dict)


class JobCreatedResponse(CamelModel):
    id: str
    status: str


class JobStatusResponse(CamelModel):
    """Poll response; ``result`` is set once completed, ``error_message`` once failed."""

    id: str
    job_type: str
    status: str
    progress: dict[str, Any] | None = None
    result: dict[str, Any] | None = None
    error_message: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
