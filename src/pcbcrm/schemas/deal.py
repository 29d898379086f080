"""Pydantic v2 schemas for the deal pipeline API."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from pcbcrm.schemas.base import CamelModel
from pcbcrm.schemas.pagination import PageResponse


class CreateDealRequest(CamelModel):
    """Request body for creating a deal.

    Only ``business_name`` is required; new deals start in ``lead``.
    """

    business_name: str = Field(..., min_length=1, max_length=200)
    stage: str = "lead"
    status: str = Field(default="active", pattern="^(active|inactive|archived)$")
    assigned_to: str | None = Field(default=None, max_length=100)
    estimated_monthly_volume: float = Field(default=0.0, ge=0)
    deal_probability: int = Field(default=0, ge=0, le=100)
    temperature: str | None = Field(default=None, pattern="^(hot|warm|cold)$")
    priority: str | None = Field(default=None, pattern="^(high|medium|low)$")


class DealResponse(CamelModel):
    id: str
    business_name: str
    stage: str
    status: str
    assigned_to: str | None = None
    estimated_monthly_volume: float
    deal_probability: int
    temperature: str | None = None
    priority: str | None = None
    created_at: datetime
    updated_at: datetime


class KanbanResponse(CamelModel):
    """Per-stage pages plus the total number of deals in each stage."""

    stages: dict[str, PageResponse[DealResponse]]
    stage_counts: dict[str, int]
