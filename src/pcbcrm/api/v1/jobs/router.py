"""Background job submission and polling.

Clients submit a job, receive its id with a 202, and poll
``GET /jobs/{id}`` until the status is ``completed`` or ``failed``.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from pcbcrm.api.deps import get_job_ledger, get_job_runner
from pcbcrm.jobs.ledger import JobLedger
from pcbcrm.jobs.runner import JobRunner
from pcbcrm.models.background_job import JOB_PENDING
from pcbcrm.schemas.job import CreateJobRequest, JobCreatedResponse, JobStatusResponse

router = APIRouter()


@router.post("", status_code=202)
async def create_job(
    body: CreateJobRequest,
    runner: JobRunner = Depends(get_job_runner),
) -> JobCreatedResponse:
    """Record a job and start it in the background."""
    try:
        job_id = await runner.submit(body.job_type, body.input)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return JobCreatedResponse(id=job_id, status=JOB_PENDING)


@router.get("/{job_id}")
async def get_job(
    job_id: str,
    ledger: JobLedger = Depends(get_job_ledger),
) -> JobStatusResponse:
    """Current status; ``JobNotFoundError`` becomes a 404."""
    job = await ledger.get(job_id)
    return JobStatusResponse.model_validate(job)
