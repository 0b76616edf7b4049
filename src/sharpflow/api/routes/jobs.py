"""Job submission and tracking endpoints.

Progress itself is pushed over the WebSocket; these endpoints cover
submission, cancellation and the reconciliation reads clients do after
reconnecting.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from sharpflow.api.auth import get_owner_id
from sharpflow.api.dependencies import get_submission
from sharpflow.db import Job, JobStatus, TaskType
from sharpflow.errors import ValidationFault
from sharpflow.jobs.submission import JobSubmissionService

router = APIRouter(prefix="/jobs", tags=["Jobs"])


# =============================================================================
# Request/Response Models
# =============================================================================


class SubmitJobRequest(BaseModel):
    """Request to submit a job."""

    task_type: str = Field(..., description="lead_generation, profile_research, ...")
    input_data: dict[str, Any] = Field(default_factory=dict, description="Task payload")
    priority: int | None = Field(None, ge=0, description="Override the task type's priority")


class SubmitJobResponse(BaseModel):
    job_id: str
    status: str = JobStatus.PENDING.value


class JobResponse(BaseModel):
    """A job as seen by its owner."""

    id: str
    task_type: str
    status: str
    progress: int
    input_data: dict[str, Any]
    result: dict[str, Any] | None
    error: str | None
    retry_count: int
    max_retries: int
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None

    @classmethod
    def from_model(cls, job: Job) -> "JobResponse":
        return cls(
            id=str(job.id),
            task_type=job.task_type,
            status=job.status,
            progress=job.progress,
            input_data=job.input_data,
            result=job.output_data,
            error=job.error_message,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


class JobsListResponse(BaseModel):
    jobs: list[JobResponse]
    count: int


def _parse_filter(enum: type[JobStatus] | type[TaskType], value: str | None, name: str) -> Any:
    if value is None:
        return None
    try:
        return enum(value)
    except ValueError:
        allowed = [m.value for m in enum]
        raise ValidationFault(
            f"Invalid {name}. Must be one of: {allowed}", details={name: value}
        ) from None


# =============================================================================
# Endpoints
# =============================================================================


@router.post("", response_model=SubmitJobResponse, status_code=202)
async def submit_job(
    request: SubmitJobRequest,
    owner_id: str = Depends(get_owner_id),
    submission: JobSubmissionService = Depends(get_submission),
) -> SubmitJobResponse:
    """Validate and queue a job. Progress arrives over the WebSocket."""
    job_id = await submission.submit(
        owner_id, request.task_type, request.input_data, priority=request.priority
    )
    return SubmitJobResponse(job_id=str(job_id))


@router.get("", response_model=JobsListResponse)
async def list_jobs(
    status: str | None = Query(None),
    task_type: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    owner_id: str = Depends(get_owner_id),
    submission: JobSubmissionService = Depends(get_submission),
) -> JobsListResponse:
    jobs = await submission.list_jobs(
        owner_id,
        status=_parse_filter(JobStatus, status, "status"),
        task_type=_parse_filter(TaskType, task_type, "task_type"),
        limit=limit,
    )
    return JobsListResponse(jobs=[JobResponse.from_model(j) for j in jobs], count=len(jobs))


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: UUID,
    owner_id: str = Depends(get_owner_id),
    submission: JobSubmissionService = Depends(get_submission),
) -> JobResponse:
    return JobResponse.from_model(await submission.get_job(owner_id, job_id))


@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(
    job_id: UUID,
    owner_id: str = Depends(get_owner_id),
    submission: JobSubmissionService = Depends(get_submission),
) -> JobResponse:
    """Cancel a pending or processing job. Running pipelines stop at the next step."""
    return JobResponse.from_model(await submission.cancel_job(owner_id, job_id))
