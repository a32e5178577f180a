"""Batch job API endpoints.

This module implements REST endpoints for batch generation jobs:
- POST /api/batch/jobs - Create a pending job from a list of prompts
- GET /api/batch/jobs - List the caller's jobs, newest first
- GET /api/batch/jobs/{job_id} - Job status and progress counters (poll this)
- GET /api/batch/jobs/{job_id}/items - Per-item status, results and error kinds
- POST /api/batch/jobs/{job_id}/start - Start processing a pending job
- POST /api/batch/jobs/{job_id}/cancel - Cancel a pending or processing job
- DELETE /api/batch/jobs/{job_id} - Delete a finished job

Jobs are only visible to their owner; other callers get 404.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field

from promptforge.api.dependencies import get_current_user_id, get_orchestrator
from promptforge.models.batch_item import BatchItem
from promptforge.models.batch_job import BatchJob
from promptforge.services.batch.orchestrator import BatchJobOrchestrator

logger = structlog.get_logger()
router = APIRouter(prefix="/api/batch/jobs", tags=["batch"])


# Request/Response Models


class PromptEntry(BaseModel):
    """Prompt with its own generation settings."""

    prompt: str = Field(..., description="Prompt text")
    settings: dict[str, Any] = Field(
        default_factory=dict,
        description="Settings overriding the job-level settings for this prompt",
    )


class CreateJobRequest(BaseModel):
    """Request model for creating a batch job."""

    name: str = Field(..., description="Display name of the batch")
    model_id: str = Field(..., description="Model key from GET /api/models")
    prompts: list[str | PromptEntry] = Field(
        ...,
        description="Prompts in submission order (plain strings or prompt entries)",
    )
    settings: dict[str, Any] | None = Field(
        default=None,
        description="Generation settings applied to every prompt (size, quality, duration, ...)",
    )

    model_config = {
        "protected_namespaces": (),
        "json_schema_extra": {
            "example": {
                "name": "Product shots",
                "model_id": "dall-e-3",
                "prompts": ["red sneaker on white", {"prompt": "blue sneaker", "settings": {"quality": "hd"}}],
                "settings": {"size": "1024x1024"},
            }
        },
    }


class JobView(BaseModel):
    """Batch job status and progress."""

    id: UUID
    name: str
    model_id: str
    status: str = Field(
        ...,
        description=(
            "pending, processing, completed, completed_with_failures, cancelled or failed"
        ),
    )
    total_items: int
    completed_items: int
    failed_items: int
    processed_items: int = Field(..., description="completed_items + failed_items")
    credits_reserved: int = Field(..., description="Credits held by in-flight items")
    credits_used: int = Field(..., description="Credits committed for succeeded items")
    cancel_requested: bool
    failure_reason: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None

    model_config = {"protected_namespaces": ()}

    @classmethod
    def from_job(cls, job: BatchJob) -> "JobView":
        return cls(
            id=job.id,
            name=job.name,
            model_id=job.model_id,
            status=job.status.value,
            total_items=job.total_items,
            completed_items=job.completed_items,
            failed_items=job.failed_items,
            processed_items=job.processed_items,
            credits_reserved=job.credits_reserved,
            credits_used=job.credits_used,
            cancel_requested=job.cancel_requested,
            failure_reason=job.failure_reason,
            created_at=job.created_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
        )


class ItemView(BaseModel):
    """One generation request of a batch job."""

    id: UUID
    sequence_index: int
    prompt: str
    status: str = Field(
        ..., description="queued, reserving, dispatching, succeeded, failed or skipped"
    )
    result_ref: str | None = Field(default=None, description="Asset URL (succeeded items)")
    thumbnail_ref: str | None = None
    result_metadata: dict[str, Any] | None = None
    error_kind: str | None = Field(
        default=None,
        description=(
            "insufficient_credits, transient, permanent, quota or infrastructure (failed items)"
        ),
    )
    error_message: str | None = None
    credits_charged: int
    attempts: int
    finished_at: datetime | None = None

    @classmethod
    def from_item(cls, item: BatchItem) -> "ItemView":
        return cls(
            id=item.id,
            sequence_index=item.sequence_index,
            prompt=item.prompt,
            status=item.status.value,
            result_ref=item.result_ref,
            thumbnail_ref=item.thumbnail_ref,
            result_metadata=item.result_metadata,
            error_kind=item.error_kind,
            error_message=item.error_message,
            credits_charged=item.credits_charged,
            attempts=item.attempts,
            finished_at=item.finished_at,
        )


class JobListResponse(BaseModel):
    """Response model for paginated job list."""

    jobs: list[JobView]
    limit: int
    offset: int


# API Endpoints


@router.post("", response_model=JobView, status_code=status.HTTP_201_CREATED)
async def create_job(
    request: CreateJobRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: BatchJobOrchestrator = Depends(get_orchestrator),
) -> JobView:
    """Create a pending batch job. Nothing is charged until the job is started.

    Raises:
        400 VALIDATION_ERROR: Empty name, no prompts, too many prompts,
            invalid prompt or unknown model
    """
    prompts = [p if isinstance(p, str) else p.model_dump() for p in request.prompts]
    job = await orchestrator.create_job(
        user_id, request.name, request.model_id, prompts, request.settings
    )
    return JobView.from_job(job)


@router.get("", response_model=JobListResponse)
async def list_jobs(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user_id: str = Depends(get_current_user_id),
    orchestrator: BatchJobOrchestrator = Depends(get_orchestrator),
) -> JobListResponse:
    jobs = await orchestrator.list_jobs(user_id, limit=limit, offset=offset)
    return JobListResponse(jobs=[JobView.from_job(job) for job in jobs], limit=limit, offset=offset)


@router.get("/{job_id}", response_model=JobView)
async def get_job(
    job_id: UUID,
    user_id: str = Depends(get_current_user_id),
    orchestrator: BatchJobOrchestrator = Depends(get_orchestrator),
) -> JobView:
    """Current status and progress. Never waits for in-flight items."""
    return JobView.from_job(await orchestrator.get_job(job_id, user_id))


@router.get("/{job_id}/items", response_model=list[ItemView])
async def list_items(
    job_id: UUID,
    user_id: str = Depends(get_current_user_id),
    orchestrator: BatchJobOrchestrator = Depends(get_orchestrator),
) -> list[ItemView]:
    items = await orchestrator.list_items(job_id, user_id)
    return [ItemView.from_item(item) for item in items]


@router.post("/{job_id}/start", response_model=JobView)
async def start_job(
    job_id: UUID,
    user_id: str = Depends(get_current_user_id),
    orchestrator: BatchJobOrchestrator = Depends(get_orchestrator),
) -> JobView:
    """Start a pending job; items are processed in the background.

    Raises:
        404 NOT_FOUND: Unknown job
        409 INVALID_STATE: Job is not pending
    """
    return JobView.from_job(await orchestrator.start_job(job_id, user_id))


@router.post("/{job_id}/cancel", response_model=JobView)
async def cancel_job(
    job_id: UUID,
    user_id: str = Depends(get_current_user_id),
    orchestrator: BatchJobOrchestrator = Depends(get_orchestrator),
) -> JobView:
    """Cancel a job. In-flight items finish; queued items are skipped.

    Cancelling a finished job returns it unchanged.
    """
    return JobView.from_job(await orchestrator.cancel_job(job_id, user_id))


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_job(
    job_id: UUID,
    user_id: str = Depends(get_current_user_id),
    orchestrator: BatchJobOrchestrator = Depends(get_orchestrator),
) -> Response:
    """Delete a finished job and its items. Credit history is kept.

    Raises:
        409 INVALID_STATE: Job is pending or processing
    """
    await orchestrator.delete_job(job_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
