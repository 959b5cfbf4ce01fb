"""Job routes."""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, status

from fleet.api.dependencies import authenticate_worker, bearer_token, get_coordinator
from fleet.coordinator import Coordinator
from fleet.errors import NotFoundError
from fleet.jobs.batch import BATCH_TEMPLATES
from fleet.models.batch import BatchJobSpec, BatchTemplate
from fleet.models.job import (
    Job,
    JobCreate,
    JobFilters,
    JobPage,
    JobStatsSummary,
    JobStatus,
    JobType,
    JobUpdate,
)
from fleet.utils.logging import get_logger

router = APIRouter(prefix="/jobs", tags=["jobs"])
logger = get_logger(__name__)


@router.post(
    "",
    response_model=Job,
    status_code=status.HTTP_201_CREATED,
    summary="Create a job",
)
async def create_job(
    spec: JobCreate,
    coordinator: Coordinator = Depends(get_coordinator),
) -> Job:
    """
    Create a job. Single jobs are queued immediately; scheduled and batch
    jobs wait for their start time.
    """
    return await coordinator.jobs.create_from_spec(spec)


@router.post(
    "/ai",
    response_model=Job,
    status_code=status.HTTP_201_CREATED,
    summary="Create a job with fingerprint and generated scenario",
)
async def create_job_with_ai(
    spec: JobCreate,
    coordinator: Coordinator = Depends(get_coordinator),
) -> Job:
    return await coordinator.jobs.create_job_with_ai(spec)


@router.get("", response_model=JobPage, summary="List jobs")
async def list_jobs(
    status_filter: list[JobStatus] = Query(default=[], alias="status"),
    job_type: JobType | None = Query(default=None, alias="type"),
    priority: list[int] = Query(default=[]),
    assigned_worker: str | None = Query(default=None, alias="assignedWorker"),
    created_by: str | None = Query(default=None, alias="createdBy"),
    tags: str | None = Query(default=None, description="Comma-separated; any tag matches"),
    created_after: datetime | None = Query(default=None, alias="createdAfter"),
    created_before: datetime | None = Query(default=None, alias="createdBefore"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    coordinator: Coordinator = Depends(get_coordinator),
) -> JobPage:
    """Filter and paginate jobs, newest first."""
    filters = JobFilters(
        status=status_filter,
        type=job_type,
        priority=priority,
        assigned_worker=assigned_worker,
        created_by=created_by,
        tags=[t.strip() for t in tags.split(",") if t.strip()] if tags else [],
        created_after=created_after,
        created_before=created_before,
    )
    return coordinator.jobs.get_jobs(filters, page, limit)


@router.get("/stats", response_model=JobStatsSummary, summary="Job statistics")
async def job_stats(coordinator: Coordinator = Depends(get_coordinator)) -> JobStatsSummary:
    return coordinator.jobs.stats()


@router.get("/next", summary="Pull the next job for a worker")
async def next_job(
    worker_id: str = Query(alias="workerId"),
    token: str | None = Depends(bearer_token),
    coordinator: Coordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    """
    Hand the calling worker its next job, or ``{"data": null}`` when there
    is nothing for it.
    """
    authenticate_worker(coordinator, worker_id, token)
    job = await coordinator.jobs.next_job_for_worker(worker_id)
    return {"success": True, "data": job}


@router.get(
    "/batch/templates",
    response_model=list[BatchTemplate],
    summary="Built-in batch templates",
)
async def batch_templates() -> list[BatchTemplate]:
    return BATCH_TEMPLATES


@router.post(
    "/batch",
    status_code=status.HTTP_201_CREATED,
    summary="Expand a batch request into jobs",
)
async def create_batch(
    spec: BatchJobSpec,
    coordinator: Coordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    """
    Create up to 1000 jobs from one template. Items that fail are listed in
    ``errors`` and do not affect the others.
    """
    result = await coordinator.jobs.create_batch(spec)
    return {
        "success": result.success,
        "batchId": result.batch_id,
        "totalCreated": result.total_created,
        "totalRequested": result.total_requested,
        "jobs": result.summaries(),
        "errors": result.errors,
    }


@router.get("/{job_id}", response_model=Job, summary="Get a job")
async def get_job(job_id: str, coordinator: Coordinator = Depends(get_coordinator)) -> Job:
    return coordinator.jobs.get_job(job_id)


@router.put("/{job_id}", response_model=Job, summary="Update a job")
async def update_job(
    job_id: str,
    update: JobUpdate,
    token: str | None = Depends(bearer_token),
    coordinator: Coordinator = Depends(get_coordinator),
) -> Job:
    """
    Partial update. Workers report progress, completion and failure here;
    when they send their API key it must match the assigned worker.
    """
    if not coordinator.settings.auth_enabled:
        token = None
    return await coordinator.jobs.update_job(job_id, update, token=token)


@router.delete("/{job_id}", summary="Cancel a job")
async def cancel_job(
    job_id: str,
    reason: str | None = None,
    coordinator: Coordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    if not await coordinator.jobs.cancel_job(job_id, reason):
        raise NotFoundError("cancellable job", job_id)
    return {"success": True, "message": "Job cancelled"}


@router.post("/{job_id}/retry", response_model=Job, summary="Retry a failed job")
async def retry_job(job_id: str, coordinator: Coordinator = Depends(get_coordinator)) -> Job:
    return await coordinator.jobs.retry_job(job_id)
