"""Worker routes."""

from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status

from fleet.api.dependencies import authenticate_worker, bearer_token, get_coordinator
from fleet.coordinator import Coordinator
from fleet.models.worker import (
    Heartbeat,
    HeartbeatResponse,
    MetricsReport,
    RegistrationResponse,
    WorkerPage,
    WorkerRegistration,
    WorkerStatus,
    WorkerType,
    WorkerUpdate,
    WorkerView,
)
from fleet.utils.logging import get_logger

router = APIRouter(prefix="/workers", tags=["workers"])
logger = get_logger(__name__)


@router.post(
    "",
    response_model=RegistrationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a worker",
)
async def register_worker(
    registration: WorkerRegistration,
    request: Request,
    coordinator: Coordinator = Depends(get_coordinator),
) -> RegistrationResponse:
    """
    Register a worker and issue its API key.

    The key is only ever returned here; every later worker call presents it
    as a bearer token.
    """
    client_ip = request.client.host if request.client else None
    worker = await coordinator.registry.register(registration, client_ip=client_ip)
    return RegistrationResponse(worker_id=worker.id, api_key=worker.security.api_key)


@router.get("", response_model=WorkerPage, summary="List workers")
async def list_workers(
    status_filter: WorkerStatus | None = Query(default=None, alias="status"),
    worker_type: WorkerType | None = Query(default=None, alias="type"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    coordinator: Coordinator = Depends(get_coordinator),
) -> WorkerPage:
    return coordinator.registry.list_workers(page, limit, status_filter, worker_type)


@router.get("/{worker_id}", response_model=WorkerView, summary="Get a worker")
async def get_worker(
    worker_id: str,
    coordinator: Coordinator = Depends(get_coordinator),
) -> WorkerView:
    return coordinator.registry.view(coordinator.registry.require(worker_id))


@router.put("/{worker_id}", response_model=WorkerView, summary="Update a worker")
async def update_worker(
    worker_id: str,
    update: WorkerUpdate,
    coordinator: Coordinator = Depends(get_coordinator),
) -> WorkerView:
    """Operator update: maintenance/error holds, capabilities, configuration, notes."""
    worker = await coordinator.registry.update(worker_id, update)
    return coordinator.registry.view(worker)


@router.delete("/{worker_id}", summary="Deregister a worker")
async def deregister_worker(
    worker_id: str,
    coordinator: Coordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    await coordinator.jobs.deregister_worker(worker_id)
    return {"success": True, "message": "Worker deregistered"}


@router.post(
    "/{worker_id}/heartbeat",
    response_model=HeartbeatResponse,
    summary="Worker heartbeat",
)
async def heartbeat(
    worker_id: str,
    beat: Heartbeat,
    token: str | None = Depends(bearer_token),
    coordinator: Coordinator = Depends(get_coordinator),
) -> HeartbeatResponse:
    """
    Record liveness and metrics.

    The response carries instructions for the worker, including the ids of
    jobs it must abort.
    """
    authenticate_worker(coordinator, worker_id, token)
    return await coordinator.registry.ingest_heartbeat(worker_id, beat)


@router.put("/{worker_id}/metrics", summary="Report worker metrics")
async def report_metrics(
    worker_id: str,
    report: MetricsReport,
    token: str | None = Depends(bearer_token),
    coordinator: Coordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    authenticate_worker(coordinator, worker_id, token)
    await coordinator.registry.update_metrics(worker_id, report.metrics)
    return {"success": True, "message": "Metrics updated"}
