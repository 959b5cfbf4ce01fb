"""Worker registry and heartbeat processing."""

import asyncio
import secrets
from datetime import datetime

from fleet.config import Settings
from fleet.errors import AuthenticationError, NotFoundError, UnknownWorkerError, ValidationError
from fleet.messaging.base import WORKER_OFFLINE, WORKER_REGISTERED, PubSub, publish_event
from fleet.models.base import new_id, utc_now
from fleet.models.worker import (
    HOLD_STATUSES,
    FleetStats,
    FleetSummary,
    Heartbeat,
    HeartbeatInstructions,
    HeartbeatMetrics,
    HeartbeatResponse,
    Worker,
    WorkerCapabilities,
    WorkerConnection,
    WorkerLiveness,
    WorkerMetadata,
    WorkerPage,
    WorkerRegistration,
    WorkerSecurity,
    WorkerStatus,
    WorkerType,
    WorkerUpdate,
    WorkerView,
)
from fleet.utils.logging import get_logger
from fleet.workers.health import calculate_worker_scores, effective_status, format_uptime, is_stale

logger = get_logger(__name__)


class WorkerRegistry:
    """
    In-memory registry of workers.

    Durable definitions and liveness rows are kept in separate tables. All
    changes to the master-side job counters go through ``try_reserve`` and
    ``release`` under a single lock, so capacity is never exceeded.
    """

    def __init__(self, settings: Settings, pubsub: PubSub | None = None) -> None:
        self.settings = settings
        self._pubsub = pubsub
        self._workers: dict[str, Worker] = {}
        self._liveness: dict[str, WorkerLiveness] = {}
        self._announced_offline: set[str] = set()
        self._pending_aborts: dict[str, list[str]] = {}
        self._lock = asyncio.Lock()

    # Lookup

    def get(self, worker_id: str) -> Worker | None:
        """Get a worker by ID."""
        return self._workers.get(worker_id)

    def require(self, worker_id: str) -> Worker:
        """Get a worker or raise ``UnknownWorkerError``."""
        worker = self._workers.get(worker_id)
        if worker is None:
            raise UnknownWorkerError(worker_id)
        return worker

    def liveness(self, worker_id: str) -> WorkerLiveness | None:
        return self._liveness.get(worker_id)

    def get_all(self) -> list[Worker]:
        """Get all workers."""
        return list(self._workers.values())

    @property
    def count(self) -> int:
        """Total number of registered workers."""
        return len(self._workers)

    def status_of(self, worker: Worker, now: datetime | None = None) -> WorkerStatus:
        """Effective status of a worker at ``now``."""
        return effective_status(
            worker,
            self._liveness.get(worker.id),
            self.settings.stale_after_seconds,
            now,
        )

    def is_eligible(self, worker: Worker, priority: int, now: datetime | None = None) -> bool:
        """Whether ``worker`` may take a job of ``priority`` right now."""
        return (
            self.status_of(worker, now) == WorkerStatus.ONLINE
            and worker.has_capacity
            and worker.configuration.priority_filter.accepts(priority)
        )

    def eligible_workers(self, priority: int) -> list[Worker]:
        """Snapshot of workers eligible for a job of ``priority``."""
        now = utc_now()
        return [w for w in self._workers.values() if self.is_eligible(w, priority, now)]

    # Registration and authentication

    async def register(
        self, registration: WorkerRegistration, client_ip: str | None = None
    ) -> Worker:
        """
        Register a new worker.

        Args:
            registration: Self-described capabilities
            client_ip: Address the request came from, used when the body has none

        Returns:
            The stored worker, including its freshly issued API key
        """
        ip = registration.ip or client_ip or "unknown"
        worker_id = new_id("wk-", 8)
        worker = Worker(
            id=worker_id,
            name=registration.name or f"worker-{ip}-{worker_id[3:9]}",
            type=registration.type,
            connection=WorkerConnection(
                ip=ip,
                port=registration.port,
                heartbeat_interval_ms=self.settings.heartbeat_interval_ms,
            ),
            capabilities=WorkerCapabilities(
                max_concurrent_jobs=registration.max_concurrent_jobs,
                supported_browsers=registration.supported_browsers or ["chromium"],
                supported_features=registration.supported_features or [],
                memory=registration.memory,
                cpu=registration.cpu,
                storage=registration.storage,
            ),
            security=WorkerSecurity(api_key=secrets.token_urlsafe(32)),
            metadata=WorkerMetadata(
                registered_by=registration.registered_by,
                region=registration.region,
                tags=registration.tags,
            ),
        )
        if registration.priority_filter is not None:
            worker.configuration.priority_filter = registration.priority_filter

        async with self._lock:
            self._workers[worker.id] = worker

        logger.info(
            "Worker registered",
            worker_id=worker.id,
            name=worker.name,
            ip=ip,
            max_concurrent_jobs=worker.capabilities.max_concurrent_jobs,
        )
        await publish_event(
            self._pubsub, WORKER_REGISTERED, {"workerId": worker.id, "name": worker.name}
        )
        return worker

    def authenticate(self, worker_id: str, token: str | None) -> Worker:
        """
        Check a bearer credential against a worker.

        Unknown workers are reported before bad credentials, so an agent
        whose registration was lost learns to re-register.
        """
        worker = self.require(worker_id)
        if not token or not secrets.compare_digest(token, worker.security.api_key):
            logger.warning("Worker authentication failed", worker_id=worker_id)
            raise AuthenticationError("Invalid or missing worker API key")
        worker.security.last_auth = utc_now()
        return worker

    async def deregister(self, worker_id: str) -> Worker:
        """Remove a worker and its liveness row."""
        async with self._lock:
            worker = self._workers.pop(worker_id, None)
            self._liveness.pop(worker_id, None)
            self._pending_aborts.pop(worker_id, None)
            self._announced_offline.discard(worker_id)
        if worker is None:
            raise NotFoundError("worker", worker_id)
        logger.info("Worker deregistered", worker_id=worker_id)
        return worker

    async def update(self, worker_id: str, update: WorkerUpdate) -> Worker:
        """Apply an operator update: hold status, capabilities, configuration, metadata."""
        async with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None:
                raise NotFoundError("worker", worker_id)

            if update.capabilities is not None:
                if update.capabilities.max_concurrent_jobs < worker.resources.current_jobs:
                    raise ValidationError(
                        "maxConcurrentJobs cannot be lower than the jobs currently running"
                    )
                worker.capabilities = update.capabilities
            if update.configuration is not None:
                worker.configuration = update.configuration
            if update.status is not None:
                # Only maintenance/error are holds; anything else lifts the hold
                worker.status = update.status if update.status in HOLD_STATUSES else None
            if update.name is not None:
                worker.name = update.name
            if update.tags is not None:
                worker.metadata.tags = update.tags
            if update.notes is not None:
                worker.metadata.notes = update.notes
            worker.metadata.updated_at = utc_now()

        logger.info("Worker updated", worker_id=worker_id, hold=worker.status)
        return worker

    # Liveness

    async def ingest_heartbeat(self, worker_id: str, heartbeat: Heartbeat) -> HeartbeatResponse:
        """
        Record a heartbeat and answer with instructions and fleet stats.

        Metrics are stored as reported. The reported job count is kept for
        display only; the master counter is never overwritten by it.
        """
        async with self._lock:
            worker = self.require(worker_id)
            liveness = WorkerLiveness(
                last_seen=utc_now(),
                reported_status=heartbeat.status,
                reported_current_jobs=heartbeat.current_jobs,
                metrics=heartbeat.metrics,
                performance=heartbeat.performance,
            )
            self._liveness[worker_id] = liveness
            self._announced_offline.discard(worker_id)
            aborts = self._pending_aborts.pop(worker_id, [])

        if heartbeat.current_jobs != worker.resources.current_jobs:
            logger.debug(
                "Heartbeat job count differs from master counter",
                worker_id=worker_id,
                reported=heartbeat.current_jobs,
                tracked=worker.resources.current_jobs,
            )
        if heartbeat.status == WorkerStatus.OFFLINE:
            logger.info("Worker reported offline", worker_id=worker_id)

        status = self.status_of(worker)
        logger.debug(
            "Heartbeat received",
            worker_id=worker_id,
            status=status.value,
            cpu=heartbeat.metrics.cpu_usage,
            memory=heartbeat.metrics.memory_usage,
        )

        return HeartbeatResponse(
            instructions=HeartbeatInstructions(
                max_concurrent_jobs=worker.capabilities.max_concurrent_jobs,
                reporting_interval_ms=worker.connection.heartbeat_interval_ms,
                health_check_interval_ms=self.settings.health_check_interval_ms,
                poll_interval_ms=self.settings.job_poll_interval_ms,
                abort_jobs=aborts,
            ),
            stats=self.fleet_stats(),
            calculated=calculate_worker_scores(
                worker, liveness, status, self.settings.memory_baseline_mb
            ),
        )

    async def update_metrics(self, worker_id: str, metrics: HeartbeatMetrics) -> None:
        """Store an out-of-band metrics report; counts as liveness."""
        async with self._lock:
            self.require(worker_id)
            liveness = self._liveness.get(worker_id) or WorkerLiveness()
            liveness.metrics = metrics
            liveness.last_seen = utc_now()
            self._liveness[worker_id] = liveness
            self._announced_offline.discard(worker_id)

    async def touch(self, worker_id: str) -> None:
        """
        Refresh liveness on a job pull.

        A worker asking for work is alive: a stale or self-reported offline
        row is brought back online. Holds are untouched.
        """
        async with self._lock:
            self.require(worker_id)
            liveness = self._liveness.get(worker_id)
            if liveness is None:
                liveness = WorkerLiveness()
                self._liveness[worker_id] = liveness
            if liveness.reported_status == WorkerStatus.OFFLINE:
                liveness.reported_status = WorkerStatus.ONLINE
            liveness.last_seen = utc_now()
            self._announced_offline.discard(worker_id)

    async def queue_abort(self, worker_id: str, job_id: str) -> None:
        """Ask a worker, on its next heartbeat, to abort ``job_id``."""
        async with self._lock:
            aborts = self._pending_aborts.setdefault(worker_id, [])
            if job_id not in aborts:
                aborts.append(job_id)
        logger.info("Abort queued for worker", worker_id=worker_id, job_id=job_id)

    async def announce_offline(self) -> list[str]:
        """Publish ``worker:offline`` once for each worker that went stale."""
        now = utc_now()
        newly_offline = [
            worker_id
            for worker_id in self._workers
            if worker_id not in self._announced_offline
            and worker_id in self._liveness
            and is_stale(self._liveness[worker_id], self.settings.stale_after_seconds, now)
        ]
        for worker_id in newly_offline:
            self._announced_offline.add(worker_id)
            logger.warning("Worker went offline (stale heartbeat)", worker_id=worker_id)
            await publish_event(self._pubsub, WORKER_OFFLINE, {"workerId": worker_id})
        return newly_offline

    # Counters

    async def try_reserve(self, worker_id: str, priority: int) -> Worker | None:
        """
        Atomically re-check eligibility and take one slot.

        Returns the worker on success, None when it is no longer eligible.
        """
        async with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None or not self.is_eligible(worker, priority):
                return None
            worker.reserve_slot()
            logger.debug(
                "Slot reserved",
                worker_id=worker_id,
                current_jobs=worker.resources.current_jobs,
                max_jobs=worker.capabilities.max_concurrent_jobs,
            )
            return worker

    async def release(self, worker_id: str, success: bool, duration_ms: float) -> None:
        """Free one slot and fold the outcome into the worker's rolling stats."""
        async with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None:
                logger.warning("Release for unknown worker ignored", worker_id=worker_id)
                return
            worker.release_slot(success, duration_ms)
            logger.debug(
                "Slot released",
                worker_id=worker_id,
                success=success,
                current_jobs=worker.resources.current_jobs,
                success_rate=round(worker.resources.success_rate, 4),
            )

    # Views

    def fleet_stats(self) -> FleetStats:
        now = utc_now()
        alive = {WorkerStatus.ONLINE, WorkerStatus.BUSY}
        return FleetStats(
            global_worker_count=len(self._workers),
            online_workers=sum(
                1 for w in self._workers.values() if self.status_of(w, now) in alive
            ),
            total_active_jobs=sum(w.resources.current_jobs for w in self._workers.values()),
        )

    def view(self, worker: Worker) -> WorkerView:
        """Public representation of a worker; never includes the API key."""
        liveness = self._liveness.get(worker.id)
        status = self.status_of(worker)
        return WorkerView(
            id=worker.id,
            name=worker.name,
            type=worker.type,
            status=status,
            is_stale=is_stale(liveness, self.settings.stale_after_seconds),
            last_seen=liveness.last_seen if liveness else None,
            uptime=format_uptime(worker.connection.registered_at),
            connection=worker.connection,
            capabilities=worker.capabilities,
            resources=worker.resources,
            configuration=worker.configuration,
            metrics=liveness.metrics if liveness else None,
            performance=liveness.performance if liveness else None,
            calculated=calculate_worker_scores(
                worker, liveness, status, self.settings.memory_baseline_mb
            ),
            metadata=worker.metadata,
        )

    def list_workers(
        self,
        page: int = 1,
        limit: int = 20,
        status: WorkerStatus | None = None,
        worker_type: WorkerType | None = None,
    ) -> WorkerPage:
        """Paginated worker views plus a fleet-wide summary."""
        views = [self.view(w) for w in self._workers.values()]
        summary = FleetSummary(
            total=len(views),
            online=sum(1 for v in views if v.status == WorkerStatus.ONLINE),
            busy=sum(1 for v in views if v.status == WorkerStatus.BUSY),
            offline=sum(1 for v in views if v.status == WorkerStatus.OFFLINE),
            total_jobs=sum(v.resources.current_jobs for v in views),
            total_capacity=sum(v.capabilities.max_concurrent_jobs for v in views),
            avg_success_rate=(
                sum(v.resources.success_rate for v in views) / len(views) if views else 0.0
            ),
        )

        if status is not None:
            views = [v for v in views if v.status == status]
        if worker_type is not None:
            views = [v for v in views if v.type == worker_type]
        views.sort(key=lambda v: v.connection.registered_at, reverse=True)

        total = len(views)
        start = (page - 1) * limit
        return WorkerPage(
            workers=views[start : start + limit],
            total=total,
            page=page,
            pages=(total + limit - 1) // limit,
            summary=summary,
        )
