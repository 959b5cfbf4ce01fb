"""Job-to-worker assignment and the background scheduling loop."""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from apscheduler.triggers.cron import CronTrigger

from fleet.errors import NoEligibleWorkerError
from fleet.jobs.store import JobStore
from fleet.messaging.base import JOB_ASSIGNED, JobQueue, PubSub, publish_event
from fleet.models.base import utc_now
from fleet.models.job import Job, JobSchedule, JobStatus, LogLevel, WorkerInfo
from fleet.models.worker import Worker
from fleet.utils.logging import get_logger
from fleet.workers.registry import WorkerRegistry

if TYPE_CHECKING:
    from fleet.jobs.service import JobService

logger = get_logger(__name__)


def rank_workers(workers: list[Worker]) -> list[Worker]:
    """Least loaded first, then most reliable, then fastest."""
    return sorted(
        workers,
        key=lambda w: (
            w.resources.current_jobs,
            -w.resources.success_rate,
            w.resources.average_job_duration_ms,
        ),
    )


def next_occurrence(schedule: JobSchedule, after: datetime) -> datetime | None:
    """
    Next start time of a recurring schedule strictly after ``after``.

    Cron expressions take precedence over ``interval_minutes``. Returns None
    when the schedule defines neither.
    """
    if schedule.cron:
        trigger = CronTrigger.from_crontab(schedule.cron, timezone=UTC)
        return trigger.get_next_fire_time(None, after + timedelta(seconds=1))
    if schedule.interval_minutes:
        interval = timedelta(minutes=schedule.interval_minutes)
        start = schedule.start_time or after
        candidate = start + interval
        return candidate if candidate > after else after + interval
    return None


class Scheduler:
    """
    Matches queued jobs with workers.

    A job is assigned under its own lock and the worker slot is taken with
    the registry's compare-and-increment, so concurrent attempts on one job
    produce at most one assignment and no worker goes over capacity.
    """

    def __init__(
        self,
        store: JobStore,
        registry: WorkerRegistry,
        queue: JobQueue,
        pubsub: PubSub | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.queue = queue
        self.pubsub = pubsub

    async def assign(self, job: Job, worker_id: str | None = None) -> Worker | None:
        """
        Assign a queued job to the best eligible worker.

        Args:
            job: Job to place; it is re-read under its lock
            worker_id: Pin the assignment to this worker, with no fallback

        Returns:
            The worker now running the job, or None if the job stays queued
        """
        async with self.store.lock_for(job.id):
            current = self.store.get(job.id)
            if current is None or current.status != JobStatus.QUEUED or current.assigned_worker:
                return None

            if worker_id is not None:
                pinned = self.registry.get(worker_id)
                candidates = [pinned] if pinned else []
            else:
                candidates = rank_workers(self.registry.eligible_workers(current.priority))

            worker = None
            for candidate in candidates:
                worker = await self.registry.try_reserve(candidate.id, current.priority)
                if worker is not None:
                    break

            if worker is None:
                reason = NoEligibleWorkerError(current.id, current.priority)
                logger.debug(reason.message, job_id=current.id, pinned=worker_id)
                return None

            current.mark_running(
                WorkerInfo(id=worker.id, name=worker.name, ip=worker.connection.ip)
            )
            current.add_log(
                LogLevel.INFO, f"Job assigned to worker: {worker.name} ({worker.id})"
            )
            await self.queue.remove(current.id)
            await self.store.update(current)

        logger.info(
            "Job assigned",
            job_id=current.id,
            worker_id=worker.id,
            priority=current.priority,
            attempt=current.execution.attempts,
        )
        await publish_event(
            self.pubsub,
            JOB_ASSIGNED,
            {"jobId": current.id, "workerId": worker.id, "workerName": worker.name},
        )
        return worker

    async def assign_pending(self, limit: int | None = None) -> int:
        """One pass over due queue entries; returns how many were assigned."""
        assigned = 0
        for job_id in await self.queue.due(limit):
            job = self.store.get(job_id)
            if job is None or job.status != JobStatus.QUEUED:
                # Stale entry: cancelled or already running
                await self.queue.remove(job_id)
                continue
            if await self.assign(job) is not None:
                assigned += 1
        return assigned


class SchedulingLoop:
    """
    Background task driving scheduled jobs, assignment and timeouts.

    Each tick activates due scheduled/batch jobs, runs an assignment pass
    over the queue, fails running jobs that outlived their worker's
    ``max_job_duration_minutes`` and announces workers gone stale.
    """

    def __init__(
        self,
        service: "JobService",
        interval_seconds: float = 5.0,
        timeout_sweep: bool = True,
    ) -> None:
        self.service = service
        self.interval_seconds = interval_seconds
        self.timeout_sweep = timeout_sweep
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the scheduling loop."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info("Scheduling loop started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Stop the scheduling loop."""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Scheduling loop stopped")

    async def tick(self, now: datetime | None = None) -> dict[str, int]:
        """Run every step once. Exposed for tests and manual triggering."""
        now = now or utc_now()
        activated = await self.service.activate_due_jobs(now)
        assigned = await self.service.scheduler.assign_pending()
        timed_out = await self.service.sweep_timeouts(now) if self.timeout_sweep else 0
        offline = await self.service.registry.announce_offline()

        counts = {
            "activated": activated,
            "assigned": assigned,
            "timed_out": timed_out,
            "offline": len(offline),
        }
        if any(counts.values()):
            logger.info("Scheduling tick", **counts)
        return counts

    async def _run(self) -> None:
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Scheduling tick failed", error=str(e), exc_info=True)
            await asyncio.sleep(self.interval_seconds)
