"""Automation worker: heartbeats, pulls jobs and executes them concurrently."""

import asyncio
import os
import resource
import time

import httpx

from fleet.agent.client import MasterClient, MasterError
from fleet.agent.config import AgentSettings
from fleet.browser.executor import ChromeExecutor, ExecutionResult
from fleet.models.job import Job, JobResults, JobStatus, JobUpdate
from fleet.models.worker import (
    Heartbeat,
    HeartbeatMetrics,
    HeartbeatPerformance,
    HeartbeatResponse,
    WorkerStatus,
)
from fleet.utils.logging import bind_context, get_logger

logger = get_logger(__name__)


def process_metrics() -> HeartbeatMetrics:
    """Coarse host metrics: load-based CPU percentage and peak RSS in MB."""
    try:
        load = os.getloadavg()[0]
    except OSError:
        load = 0.0
    cpu = min(100.0, load / (os.cpu_count() or 1) * 100)
    memory_mb = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss / 1024
    return HeartbeatMetrics(cpu_usage=round(cpu, 1), memory_usage=round(memory_mb, 1))


class AutomationWorker:
    """
    Worker agent loop.

    Two background tasks run until ``stop``: a heartbeat loop that also
    applies the coordinator's instructions (intervals, capacity, aborts),
    and a poll loop that pulls jobs while below capacity. Each pulled job
    runs in its own task.
    """

    def __init__(
        self,
        settings: AgentSettings,
        client: MasterClient | None = None,
        executor: ChromeExecutor | None = None,
    ) -> None:
        self.settings = settings
        self.client = client or MasterClient(settings)
        self.executor = executor or ChromeExecutor(settings)
        self.max_concurrent_jobs = settings.max_concurrent_jobs
        self.heartbeat_interval_ms = settings.heartbeat_interval_ms
        self.poll_interval_ms = settings.poll_interval_ms

        self._running = False
        self._loops: list[asyncio.Task[None]] = []
        self._active: dict[str, asyncio.Task[None]] = {}
        self._completed = 0
        self._failed = 0
        self._total_duration_ms = 0.0

    @property
    def current_jobs(self) -> int:
        return len(self._active)

    @property
    def has_capacity(self) -> bool:
        return self.current_jobs < self.max_concurrent_jobs

    def _performance(self) -> HeartbeatPerformance:
        finished = self._completed + self._failed
        if not finished:
            return HeartbeatPerformance()
        return HeartbeatPerformance(
            success_rate=round(self._completed / finished * 100, 1),
            average_job_duration=round(self._total_duration_ms / finished, 1),
        )

    async def start(self) -> None:
        """Register if needed and start the heartbeat and poll loops."""
        if self._running:
            return

        if not self.client.registered:
            await self.client.register()
        self._running = True
        self._loops = [
            asyncio.create_task(self._heartbeat_loop()),
            asyncio.create_task(self._poll_loop()),
        ]
        logger.info(
            "Worker started",
            worker_id=self.client.worker_id,
            max_concurrent_jobs=self.max_concurrent_jobs,
        )

    async def stop(self) -> None:
        """Stop the loops, abandon running jobs and tell the coordinator we are leaving."""
        self._running = False
        for task in [*self._loops, *self._active.values()]:
            task.cancel()
        for task in [*self._loops, *self._active.values()]:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._loops = []
        self._active.clear()

        try:
            await self.client.heartbeat(self._heartbeat(WorkerStatus.OFFLINE))
        except (MasterError, httpx.HTTPError) as e:
            logger.warning("Final heartbeat failed", error=str(e))
        await self.client.close()
        logger.info("Worker stopped", worker_id=self.client.worker_id)

    # Heartbeat

    def _metrics(self) -> HeartbeatMetrics:
        return process_metrics().model_copy(
            update={"jobs_completed": self._completed, "jobs_failed": self._failed}
        )

    def _heartbeat(self, status: WorkerStatus | None = None) -> Heartbeat:
        if status is None:
            status = WorkerStatus.ONLINE if self.has_capacity else WorkerStatus.BUSY
        return Heartbeat(
            status=status,
            current_jobs=self.current_jobs,
            metrics=self._metrics(),
            performance=self._performance(),
        )

    async def heartbeat_once(self) -> HeartbeatResponse:
        """Send one heartbeat and apply the instructions that come back."""
        response = await self.client.heartbeat(self._heartbeat())
        instructions = response.instructions
        self.max_concurrent_jobs = instructions.max_concurrent_jobs
        self.heartbeat_interval_ms = instructions.reporting_interval_ms
        self.poll_interval_ms = instructions.poll_interval_ms
        for job_id in instructions.abort_jobs:
            self.abort(job_id)
        return response

    async def _heartbeat_loop(self) -> None:
        while self._running:
            try:
                await self.heartbeat_once()
            except (MasterError, httpx.HTTPError) as e:
                logger.warning("Heartbeat failed", error=str(e))
            await asyncio.sleep(self.heartbeat_interval_ms / 1000)

    def abort(self, job_id: str) -> bool:
        """Cancel a running job's task; the coordinator has already closed the job."""
        task = self._active.get(job_id)
        if task is None:
            return False
        task.cancel()
        logger.info("Job aborted on coordinator request", job_id=job_id)
        return True

    # Jobs

    async def poll_once(self) -> Job | None:
        """Pull one job if there is room for it and start executing it."""
        if not self.has_capacity:
            return None
        job = await self.client.next_job()
        if job is None or job.id in self._active:
            return None
        task = asyncio.create_task(self._run_job(job))
        # Covers tasks cancelled before they started running
        task.add_done_callback(lambda _: self._active.pop(job.id, None))
        self._active[job.id] = task
        return job

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.poll_once()
            except (MasterError, httpx.HTTPError) as e:
                logger.warning("Job poll failed", error=str(e))
            await asyncio.sleep(self.poll_interval_ms / 1000)

    async def _run_job(self, job: Job) -> None:
        # Each job runs in its own task, so this context is task-local
        bind_context(job_id=job.id, worker_id=self.client.worker_id)
        logger.info("Executing job", url=job.url, priority=job.priority)
        started = time.monotonic()
        try:
            result = await self.executor.execute(
                job.id, job.url, job.config.browser, job.config.automation
            )
        except asyncio.CancelledError:
            logger.info("Job execution cancelled")
            raise
        except Exception as e:
            logger.error("Job execution crashed", error=str(e), exc_info=True)
            result = ExecutionResult(success=False, errors=[f"Executor crashed: {e}"])
        finally:
            self._active.pop(job.id, None)

        duration_ms = (time.monotonic() - started) * 1000
        self._total_duration_ms += duration_ms
        if result.success:
            self._completed += 1
        else:
            self._failed += 1
        await self._report(job, result)

    async def _report(self, job: Job, result: ExecutionResult) -> None:
        results: JobResults = result.to_results()
        error = None
        if not result.success:
            # Carried once, as the failure reason
            error = "; ".join(results.errors) or "Execution failed"
            results.errors = []
        update = JobUpdate(
            status=JobStatus.COMPLETED if result.success else JobStatus.FAILED,
            error=error,
            execution={"results": results},
        )
        try:
            await self.client.update_job(job.id, update)
        except (MasterError, httpx.HTTPError) as e:
            logger.error("Failed to report job outcome", error=str(e))
            return
        logger.info("Job outcome reported", success=result.success)

        # Job counters changed; push them ahead of the next heartbeat
        try:
            await self.client.report_metrics(self._metrics())
        except (MasterError, httpx.HTTPError) as e:
            logger.warning("Metrics report failed", error=str(e))
