"""Job lifecycle operations.

All status changes of a job happen while holding that job's lock from the
store. Worker counters are only touched through the registry, so the two
locks are always taken in the order job -> registry.
"""

from datetime import datetime
from pydantic import HttpUrl, TypeAdapter
from pydantic import ValidationError as SchemaError

from fleet.config import Settings
from fleet.errors import AuthenticationError, InvalidTransitionError, ValidationError
from fleet.generation.fingerprint import FingerprintGenerator, fingerprint_script
from fleet.generation.proxy import ProxyAllocator, to_proxy_config
from fleet.generation.scenario import ScenarioGenerator, determine_page_type
from fleet.jobs.batch import BatchExpander
from fleet.jobs.scheduler import Scheduler, next_occurrence
from fleet.jobs.store import JobStore
from fleet.messaging.base import (
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_CREATED,
    JOB_FAILED,
    JOB_QUEUED,
    JOB_UPDATED,
    JobQueue,
    Message,
    PubSub,
    publish_event,
)
from fleet.models.automation import PageContext
from fleet.models.base import utc_now
from fleet.models.batch import BatchJobSpec, BatchResult
from fleet.models.job import (
    Job,
    JobConfig,
    JobCreate,
    JobFilters,
    JobMetadata,
    JobPage,
    JobResults,
    JobStatsSummary,
    JobStatus,
    JobType,
    JobUpdate,
    LogLevel,
    ScheduleType,
    can_transition,
    clamp_priority,
)
from fleet.utils.logging import get_logger
from fleet.workers.registry import WorkerRegistry

logger = get_logger(__name__)

_URL = TypeAdapter(HttpUrl)

Events = list[tuple[str, Message]]


def validate_job_spec(spec: JobCreate) -> None:
    """
    Check the fields a job cannot exist without.

    Raises:
        ValidationError: If name or URL is missing, or the URL is malformed
    """
    if not spec.name or not spec.name.strip():
        raise ValidationError("Job name is required")
    if not spec.url or not spec.url.strip():
        raise ValidationError("Job URL is required")
    try:
        _URL.validate_python(spec.url)
    except SchemaError as e:
        raise ValidationError(f"Invalid URL '{spec.url}'") from e


def retry_backoff_ms(job: Job) -> int:
    """Exponential backoff before a retried job becomes due again."""
    return job.config.retry.retry_delay_ms * 2 ** max(0, job.execution.attempts - 1)


class JobService:
    """Creates jobs and drives them through their lifecycle."""

    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        registry: WorkerRegistry,
        queue: JobQueue,
        pubsub: PubSub | None = None,
        scenarios: ScenarioGenerator | None = None,
        fingerprints: FingerprintGenerator | None = None,
        proxies: ProxyAllocator | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.registry = registry
        self.queue = queue
        self.pubsub = pubsub
        self.scheduler = Scheduler(store, registry, queue, pubsub)
        self.scenarios = scenarios or ScenarioGenerator(settings)
        self.fingerprints = fingerprints or FingerprintGenerator()
        self.proxies = proxies or ProxyAllocator()
        self.batches = BatchExpander(self.create_from_spec)

    # Creation

    def _build_job(self, spec: JobCreate, batch_id: str | None = None) -> Job:
        validate_job_spec(spec)
        config = spec.config.model_copy(deep=True) if spec.config else JobConfig()
        if spec.intent:
            config.automation.intent = spec.intent
        return Job(
            name=spec.name.strip(),
            description=spec.description,
            url=spec.url.strip(),
            type=spec.type,
            priority=spec.priority,
            config=config,
            schedule=spec.schedule,
            metadata=JobMetadata(
                created_by=spec.created_by,
                tags=list(spec.tags),
                fingerprint_region=spec.fingerprint_region,
                batch_id=batch_id,
            ),
        )

    async def _persist_new(self, job: Job) -> Job:
        job.add_log(LogLevel.INFO, "Job created")
        await self.store.add(job)
        logger.info(
            "Job created",
            job_id=job.id,
            name=job.name,
            type=job.type.value,
            priority=job.priority,
        )
        await publish_event(
            self.pubsub,
            JOB_CREATED,
            {
                "jobId": job.id,
                "name": job.name,
                "status": job.status.value,
                "createdBy": job.metadata.created_by,
                "aiGenerated": job.metadata.ai_generated,
            },
        )
        if job.type == JobType.SINGLE:
            await self.queue_job(job.id)
        return job

    async def create_job(self, spec: JobCreate, batch_id: str | None = None) -> Job:
        """
        Create a job; single jobs are queued straight away.

        Raises:
            ValidationError: If name or URL is missing or the URL is malformed
        """
        return await self._persist_new(self._build_job(spec, batch_id))

    async def create_job_with_ai(self, spec: JobCreate, batch_id: str | None = None) -> Job:
        """
        Create a job carrying a fingerprint profile and, when ``use_ai`` is
        set, a generated interaction scenario.
        """
        job = self._build_job(spec, batch_id)
        profile = self.fingerprints.generate(spec.fingerprint_region)

        browser = job.config.browser
        browser.viewport = profile.viewport
        browser.user_agent = profile.user_agent
        browser.fingerprint = profile

        automation = job.config.automation
        automation.use_ai = spec.use_ai
        automation.fingerprint_script = fingerprint_script(profile)
        job.metadata.ai_generated = spec.use_ai

        if spec.use_ai:
            page_type = determine_page_type(job.url)
            context = PageContext(url=job.url, page_type=page_type)
            scenario = await self.scenarios.generate(context, spec.intent)
            automation.page_type = page_type
            automation.scenario = scenario
            job.add_log(
                LogLevel.INFO,
                f"Scenario generated: {len(scenario.steps)} steps, "
                f"{scenario.total_duration_ms}ms duration, complexity {scenario.complexity}/10",
                {"provider": scenario.provider},
            )

        return await self._persist_new(job)

    async def create_from_spec(self, spec: JobCreate, batch_id: str | None = None) -> Job:
        """Plain creation, or fingerprint/scenario-enhanced when the request asks for it."""
        if spec.use_ai or spec.fingerprint_region:
            return await self.create_job_with_ai(spec, batch_id)
        return await self.create_job(spec, batch_id)

    async def create_batch(self, spec: BatchJobSpec) -> BatchResult:
        """Expand a batch; per-item failures are reported, not raised."""
        return await self.batches.expand(spec)

    # Queueing and assignment

    async def _queue_locked(self, job: Job, events: Events, delay_ms: int = 0) -> None:
        job.mark_queued()
        await self.queue.enqueue(job.id, job.priority, delay_ms)
        job.add_log(LogLevel.INFO, "Job queued for execution", {"delayMs": delay_ms})
        events.append((JOB_QUEUED, {"jobId": job.id, "priority": job.priority}))

    async def queue_job(self, job_id: str, delay_ms: int = 0) -> Job:
        """pending -> queued."""
        events: Events = []
        async with self.store.lock_for(job_id):
            job = self.store.require(job_id)
            await self._queue_locked(job, events, delay_ms)
            await self.store.update(job)
        logger.info("Job queued", job_id=job_id, priority=job.priority, delay_ms=delay_ms)
        await self._publish(events)
        return job

    async def next_job_for_worker(self, worker_id: str) -> Job | None:
        """
        Hand a worker its next job.

        Jobs already assigned to the worker by the scheduling loop are
        delivered first. Otherwise the best due queued job within the
        worker's priority range is assigned to it, pinned, with no fallback
        to other workers.

        Raises:
            UnknownWorkerError: If the worker is not registered
        """
        await self.registry.touch(worker_id)
        worker = self.registry.require(worker_id)

        for job in list(self.store.with_status(JobStatus.RUNNING)):
            info = job.worker_info
            if job.assigned_worker == worker_id and info and info.delivered_at is None:
                delivered = await self._deliver(job.id, worker_id)
                if delivered is not None:
                    return delivered

        for job_id in await self.queue.due():
            if not worker.has_capacity:
                break
            job = self.store.get(job_id)
            if job is None or job.status != JobStatus.QUEUED:
                continue
            if not worker.configuration.priority_filter.accepts(job.priority):
                continue
            if await self.scheduler.assign(job, worker_id) is None:
                if not self.registry.is_eligible(worker, job.priority):
                    break
                continue
            return await self._deliver(job_id, worker_id)

        return None

    async def _deliver(self, job_id: str, worker_id: str) -> Job | None:
        async with self.store.lock_for(job_id):
            job = self.store.get(job_id)
            if job is None or job.status != JobStatus.RUNNING or job.assigned_worker != worker_id:
                return None
            if job.worker_info:
                job.worker_info.delivered_at = utc_now()
            await self._allocate_proxy_locked(job, worker_id)
            await self.store.update(job)
        logger.info("Job delivered to worker", job_id=job_id, worker_id=worker_id)
        return job

    async def _allocate_proxy_locked(self, job: Job, worker_id: str) -> None:
        worker = self.registry.get(worker_id)
        if worker is None or not worker.configuration.proxy_settings.enabled:
            return
        if job.config.browser.proxy is not None:
            return
        proxy = await self.proxies.allocate(worker_id, exclude_in_use_by=[worker_id])
        if proxy is None:
            job.add_log(LogLevel.WARN, "No proxy available, running without one")
            return
        job.config.browser.proxy = to_proxy_config(proxy)
        job.add_log(LogLevel.INFO, f"Proxy allocated: {proxy.host}:{proxy.port}")

    # Status changes

    async def _finish_locked(
        self,
        job: Job,
        success: bool,
        events: Events,
        results: JobResults | None = None,
        error: str | None = None,
    ) -> None:
        worker_id = job.assigned_worker
        job.mark_finished(success, results)
        if error:
            job.execution.results.errors.append(error)
        duration_ms = job.execution.duration_ms or 0

        if success:
            job.add_log(LogLevel.INFO, f"Job completed in {duration_ms}ms")
        else:
            job.add_log(LogLevel.ERROR, f"Job failed: {error or 'no error reported'}")

        if worker_id:
            await self.registry.release(worker_id, success, duration_ms)
        await self._release_proxy(job, success)

        logger.info(
            "Job finished",
            job_id=job.id,
            worker_id=worker_id,
            status=job.status.value,
            duration_ms=duration_ms,
        )
        events.append(
            (
                JOB_COMPLETED if success else JOB_FAILED,
                {"jobId": job.id, "workerId": worker_id, "durationMs": duration_ms, "error": error},
            )
        )

    async def _cancel_locked(self, job: Job, events: Events, reason: str | None = None) -> None:
        previous = job.status
        worker_id = job.assigned_worker
        job.mark_cancelled()
        job.add_log(LogLevel.INFO, f"Job cancelled: {reason or 'No reason provided'}")

        if previous == JobStatus.QUEUED:
            await self.queue.remove(job.id)
        elif previous == JobStatus.RUNNING and worker_id:
            # The slot is freed now; the worker learns of the abort on its next heartbeat
            await self.registry.release(worker_id, False, 0)
            await self.registry.queue_abort(worker_id, job.id)
            await self._release_proxy(job, False)

        logger.info("Job cancelled", job_id=job.id, previous=previous.value, reason=reason)
        events.append((JOB_CANCELLED, {"jobId": job.id, "reason": reason}))

    async def _retry_locked(self, job: Job, events: Events) -> None:
        job.reset_for_retry()
        job.add_log(LogLevel.INFO, "Job manually retried")
        if job.retries_exhausted:
            job.add_log(
                LogLevel.WARN,
                f"Retry beyond max_retries ({job.config.retry.max_retries})",
            )
        await self._queue_locked(job, events, retry_backoff_ms(job))

    async def _release_proxy(self, job: Job, success: bool) -> None:
        proxy = job.config.browser.proxy
        if proxy is not None and proxy.proxy_id:
            await self.proxies.release(proxy.proxy_id, success)

    async def update_job(
        self,
        job_id: str,
        update: JobUpdate,
        token: str | None = None,
    ) -> Job:
        """
        Apply a partial update.

        A changed ``status`` goes through the state machine with its side
        effects; reporting the current status again is a no-op. When a
        bearer ``token`` is given it must belong to the assigned worker.

        Raises:
            NotFoundError: If the job does not exist
            AuthenticationError: If the token does not match the assigned worker
            InvalidTransitionError: If the status change is not allowed
        """
        events: Events = []
        async with self.store.lock_for(job_id):
            job = self.store.require(job_id)
            if token is not None:
                if not job.assigned_worker:
                    raise AuthenticationError("Job is not assigned to a worker")
                self.registry.authenticate(job.assigned_worker, token)

            results = update.execution.results if update.execution else None
            target = update.status
            finished = False

            if target is not None and target != job.status:
                if target in (JobStatus.COMPLETED, JobStatus.FAILED):
                    await self._finish_locked(
                        job, target == JobStatus.COMPLETED, events, results, update.error
                    )
                    results = None
                    finished = True
                elif target == JobStatus.CANCELLED:
                    await self._cancel_locked(job, events, update.error)
                elif target == JobStatus.QUEUED:
                    await self._queue_locked(job, events)
                elif target == JobStatus.PENDING:
                    await self._retry_locked(job, events)
                else:
                    if not can_transition(job.status, target):
                        raise InvalidTransitionError(job.id, job.status.value, target.value)
                    raise ValidationError("Jobs enter running only through assignment")

            if results is not None:
                job.merge_results(results)
            # A repeated failure report still carries its error
            if update.error and not finished:
                job.execution.results.errors.append(update.error)
                job.add_log(LogLevel.ERROR, update.error)

            self._apply_fields(job, update)
            if update.priority is not None and job.status == JobStatus.QUEUED:
                await self.queue.enqueue(job.id, job.priority)

            await self.store.update(job)

        events.append((JOB_UPDATED, {"jobId": job.id, "status": job.status.value}))
        await self._publish(events)
        return job

    @staticmethod
    def _apply_fields(job: Job, update: JobUpdate) -> None:
        if update.name is not None:
            job.name = update.name
        if update.description is not None:
            job.description = update.description
        if update.priority is not None:
            job.priority = clamp_priority(update.priority)
        if update.config is not None:
            job.config = update.config
        if update.schedule is not None:
            job.schedule = update.schedule
        if update.tags is not None:
            job.metadata.tags = update.tags

    async def complete_job(self, job_id: str, results: JobResults | None = None) -> Job:
        """running -> completed."""
        return await self.update_job(
            job_id,
            JobUpdate(status=JobStatus.COMPLETED, execution={"results": results}),
        )

    async def fail_job(
        self,
        job_id: str,
        error: str,
        results: JobResults | None = None,
    ) -> Job:
        """running -> failed, recording ``error``."""
        return await self.update_job(
            job_id,
            JobUpdate(status=JobStatus.FAILED, error=error, execution={"results": results}),
        )

    async def cancel_job(self, job_id: str, reason: str | None = None) -> bool:
        """
        Cancel a pending, queued or running job.

        Returns:
            False if the job does not exist or is already terminal
        """
        events: Events = []
        async with self.store.lock_for(job_id):
            job = self.store.get(job_id)
            if job is None or not can_transition(job.status, JobStatus.CANCELLED):
                return False
            await self._cancel_locked(job, events, reason)
            await self.store.update(job)
        await self._publish(events)
        return True

    async def retry_job(self, job_id: str) -> Job:
        """
        failed -> pending -> queued, after an exponential backoff.

        Raises:
            NotFoundError: If the job does not exist
            InvalidTransitionError: If the job has not failed
        """
        events: Events = []
        async with self.store.lock_for(job_id):
            job = self.store.require(job_id)
            await self._retry_locked(job, events)
            await self.store.update(job)
        logger.info("Job retried", job_id=job_id, attempts=job.execution.attempts)
        await self._publish(events)
        return job

    # Queries

    def get_job(self, job_id: str) -> Job:
        return self.store.require(job_id)

    def get_jobs(self, filters: JobFilters, page: int = 1, limit: int = 20) -> JobPage:
        return self.store.find(filters, page, limit)

    def stats(self) -> JobStatsSummary:
        return self.store.stats()

    # Background work

    async def activate_due_jobs(self, now: datetime | None = None) -> int:
        """Queue due scheduled/batch jobs; spawn occurrences of recurring ones."""
        now = now or utc_now()
        activated = 0
        for job in self.store.due_for_activation(now):
            schedule = job.schedule
            try:
                if schedule is not None and schedule.type == ScheduleType.RECURRING:
                    if await self._spawn_occurrence(job.id, now):
                        activated += 1
                elif await self._activate_once(job.id, now):
                    activated += 1
            except Exception as e:
                logger.error("Job activation failed", job_id=job.id, error=str(e), exc_info=True)
        return activated

    async def _activate_once(self, job_id: str, now: datetime) -> bool:
        events: Events = []
        async with self.store.lock_for(job_id):
            job = self.store.get(job_id)
            if job is None or job.status != JobStatus.PENDING:
                return False
            schedule = job.schedule
            if schedule is not None:
                if schedule.end_time and schedule.end_time < now:
                    schedule.is_active = False
                    job.add_log(LogLevel.WARN, "Schedule window closed before the job ran")
                    await self.store.update(job)
                    return False
                schedule.executions += 1
            await self._queue_locked(job, events)
            await self.store.update(job)
        await self._publish(events)
        return True

    async def _spawn_occurrence(self, parent_id: str, now: datetime) -> bool:
        async with self.store.lock_for(parent_id):
            parent = self.store.get(parent_id)
            if parent is None or parent.status != JobStatus.PENDING or parent.schedule is None:
                return False
            schedule = parent.schedule
            if not schedule.is_active:
                return False
            if schedule.end_time and now > schedule.end_time:
                schedule.is_active = False
                parent.add_log(LogLevel.INFO, "Recurring schedule ended")
                await self.store.update(parent)
                return False

            schedule.executions += 1
            child = Job(
                name=f"{parent.name} #{schedule.executions}",
                description=parent.description,
                url=parent.url,
                type=JobType.SINGLE,
                priority=parent.priority,
                config=parent.config.model_copy(deep=True),
                metadata=JobMetadata(
                    created_by=parent.metadata.created_by,
                    tags=list(parent.metadata.tags),
                    ai_generated=parent.metadata.ai_generated,
                    fingerprint_region=parent.metadata.fingerprint_region,
                    parent_id=parent.id,
                    batch_id=parent.metadata.batch_id,
                ),
            )

            upcoming = next_occurrence(schedule, now)
            exhausted = schedule.max_executions and schedule.executions >= schedule.max_executions
            ends = schedule.end_time
            if upcoming is None or exhausted or (ends and upcoming > ends):
                schedule.is_active = False
                parent.add_log(LogLevel.INFO, "Recurring schedule finished")
            else:
                schedule.start_time = upcoming
            parent.add_log(LogLevel.INFO, f"Spawned occurrence {child.id}")
            await self.store.update(parent)

        logger.info(
            "Recurring job occurrence spawned",
            job_id=parent_id,
            child_id=child.id,
            next_start=schedule.start_time if schedule.is_active else None,
        )
        await self._persist_new(child)
        return True

    async def sweep_timeouts(self, now: datetime | None = None) -> int:
        """Fail running jobs that outlived their worker's max job duration."""
        now = now or utc_now()
        timed_out = 0
        for job in list(self.store.with_status(JobStatus.RUNNING)):
            worker_id = job.assigned_worker
            worker = self.registry.get(worker_id) if worker_id else None
            limit = worker.configuration.max_job_duration_minutes if worker else 60
            elapsed = job.running_seconds(now)
            if elapsed is None or elapsed <= limit * 60:
                continue
            try:
                await self.fail_job(job.id, f"Job exceeded maximum duration of {limit} minutes")
            except InvalidTransitionError:
                continue
            if worker is not None:
                await self.registry.queue_abort(worker.id, job.id)
            timed_out += 1
            logger.warning("Job timed out", job_id=job.id, worker_id=worker_id, limit_minutes=limit)
        return timed_out

    async def deregister_worker(self, worker_id: str) -> None:
        """Fail the worker's running jobs, then remove it from the registry."""
        for job in list(self.store.with_status(JobStatus.RUNNING)):
            if job.assigned_worker == worker_id:
                try:
                    await self.fail_job(job.id, "Assigned worker was deregistered")
                except InvalidTransitionError:
                    continue
        await self.registry.deregister(worker_id)

    async def _publish(self, events: Events) -> None:
        for channel, message in events:
            await publish_event(self.pubsub, channel, message)

