"""In-memory job storage."""

import asyncio
import weakref
from collections import Counter
from collections.abc import Iterator
from datetime import datetime, timedelta

from fleet.errors import NotFoundError
from fleet.models.base import as_utc, utc_now
from fleet.models.job import (
    DailyJobStats,
    Job,
    JobFilters,
    JobPage,
    JobStatsSummary,
    JobStatus,
    JobType,
)
from fleet.utils.logging import get_logger

logger = get_logger(__name__)

STATS_WINDOW_DAYS = 30


class JobStore:
    """
    Async-safe in-memory store for jobs.

    The store lock only guards the table itself. Anything that reads a job,
    changes its status and writes it back holds that job's own lock from
    ``lock_for`` for the whole sequence.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._job_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._lock = asyncio.Lock()

    def lock_for(self, job_id: str) -> asyncio.Lock:
        """
        Per-job lock serializing status changes of one job.

        Locks are held weakly: once no coroutine holds or waits on a job's
        lock it is dropped, and the next caller gets a fresh one.
        """
        lock = self._job_locks.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._job_locks[job_id] = lock
        return lock

    async def add(self, job: Job) -> None:
        """Add a job to the store."""
        async with self._lock:
            self._jobs[job.id] = job
            logger.debug("Job added to store", job_id=job.id)

    def get(self, job_id: str) -> Job | None:
        """Get a job by ID (no lock needed for read)."""
        return self._jobs.get(job_id)

    def require(self, job_id: str) -> Job:
        """Get a job or raise ``NotFoundError``."""
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError("job", job_id)
        return job

    async def update(self, job: Job) -> None:
        """Update an existing job."""
        async with self._lock:
            if job.id in self._jobs:
                job.touch()
                self._jobs[job.id] = job
                logger.debug("Job updated", job_id=job.id, status=job.status.value)

    async def remove(self, job_id: str) -> Job | None:
        """Remove a job from the store."""
        async with self._lock:
            return self._jobs.pop(job_id, None)

    def get_all(self) -> list[Job]:
        """Get all jobs."""
        return list(self._jobs.values())

    def with_status(self, *statuses: JobStatus) -> Iterator[Job]:
        """Jobs currently in any of ``statuses``."""
        for job in self._jobs.values():
            if job.status in statuses:
                yield job

    def due_for_activation(self, now: datetime) -> list[Job]:
        """Pending scheduled or batch jobs whose start time has come."""
        due = []
        for job in self.with_status(JobStatus.PENDING):
            if job.type not in (JobType.SCHEDULED, JobType.BATCH):
                continue
            schedule = job.schedule
            if schedule is None:
                due.append(job)
            elif schedule.is_active and (
                schedule.start_time is None or as_utc(schedule.start_time) <= now
            ):
                due.append(job)
        return due

    def find(self, filters: JobFilters, page: int = 1, limit: int = 20) -> JobPage:
        """
        Filter and paginate jobs, newest first.

        Args:
            filters: Criteria; empty lists mean "any"
            page: 1-based page number
            limit: Page size

        Returns:
            JobPage with the slice and totals
        """
        matches = [job for job in self._jobs.values() if _matches(job, filters)]
        matches.sort(key=lambda job: job.metadata.created_at, reverse=True)

        total = len(matches)
        start = (page - 1) * limit
        return JobPage(
            jobs=matches[start : start + limit],
            total=total,
            page=page,
            pages=(total + limit - 1) // limit,
        )

    def stats(self, now: datetime | None = None) -> JobStatsSummary:
        """Counts per status plus per-day totals over the last 30 days."""
        now = now or utc_now()
        status_counts = Counter(job.status.value for job in self._jobs.values())

        since = now - timedelta(days=STATS_WINDOW_DAYS)
        daily: dict[str, DailyJobStats] = {}
        for job in self._jobs.values():
            created = job.metadata.created_at
            if created < since:
                continue
            day = created.strftime("%Y-%m-%d")
            entry = daily.setdefault(day, DailyJobStats(date=day))
            entry.count += 1
            if job.status == JobStatus.COMPLETED:
                entry.completed += 1
            elif job.status == JobStatus.FAILED:
                entry.failed += 1

        return JobStatsSummary(
            status_stats={status.value: status_counts.get(status.value, 0) for status in JobStatus},
            total=len(self._jobs),
            daily_stats=[daily[day] for day in sorted(daily)],
        )

    @property
    def count(self) -> int:
        """Total number of jobs."""
        return len(self._jobs)


def _matches(job: Job, filters: JobFilters) -> bool:
    if filters.status and job.status not in filters.status:
        return False
    if filters.type and job.type != filters.type:
        return False
    if filters.priority and job.priority not in filters.priority:
        return False
    if filters.assigned_worker and job.assigned_worker != filters.assigned_worker:
        return False
    if filters.created_by and job.metadata.created_by != filters.created_by:
        return False
    if filters.tags and not set(filters.tags) & set(job.metadata.tags):
        return False
    if filters.created_after and job.metadata.created_at < filters.created_after:
        return False
    if filters.created_before and job.metadata.created_at > filters.created_before:
        return False
    return True
