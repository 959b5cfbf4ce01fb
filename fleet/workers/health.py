"""Derived worker state: staleness, effective status and scores.

Nothing here mutates a worker. Every value is recomputed from the durable
definition and the latest liveness row at read time.
"""

from datetime import datetime, timedelta

from fleet.models.base import utc_now
from fleet.models.worker import (
    HOLD_STATUSES,
    JobStats,
    ResourceUtilization,
    Worker,
    WorkerLiveness,
    WorkerScores,
    WorkerStatus,
)

CPU_THRESHOLD = 80
SUCCESS_THRESHOLD = 95
ONLINE_BONUS = 10


def is_stale(
    liveness: WorkerLiveness | None,
    stale_after_seconds: float,
    now: datetime | None = None,
) -> bool:
    """A worker with no heartbeat, or one older than the threshold, is stale."""
    if liveness is None:
        return True
    now = now or utc_now()
    return now - liveness.last_seen > timedelta(seconds=stale_after_seconds)


def effective_status(
    worker: Worker,
    liveness: WorkerLiveness | None,
    stale_after_seconds: float,
    now: datetime | None = None,
) -> WorkerStatus:
    """
    Resolve the status callers see.

    Precedence: stale -> offline; operator hold; self-reported
    maintenance/error/offline; busy when the master counter is at capacity;
    otherwise online. A self-reported "busy" is ignored in favour of the
    counter.
    """
    if liveness is None or is_stale(liveness, stale_after_seconds, now):
        return WorkerStatus.OFFLINE
    if worker.status in HOLD_STATUSES:
        return worker.status
    reported = liveness.reported_status
    if reported in HOLD_STATUSES or reported == WorkerStatus.OFFLINE:
        return reported
    if not worker.has_capacity:
        return WorkerStatus.BUSY
    return WorkerStatus.ONLINE


def success_percent(worker: Worker, liveness: WorkerLiveness | None) -> float:
    """Success rate as a percentage.

    Prefers the worker's self-reported figure, then the master-side rate
    once jobs have been processed, and assumes 100 for a fresh worker.
    """
    if liveness is not None and liveness.performance.success_rate is not None:
        return liveness.performance.success_rate
    if worker.resources.total_jobs_processed > 0:
        return worker.resources.success_rate * 100
    return 100.0


def health_score(
    status: WorkerStatus,
    cpu_usage: float,
    memory_usage_mb: float,
    success_pct: float,
    memory_baseline_mb: float = 3000,
) -> int:
    """
    Score a worker's health in [0, 100].

    Args:
        status: Effective status
        cpu_usage: CPU usage percentage
        memory_usage_mb: Memory in use, in MB
        success_pct: Success rate percentage
        memory_baseline_mb: Memory usage above which the score degrades

    Returns:
        Rounded, clamped score
    """
    score = 100.0
    score -= max(0.0, cpu_usage - CPU_THRESHOLD) * 2
    score -= max(0.0, memory_usage_mb - memory_baseline_mb) / 100
    if success_pct < SUCCESS_THRESHOLD:
        score -= (SUCCESS_THRESHOLD - success_pct) * 2

    if status == WorkerStatus.OFFLINE:
        score = 0
    elif status == WorkerStatus.ONLINE:
        score += ONLINE_BONUS

    return max(0, min(100, round(score)))


def efficiency(current_jobs: int, max_jobs: int, success_pct: float) -> int:
    """Mean of slot utilization and success rate, both as percentages."""
    utilization = current_jobs / max_jobs * 100 if max_jobs > 0 else 0.0
    return round((utilization + success_pct) / 2)


def calculate_worker_scores(
    worker: Worker,
    liveness: WorkerLiveness | None,
    status: WorkerStatus,
    memory_baseline_mb: float = 3000,
) -> WorkerScores:
    """Bundle health, efficiency, utilization and job stats for one worker."""
    metrics = liveness.metrics if liveness else None
    success_pct = success_percent(worker, liveness)
    resources = worker.resources

    completed = round(resources.total_jobs_processed * resources.success_rate)
    return WorkerScores(
        health_score=health_score(
            status,
            metrics.cpu_usage if metrics else 0,
            metrics.memory_usage if metrics else 0,
            success_pct,
            memory_baseline_mb,
        ),
        efficiency=efficiency(
            resources.current_jobs,
            worker.capabilities.max_concurrent_jobs,
            success_pct,
        ),
        resource_utilization=ResourceUtilization(
            cpu=metrics.cpu_usage,
            memory=metrics.memory_usage,
            disk=metrics.disk_usage,
            network=metrics.network_usage,
        )
        if metrics
        else ResourceUtilization(),
        job_stats=JobStats(
            total=resources.total_jobs_processed,
            completed=completed,
            failed=resources.total_jobs_processed - completed,
            success_rate=success_pct,
            average_duration=resources.average_job_duration_ms,
        ),
    )


def format_uptime(since: datetime, now: datetime | None = None) -> str:
    """Human readable duration such as ``2d 3h 5m``."""
    now = now or utc_now()
    minutes = max(0, int((now - since).total_seconds() // 60))
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)

    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
