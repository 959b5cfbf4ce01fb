"""Tests for derived worker state."""

from datetime import timedelta

from fleet.models.base import utc_now
from fleet.models.worker import (
    Worker,
    WorkerConnection,
    WorkerLiveness,
    WorkerSecurity,
    WorkerStatus,
)
from fleet.workers.health import (
    calculate_worker_scores,
    effective_status,
    efficiency,
    format_uptime,
    health_score,
    is_stale,
)


def make_worker(**kwargs: object) -> Worker:
    return Worker(
        name="w",
        connection=WorkerConnection(ip="127.0.0.1"),
        security=WorkerSecurity(api_key="key"),
        **kwargs,
    )


def test_staleness() -> None:
    now = utc_now()

    assert is_stale(None, 60, now)
    assert not is_stale(WorkerLiveness(last_seen=now - timedelta(seconds=59)), 60, now)
    assert is_stale(WorkerLiveness(last_seen=now - timedelta(seconds=61)), 60, now)


def test_effective_status_precedence() -> None:
    worker = make_worker()
    alive = WorkerLiveness()

    assert effective_status(worker, None, 60) == WorkerStatus.OFFLINE
    assert effective_status(worker, alive, 60) == WorkerStatus.ONLINE

    alive.reported_status = WorkerStatus.BUSY
    assert effective_status(worker, alive, 60) == WorkerStatus.ONLINE

    alive.reported_status = WorkerStatus.ERROR
    assert effective_status(worker, alive, 60) == WorkerStatus.ERROR

    worker.status = WorkerStatus.MAINTENANCE
    assert effective_status(worker, alive, 60) == WorkerStatus.MAINTENANCE

    stale = WorkerLiveness(last_seen=utc_now() - timedelta(minutes=5))
    assert effective_status(worker, stale, 60) == WorkerStatus.OFFLINE


def test_busy_comes_from_master_counter() -> None:
    worker = make_worker()
    worker.reserve_slot()

    assert effective_status(worker, WorkerLiveness(), 60) == WorkerStatus.BUSY


def test_health_score() -> None:
    assert health_score(WorkerStatus.ONLINE, 10, 1000, 100) == 100
    assert health_score(WorkerStatus.OFFLINE, 10, 1000, 100) == 0
    # 90% cpu: -20; 4000MB: -10; 90% success: -10
    assert health_score(WorkerStatus.BUSY, 90, 4000, 90) == 60


def test_efficiency() -> None:
    assert efficiency(1, 2, 100) == 75
    assert efficiency(0, 0, 50) == 25


def test_scores_for_fresh_worker() -> None:
    scores = calculate_worker_scores(make_worker(), None, WorkerStatus.OFFLINE)

    assert scores.health_score == 0
    assert scores.job_stats.total == 0
    assert scores.job_stats.success_rate == 100


def test_format_uptime() -> None:
    now = utc_now()

    assert format_uptime(now - timedelta(minutes=5), now) == "5m"
    assert format_uptime(now - timedelta(hours=2, minutes=3), now) == "2h 3m"
    assert format_uptime(now - timedelta(days=1, hours=4, minutes=1), now) == "1d 4h 1m"
