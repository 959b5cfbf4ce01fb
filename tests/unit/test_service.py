"""Tests for job lifecycle operations."""

import gc
from datetime import timedelta

import pytest

from fleet.coordinator import Coordinator
from fleet.errors import (
    AuthenticationError,
    InvalidTransitionError,
    NotFoundError,
    UnknownWorkerError,
    ValidationError,
)
from fleet.messaging.base import JOB_CANCELLED, JOB_COMPLETED, JOB_CREATED, JOB_QUEUED
from fleet.messaging.memory import InMemoryPubSub
from fleet.models import JobCreate, JobFilters, JobResults, JobStatus, JobType, JobUpdate
from fleet.models.automation import Proxy
from fleet.models.base import utc_now
from fleet.models.job import JobSchedule, ScheduleType
from fleet.models.worker import Heartbeat, ProxySettings, WorkerConfiguration, WorkerUpdate
from tests.conftest import MakeWorker


@pytest.mark.parametrize(
    "spec,message",
    [
        (JobCreate(url="https://example.com"), "name"),
        (JobCreate(name="  ", url="https://example.com"), "name"),
        (JobCreate(name="Test"), "URL"),
        (JobCreate(name="Test", url="not a url"), "Invalid URL"),
    ],
)
async def test_create_validation(coordinator: Coordinator, spec: JobCreate, message: str) -> None:
    with pytest.raises(ValidationError, match=message):
        await coordinator.jobs.create_job(spec)
    assert coordinator.store.count == 0


async def test_single_job_is_queued_on_creation(
    coordinator: Coordinator, pubsub: InMemoryPubSub
) -> None:
    job = await coordinator.jobs.create_job(JobCreate(name="Test", url="https://example.com"))

    assert job.status == JobStatus.QUEUED
    assert job.priority == 5
    assert await coordinator.queue.due() == [job.id]
    assert pubsub.messages(JOB_CREATED)[0]["jobId"] == job.id
    assert pubsub.messages(JOB_QUEUED)[0]["jobId"] == job.id


async def test_scheduled_job_waits(coordinator: Coordinator) -> None:
    job = await coordinator.jobs.create_job(
        JobCreate(
            name="Later",
            url="https://example.com",
            type=JobType.SCHEDULED,
            schedule=JobSchedule(start_time=utc_now() + timedelta(hours=1)),
        )
    )

    assert job.status == JobStatus.PENDING
    assert await coordinator.jobs.activate_due_jobs() == 0

    assert await coordinator.jobs.activate_due_jobs(utc_now() + timedelta(hours=2)) == 1
    assert coordinator.jobs.get_job(job.id).status == JobStatus.QUEUED
    assert coordinator.jobs.get_job(job.id).schedule.executions == 1


async def test_expired_once_schedule_is_deactivated(coordinator: Coordinator) -> None:
    now = utc_now()
    job = await coordinator.jobs.create_job(
        JobCreate(
            name="Missed",
            url="https://example.com",
            type=JobType.SCHEDULED,
            schedule=JobSchedule(
                start_time=now - timedelta(hours=2), end_time=now - timedelta(hours=1)
            ),
        )
    )

    assert await coordinator.jobs.activate_due_jobs(now) == 0

    stored = coordinator.jobs.get_job(job.id)
    assert stored.status == JobStatus.PENDING
    assert stored.schedule.is_active is False


async def test_recurring_schedule_spawns_occurrences(coordinator: Coordinator) -> None:
    now = utc_now()
    parent = await coordinator.jobs.create_job(
        JobCreate(
            name="Poll",
            url="https://example.com",
            type=JobType.SCHEDULED,
            schedule=JobSchedule(
                type=ScheduleType.RECURRING,
                start_time=now,
                interval_minutes=10,
                max_executions=2,
            ),
        )
    )

    assert await coordinator.jobs.activate_due_jobs(now) == 1
    assert await coordinator.jobs.activate_due_jobs(now) == 0
    assert await coordinator.jobs.activate_due_jobs(now + timedelta(minutes=10)) == 1
    assert await coordinator.jobs.activate_due_jobs(now + timedelta(minutes=60)) == 0

    stored = coordinator.jobs.get_job(parent.id)
    assert stored.status == JobStatus.PENDING
    assert stored.schedule.executions == 2
    assert stored.schedule.is_active is False

    children = [
        job for job in coordinator.store.get_all() if job.metadata.parent_id == parent.id
    ]
    assert [child.name for child in children] == ["Poll #1", "Poll #2"]
    assert all(child.status == JobStatus.QUEUED for child in children)


async def test_end_to_end_pull_and_complete(
    coordinator: Coordinator, make_worker: MakeWorker, pubsub: InMemoryPubSub
) -> None:
    job = await coordinator.jobs.create_job(JobCreate(name="Test", url="https://example.com"))
    worker = await make_worker(capacity=1)

    pulled = await coordinator.jobs.next_job_for_worker(worker.id)

    assert pulled.id == job.id
    assert pulled.status == JobStatus.RUNNING
    assert pulled.worker_info.delivered_at is not None
    assert worker.resources.current_jobs == 1
    assert await coordinator.jobs.next_job_for_worker(worker.id) is None

    done = await coordinator.jobs.complete_job(job.id, JobResults(logs=["ok"]))

    assert done.status == JobStatus.COMPLETED
    assert done.execution.results.logs == ["ok"]
    assert worker.resources.current_jobs == 0
    assert worker.resources.total_jobs_processed == 1
    assert worker.resources.success_rate == pytest.approx(1.0)
    assert pubsub.messages(JOB_COMPLETED)[0]["workerId"] == worker.id


async def test_job_locks_do_not_accumulate(
    coordinator: Coordinator, make_worker: MakeWorker
) -> None:
    store = coordinator.store
    lock = store.lock_for("job-a")
    async with lock:
        assert store.lock_for("job-a") is lock
    del lock

    worker = await make_worker(capacity=3)
    for _ in range(3):
        job = await coordinator.jobs.create_job(JobCreate(name="Test", url="https://example.com"))
        await coordinator.jobs.next_job_for_worker(worker.id)
        await coordinator.jobs.complete_job(job.id)
    gc.collect()

    assert len(store._job_locks) == 0


async def test_pull_delivers_loop_assignment_first(
    coordinator: Coordinator, make_worker: MakeWorker
) -> None:
    worker = await make_worker(capacity=2)
    first = await coordinator.jobs.create_job(JobCreate(name="a", url="https://a.com"))
    await coordinator.jobs.scheduler.assign_pending()
    second = await coordinator.jobs.create_job(JobCreate(name="b", url="https://b.com"))

    assert (await coordinator.jobs.next_job_for_worker(worker.id)).id == first.id
    assert (await coordinator.jobs.next_job_for_worker(worker.id)).id == second.id
    assert worker.resources.current_jobs == 2


async def test_pull_respects_priority_filter(
    coordinator: Coordinator, make_worker: MakeWorker
) -> None:
    worker = await make_worker(priority_min=7, priority_max=10)
    await coordinator.jobs.create_job(JobCreate(name="low", url="https://a.com", priority=3))

    assert await coordinator.jobs.next_job_for_worker(worker.id) is None


async def test_pull_from_unknown_worker(coordinator: Coordinator) -> None:
    with pytest.raises(UnknownWorkerError):
        await coordinator.jobs.next_job_for_worker("wk-ghost")


async def test_failure_records_error(coordinator: Coordinator, make_worker: MakeWorker) -> None:
    job = await coordinator.jobs.create_job(JobCreate(name="Test", url="https://example.com"))
    worker = await make_worker()
    await coordinator.jobs.next_job_for_worker(worker.id)

    failed = await coordinator.jobs.fail_job(job.id, "page unreachable")

    assert failed.status == JobStatus.FAILED
    assert failed.execution.results.errors == ["page unreachable"]
    assert any("page unreachable" in entry.message for entry in failed.execution.logs)
    assert worker.resources.current_jobs == 0
    assert worker.resources.success_rate == 0


async def test_cancel_running_frees_slot_and_queues_abort(
    coordinator: Coordinator, make_worker: MakeWorker, pubsub: InMemoryPubSub
) -> None:
    job = await coordinator.jobs.create_job(JobCreate(name="Test", url="https://example.com"))
    worker = await make_worker()
    await coordinator.jobs.next_job_for_worker(worker.id)

    assert await coordinator.jobs.cancel_job(job.id, "operator request")

    assert coordinator.jobs.get_job(job.id).status == JobStatus.CANCELLED
    assert worker.resources.current_jobs == 0
    assert pubsub.messages(JOB_CANCELLED)[0]["reason"] == "operator request"
    beat = await coordinator.registry.ingest_heartbeat(worker.id, Heartbeat())
    assert beat.instructions.abort_jobs == [job.id]


async def test_cancel_queued_removes_from_queue(coordinator: Coordinator) -> None:
    job = await coordinator.jobs.create_job(JobCreate(name="Test", url="https://example.com"))

    assert await coordinator.jobs.cancel_job(job.id)

    assert await coordinator.queue.size() == 0


async def test_cancel_missing_or_terminal(coordinator: Coordinator) -> None:
    job = await coordinator.jobs.create_job(JobCreate(name="Test", url="https://example.com"))
    await coordinator.jobs.cancel_job(job.id)

    assert not await coordinator.jobs.cancel_job(job.id)
    assert not await coordinator.jobs.cancel_job("missing")


async def test_retry_failed_job(coordinator: Coordinator, make_worker: MakeWorker) -> None:
    job = await coordinator.jobs.create_job(JobCreate(name="Test", url="https://example.com"))
    worker = await make_worker()
    await coordinator.jobs.next_job_for_worker(worker.id)
    await coordinator.jobs.fail_job(job.id, "boom")

    retried = await coordinator.jobs.retry_job(job.id)

    assert retried.status == JobStatus.QUEUED
    assert retried.assigned_worker is None
    assert retried.execution.attempts == 1
    # First retry waits retry_delay_ms before becoming due
    assert await coordinator.queue.size() == 1
    assert await coordinator.queue.due() == []


async def test_retry_requires_failed(coordinator: Coordinator) -> None:
    job = await coordinator.jobs.create_job(JobCreate(name="Test", url="https://example.com"))

    with pytest.raises(InvalidTransitionError):
        await coordinator.jobs.retry_job(job.id)
    with pytest.raises(NotFoundError):
        await coordinator.jobs.retry_job("missing")


async def test_update_repeating_current_status_is_a_noop(
    coordinator: Coordinator, make_worker: MakeWorker
) -> None:
    job = await coordinator.jobs.create_job(JobCreate(name="Test", url="https://example.com"))
    worker = await make_worker()
    await coordinator.jobs.next_job_for_worker(worker.id)

    updated = await coordinator.jobs.update_job(
        job.id, JobUpdate(status=JobStatus.RUNNING), token=worker.security.api_key
    )

    assert updated.status == JobStatus.RUNNING
    assert worker.resources.current_jobs == 1


async def test_repeated_failure_report_keeps_its_error(
    coordinator: Coordinator, make_worker: MakeWorker
) -> None:
    job = await coordinator.jobs.create_job(JobCreate(name="Test", url="https://example.com"))
    worker = await make_worker()
    await coordinator.jobs.next_job_for_worker(worker.id)
    token = worker.security.api_key

    await coordinator.jobs.update_job(
        job.id, JobUpdate(status=JobStatus.FAILED, error="timeout"), token=token
    )
    again = await coordinator.jobs.update_job(
        job.id, JobUpdate(status=JobStatus.FAILED, error="browser crashed"), token=token
    )

    assert again.status == JobStatus.FAILED
    assert again.execution.results.errors == ["timeout", "browser crashed"]
    assert any(entry.message == "browser crashed" for entry in again.execution.logs)
    assert worker.resources.total_jobs_processed == 1


async def test_update_cannot_skip_to_running(coordinator: Coordinator) -> None:
    job = await coordinator.jobs.create_job(JobCreate(name="Test", url="https://example.com"))

    with pytest.raises(ValidationError):
        await coordinator.jobs.update_job(job.id, JobUpdate(status=JobStatus.RUNNING))
    with pytest.raises(InvalidTransitionError):
        await coordinator.jobs.update_job(job.id, JobUpdate(status=JobStatus.COMPLETED))


async def test_update_with_foreign_token(coordinator: Coordinator, make_worker: MakeWorker) -> None:
    job = await coordinator.jobs.create_job(JobCreate(name="Test", url="https://example.com"))
    owner = await make_worker()
    other = await make_worker()
    await coordinator.jobs.next_job_for_worker(owner.id)

    with pytest.raises(AuthenticationError):
        await coordinator.jobs.update_job(
            job.id, JobUpdate(status=JobStatus.COMPLETED), token=other.security.api_key
        )
    assert coordinator.jobs.get_job(job.id).status == JobStatus.RUNNING


async def test_update_priority_requeues(coordinator: Coordinator) -> None:
    low = await coordinator.jobs.create_job(JobCreate(name="a", url="https://a.com", priority=2))
    high = await coordinator.jobs.create_job(JobCreate(name="b", url="https://b.com", priority=6))

    await coordinator.jobs.update_job(low.id, JobUpdate(priority=15, tags=["urgent"]))

    assert await coordinator.queue.due() == [low.id, high.id]
    assert coordinator.jobs.get_job(low.id).priority == 10
    assert coordinator.jobs.get_job(low.id).metadata.tags == ["urgent"]


async def test_timeout_sweep(coordinator: Coordinator, make_worker: MakeWorker) -> None:
    job = await coordinator.jobs.create_job(JobCreate(name="Test", url="https://example.com"))
    worker = await make_worker()
    await coordinator.registry.update(
        worker.id, WorkerUpdate(configuration=WorkerConfiguration(max_job_duration_minutes=5))
    )
    await coordinator.jobs.next_job_for_worker(worker.id)

    assert await coordinator.jobs.sweep_timeouts(utc_now() + timedelta(minutes=4)) == 0
    assert await coordinator.jobs.sweep_timeouts(utc_now() + timedelta(minutes=6)) == 1

    stored = coordinator.jobs.get_job(job.id)
    assert stored.status == JobStatus.FAILED
    assert "maximum duration" in stored.execution.results.errors[0]
    assert worker.resources.current_jobs == 0
    beat = await coordinator.registry.ingest_heartbeat(worker.id, Heartbeat())
    assert beat.instructions.abort_jobs == [job.id]


async def test_proxy_allocated_for_proxy_enabled_worker(
    coordinator: Coordinator, make_worker: MakeWorker
) -> None:
    proxy = coordinator.jobs.proxies.add(Proxy(host="10.1.1.1", port=3128, reliability=90))
    worker = await make_worker()
    await coordinator.registry.update(
        worker.id,
        WorkerUpdate(configuration=WorkerConfiguration(proxy_settings=ProxySettings(enabled=True))),
    )
    job = await coordinator.jobs.create_job(JobCreate(name="Test", url="https://example.com"))

    pulled = await coordinator.jobs.next_job_for_worker(worker.id)

    assert pulled.config.browser.proxy.proxy_id == proxy.id
    assert proxy.currently_used_by == worker.id

    await coordinator.jobs.complete_job(job.id)

    assert proxy.currently_used_by is None
    assert proxy.successful_requests == 1


async def test_deregister_fails_running_jobs(
    coordinator: Coordinator, make_worker: MakeWorker
) -> None:
    job = await coordinator.jobs.create_job(JobCreate(name="Test", url="https://example.com"))
    worker = await make_worker()
    await coordinator.jobs.next_job_for_worker(worker.id)

    await coordinator.jobs.deregister_worker(worker.id)

    assert coordinator.jobs.get_job(job.id).status == JobStatus.FAILED
    assert coordinator.registry.get(worker.id) is None


async def test_ai_job_gets_fingerprint_and_scenario(coordinator: Coordinator) -> None:
    job = await coordinator.jobs.create_job_with_ai(
        JobCreate(
            name="Read",
            url="https://example.com/blog/post-1",
            use_ai=True,
            fingerprint_region="eu",
            intent="read the article",
        )
    )

    assert job.status == JobStatus.QUEUED
    assert job.metadata.ai_generated is True
    assert job.config.browser.fingerprint.region == "eu"
    assert job.config.browser.user_agent == job.config.browser.fingerprint.user_agent
    assert "__PROFILE__" not in job.config.automation.fingerprint_script
    assert job.config.automation.scenario.provider == "rule-based"
    assert job.config.automation.page_type.value == "article"
    assert job.config.automation.intent == "read the article"


async def test_find_and_stats(coordinator: Coordinator) -> None:
    first = await coordinator.jobs.create_job(
        JobCreate(name="a", url="https://a.com", tags=["x"], created_by="ops")
    )
    await coordinator.jobs.create_job(JobCreate(name="b", url="https://b.com", tags=["y"]))
    await coordinator.jobs.cancel_job(first.id)

    page = coordinator.jobs.get_jobs(JobFilters(tags=["x", "z"]))
    assert [job.id for job in page.jobs] == [first.id]

    page = coordinator.jobs.get_jobs(JobFilters(status=[JobStatus.QUEUED]))
    assert page.total == 1

    stats = coordinator.jobs.stats()
    assert stats.total == 2
    assert stats.status_stats["cancelled"] == 1
    assert stats.status_stats["queued"] == 1
    assert stats.daily_stats[-1].count == 2
