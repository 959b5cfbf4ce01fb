"""Shared fixtures."""

from collections.abc import Awaitable, Callable

import pytest

from fleet.config import Settings
from fleet.coordinator import Coordinator
from fleet.messaging.memory import InMemoryJobQueue, InMemoryPubSub
from fleet.models.worker import PriorityFilter, Worker, WorkerRegistration

MakeWorker = Callable[..., Awaitable[Worker]]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        openai_api_key=None,
        gemini_api_key=None,
        messaging_backend="memory",
        stale_after_seconds=60,
    )


@pytest.fixture
def pubsub() -> InMemoryPubSub:
    return InMemoryPubSub()


@pytest.fixture
def coordinator(settings: Settings, pubsub: InMemoryPubSub) -> Coordinator:
    return Coordinator(settings, queue=InMemoryJobQueue(), pubsub=pubsub)


@pytest.fixture
def make_worker(coordinator: Coordinator) -> MakeWorker:
    """Register a worker and mark it alive so it is eligible straight away."""

    async def make(
        capacity: int = 1,
        name: str | None = None,
        priority_min: int = 1,
        priority_max: int = 10,
    ) -> Worker:
        worker = await coordinator.registry.register(
            WorkerRegistration(
                name=name,
                ip="10.0.0.1",
                max_concurrent_jobs=capacity,
                priority_filter=PriorityFilter(min=priority_min, max=priority_max),
            )
        )
        await coordinator.registry.touch(worker.id)
        return worker

    return make
