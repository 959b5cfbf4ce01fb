"""Wiring of the coordinator's components."""

from fleet.config import Settings, settings
from fleet.generation import FingerprintGenerator, ProxyAllocator, ScenarioGenerator
from fleet.jobs.scheduler import SchedulingLoop
from fleet.jobs.service import JobService
from fleet.jobs.store import JobStore
from fleet.messaging import create_backends
from fleet.messaging.base import JobQueue, PubSub
from fleet.utils.logging import get_logger
from fleet.workers.registry import WorkerRegistry

logger = get_logger(__name__)


class Coordinator:
    """
    Owns one instance of every coordinator component.

    Queue and pub/sub default to the backend named in settings; tests pass
    their own in-memory instances.
    """

    def __init__(
        self,
        config: Settings | None = None,
        queue: JobQueue | None = None,
        pubsub: PubSub | None = None,
        scenarios: ScenarioGenerator | None = None,
        proxies: ProxyAllocator | None = None,
    ) -> None:
        self.settings = config or settings
        if queue is None or pubsub is None:
            default_queue, default_pubsub = create_backends(self.settings)
            queue = queue or default_queue
            pubsub = pubsub or default_pubsub
        self.queue = queue
        self.pubsub = pubsub

        self.store = JobStore()
        self.registry = WorkerRegistry(self.settings, pubsub)
        self.jobs = JobService(
            self.settings,
            self.store,
            self.registry,
            queue,
            pubsub,
            scenarios=scenarios or ScenarioGenerator(self.settings),
            fingerprints=FingerprintGenerator(),
            proxies=proxies or ProxyAllocator(),
        )
        self.loop = SchedulingLoop(
            self.jobs,
            interval_seconds=self.settings.scheduler_interval_seconds,
            timeout_sweep=self.settings.timeout_sweep_enabled,
        )

    async def start(self, run_loop: bool = True) -> None:
        if run_loop:
            await self.loop.start()
        logger.info(
            "Coordinator started",
            backend=self.settings.messaging_backend,
            scheduling_loop=run_loop,
        )

    async def stop(self) -> None:
        await self.loop.stop()
        await self.queue.close()
        await self.pubsub.close()
        logger.info("Coordinator stopped")
