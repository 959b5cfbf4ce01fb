"""Queue and pub/sub backends."""

from fleet.config import Settings
from fleet.messaging.base import JobQueue, PubSub
from fleet.messaging.memory import InMemoryJobQueue, InMemoryPubSub


def create_backends(settings: Settings) -> tuple[JobQueue, PubSub]:
    """Build the queue and pub/sub pair selected by ``messaging_backend``."""
    if settings.messaging_backend == "redis":
        from fleet.messaging.redis import RedisJobQueue, RedisPubSub

        return (
            RedisJobQueue(settings.redis_url, settings.queue_name),
            RedisPubSub(settings.redis_url),
        )
    if settings.messaging_backend != "memory":
        raise ValueError(f"Unknown messaging backend: {settings.messaging_backend}")
    return InMemoryJobQueue(), InMemoryPubSub()


__all__ = [
    "InMemoryJobQueue",
    "InMemoryPubSub",
    "JobQueue",
    "PubSub",
    "create_backends",
]
