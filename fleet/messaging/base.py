"""Queue and pub/sub contracts.

The coordinator only talks to these interfaces; whether jobs wait in process
memory or in Redis is a deployment choice.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from fleet.utils.logging import get_logger

logger = get_logger(__name__)

Message = dict[str, Any]
Handler = Callable[[Message], Awaitable[None]]

# Event channels published by the coordinator
JOB_CREATED = "job:created"
JOB_QUEUED = "job:queued"
JOB_ASSIGNED = "job:assigned"
JOB_UPDATED = "job:updated"
JOB_COMPLETED = "job:completed"
JOB_FAILED = "job:failed"
JOB_CANCELLED = "job:cancelled"
WORKER_REGISTERED = "worker:registered"
WORKER_OFFLINE = "worker:offline"


class JobQueue(ABC):
    """Queue of job ids awaiting assignment.

    Entries are ordered by priority (highest first) then by enqueue order,
    and become visible once their delay has elapsed. ``due`` does not pop:
    an entry stays until ``remove`` is called, so a job that finds no worker
    is simply seen again on the next pass.
    """

    @abstractmethod
    async def enqueue(self, job_id: str, priority: int, delay_ms: int = 0) -> None: ...

    @abstractmethod
    async def remove(self, job_id: str) -> bool: ...

    @abstractmethod
    async def due(self, limit: int | None = None) -> list[str]: ...

    @abstractmethod
    async def size(self) -> int: ...

    async def close(self) -> None:
        """Release backend resources."""


class PubSub(ABC):
    """Fire-and-forget event fan-out."""

    @abstractmethod
    async def publish(self, channel: str, message: Message) -> int: ...

    @abstractmethod
    async def subscribe(self, channel: str, handler: Handler) -> None: ...

    @abstractmethod
    async def unsubscribe(self, channel: str, handler: Handler | None = None) -> None: ...

    async def close(self) -> None:
        """Release backend resources."""


async def publish_event(pubsub: PubSub | None, channel: str, message: Message) -> None:
    """Publish without letting a broker failure break the caller's operation."""
    if pubsub is None:
        return
    try:
        await pubsub.publish(channel, message)
    except Exception as e:
        logger.error("Event publish failed", channel=channel, error=str(e))
