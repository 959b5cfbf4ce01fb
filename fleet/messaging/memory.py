"""In-process queue and pub/sub for tests and single-node deployments."""

import asyncio
import itertools
import time
from collections import defaultdict, deque
from dataclasses import dataclass

from fleet.messaging.base import Handler, JobQueue, Message, PubSub
from fleet.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class _Entry:
    job_id: str
    priority: int
    available_at: float
    seq: int


class InMemoryJobQueue(JobQueue):
    """Priority queue held in a dict, guarded by an asyncio lock."""

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}
        self._seq = itertools.count()
        self._lock = asyncio.Lock()

    async def enqueue(self, job_id: str, priority: int, delay_ms: int = 0) -> None:
        async with self._lock:
            self._entries[job_id] = _Entry(
                job_id=job_id,
                priority=priority,
                available_at=time.monotonic() + delay_ms / 1000,
                seq=next(self._seq),
            )
            logger.debug("Job enqueued", job_id=job_id, priority=priority, delay_ms=delay_ms)

    async def remove(self, job_id: str) -> bool:
        async with self._lock:
            return self._entries.pop(job_id, None) is not None

    async def due(self, limit: int | None = None) -> list[str]:
        now = time.monotonic()
        async with self._lock:
            ready = [entry for entry in self._entries.values() if entry.available_at <= now]
        ready.sort(key=lambda entry: (-entry.priority, entry.seq))
        ids = [entry.job_id for entry in ready]
        return ids[:limit] if limit is not None else ids

    async def size(self) -> int:
        return len(self._entries)


class InMemoryPubSub(PubSub):
    """Calls subscribed handlers inline; keeps a short history of messages."""

    def __init__(self, history: int = 500) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self.history: deque[tuple[str, Message]] = deque(maxlen=history)

    async def publish(self, channel: str, message: Message) -> int:
        self.history.append((channel, message))
        handlers = list(self._handlers.get(channel, ()))
        for handler in handlers:
            try:
                await handler(message)
            except Exception as e:
                logger.error("Subscriber failed", channel=channel, error=str(e))
        return len(handlers)

    async def subscribe(self, channel: str, handler: Handler) -> None:
        self._handlers[channel].append(handler)

    async def unsubscribe(self, channel: str, handler: Handler | None = None) -> None:
        if handler is None:
            self._handlers.pop(channel, None)
        elif handler in self._handlers.get(channel, []):
            self._handlers[channel].remove(handler)

    def messages(self, channel: str) -> list[Message]:
        """Messages published on ``channel`` still in the history window."""
        return [message for name, message in self.history if name == channel]
