"""Redis-backed queue and pub/sub."""

import asyncio
import json
import time

import redis.asyncio as aioredis

from fleet.messaging.base import Handler, JobQueue, Message, PubSub
from fleet.utils.logging import get_logger

logger = get_logger(__name__)

# Priority band width in the sorted-set score; larger than any ms timestamp
_PRIORITY_BAND = 10**13


class RedisJobQueue(JobQueue):
    """Sorted set of job ids plus a hash of availability times.

    Score = (10 - priority) * band + enqueue time in ms, so ZRANGE yields
    highest priority first and FIFO within a priority.
    """

    def __init__(self, url: str, name: str = "fleet:jobs") -> None:
        self.name = name
        self._available_key = f"{name}:available"
        self._redis = aioredis.from_url(url, decode_responses=True)

    async def enqueue(self, job_id: str, priority: int, delay_ms: int = 0) -> None:
        now_ms = int(time.time() * 1000)
        score = (10 - priority) * _PRIORITY_BAND + now_ms
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zadd(self.name, {job_id: score})
            pipe.hset(self._available_key, job_id, now_ms + delay_ms)
            await pipe.execute()
        logger.debug("Job enqueued", job_id=job_id, priority=priority, backend="redis")

    async def remove(self, job_id: str) -> bool:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self.name, job_id)
            pipe.hdel(self._available_key, job_id)
            removed, _ = await pipe.execute()
        return bool(removed)

    async def due(self, limit: int | None = None) -> list[str]:
        ids: list[str] = await self._redis.zrange(self.name, 0, -1)
        if not ids:
            return []
        available = await self._redis.hmget(self._available_key, ids)
        now_ms = int(time.time() * 1000)
        ready = [
            job_id
            for job_id, at in zip(ids, available, strict=True)
            if at is None or int(at) <= now_ms
        ]
        return ready[:limit] if limit is not None else ready

    async def size(self) -> int:
        return int(await self._redis.zcard(self.name))

    async def close(self) -> None:
        await self._redis.aclose()


class RedisPubSub(PubSub):
    """Publishes JSON messages on Redis channels; one listener task per channel."""

    def __init__(self, url: str) -> None:
        self._redis = aioredis.from_url(url, decode_responses=True)
        self._handlers: dict[str, list[Handler]] = {}
        self._listeners: dict[str, asyncio.Task[None]] = {}

    async def publish(self, channel: str, message: Message) -> int:
        return int(await self._redis.publish(channel, json.dumps(message, default=str)))

    async def subscribe(self, channel: str, handler: Handler) -> None:
        self._handlers.setdefault(channel, []).append(handler)
        if channel not in self._listeners:
            self._listeners[channel] = asyncio.create_task(self._listen(channel))

    async def unsubscribe(self, channel: str, handler: Handler | None = None) -> None:
        handlers = self._handlers.get(channel, [])
        if handler is not None and handler in handlers:
            handlers.remove(handler)
        if handler is None or not handlers:
            self._handlers.pop(channel, None)
            task = self._listeners.pop(channel, None)
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    async def _listen(self, channel: str) -> None:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        try:
            async for raw in pubsub.listen():
                if raw.get("type") != "message":
                    continue
                try:
                    message = json.loads(raw["data"])
                except (TypeError, ValueError):
                    logger.warning("Dropping non-JSON message", channel=channel)
                    continue
                for handler in list(self._handlers.get(channel, ())):
                    try:
                        await handler(message)
                    except Exception as e:
                        logger.error("Subscriber failed", channel=channel, error=str(e))
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()

    async def close(self) -> None:
        for channel in list(self._listeners):
            await self.unsubscribe(channel)
        await self._redis.aclose()
