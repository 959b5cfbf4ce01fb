"""Tests for the in-process queue and pub/sub."""

import pytest

from fleet.config import Settings
from fleet.messaging import InMemoryJobQueue, InMemoryPubSub, create_backends
from fleet.messaging.base import Message, publish_event


async def test_queue_orders_by_priority_then_fifo() -> None:
    queue = InMemoryJobQueue()
    await queue.enqueue("a", 5)
    await queue.enqueue("b", 9)
    await queue.enqueue("c", 5)
    await queue.enqueue("d", 1)

    assert await queue.due() == ["b", "a", "c", "d"]
    assert await queue.due(limit=2) == ["b", "a"]


async def test_due_does_not_pop() -> None:
    queue = InMemoryJobQueue()
    await queue.enqueue("a", 5)

    await queue.due()

    assert await queue.size() == 1
    assert await queue.remove("a")
    assert not await queue.remove("a")
    assert await queue.due() == []


async def test_delayed_entries_are_hidden() -> None:
    queue = InMemoryJobQueue()
    await queue.enqueue("later", 10, delay_ms=60_000)
    await queue.enqueue("now", 1)

    assert await queue.due() == ["now"]
    assert await queue.size() == 2


async def test_reenqueue_replaces_entry() -> None:
    queue = InMemoryJobQueue()
    await queue.enqueue("a", 2)
    await queue.enqueue("b", 5)
    await queue.enqueue("a", 8)

    assert await queue.due() == ["a", "b"]
    assert await queue.size() == 2


async def test_pubsub_delivers_and_records() -> None:
    pubsub = InMemoryPubSub()
    received: list[Message] = []

    async def handler(message: Message) -> None:
        received.append(message)

    await pubsub.subscribe("job:created", handler)

    assert await pubsub.publish("job:created", {"jobId": "1"}) == 1
    assert await pubsub.publish("job:queued", {"jobId": "1"}) == 0

    assert received == [{"jobId": "1"}]
    assert pubsub.messages("job:queued") == [{"jobId": "1"}]

    await pubsub.unsubscribe("job:created", handler)
    await pubsub.publish("job:created", {"jobId": "2"})
    assert len(received) == 1


async def test_failing_subscriber_does_not_break_publish() -> None:
    pubsub = InMemoryPubSub()

    async def broken(message: Message) -> None:
        raise RuntimeError("subscriber down")

    await pubsub.subscribe("job:failed", broken)

    assert await pubsub.publish("job:failed", {"jobId": "1"}) == 1


async def test_publish_event_tolerates_missing_or_broken_pubsub() -> None:
    class Exploding(InMemoryPubSub):
        async def publish(self, channel: str, message: Message) -> int:
            raise ConnectionError("broker gone")

    await publish_event(None, "job:created", {})
    await publish_event(Exploding(), "job:created", {})


def test_create_backends() -> None:
    queue, pubsub = create_backends(Settings(_env_file=None, messaging_backend="memory"))
    assert isinstance(queue, InMemoryJobQueue)
    assert isinstance(pubsub, InMemoryPubSub)

    with pytest.raises(ValueError, match="kafka"):
        create_backends(Settings(_env_file=None, messaging_backend="kafka"))
