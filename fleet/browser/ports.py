"""DevTools port allocation for concurrent browser runs."""

import asyncio

from fleet.utils.logging import get_logger

logger = get_logger(__name__)


class PortPool:
    """Fixed range of DevTools ports, one per concurrently running browser."""

    def __init__(self, start: int, count: int) -> None:
        """
        Args:
            start: First port of the range (e.g. 9222)
            count: Number of ports, normally the worker's job capacity
        """
        self._free: list[int] = list(range(start, start + count))
        self._taken: set[int] = set()
        self._lock = asyncio.Lock()
        logger.debug("Port pool ready", start=start, count=count)

    async def acquire(self) -> int | None:
        """Take the lowest free port, or None when every port is taken."""
        async with self._lock:
            if not self._free:
                logger.warning("DevTools port pool exhausted", taken=len(self._taken))
                return None
            port = min(self._free)
            self._free.remove(port)
            self._taken.add(port)
            return port

    async def release(self, port: int) -> None:
        async with self._lock:
            if port not in self._taken:
                logger.warning("Release of a port that was not taken", port=port)
                return
            self._taken.discard(port)
            self._free.append(port)

    @property
    def available_count(self) -> int:
        return len(self._free)

    @property
    def in_use_count(self) -> int:
        return len(self._taken)
