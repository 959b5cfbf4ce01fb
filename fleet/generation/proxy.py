"""Proxy pool and allocation."""

import asyncio

from fleet.models.automation import Proxy, ProxyStatus
from fleet.models.base import utc_now
from fleet.models.job import ProxyConfig
from fleet.utils.logging import get_logger

logger = get_logger(__name__)

MIN_RELIABILITY = 70


class ProxyAllocator:
    """In-memory proxy pool handing out the most reliable, least used proxy."""

    def __init__(self, proxies: list[Proxy] | None = None) -> None:
        self._proxies: dict[str, Proxy] = {p.id: p for p in proxies or []}
        self._lock = asyncio.Lock()

    def add(self, proxy: Proxy) -> Proxy:
        """Add a proxy to the pool."""
        self._proxies[proxy.id] = proxy
        return proxy

    def get(self, proxy_id: str) -> Proxy | None:
        return self._proxies.get(proxy_id)

    def get_all(self) -> list[Proxy]:
        return list(self._proxies.values())

    async def allocate(
        self,
        worker_id: str | None = None,
        min_reliability: float = MIN_RELIABILITY,
        exclude_in_use_by: list[str] | None = None,
    ) -> Proxy | None:
        """
        Pick an active proxy and record its usage.

        Args:
            worker_id: Worker that will use the proxy
            min_reliability: Lowest acceptable reliability percentage
            exclude_in_use_by: Skip proxies currently held by these workers

        Returns:
            The allocated proxy, or None when the pool has no candidate
        """
        excluded = set(exclude_in_use_by or [])
        async with self._lock:
            candidates = [
                p
                for p in self._proxies.values()
                if p.status == ProxyStatus.ACTIVE
                and p.reliability >= min_reliability
                and (p.currently_used_by is None or p.currently_used_by not in excluded)
            ]
            if not candidates:
                logger.debug("No proxy available", worker_id=worker_id)
                return None

            candidates.sort(key=lambda p: (-p.reliability, p.usage_count))
            proxy = candidates[0]
            proxy.usage_count += 1
            proxy.last_used = utc_now()
            if worker_id:
                proxy.currently_used_by = worker_id

        logger.info(
            "Proxy allocated",
            proxy_id=proxy.id,
            host=proxy.host,
            port=proxy.port,
            worker_id=worker_id,
        )
        return proxy

    async def release(self, proxy_id: str, success: bool) -> None:
        """Record the outcome of the request made through a proxy and free it."""
        async with self._lock:
            proxy = self._proxies.get(proxy_id)
            if proxy is None:
                return
            proxy.total_requests += 1
            if success:
                proxy.successful_requests += 1
            else:
                proxy.failed_requests += 1
            proxy.currently_used_by = None


def to_proxy_config(proxy: Proxy) -> ProxyConfig:
    """Browser-facing connection details for an allocated proxy."""
    return ProxyConfig(
        proxy_id=proxy.id,
        host=proxy.host,
        port=proxy.port,
        protocol=proxy.protocol,
        username=proxy.username,
        password=proxy.password,
    )
