"""Worker registry, heartbeat processing and health scoring."""

from fleet.workers.health import effective_status, health_score, is_stale
from fleet.workers.registry import WorkerRegistry

__all__ = ["WorkerRegistry", "effective_status", "health_score", "is_stale"]
