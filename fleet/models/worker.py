"""Worker models.

A worker is split in two: the durable ``Worker`` definition (identity,
capabilities, configuration, credential and the master-side job counters)
and the ephemeral ``WorkerLiveness`` row that each heartbeat overwrites and
that can be rebuilt from scratch after a coordinator restart.
"""

from datetime import datetime
from enum import Enum

from pydantic import Field, model_validator

from fleet.errors import WorkerAtCapacityError
from fleet.models.base import APIModel, new_id, utc_now


class WorkerType(str, Enum):
    STANDALONE = "standalone"
    VPS = "vps"
    CLOUD = "cloud"


class WorkerStatus(str, Enum):
    """Possible states for a worker."""

    ONLINE = "online"
    BUSY = "busy"
    OFFLINE = "offline"
    MAINTENANCE = "maintenance"
    ERROR = "error"


# Statuses an operator or the worker itself can put a worker into that
# survive until explicitly lifted.
HOLD_STATUSES = frozenset({WorkerStatus.MAINTENANCE, WorkerStatus.ERROR})


class WorkerConnection(APIModel):
    ip: str
    port: int | None = None
    heartbeat_interval_ms: int = 30000
    registered_at: datetime = Field(default_factory=utc_now)


class WorkerCapabilities(APIModel):
    max_concurrent_jobs: int = Field(default=1, ge=1)
    supported_browsers: list[str] = Field(default_factory=lambda: ["chromium"])
    supported_features: list[str] = Field(default_factory=list)
    memory: int = 1024
    cpu: int = 1
    storage: int = 10


class WorkerResources(APIModel):
    """Master-side bookkeeping, changed only by job transitions."""

    current_jobs: int = Field(default=0, ge=0)
    total_jobs_processed: int = 0
    success_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    average_job_duration_ms: float = 0.0


class PriorityFilter(APIModel):
    min: int = Field(default=1, ge=1, le=10)
    max: int = Field(default=10, ge=1, le=10)

    @model_validator(mode="after")
    def check_bounds(self) -> "PriorityFilter":
        if self.min > self.max:
            raise ValueError("priority filter min must not exceed max")
        return self

    def accepts(self, priority: int) -> bool:
        return self.min <= priority <= self.max


class ProxySettings(APIModel):
    enabled: bool = False
    auto_rotate: bool = True


class WorkerConfiguration(APIModel):
    auto_accept_jobs: bool = True
    max_job_duration_minutes: int = Field(default=60, gt=0)
    priority_filter: PriorityFilter = Field(default_factory=PriorityFilter)
    proxy_settings: ProxySettings = Field(default_factory=ProxySettings)


class WorkerSecurity(APIModel):
    api_key: str
    last_auth: datetime | None = None


class WorkerMetadata(APIModel):
    registered_by: str = "worker-auto-registration"
    region: str | None = None
    tags: list[str] = Field(default_factory=list)
    notes: str | None = None
    updated_at: datetime = Field(default_factory=utc_now)


class Worker(APIModel):
    """Durable worker definition."""

    id: str = Field(default_factory=lambda: new_id("wk-", 8))
    name: str
    type: WorkerType = WorkerType.VPS
    connection: WorkerConnection
    capabilities: WorkerCapabilities = Field(default_factory=WorkerCapabilities)
    resources: WorkerResources = Field(default_factory=WorkerResources)
    configuration: WorkerConfiguration = Field(default_factory=WorkerConfiguration)
    security: WorkerSecurity
    # Operator hold (maintenance/error); None means no hold
    status: WorkerStatus | None = None
    metadata: WorkerMetadata = Field(default_factory=WorkerMetadata)

    @property
    def has_capacity(self) -> bool:
        return self.resources.current_jobs < self.capabilities.max_concurrent_jobs

    def reserve_slot(self) -> None:
        """Count one more in-flight job. Caller holds the registry lock."""
        if not self.has_capacity:
            raise WorkerAtCapacityError(self.id)
        self.resources.current_jobs += 1

    def release_slot(self, success: bool, duration_ms: float) -> None:
        """Count one finished job, folding its outcome into the rolling averages."""
        resources = self.resources
        resources.current_jobs = max(0, resources.current_jobs - 1)
        resources.total_jobs_processed += 1
        n = resources.total_jobs_processed
        resources.success_rate = (resources.success_rate * (n - 1) + (1.0 if success else 0.0)) / n
        resources.average_job_duration_ms = (
            resources.average_job_duration_ms * (n - 1) + duration_ms
        ) / n


class HeartbeatMetrics(APIModel):
    memory_usage: float = 0
    cpu_usage: float = 0
    disk_usage: float = 0
    network_usage: float = 0
    jobs_completed: int = 0
    jobs_failed: int = 0
    average_response_time: float = 0


class HeartbeatPerformance(APIModel):
    """Self-reported; success_rate is a percentage."""

    success_rate: float | None = None
    average_job_duration: float | None = None


class Heartbeat(APIModel):
    status: WorkerStatus = WorkerStatus.ONLINE
    current_jobs: int = 0
    metrics: HeartbeatMetrics = Field(default_factory=HeartbeatMetrics)
    performance: HeartbeatPerformance = Field(default_factory=HeartbeatPerformance)


class WorkerLiveness(APIModel):
    """Ephemeral operational state, overwritten by each heartbeat."""

    last_seen: datetime = Field(default_factory=utc_now)
    reported_status: WorkerStatus = WorkerStatus.ONLINE
    reported_current_jobs: int = 0
    metrics: HeartbeatMetrics = Field(default_factory=HeartbeatMetrics)
    performance: HeartbeatPerformance = Field(default_factory=HeartbeatPerformance)


class HeartbeatInstructions(APIModel):
    max_concurrent_jobs: int
    reporting_interval_ms: int
    health_check_interval_ms: int
    poll_interval_ms: int
    abort_jobs: list[str] = Field(default_factory=list)


class FleetStats(APIModel):
    global_worker_count: int
    online_workers: int
    total_active_jobs: int


class ResourceUtilization(APIModel):
    cpu: float = 0
    memory: float = 0
    disk: float = 0
    network: float = 0


class JobStats(APIModel):
    total: int = 0
    completed: int = 0
    failed: int = 0
    success_rate: float = 0
    average_duration: float = 0


class WorkerScores(APIModel):
    health_score: int
    efficiency: int
    resource_utilization: ResourceUtilization
    job_stats: JobStats


class HeartbeatResponse(APIModel):
    success: bool = True
    timestamp: datetime = Field(default_factory=utc_now)
    instructions: HeartbeatInstructions
    stats: FleetStats
    calculated: WorkerScores


class WorkerRegistration(APIModel):
    """Request body for ``POST /workers``."""

    name: str | None = None
    ip: str | None = None
    type: WorkerType = WorkerType.VPS
    port: int | None = None
    max_concurrent_jobs: int = Field(default=1, ge=1)
    supported_browsers: list[str] | None = None
    supported_features: list[str] | None = None
    memory: int = 1024
    cpu: int = 1
    storage: int = 10
    priority_filter: PriorityFilter | None = None
    region: str | None = None
    tags: list[str] = Field(default_factory=list)
    registered_by: str = "worker-auto-registration"


class RegistrationResponse(APIModel):
    worker_id: str
    api_key: str


class WorkerUpdate(APIModel):
    """Partial update for ``PUT /workers/{id}``."""

    name: str | None = None
    status: WorkerStatus | None = None
    capabilities: WorkerCapabilities | None = None
    configuration: WorkerConfiguration | None = None
    tags: list[str] | None = None
    notes: str | None = None


class MetricsReport(APIModel):
    metrics: HeartbeatMetrics


class WorkerView(APIModel):
    """Worker as shown to API callers: no credential, effective status."""

    id: str
    name: str
    type: WorkerType
    status: WorkerStatus
    is_stale: bool
    last_seen: datetime | None = None
    uptime: str = "Unknown"
    connection: WorkerConnection
    capabilities: WorkerCapabilities
    resources: WorkerResources
    configuration: WorkerConfiguration
    metrics: HeartbeatMetrics | None = None
    performance: HeartbeatPerformance | None = None
    calculated: WorkerScores
    metadata: WorkerMetadata


class FleetSummary(APIModel):
    total: int
    online: int
    busy: int
    offline: int
    total_jobs: int
    total_capacity: int
    avg_success_rate: float


class WorkerPage(APIModel):
    workers: list[WorkerView]
    total: int
    page: int
    pages: int
    summary: FleetSummary
