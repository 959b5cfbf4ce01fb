"""Job models and the job lifecycle state machine."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import Field, field_validator

from fleet.errors import InvalidTransitionError
from fleet.models.automation import FingerprintProfile, PageType, ProxyProtocol, Scenario, Viewport
from fleet.models.base import APIModel, as_utc, new_id, utc_now

DEFAULT_PRIORITY = 5
MIN_PRIORITY = 1
MAX_PRIORITY = 10


def clamp_priority(value: Any) -> int:
    """Clamp a priority into [1, 10]; None means the default."""
    if value is None:
        return DEFAULT_PRIORITY
    return max(MIN_PRIORITY, min(MAX_PRIORITY, int(value)))


class JobStatus(str, Enum):
    """Possible states for a job."""

    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobType(str, Enum):
    SINGLE = "single"
    BATCH = "batch"
    SCHEDULED = "scheduled"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


# Legal edges of the lifecycle. failed -> pending is the manual retry.
TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.QUEUED, JobStatus.CANCELLED}),
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset({JobStatus.PENDING}),
    JobStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Whether ``current -> target`` is an edge of the lifecycle."""
    return target in TRANSITIONS[current]


class ProxyConfig(APIModel):
    proxy_id: str | None = None
    host: str
    port: int
    protocol: ProxyProtocol = ProxyProtocol.HTTP
    username: str | None = None
    password: str | None = None

    @property
    def server(self) -> str:
        """Proxy URL suitable for ``--proxy-server``."""
        return f"{self.protocol.value}://{self.host}:{self.port}"


class BrowserConfig(APIModel):
    """Slice of job config the browser executor receives."""

    headless: bool = True
    viewport: Viewport = Field(default_factory=Viewport)
    proxy: ProxyConfig | None = None
    user_agent: str | None = None
    fingerprint: FingerprintProfile | None = None


class AutomationConfig(APIModel):
    """Slice of job config the scenario generator and replayer receive."""

    use_ai: bool = False
    intent: str | None = None
    page_type: PageType | None = None
    scenario: Scenario | None = None
    fingerprint_script: str | None = None


class RetryConfig(APIModel):
    max_retries: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=5000, ge=0)


class JobConfig(APIModel):
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    automation: AutomationConfig = Field(default_factory=AutomationConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)


class ScheduleType(str, Enum):
    ONCE = "once"
    RECURRING = "recurring"


class JobSchedule(APIModel):
    """When a scheduled or batch job becomes due, and whether it recurs."""

    type: ScheduleType = ScheduleType.ONCE
    start_time: datetime | None = None
    end_time: datetime | None = None
    interval_minutes: int | None = Field(default=None, gt=0)
    cron: str | None = None
    is_active: bool = True
    max_executions: int | None = Field(default=None, gt=0)
    executions: int = 0

    @field_validator("start_time", "end_time")
    @classmethod
    def assume_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)


class JobLogEntry(APIModel):
    timestamp: datetime = Field(default_factory=utc_now)
    level: LogLevel = LogLevel.INFO
    message: str
    data: Any = None


class ExecutionMetrics(APIModel):
    elements_found: int = 0
    actions_performed: int = 0
    errors_encountered: int = 0
    page_load_time: int = 0


class JobResults(APIModel):
    screenshot: str | None = None
    metrics: ExecutionMetrics | None = None
    data: Any = None
    logs: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class JobExecution(APIModel):
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_ms: int | None = None
    attempts: int = 0
    last_attempt: datetime | None = None
    logs: list[JobLogEntry] = Field(default_factory=list)
    results: JobResults = Field(default_factory=JobResults)


class WorkerInfo(APIModel):
    id: str
    name: str
    ip: str
    assigned_at: datetime = Field(default_factory=utc_now)
    # Set when the assigned worker picks the job up through /jobs/next
    delivered_at: datetime | None = None


class JobMetadata(APIModel):
    created_by: str = "system"
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    tags: list[str] = Field(default_factory=list)
    ai_generated: bool = False
    fingerprint_region: str | None = None
    parent_id: str | None = None
    batch_id: str | None = None


class Job(APIModel):
    """A single unit of automation work targeting one URL."""

    id: str = Field(default_factory=new_id)
    name: str
    description: str | None = None
    url: str
    type: JobType = JobType.SINGLE
    status: JobStatus = JobStatus.PENDING
    priority: int = DEFAULT_PRIORITY
    config: JobConfig = Field(default_factory=JobConfig)
    assigned_worker: str | None = None
    worker_info: WorkerInfo | None = None
    schedule: JobSchedule | None = None
    execution: JobExecution = Field(default_factory=JobExecution)
    metadata: JobMetadata = Field(default_factory=JobMetadata)

    @field_validator("priority", mode="before")
    @classmethod
    def clamp_priority_field(cls, value: Any) -> int:
        return clamp_priority(value)

    def add_log(self, level: LogLevel, message: str, data: Any = None) -> None:
        """Append to the execution log."""
        self.execution.logs.append(JobLogEntry(level=level, message=message, data=data))
        self.touch()

    def touch(self) -> None:
        self.metadata.updated_at = utc_now()

    def _transition(self, target: JobStatus) -> None:
        if not can_transition(self.status, target):
            raise InvalidTransitionError(self.id, self.status.value, target.value)
        self.status = target
        self.touch()

    def mark_queued(self) -> None:
        """pending -> queued."""
        self._transition(JobStatus.QUEUED)

    def mark_running(self, worker_info: WorkerInfo) -> None:
        """queued -> running on assignment; counts an attempt."""
        if self.assigned_worker is not None:
            raise InvalidTransitionError(self.id, self.status.value, JobStatus.RUNNING.value)
        self._transition(JobStatus.RUNNING)
        now = utc_now()
        self.assigned_worker = worker_info.id
        self.worker_info = worker_info
        self.execution.start_time = now
        self.execution.end_time = None
        self.execution.duration_ms = None
        self.execution.last_attempt = now
        self.execution.attempts += 1

    def mark_finished(self, success: bool, results: JobResults | None = None) -> None:
        """running -> completed | failed, computing the duration."""
        self._transition(JobStatus.COMPLETED if success else JobStatus.FAILED)
        self.execution.end_time = utc_now()
        if self.execution.start_time:
            delta = self.execution.end_time - self.execution.start_time
            self.execution.duration_ms = int(delta.total_seconds() * 1000)
        if results is not None:
            self.merge_results(results)

    def mark_cancelled(self) -> None:
        """pending | queued | running -> cancelled."""
        self._transition(JobStatus.CANCELLED)
        self.execution.end_time = utc_now()

    def reset_for_retry(self) -> None:
        """failed -> pending. Attempts are kept so retry limits see the full history."""
        self._transition(JobStatus.PENDING)
        self.assigned_worker = None
        self.worker_info = None

    def merge_results(self, results: JobResults) -> None:
        current = self.execution.results
        self.execution.results = JobResults(
            screenshot=results.screenshot or current.screenshot,
            metrics=results.metrics or current.metrics,
            data=results.data if results.data is not None else current.data,
            logs=[*current.logs, *results.logs],
            errors=[*current.errors, *results.errors],
        )

    def running_seconds(self, now: datetime | None = None) -> float | None:
        """Seconds since the current attempt started, or None when not running."""
        if self.status != JobStatus.RUNNING or self.execution.start_time is None:
            return None
        return ((now or utc_now()) - self.execution.start_time).total_seconds()

    @property
    def retries_exhausted(self) -> bool:
        return self.execution.attempts > self.config.retry.max_retries


class JobCreate(APIModel):
    """Request body for creating a job.

    name and url are optional here so that their absence is reported as a
    coordinator ValidationError rather than a schema error.
    """

    name: str | None = None
    description: str | None = None
    url: str | None = None
    type: JobType = JobType.SINGLE
    priority: int | None = None
    config: JobConfig | None = None
    schedule: JobSchedule | None = None
    tags: list[str] = Field(default_factory=list)
    created_by: str = "api"
    intent: str | None = None
    fingerprint_region: str | None = None
    use_ai: bool = False


class JobResultsUpdate(APIModel):
    end_time: datetime | None = None
    results: JobResults | None = None

    @field_validator("end_time")
    @classmethod
    def assume_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)


class JobUpdate(APIModel):
    """Partial update; ``status`` is routed through the state machine."""

    name: str | None = None
    description: str | None = None
    priority: int | None = None
    status: JobStatus | None = None
    config: JobConfig | None = None
    schedule: JobSchedule | None = None
    tags: list[str] | None = None
    execution: JobResultsUpdate | None = None
    error: str | None = None


class JobFilters(APIModel):
    status: list[JobStatus] = Field(default_factory=list)
    type: JobType | None = None
    priority: list[int] = Field(default_factory=list)
    assigned_worker: str | None = None
    created_by: str | None = None
    tags: list[str] = Field(default_factory=list)
    created_after: datetime | None = None
    created_before: datetime | None = None

    @field_validator("created_after", "created_before")
    @classmethod
    def assume_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)


class JobPage(APIModel):
    jobs: list[Job]
    total: int
    page: int
    pages: int


class DailyJobStats(APIModel):
    date: str
    count: int = 0
    completed: int = 0
    failed: int = 0


class JobStatsSummary(APIModel):
    status_stats: dict[str, int]
    total: int
    daily_stats: list[DailyJobStats] = Field(default_factory=list)
