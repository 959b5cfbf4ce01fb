"""Data models for the fleet coordinator."""

from fleet.models.automation import (
    FingerprintProfile,
    PageContext,
    PageType,
    Proxy,
    Scenario,
    ScenarioStep,
    StepType,
    Viewport,
)
from fleet.models.batch import BatchJobSpec, BatchResult, NamePattern, UrlPattern
from fleet.models.job import (
    BrowserConfig,
    Job,
    JobConfig,
    JobCreate,
    JobFilters,
    JobPage,
    JobResults,
    JobSchedule,
    JobStatus,
    JobType,
    JobUpdate,
    LogLevel,
    WorkerInfo,
)
from fleet.models.worker import (
    Heartbeat,
    HeartbeatResponse,
    Worker,
    WorkerLiveness,
    WorkerRegistration,
    WorkerStatus,
    WorkerUpdate,
    WorkerView,
)

__all__ = [
    "BatchJobSpec",
    "BatchResult",
    "BrowserConfig",
    "FingerprintProfile",
    "Heartbeat",
    "HeartbeatResponse",
    "Job",
    "JobConfig",
    "JobCreate",
    "JobFilters",
    "JobPage",
    "JobResults",
    "JobSchedule",
    "JobStatus",
    "JobType",
    "JobUpdate",
    "LogLevel",
    "NamePattern",
    "PageContext",
    "PageType",
    "Proxy",
    "Scenario",
    "ScenarioStep",
    "StepType",
    "UrlPattern",
    "Viewport",
    "Worker",
    "WorkerInfo",
    "WorkerLiveness",
    "WorkerRegistration",
    "WorkerStatus",
    "WorkerUpdate",
    "WorkerView",
]
