"""Batch expansion models."""

from enum import Enum

from pydantic import Field

from fleet.models.base import APIModel
from fleet.models.job import Job, JobCreate, JobSchedule, JobStatus, JobType

MAX_BATCH_QUANTITY = 1000


class UrlPatternType(str, Enum):
    SEQUENTIAL = "sequential"
    LIST = "list"
    PATTERN = "pattern"


class UrlPattern(APIModel):
    type: UrlPatternType = UrlPatternType.SEQUENTIAL
    urls: list[str] = Field(default_factory=list)
    pattern: str | None = None
    start_number: int = 1


class NamePatternType(str, Enum):
    SEQUENTIAL = "sequential"
    CUSTOM = "custom"


class NamePattern(APIModel):
    type: NamePatternType = NamePatternType.SEQUENTIAL
    prefix: str | None = None
    suffix: str | None = None
    custom_names: list[str] = Field(default_factory=list)


class BatchScheduling(APIModel):
    distribute_over_time: bool = False
    # seconds between consecutive job start times
    interval_between_jobs: float | None = Field(default=None, gt=0)
    randomize_interval: bool = False


class BatchVariations(APIModel):
    priorities: list[int] = Field(default_factory=list)
    regions: list[str] = Field(default_factory=list)
    intents: list[str] = Field(default_factory=list)
    tags: list[list[str]] = Field(default_factory=list)


class BatchJobSpec(APIModel):
    """A template job expanded into ``quantity`` concrete jobs."""

    base_job: JobCreate
    quantity: int
    url_pattern: UrlPattern | None = None
    name_pattern: NamePattern | None = None
    scheduling: BatchScheduling | None = None
    variations: BatchVariations | None = None


class BatchJobSummary(APIModel):
    id: str
    name: str
    url: str
    status: JobStatus
    priority: int
    type: JobType
    schedule: JobSchedule | None = None


class BatchResult(APIModel):
    batch_id: str
    total_created: int
    total_requested: int
    jobs: list[Job] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def summaries(self) -> list[BatchJobSummary]:
        return [
            BatchJobSummary(
                id=job.id,
                name=job.name,
                url=job.url,
                status=job.status,
                priority=job.priority,
                type=job.type,
                schedule=job.schedule,
            )
            for job in self.jobs
        ]


class BatchTemplate(APIModel):
    """Ready-made batch definition offered by ``GET /jobs/batch/templates``."""

    id: str
    name: str
    description: str
    base_job: JobCreate
    url_pattern: UrlPattern | None = None
    name_pattern: NamePattern | None = None
    variations: BatchVariations | None = None
