"""Batch expansion: one template job into many concrete jobs."""

import random
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import TypeVar

from pydantic import ValidationError as SchemaError

from fleet.errors import FleetError, ValidationError
from fleet.models.base import new_id, utc_now
from fleet.models.batch import (
    MAX_BATCH_QUANTITY,
    BatchJobSpec,
    BatchResult,
    BatchScheduling,
    BatchTemplate,
    BatchVariations,
    NamePattern,
    NamePatternType,
    UrlPattern,
    UrlPatternType,
)
from fleet.models.job import Job, JobCreate, JobSchedule, JobType, ScheduleType
from fleet.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_INTERVAL_SECONDS = 60
JITTER_FRACTION = 0.3
NUMBER_PLACEHOLDER = "{number}"

CreateJob = Callable[[JobCreate, str], Awaitable[Job]]


def generate_urls(quantity: int, pattern: UrlPattern | None, base_url: str) -> list[str]:
    """
    URLs for each batch index.

    ``sequential`` and ``pattern`` substitute ``start_number + i`` into the
    ``{number}`` placeholder (``{base}`` expands to the base URL); ``list``
    cycles through ``urls``. Anything unusable repeats the base URL.
    """
    if pattern is None or pattern.type == UrlPatternType.SEQUENTIAL:
        template = (pattern.pattern if pattern else None) or "{base}?page={number}"
        start = pattern.start_number if pattern else 1
    elif pattern.type == UrlPatternType.PATTERN:
        template = pattern.pattern or ""
        start = pattern.start_number
    elif pattern.type == UrlPatternType.LIST and pattern.urls:
        return [pattern.urls[i % len(pattern.urls)] for i in range(quantity)]
    else:
        return [base_url] * quantity

    if NUMBER_PLACEHOLDER not in template:
        return [base_url] * quantity
    template = template.replace("{base}", base_url)
    return [template.replace(NUMBER_PLACEHOLDER, str(start + i)) for i in range(quantity)]


def generate_names(quantity: int, pattern: NamePattern | None, base_name: str) -> list[str]:
    """Names for each batch index."""
    if pattern is None or pattern.type == NamePatternType.SEQUENTIAL:
        prefix = (pattern.prefix if pattern else None) or base_name
        suffix = f" {pattern.suffix}" if pattern and pattern.suffix else ""
        return [f"{prefix} {i + 1}{suffix}" for i in range(quantity)]
    if pattern.type == NamePatternType.CUSTOM and pattern.custom_names:
        names = pattern.custom_names
        return [names[i % len(names)] for i in range(quantity)]
    return [f"{base_name} {i + 1}" for i in range(quantity)]


def pick_variation(values: list[T], index: int, default: T) -> T:
    """Cycle through ``values`` by index; ``default`` when there are none."""
    if not values:
        return default
    return values[index % len(values)]


def distribute_schedule(
    base: JobSchedule | None,
    index: int,
    scheduling: BatchScheduling,
    now: datetime,
    rng: random.Random,
) -> JobSchedule:
    """Start time for the ``index``-th job when spreading a batch over time."""
    schedule = base.model_copy(deep=True) if base else JobSchedule(type=ScheduleType.ONCE)
    interval = scheduling.interval_between_jobs or DEFAULT_INTERVAL_SECONDS
    start = (base.start_time if base and base.start_time else now) + timedelta(
        seconds=index * interval
    )
    if scheduling.randomize_interval:
        start += timedelta(seconds=rng.uniform(-JITTER_FRACTION, JITTER_FRACTION) * interval)
    schedule.start_time = start
    return schedule


def validate_batch(spec: BatchJobSpec) -> None:
    """Reject a batch outright when its shape is unusable."""
    if not 1 <= spec.quantity <= MAX_BATCH_QUANTITY:
        raise ValidationError(f"Quantity must be between 1 and {MAX_BATCH_QUANTITY}")
    if not spec.base_job.name or not spec.base_job.url:
        raise ValidationError("Base job name and URL are required")


class BatchExpander:
    """Expands a BatchJobSpec through a job-creation callable, tolerating per-item failures."""

    def __init__(self, create: CreateJob, rng: random.Random | None = None) -> None:
        self._create = create
        self._rng = rng or random.Random()

    async def expand(self, spec: BatchJobSpec) -> BatchResult:
        """
        Create ``spec.quantity`` jobs.

        Every item failure is recorded in ``errors`` and does not roll back
        jobs already created.

        Raises:
            ValidationError: If the quantity or base job is invalid
        """
        validate_batch(spec)
        base = spec.base_job
        quantity = spec.quantity
        batch_id = new_id(nbytes=6)
        variations = spec.variations or BatchVariations()
        now = utc_now()

        urls = generate_urls(quantity, spec.url_pattern, base.url or "")
        names = generate_names(quantity, spec.name_pattern, base.name or "")

        logger.info("Expanding batch", batch_id=batch_id, quantity=quantity)

        jobs: list[Job] = []
        errors: list[str] = []
        for i in range(quantity):
            schedule = base.schedule
            if spec.scheduling and spec.scheduling.distribute_over_time:
                schedule = distribute_schedule(base.schedule, i, spec.scheduling, now, self._rng)

            try:
                item = base.model_copy(
                    update={
                        "name": names[i],
                        "url": urls[i],
                        "type": JobType.BATCH,
                        "priority": pick_variation(variations.priorities, i, base.priority),
                        "fingerprint_region": pick_variation(
                            variations.regions, i, base.fingerprint_region
                        ),
                        "intent": pick_variation(variations.intents, i, base.intent),
                        "schedule": schedule.model_copy(deep=True) if schedule else None,
                        "tags": [
                            *base.tags,
                            "batch-job",
                            f"batch-{batch_id}",
                            *pick_variation(variations.tags, i, []),
                        ],
                    },
                    deep=True,
                )
                jobs.append(await self._create(item, batch_id))
            except (FleetError, SchemaError, ValueError) as e:
                reason = e.message if isinstance(e, FleetError) else str(e)
                message = f"Failed to create job {i + 1}: {reason}"
                errors.append(message)
                logger.warning("Batch item failed", batch_id=batch_id, index=i + 1, error=reason)

        logger.info(
            "Batch creation completed",
            batch_id=batch_id,
            created=len(jobs),
            requested=quantity,
            errors=len(errors),
        )
        return BatchResult(
            batch_id=batch_id,
            total_created=len(jobs),
            total_requested=quantity,
            jobs=jobs,
            errors=errors,
        )


def _template(
    template_id: str,
    name: str,
    description: str,
    base_job: dict,
    **extra: dict,
) -> BatchTemplate:
    return BatchTemplate.model_validate(
        {"id": template_id, "name": name, "description": description, "baseJob": base_job, **extra}
    )


BATCH_TEMPLATES = [
    _template(
        "ecommerce-daily",
        "E-commerce Daily Monitoring",
        "Monitor product pages daily for price and availability changes",
        {
            "name": "Product Monitor",
            "description": "Daily product page monitoring",
            "url": "https://example-store.com/products",
            "type": "scheduled",
            "priority": 5,
            "schedule": {"type": "recurring", "intervalMinutes": 1440},
            "useAi": True,
            "intent": "monitor product pricing and availability",
        },
        urlPattern={"type": "pattern", "pattern": "https://example-store.com/products/{number}"},
        namePattern={"type": "sequential", "prefix": "Product Monitor", "suffix": "Daily Check"},
    ),
    _template(
        "news-hourly",
        "News Sites Hourly Scraping",
        "Scrape news websites every hour for new articles",
        {
            "name": "News Scraper",
            "description": "Hourly news content extraction",
            "url": "https://news-site.com",
            "type": "scheduled",
            "priority": 7,
            "schedule": {"type": "recurring", "cron": "0 * * * *"},
            "useAi": True,
            "intent": "extract latest news articles and headlines",
        },
        urlPattern={
            "type": "list",
            "urls": [
                "https://news-site-1.com",
                "https://news-site-2.com",
                "https://news-site-3.com",
            ],
        },
    ),
    _template(
        "social-media",
        "Social Media Monitoring",
        "Monitor social media pages for engagement metrics",
        {
            "name": "Social Monitor",
            "description": "Track social media engagement",
            "url": "https://social-platform.com",
            "type": "scheduled",
            "priority": 6,
            "schedule": {"type": "recurring", "intervalMinutes": 240},
            "useAi": True,
            "intent": "monitor social media engagement and interactions",
        },
    ),
    _template(
        "api-testing",
        "API Endpoint Testing",
        "Test API endpoints for availability and response times",
        {
            "name": "API Test",
            "description": "Automated API endpoint testing",
            "url": "https://api.example.com",
            "type": "scheduled",
            "priority": 8,
            "schedule": {"type": "recurring", "intervalMinutes": 15},
            "useAi": False,
            "intent": "test API endpoint availability and performance",
        },
        variations={
            "priorities": [8, 9, 10],
            "intents": [
                "test API response time",
                "validate API data format",
                "check API authentication",
            ],
        },
    ),
]
