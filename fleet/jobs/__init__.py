"""Job management module."""

from fleet.jobs.batch import BATCH_TEMPLATES, BatchExpander
from fleet.jobs.scheduler import Scheduler, SchedulingLoop, next_occurrence, rank_workers
from fleet.jobs.service import JobService
from fleet.jobs.store import JobStore

__all__ = [
    "BATCH_TEMPLATES",
    "BatchExpander",
    "JobService",
    "JobStore",
    "Scheduler",
    "SchedulingLoop",
    "next_occurrence",
    "rank_workers",
]
