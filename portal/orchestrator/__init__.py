"""Job queue orchestration: queue, worker, handlers."""

from .handlers import (
    JobFailedError,
    JobType,
    UnrecoverableJobError,
    build_job_handlers,
    ensure_exhaustive,
)
from .queue import JobOptions, JobQueue, RepeatSpec
from .worker import JobWorker

__all__ = [
    "JobFailedError",
    "JobOptions",
    "JobQueue",
    "JobType",
    "JobWorker",
    "RepeatSpec",
    "UnrecoverableJobError",
    "build_job_handlers",
    "ensure_exhaustive",
]
