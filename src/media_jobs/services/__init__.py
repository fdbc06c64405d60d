"""Orchestration services built on the queue layer."""

from .completion import CompletionRouter
from .job_service import JobService
from .nightly import NightlyScheduler, build_nightly_jobs, nightly_cron_expression

__all__ = [
    "CompletionRouter",
    "JobService",
    "NightlyScheduler",
    "build_nightly_jobs",
    "nightly_cron_expression",
]
