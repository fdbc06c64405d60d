"""Job queue engine, registry and worker pool."""

from .backends import CronBackend, LockBackend, QueueBackend
from .dispatcher import JobDispatcher
from .handlers import JobHandlerRegistry
from .memory import InMemoryCron, InMemoryLock, LockTable
from .models import (
    CronJob,
    DatabaseLock,
    JobCommand,
    JobCounts,
    JobItem,
    JobName,
    JobResult,
    JobState,
    JobStatus,
    JobStatusDto,
    ManualJobName,
    QueueName,
    QueueStatus,
    WorkerRole,
)
from .registry import (
    JOBS_TO_QUEUE,
    NON_CONCURRENT_QUEUES,
    QueueRegistry,
    is_concurrent_queue,
    queue_for,
    resolve_concurrency,
)
from .sqlite_backend import SQLiteConfigTable, SQLiteLock, SQLiteQueue
from .worker import JobWorkerPool

__all__ = [
    "QueueBackend",
    "LockBackend",
    "CronBackend",
    "JobDispatcher",
    "JobHandlerRegistry",
    "InMemoryCron",
    "InMemoryLock",
    "LockTable",
    "CronJob",
    "DatabaseLock",
    "JobCommand",
    "JobCounts",
    "JobItem",
    "JobName",
    "JobResult",
    "JobState",
    "JobStatus",
    "JobStatusDto",
    "ManualJobName",
    "QueueName",
    "QueueStatus",
    "WorkerRole",
    "JOBS_TO_QUEUE",
    "NON_CONCURRENT_QUEUES",
    "QueueRegistry",
    "is_concurrent_queue",
    "queue_for",
    "resolve_concurrency",
    "SQLiteConfigTable",
    "SQLiteLock",
    "SQLiteQueue",
    "JobWorkerPool",
]
