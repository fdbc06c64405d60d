"""Abstract base classes for the queue engine and its coordination primitives.

This module defines the interfaces the orchestration core drives:

- ``QueueBackend``: the work-queue engine (enqueue, claim, ack, pause, counts)
- ``LockBackend``: cluster-wide try-acquire locks
- ``CronBackend``: named periodic callbacks

Each has a local-first implementation (SQLite, APScheduler) and the lock and
cron interfaces additionally have in-memory fakes for tests.
"""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, Union

from .models import JobCounts, JobItem, JobState, JobStatus, QueuedJob, QueueName, QueueStatus

CronCallback = Callable[[], Union[None, Awaitable[None]]]


class QueueBackend(ABC):
    """Abstract queue engine interface for local/distributed backends.

    Implementations must provide:
    - Order-preserving enqueue (per queue, FIFO by insertion)
    - Atomic claim of the next waiting job (safe across processes)
    - Pause/resume that stops new claims without touching running jobs
    - Job counts by state, computed on demand
    - Crash recovery via reset_stale_active() for claims whose worker died
    """

    @abstractmethod
    def enqueue(self, queue_name: QueueName, item: JobItem) -> int:
        """Add one job to a queue.

        Args:
            queue_name: Target queue
            item: Job to enqueue

        Returns:
            Engine row id of the new job

        Implementation notes:
        - No deduplication: the same item enqueued twice runs twice
        """

    @abstractmethod
    def enqueue_all(self, items: Sequence[Tuple[QueueName, JobItem]]) -> List[int]:
        """Add a batch of jobs, preserving submission order.

        Args:
            items: (queue, job) pairs in the order consumers should see them

        Returns:
            Engine row ids, in submission order

        Implementation notes:
        - An empty batch is a no-op returning []
        - Callers tolerate partial success if the engine fails mid-batch
        """

    @abstractmethod
    def dequeue(self, queue_name: QueueName, worker_id: str) -> Optional[QueuedJob]:
        """Atomically claim the oldest waiting job of a queue.

        Args:
            queue_name: Queue to claim from
            worker_id: Unique identifier for the claiming consumer

        Returns:
            QueuedJob, or None if the queue is empty or paused

        Implementation notes:
        - MUST be safe with multiple consumers and processes claiming at once
        - Sets state='active', worker_id, started_at and the first heartbeat
        """

    @abstractmethod
    def ack(
        self,
        job_id: int,
        status: JobStatus,
        error: Optional[str] = None,
        worker_id: Optional[str] = None,
    ) -> bool:
        """Record the terminal status of a claimed job.

        Args:
            job_id: Engine row id
            status: SUCCESS/SKIPPED mark the row completed, FAILED marks it failed
            error: Error message for failed jobs (truncated by the engine)
            worker_id: If given, only ack while this consumer still holds the claim

        Returns:
            False if the job was no longer active (e.g. reset as stale)
        """

    @abstractmethod
    def update_heartbeat(self, job_id: int, worker_id: Optional[str] = None) -> None:
        """Update heartbeat timestamp for a running job.

        Implementation notes:
        - Called periodically by the worker pool while the handler runs
        - Prevents the job from being reset by reset_stale_active()
        """

    @abstractmethod
    def reset_stale_active(self, stale_after_s: float) -> int:
        """Crash recovery: reset active jobs whose worker stopped heartbeating.

        Args:
            stale_after_s: Consider a job stale if no heartbeat in this duration

        Returns:
            Count of jobs put back to waiting
        """

    @abstractmethod
    def pause(self, queue_name: QueueName) -> None:
        """Stop new jobs from being claimed. Running jobs are not cancelled."""

    @abstractmethod
    def resume(self, queue_name: QueueName) -> None:
        """Allow jobs to be claimed again."""

    @abstractmethod
    def is_paused(self, queue_name: QueueName) -> bool:
        pass

    @abstractmethod
    def empty(self, queue_name: QueueName) -> int:
        """Remove all waiting (not active) jobs.

        Returns:
            Count of removed jobs
        """

    @abstractmethod
    def clear(self, queue_name: QueueName, state: JobState) -> int:
        """Remove every job of a queue in the given state.

        Args:
            queue_name: Queue to clean
            state: Usually JobState.FAILED

        Returns:
            Count of removed jobs
        """

    @abstractmethod
    def get_job_counts(self, queue_name: QueueName) -> JobCounts:
        pass

    @abstractmethod
    def get_queue_status(self, queue_name: QueueName) -> QueueStatus:
        pass

    @abstractmethod
    def set_concurrency(self, queue_name: QueueName, concurrency: int) -> None:
        """Record the consumer pool size for a queue (idempotent)."""

    @abstractmethod
    def get_concurrency(self, queue_name: QueueName) -> int:
        """Return the recorded pool size, 1 if never set."""

    @abstractmethod
    def get_jobs(self, queue_name: QueueName, state: Optional[JobState] = None) -> List[JobItem]:
        """List jobs of a queue in insertion order (for status and tests).

        Args:
            queue_name: Queue to list
            state: Optional state filter
        """


class LockBackend(ABC):
    """Cluster-wide named mutual exclusion with try-acquire semantics.

    At most one holder per lock name exists across all processes that share
    the backend.
    """

    @abstractmethod
    def try_acquire(self, name: str) -> bool:
        """Non-blocking acquire.

        Returns:
            True if this holder now owns the lock (or already did)
        """

    @abstractmethod
    def release(self, name: str) -> None:
        """Release the lock if this holder owns it."""


class CronBackend(ABC):
    """Named periodic callbacks driven by 5-field cron expressions."""

    @abstractmethod
    def create(self, name: str, expression: str, on_tick: CronCallback, start: bool = True) -> None:
        """Register a cron job.

        Args:
            name: Unique job name; registering an existing name replaces it
            expression: ``minute hour day month weekday``
            on_tick: Callback, sync or async
            start: Start firing immediately
        """

    @abstractmethod
    def update(self, name: str, expression: str, start: bool = True) -> None:
        """Change the expression of an existing cron job in place."""

    @abstractmethod
    def delete(self, name: str) -> None:
        pass
