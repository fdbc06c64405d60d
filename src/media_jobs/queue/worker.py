"""Worker pool implementation using asyncio consumer tasks.

This module pulls jobs off the queue engine and hands them to the job
service:
- One consumer task per concurrency slot, per queue
- Pool size follows the engine's concurrency setting
- Shrinking happens between jobs; a running job is never cancelled
- Graceful shutdown waits for in-flight jobs
- Running jobs heartbeat; claims left by dead workers are reset to waiting
"""

import asyncio
import os
import socket
from typing import Awaitable, Callable, Dict, Iterable, Optional

from loguru import logger

from .backends import QueueBackend
from .models import JobItem, JobResult, JobStatus, QueueName

JobRunner = Callable[[QueueName, JobItem], Awaitable[JobResult]]


class JobWorkerPool:
    """asyncio-based worker pool.

    Features:
    - Consumers poll the engine; an empty or paused queue costs one query
      per ``poll_interval_s``
    - ``set_concurrency`` grows the pool at once and shrinks it as busy
      consumers finish their current job
    - Async context manager for graceful shutdown

    Every job result is acknowledged to the engine, so a failed handler
    marks its row failed rather than stopping the consumer.
    """

    def __init__(
        self,
        backend: QueueBackend,
        runner: JobRunner,
        poll_interval_s: float = 1.0,
        worker_prefix: Optional[str] = None,
        heartbeat_interval_s: float = 30.0,
        stale_after_s: float = 600.0,
        reap_interval_s: float = 60.0,
    ):
        """Initialize worker pool.

        Args:
            backend: Queue engine to pull from
            runner: Coroutine run for each job (``JobService.on_job_start``)
            poll_interval_s: Sleep between polls of an idle queue
            worker_prefix: Consumer id prefix (default: host:pid)
            heartbeat_interval_s: How often a running job refreshes its heartbeat
            stale_after_s: Active jobs silent this long are reset to waiting
            reap_interval_s: How often to look for stale jobs while running
        """
        self.backend = backend
        self.runner = runner
        self.poll_interval_s = poll_interval_s
        self.worker_prefix = worker_prefix or f"{socket.gethostname()}:{os.getpid()}"
        self.heartbeat_interval_s = heartbeat_interval_s
        self.stale_after_s = stale_after_s
        self.reap_interval_s = reap_interval_s
        self._desired: Dict[QueueName, int] = {}
        self._consumers: Dict[QueueName, Dict[int, asyncio.Task]] = {}
        self._stopping = asyncio.Event()
        self._reaper: Optional[asyncio.Task] = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *args):
        await self.shutdown()

    @property
    def running(self) -> bool:
        return any(not t.done() for slots in self._consumers.values() for t in slots.values())

    def consumer_count(self, queue_name: QueueName) -> int:
        slots = self._consumers.get(QueueName(queue_name), {})
        return len([t for t in slots.values() if not t.done()])

    async def start(self, queues: Optional[Iterable[QueueName]] = None) -> None:
        """Spawn consumers for each queue, sized from the engine."""
        self._stopping.clear()
        await self.recover_stale()
        if self._reaper is None or self._reaper.done():
            self._reaper = asyncio.create_task(self._reap_loop(), name="stale-job-reaper")

        for queue_name in queues or list(QueueName):
            concurrency = await asyncio.to_thread(self.backend.get_concurrency, queue_name)
            self.set_concurrency(queue_name, concurrency)
        logger.info(f"Worker pool started ({self.worker_prefix})")

    async def sync_concurrency(self) -> None:
        """Re-read concurrency for every managed queue and resize."""
        for queue_name in list(self._desired):
            concurrency = await asyncio.to_thread(self.backend.get_concurrency, queue_name)
            self.set_concurrency(queue_name, concurrency)

    def set_concurrency(self, queue_name: QueueName, concurrency: int) -> None:
        queue_name = QueueName(queue_name)
        self._desired[queue_name] = concurrency

        slots = self._consumers.setdefault(queue_name, {})
        for slot in range(concurrency):
            task = slots.get(slot)
            if task is None or task.done():
                slots[slot] = asyncio.create_task(
                    self._consume(queue_name, slot), name=f"consumer-{queue_name.value}-{slot}"
                )

    async def run_once(self, queue_name: QueueName, worker_id: Optional[str] = None) -> Optional[JobResult]:
        """Claim and process a single job. Returns None if nothing was claimed."""
        queue_name = QueueName(queue_name)
        worker_id = worker_id or f"{self.worker_prefix}:{queue_name.value}"
        job = await asyncio.to_thread(self.backend.dequeue, queue_name, worker_id)
        if job is None:
            return None

        heartbeat = asyncio.create_task(self._heartbeat(job.id, worker_id))
        try:
            result = await self.runner(queue_name, job.item)
        except Exception as e:
            # Handler errors are caught by the runner; reaching here is a runner bug
            logger.exception(f"Runner crashed on job {job.id}")
            result = JobResult(status=JobStatus.FAILED, error_message=f"{type(e).__name__}: {e}")
        finally:
            heartbeat.cancel()

        await asyncio.to_thread(
            self.backend.ack, job.id, result.status, result.error_message, worker_id
        )
        return result

    async def recover_stale(self) -> int:
        """Reset jobs claimed by consumers that stopped heartbeating."""
        reset = await asyncio.to_thread(self.backend.reset_stale_active, self.stale_after_s)
        if reset:
            logger.warning(f"Reset {reset} stale job(s) to waiting")
        return reset

    async def _heartbeat(self, job_id: int, worker_id: str) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval_s)
            try:
                await asyncio.to_thread(self.backend.update_heartbeat, job_id, worker_id)
            except Exception as e:
                # Log but keep beating; the next beat retries
                logger.warning(f"Heartbeat failed for job {job_id}: {e}")

    async def _reap_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.reap_interval_s)
            except asyncio.TimeoutError:
                pass
            else:
                break

            try:
                await self.recover_stale()
            except Exception:
                logger.exception("Stale job recovery failed")

    async def _consume(self, queue_name: QueueName, slot: int) -> None:
        worker_id = f"{self.worker_prefix}:{queue_name.value}:{slot}"
        logger.debug(f"Consumer {worker_id} started")

        while not self._stopping.is_set() and slot < self._desired.get(queue_name, 0):
            try:
                result = await self.run_once(queue_name, worker_id)
            except Exception:
                logger.exception(f"Consumer {worker_id} failed to poll")
                result = None

            if result is None:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval_s)
                except asyncio.TimeoutError:
                    pass

        logger.debug(f"Consumer {worker_id} stopped")

    async def shutdown(self, wait: bool = True) -> None:
        """Graceful shutdown.

        Args:
            wait: If True, let in-flight jobs finish; otherwise cancel them
        """
        self._stopping.set()
        tasks = [t for slots in self._consumers.values() for t in slots.values()]
        if self._reaper is not None:
            tasks.append(self._reaper)
            self._reaper = None
        if not wait:
            for task in tasks:
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._consumers.clear()
        logger.info("Worker pool stopped")
