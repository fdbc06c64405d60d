"""Command, status and lifecycle surface of job orchestration.

``JobService`` is the one object the outer surfaces (HTTP API, CLI) talk to.
It turns queue commands into engine calls, maps manual job names onto
internal jobs, reports per-queue status, and reacts to lifecycle events:

- ``config.init`` / ``config.update``: microservices processes apply queue
  concurrency; api processes (try to) schedule the nightly batch.
- ``app.bootstrap``: microservices processes load their job handlers and
  start their consumers.
- ``job.start``: the worker pool calls ``on_job_start`` for every job.
"""

import asyncio
import time
from typing import Dict, Optional, Sequence, Tuple

from loguru import logger

from media_jobs import telemetry
from media_jobs.config import SystemConfigStore
from media_jobs.events import ConfigEvent, EventBus, EventPublisher, JobFailedEvent, ServerEvent
from media_jobs.exceptions import ConflictError, InvalidRequestError
from media_jobs.models import SystemConfig
from media_jobs.queue.backends import QueueBackend
from media_jobs.queue.dispatcher import JobDispatcher
from media_jobs.queue.handlers import JobHandlerRegistry
from media_jobs.queue.models import (
    JobCommand,
    JobCommandDto,
    JobCreateDto,
    JobItem,
    JobName,
    JobResult,
    JobState,
    JobStatus,
    JobStatusDto,
    ManualJobName,
    QueueName,
    WorkerRole,
)
from media_jobs.queue.registry import QueueRegistry
from media_jobs.queue.worker import JobWorkerPool
from media_jobs.services.completion import CompletionRouter
from media_jobs.services.nightly import NightlyScheduler

# queue -> (seed job, whether the start command's force flag is passed on)
SEED_JOBS: Dict[QueueName, Tuple[JobName, bool]] = {
    QueueName.VIDEO_CONVERSION: (JobName.QUEUE_VIDEO_CONVERSION, True),
    QueueName.STORAGE_TEMPLATE_MIGRATION: (JobName.STORAGE_TEMPLATE_MIGRATION, False),
    QueueName.MIGRATION: (JobName.QUEUE_MIGRATION, False),
    QueueName.SMART_SEARCH: (JobName.QUEUE_SMART_SEARCH, True),
    QueueName.DUPLICATE_DETECTION: (JobName.QUEUE_DUPLICATE_DETECTION, True),
    QueueName.METADATA_EXTRACTION: (JobName.QUEUE_METADATA_EXTRACTION, True),
    QueueName.SIDECAR: (JobName.QUEUE_SIDECAR, True),
    QueueName.THUMBNAIL_GENERATION: (JobName.QUEUE_GENERATE_THUMBNAILS, True),
    QueueName.FACE_DETECTION: (JobName.QUEUE_FACE_DETECTION, True),
    QueueName.FACIAL_RECOGNITION: (JobName.QUEUE_FACIAL_RECOGNITION, True),
    QueueName.LIBRARY: (JobName.LIBRARY_QUEUE_SCAN_ALL, True),
    QueueName.BACKUP_DATABASE: (JobName.BACKUP_DATABASE, True),
}

MANUAL_JOBS: Dict[ManualJobName, JobName] = {
    ManualJobName.TAG_CLEANUP: JobName.TAG_CLEANUP,
    ManualJobName.PERSON_CLEANUP: JobName.PERSON_CLEANUP,
    ManualJobName.USER_CLEANUP: JobName.USER_DELETE_CHECK,
    ManualJobName.MEMORY_CLEANUP: JobName.MEMORIES_CLEANUP,
    ManualJobName.MEMORY_CREATE: JobName.MEMORIES_CREATE,
    ManualJobName.BACKUP_DATABASE: JobName.BACKUP_DATABASE,
}


def parse_queue_name(value) -> QueueName:
    try:
        return QueueName(value)
    except ValueError:
        raise InvalidRequestError(f"Invalid queue name: {value}") from None


def as_job_item(dto: JobCreateDto) -> JobItem:
    try:
        manual = ManualJobName(dto.name)
    except ValueError:
        raise InvalidRequestError("Invalid job name") from None
    return JobItem(name=MANUAL_JOBS[manual])


class JobService:
    def __init__(
        self,
        worker_role: WorkerRole,
        backend: QueueBackend,
        dispatcher: JobDispatcher,
        registry: QueueRegistry,
        handlers: JobHandlerRegistry,
        router: CompletionRouter,
        nightly: NightlyScheduler,
        events: EventPublisher,
        config_store: SystemConfigStore,
        worker_pool: Optional[JobWorkerPool] = None,
        handler_modules: Sequence[str] = (),
    ):
        self.worker_role = WorkerRole(worker_role)
        self.backend = backend
        self.dispatcher = dispatcher
        self.registry = registry
        self.handlers = handlers
        self.router = router
        self.nightly = nightly
        self.events = events
        self.config_store = config_store
        self.worker_pool = worker_pool
        self.handler_modules = list(handler_modules)

    def subscribe(self, bus: EventBus) -> None:
        bus.on(ServerEvent.CONFIG_INIT, self.on_config_init)
        bus.on(ServerEvent.CONFIG_UPDATE, self.on_config_update)
        bus.on(ServerEvent.APP_BOOTSTRAP, self.on_bootstrap)

    # --- lifecycle ---

    async def on_config_init(self, event: ConfigEvent) -> None:
        config: SystemConfig = event.new_config
        if self.worker_role == WorkerRole.MICROSERVICES:
            await self._update_queue_concurrency(config)
            return

        self.nightly.start(config)

    async def on_config_update(self, event: ConfigEvent) -> None:
        config: SystemConfig = event.new_config
        if self.worker_role == WorkerRole.MICROSERVICES:
            await self._update_queue_concurrency(config)
            return

        self.nightly.on_config_update(config)

    async def on_bootstrap(self, _event=None) -> None:
        if self.worker_role != WorkerRole.MICROSERVICES:
            return

        self.handlers.load_modules(self.handler_modules)
        self.handlers.load_entry_points()
        if not len(self.handlers):
            logger.warning("No job handlers registered; every job will fail")

        if self.worker_pool is not None:
            await self.worker_pool.start()

    async def _update_queue_concurrency(self, config: SystemConfig) -> None:
        await asyncio.to_thread(self.registry.apply_concurrency, config)
        if self.worker_pool is not None and self.worker_pool.running:
            await self.worker_pool.sync_concurrency()

    # --- commands ---

    async def create(self, dto: JobCreateDto) -> None:
        await self.dispatcher.queue(as_job_item(dto))

    async def handle_command(self, queue_name, dto: JobCommandDto) -> JobStatusDto:
        queue_name = parse_queue_name(queue_name)
        command = getattr(dto.command, "value", dto.command)
        logger.debug(f"Handling command: queue={queue_name.value},command={command},force={dto.force}")

        if dto.command == JobCommand.START:
            await self._start(queue_name, dto)
        elif dto.command == JobCommand.PAUSE:
            await asyncio.to_thread(self.backend.pause, queue_name)
        elif dto.command == JobCommand.RESUME:
            await asyncio.to_thread(self.backend.resume, queue_name)
        elif dto.command == JobCommand.EMPTY:
            await asyncio.to_thread(self.backend.empty, queue_name)
        elif dto.command == JobCommand.CLEAR_FAILED:
            failed_jobs = await asyncio.to_thread(self.backend.clear, queue_name, JobState.FAILED)
            logger.debug(f"Cleared failed jobs: {failed_jobs}")
        else:
            raise InvalidRequestError(f"Invalid command: {command}")

        return await self.get_job_status(queue_name)

    async def _start(self, queue_name: QueueName, dto: JobCommandDto) -> None:
        status = await asyncio.to_thread(self.backend.get_queue_status, queue_name)
        if status.isActive:
            raise ConflictError(queue_name.value)

        seed = SEED_JOBS.get(queue_name)
        if seed is None:
            raise InvalidRequestError(f"Invalid job name: {queue_name.value}")

        telemetry.queue_started.labels(queue=queue_name.value).inc()

        job_name, carries_force = seed
        data = {"force": dto.force} if carries_force else None
        await self.dispatcher.queue(JobItem(name=job_name, data=data))

    # --- status ---

    async def get_job_status(self, queue_name) -> JobStatusDto:
        queue_name = parse_queue_name(queue_name)
        job_counts, queue_status = await asyncio.gather(
            asyncio.to_thread(self.backend.get_job_counts, queue_name),
            asyncio.to_thread(self.backend.get_queue_status, queue_name),
        )
        return JobStatusDto(jobCounts=job_counts, queueStatus=queue_status)

    async def get_all_jobs_status(self) -> Dict[str, JobStatusDto]:
        response = {}
        for queue_name in QueueName:
            response[queue_name.value] = await self.get_job_status(queue_name)
        return response

    # --- job execution ---

    async def on_job_start(self, queue_name: QueueName, item: JobItem) -> JobResult:
        """Run one job, count it, and route its completion.

        Never raises: a handler that raises or returns FAILED becomes a
        FAILED result plus a ``job.failed`` event.
        """
        queue_label = QueueName(queue_name).value
        telemetry.queue_active.labels(queue=queue_label).inc()
        started = time.monotonic()
        try:
            try:
                status = await self.handlers.run(item)
                error = "Handler returned failed" if status == JobStatus.FAILED else None
            except Exception as e:
                status = JobStatus.FAILED
                error = f"{type(e).__name__}: {e}"

            telemetry.jobs_total.labels(job=item.name.value, status=status.value).inc()

            if status == JobStatus.FAILED:
                logger.error(f"Job {item.name.value} failed: {error}")
                await self._emit_failed(item, error)
                return JobResult(
                    status=JobStatus.FAILED,
                    error_message=error,
                    duration_s=time.monotonic() - started,
                )

            try:
                await self.router.on_done(item)
            except Exception:
                logger.exception(f"Failed to queue follow-up jobs for {item.name.value}")

            return JobResult(status=status, duration_s=time.monotonic() - started)

        finally:
            telemetry.queue_active.labels(queue=queue_label).dec()

    async def _emit_failed(self, item: JobItem, error: str) -> None:
        try:
            await self.events.emit(ServerEvent.JOB_FAILED, JobFailedEvent(job=item, error=error))
        except Exception:
            logger.exception(f"Failed to emit job.failed for {item.name.value}")
