"""Tests for queue commands, manual jobs, status and job execution."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from media_jobs import telemetry
from media_jobs.config import SystemConfigStore
from media_jobs.events import JobFailedEvent, ServerEvent
from media_jobs.exceptions import ConflictError, InvalidRequestError
from media_jobs.models import NightlyTasksConfig, QueueConcurrencyConfig, SystemConfig
from media_jobs.queue import (
    JobCommand,
    JobHandlerRegistry,
    JobItem,
    JobName,
    JobStatus,
    QueueName,
    WorkerRole,
)
from media_jobs.queue.models import JobCommandDto, JobCreateDto
from media_jobs.services.job_service import MANUAL_JOBS, SEED_JOBS


def _command(command, force=None):
    return JobCommandDto(command=command, force=force)


@pytest.fixture
def runtime(make_runtime):
    return make_runtime()


class TestStartCommand:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_start_queues_seed_job_with_force(self, runtime):
        status = await runtime.jobs.handle_command(
            QueueName.THUMBNAIL_GENERATION, _command(JobCommand.START, force=True)
        )

        jobs = runtime.backend.get_jobs(QueueName.THUMBNAIL_GENERATION)
        assert jobs == [JobItem(name=JobName.QUEUE_GENERATE_THUMBNAILS, data={"force": True})]
        assert status.jobCounts.waiting == 1

    @pytest.mark.asyncio(loop_scope="function")
    @pytest.mark.parametrize(
        "queue_name, job_name",
        [
            (QueueName.STORAGE_TEMPLATE_MIGRATION, JobName.STORAGE_TEMPLATE_MIGRATION),
            (QueueName.MIGRATION, JobName.QUEUE_MIGRATION),
        ],
    )
    async def test_start_without_force_payload(self, runtime, queue_name, job_name):
        await runtime.jobs.handle_command(queue_name, _command(JobCommand.START, force=True))

        assert runtime.backend.get_jobs(queue_name) == [JobItem(name=job_name)]

    @pytest.mark.asyncio(loop_scope="function")
    async def test_start_library_scans_all(self, runtime):
        await runtime.jobs.handle_command("library", _command(JobCommand.START, force=False))

        assert runtime.backend.get_jobs(QueueName.LIBRARY) == [
            JobItem(name=JobName.LIBRARY_QUEUE_SCAN_ALL, data={"force": False})
        ]

    @pytest.mark.asyncio(loop_scope="function")
    async def test_start_active_queue_conflicts(self, runtime):
        """An active queue rejects start and enqueues nothing."""
        runtime.backend.enqueue(QueueName.SMART_SEARCH, JobItem(name=JobName.SMART_SEARCH))
        runtime.backend.dequeue(QueueName.SMART_SEARCH, "w1")

        with pytest.raises(ConflictError, match="Job is already running"):
            await runtime.jobs.handle_command(QueueName.SMART_SEARCH, _command(JobCommand.START))

        assert len(runtime.backend.get_jobs(QueueName.SMART_SEARCH)) == 1

    @pytest.mark.asyncio(loop_scope="function")
    async def test_start_increments_started_counter(self, runtime):
        def started():
            return telemetry.REGISTRY.get_sample_value(
                "media_jobs_queue_started_total", {"queue": "sidecar"}
            ) or 0.0

        before = started()
        await runtime.jobs.handle_command(QueueName.SIDECAR, _command(JobCommand.START))
        assert started() == before + 1

    @pytest.mark.asyncio(loop_scope="function")
    async def test_start_queue_without_seed_job(self, runtime):
        with pytest.raises(InvalidRequestError):
            await runtime.jobs.handle_command(QueueName.BACKGROUND_TASK, _command(JobCommand.START))

    @pytest.mark.asyncio(loop_scope="function")
    async def test_unknown_queue_name(self, runtime):
        with pytest.raises(InvalidRequestError):
            await runtime.jobs.handle_command("not-a-queue", _command(JobCommand.START))
        with pytest.raises(InvalidRequestError):
            await runtime.jobs.handle_command("not-a-queue", _command(JobCommand.PAUSE))

    def test_seed_table_covers_startable_queues(self):
        assert QueueName.BACKGROUND_TASK not in SEED_JOBS
        assert len(SEED_JOBS) == 12


class TestOtherCommands:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_pause_and_resume(self, runtime):
        status = await runtime.jobs.handle_command(QueueName.SIDECAR, _command(JobCommand.PAUSE))
        assert status.queueStatus.isPaused is True

        status = await runtime.jobs.handle_command(QueueName.SIDECAR, _command(JobCommand.RESUME))
        assert status.queueStatus.isPaused is False

    @pytest.mark.asyncio(loop_scope="function")
    async def test_pause_allowed_while_active(self, runtime):
        runtime.backend.enqueue(QueueName.SIDECAR, JobItem(name=JobName.SIDECAR_SYNC))
        runtime.backend.dequeue(QueueName.SIDECAR, "w1")

        status = await runtime.jobs.handle_command(QueueName.SIDECAR, _command(JobCommand.PAUSE))

        assert status.queueStatus.isActive is True
        assert status.queueStatus.isPaused is True

    @pytest.mark.asyncio(loop_scope="function")
    async def test_empty(self, runtime):
        for i in range(3):
            runtime.backend.enqueue(QueueName.SIDECAR, JobItem(name=JobName.SIDECAR_SYNC, data={"id": i}))

        status = await runtime.jobs.handle_command(QueueName.SIDECAR, _command(JobCommand.EMPTY))

        assert status.jobCounts.waiting == 0

    @pytest.mark.asyncio(loop_scope="function")
    async def test_unhandled_command_variant(self, runtime):
        dto = JobCommandDto.model_construct(command="restart", force=None)

        with pytest.raises(InvalidRequestError, match="Invalid command"):
            await runtime.jobs.handle_command(QueueName.SIDECAR, dto)

    @pytest.mark.asyncio(loop_scope="function")
    async def test_clear_failed(self, runtime):
        runtime.backend.enqueue(QueueName.SIDECAR, JobItem(name=JobName.SIDECAR_SYNC))
        job = runtime.backend.dequeue(QueueName.SIDECAR, "w1")
        runtime.backend.ack(job.id, JobStatus.FAILED, "boom")

        status = await runtime.jobs.handle_command(QueueName.SIDECAR, _command(JobCommand.CLEAR_FAILED))

        assert status.jobCounts.failed == 0


class TestManualJobs:
    @pytest.mark.asyncio(loop_scope="function")
    @pytest.mark.parametrize(
        "manual, job_name",
        [
            ("tag-cleanup", JobName.TAG_CLEANUP),
            ("person-cleanup", JobName.PERSON_CLEANUP),
            ("user-cleanup", JobName.USER_DELETE_CHECK),
            ("memory-cleanup", JobName.MEMORIES_CLEANUP),
            ("memory-create", JobName.MEMORIES_CREATE),
        ],
    )
    async def test_create_maps_manual_name(self, runtime, manual, job_name):
        await runtime.jobs.create(JobCreateDto(name=manual))

        assert runtime.backend.get_jobs(QueueName.BACKGROUND_TASK) == [JobItem(name=job_name)]

    @pytest.mark.asyncio(loop_scope="function")
    async def test_create_backup(self, runtime):
        await runtime.jobs.create(JobCreateDto(name="backup-database"))

        assert runtime.backend.get_jobs(QueueName.BACKUP_DATABASE) == [
            JobItem(name=JobName.BACKUP_DATABASE)
        ]

    @pytest.mark.asyncio(loop_scope="function")
    async def test_create_unknown_name(self, runtime):
        with pytest.raises(InvalidRequestError, match="Invalid job name"):
            await runtime.jobs.create(JobCreateDto(name="reindex-everything"))

    def test_every_manual_name_is_mapped(self):
        from media_jobs.queue import ManualJobName

        assert set(MANUAL_JOBS) == set(ManualJobName)


class TestStatus:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_all_jobs_status_in_queue_order(self, runtime):
        statuses = await runtime.jobs.get_all_jobs_status()
        assert list(statuses) == [q.value for q in QueueName]

    @pytest.mark.asyncio(loop_scope="function")
    async def test_status_propagates_engine_failure(self, runtime, monkeypatch):
        def broken(queue_name):
            raise RuntimeError("engine down")

        monkeypatch.setattr(runtime.backend, "get_job_counts", broken)

        with pytest.raises(RuntimeError, match="engine down"):
            await runtime.jobs.get_all_jobs_status()


class TestOnJobStart:
    @pytest.fixture
    def handlers(self):
        return JobHandlerRegistry()

    @pytest.fixture
    def runtime(self, make_runtime, handlers):
        return make_runtime(handlers=handlers)

    @pytest.mark.asyncio(loop_scope="function")
    async def test_success_routes_completion(self, runtime, handlers):
        handlers.add(JobName.SIDECAR_SYNC, lambda data: None)

        result = await runtime.jobs.on_job_start(
            QueueName.SIDECAR, JobItem(name=JobName.SIDECAR_SYNC, data={"id": "a"})
        )

        assert result.status == JobStatus.SUCCESS
        assert runtime.backend.get_jobs(QueueName.METADATA_EXTRACTION) == [
            JobItem(name=JobName.METADATA_EXTRACTION, data={"id": "a"})
        ]

    @pytest.mark.asyncio(loop_scope="function")
    async def test_skipped_also_routes_completion(self, runtime, handlers):
        async def skip(data):
            return JobStatus.SKIPPED

        handlers.add(JobName.SIDECAR_DISCOVERY, skip)

        result = await runtime.jobs.on_job_start(
            QueueName.SIDECAR, JobItem(name=JobName.SIDECAR_DISCOVERY, data={"id": "a"})
        )

        assert result.status == JobStatus.SKIPPED
        assert len(runtime.backend.get_jobs(QueueName.METADATA_EXTRACTION)) == 1

    @pytest.mark.asyncio(loop_scope="function")
    async def test_failure_emits_job_failed(self, runtime, handlers):
        """A raising handler never reaches the router."""
        failures = []
        runtime.events.on(ServerEvent.JOB_FAILED, failures.append)

        def explode(data):
            raise OSError("disk gone")

        handlers.add(JobName.SIDECAR_SYNC, explode)
        item = JobItem(name=JobName.SIDECAR_SYNC, data={"id": "a"})

        result = await runtime.jobs.on_job_start(QueueName.SIDECAR, item)

        assert result.status == JobStatus.FAILED
        assert "disk gone" in result.error_message
        assert runtime.backend.get_jobs(QueueName.METADATA_EXTRACTION) == []
        assert len(failures) == 1
        assert isinstance(failures[0], JobFailedEvent)
        assert failures[0].job == item

    @pytest.mark.asyncio(loop_scope="function")
    async def test_returned_failure_emits_job_failed(self, runtime, handlers):
        """A handler may report failure without raising."""
        failures = []
        runtime.events.on(ServerEvent.JOB_FAILED, failures.append)

        async def give_up(data):
            return JobStatus.FAILED

        handlers.add(JobName.SIDECAR_SYNC, give_up)
        item = JobItem(name=JobName.SIDECAR_SYNC, data={"id": "a"})

        result = await runtime.jobs.on_job_start(QueueName.SIDECAR, item)

        assert result.status == JobStatus.FAILED
        assert result.error_message == "Handler returned failed"
        assert runtime.backend.get_jobs(QueueName.METADATA_EXTRACTION) == []
        assert len(failures) == 1
        assert failures[0].job == item
        assert failures[0].error == "Handler returned failed"

    @pytest.mark.asyncio(loop_scope="function")
    async def test_missing_handler_fails_job(self, runtime):
        result = await runtime.jobs.on_job_start(
            QueueName.BACKGROUND_TASK, JobItem(name=JobName.TAG_CLEANUP)
        )

        assert result.status == JobStatus.FAILED
        assert "No handler registered" in result.error_message

    @pytest.mark.asyncio(loop_scope="function")
    async def test_chain_failure_keeps_job_successful(self, runtime, handlers, monkeypatch):
        handlers.add(JobName.SIDECAR_SYNC, lambda data: None)

        async def broken_queue(item):
            raise RuntimeError("engine down")

        monkeypatch.setattr(runtime.dispatcher, "queue", broken_queue)
        failures = []
        runtime.events.on(ServerEvent.JOB_FAILED, failures.append)

        result = await runtime.jobs.on_job_start(
            QueueName.SIDECAR, JobItem(name=JobName.SIDECAR_SYNC, data={"id": "a"})
        )

        assert result.status == JobStatus.SUCCESS
        assert failures == []

    @pytest.mark.asyncio(loop_scope="function")
    async def test_metrics_recorded(self, runtime, handlers):
        handlers.add(JobName.TAG_CLEANUP, lambda data: None)

        def finished():
            return telemetry.REGISTRY.get_sample_value(
                "media_jobs_jobs_total", {"job": "tag-cleanup", "status": "success"}
            ) or 0.0

        before = finished()
        await runtime.jobs.on_job_start(QueueName.BACKGROUND_TASK, JobItem(name=JobName.TAG_CLEANUP))

        assert finished() == before + 1
        active = telemetry.REGISTRY.get_sample_value(
            "media_jobs_queue_active", {"queue": "background-task"}
        )
        assert active == 0.0


class TestLifecycle:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_microservices_applies_concurrency_on_init(self, make_runtime):
        runtime = make_runtime(worker_role=WorkerRole.MICROSERVICES)

        await runtime.start()
        try:
            assert runtime.backend.get_concurrency(QueueName.THUMBNAIL_GENERATION) == 3
            assert runtime.backend.get_concurrency(QueueName.FACIAL_RECOGNITION) == 1
            assert runtime.worker_pool.consumer_count(QueueName.METADATA_EXTRACTION) == 5
            assert runtime.nightly.holds_lock is False
        finally:
            await runtime.stop()

    @pytest.mark.asyncio(loop_scope="function")
    async def test_config_update_resizes_pool(self, make_runtime):
        runtime = make_runtime(worker_role=WorkerRole.MICROSERVICES)
        await runtime.start()
        try:
            config = SystemConfig()
            config.job["library"] = QueueConcurrencyConfig(concurrency=2)

            await runtime.update_config(config)

            assert runtime.backend.get_concurrency(QueueName.LIBRARY) == 2
            # Extra consumers exit at their next poll
            for _ in range(50):
                if runtime.worker_pool.consumer_count(QueueName.LIBRARY) == 2:
                    break
                await asyncio.sleep(0.02)
            assert runtime.worker_pool.consumer_count(QueueName.LIBRARY) == 2
        finally:
            await runtime.stop()

    @pytest.mark.asyncio(loop_scope="function")
    async def test_api_role_does_not_start_consumers(self, make_runtime):
        runtime = make_runtime(worker_role=WorkerRole.API)
        await runtime.start()
        try:
            assert runtime.worker_pool is None
            assert runtime.nightly.holds_lock is True
        finally:
            await runtime.stop()

    @pytest.mark.asyncio(loop_scope="function")
    async def test_worker_start_recovers_abandoned_job(self, make_runtime):
        """A job left active by a dead worker no longer blocks start."""
        runtime = make_runtime(worker_role=WorkerRole.MICROSERVICES)
        runtime.backend.pause(QueueName.LIBRARY)
        runtime.backend.enqueue(QueueName.LIBRARY, JobItem(name=JobName.LIBRARY_SYNC_FILES))
        job = runtime.backend.dequeue(QueueName.LIBRARY, "dead-worker")
        old = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
        with runtime.backend._transaction() as conn:
            conn.execute("UPDATE jobs SET heartbeat_at = ? WHERE id = ?", (old, job.id))

        await runtime.start()
        try:
            status = await runtime.jobs.handle_command(QueueName.LIBRARY, _command(JobCommand.START))

            assert status.queueStatus.isActive is False
            assert status.jobCounts.paused == 2
        finally:
            await runtime.stop()

    @pytest.mark.asyncio(loop_scope="function")
    async def test_bootstrap_loads_handler_modules(self, make_runtime, handler_module):
        runtime = make_runtime(
            worker_role=WorkerRole.MICROSERVICES, handler_modules=[handler_module]
        )

        await runtime.start()
        try:
            assert runtime.handlers.has(JobName.TAG_CLEANUP)
        finally:
            await runtime.stop()

    @pytest.mark.asyncio(loop_scope="function")
    async def test_api_role_skips_handler_modules(self, make_runtime, handler_module):
        runtime = make_runtime(worker_role=WorkerRole.API, handler_modules=[handler_module])

        await runtime.start()
        try:
            assert len(runtime.handlers) == 0
        finally:
            await runtime.stop()

    @pytest.mark.asyncio(loop_scope="function")
    async def test_config_update_reaches_other_process(self, make_runtime):
        """An api process saves the config; a worker process picks it up."""
        api = make_runtime(worker_role=WorkerRole.API)
        worker = make_runtime(
            worker_role=WorkerRole.MICROSERVICES, store=SystemConfigStore(initial=SystemConfig())
        )
        await api.start()
        await worker.start()
        try:
            config = SystemConfig()
            config.job["library"] = QueueConcurrencyConfig(concurrency=3)
            await api.update_config(config)

            assert await worker.poll_config() is True
            assert worker.config_store.get().job["library"].concurrency == 3
            assert worker.backend.get_concurrency(QueueName.LIBRARY) == 3
            assert await worker.poll_config() is False
        finally:
            await worker.stop()
            await api.stop()

    @pytest.mark.asyncio(loop_scope="function")
    async def test_restarted_process_starts_from_shared_config(self, make_runtime):
        api = make_runtime(worker_role=WorkerRole.API)
        await api.start()
        await api.update_config(SystemConfig(nightly_tasks=NightlyTasksConfig(start_time="04:45")))
        await api.stop()

        restarted = make_runtime(
            worker_role=WorkerRole.API, store=SystemConfigStore(initial=SystemConfig())
        )
        await restarted.start()
        try:
            assert restarted.config_store.get().nightly_tasks.start_time == "04:45"
            assert restarted.cron.expression_of("nightly-jobs") == "45 4 * * *"
        finally:
            await restarted.stop()
