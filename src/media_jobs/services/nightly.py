"""Fleet-wide singleton scheduling of the nightly maintenance batch.

Every ``api`` process calls ``start`` once at config init. The first one to
take the ``nightly-jobs`` lock registers the cron job; the others stay idle
for their lifetime. There is no retry: if the leader dies, no process
schedules the batch until one is restarted and wins the lock.
"""

from typing import List

from loguru import logger

from media_jobs.config import SystemConfigStore
from media_jobs.models import SystemConfig
from media_jobs.queue.backends import CronBackend, LockBackend
from media_jobs.queue.dispatcher import JobDispatcher
from media_jobs.queue.models import CronJob, DatabaseLock, JobItem, JobName

DATABASE_CLEANUP_JOBS = (
    JobName.ASSET_DELETION_CHECK,
    JobName.USER_DELETE_CHECK,
    JobName.PERSON_CLEANUP,
    JobName.MEMORIES_CLEANUP,
    JobName.CLEAN_OLD_SESSION_TOKENS,
    JobName.CLEAN_OLD_AUDIT_LOGS,
)


def nightly_cron_expression(config: SystemConfig) -> str:
    """``HH:MM`` start time as a daily cron expression ("M H * * *")."""
    hours, minutes = (int(part) for part in config.nightly_tasks.start_time.split(":"))
    return f"{minutes} {hours} * * *"


def build_nightly_jobs(config: SystemConfig) -> List[JobItem]:
    tasks = config.nightly_tasks
    jobs: List[JobItem] = []

    if tasks.database_cleanup:
        jobs.extend(JobItem(name=name) for name in DATABASE_CLEANUP_JOBS)

    if tasks.generate_memories:
        jobs.append(JobItem(name=JobName.MEMORIES_CREATE))

    if tasks.sync_quota_usage:
        jobs.append(JobItem(name=JobName.USER_SYNC_USAGE))

    if tasks.missing_thumbnails:
        jobs.append(JobItem(name=JobName.QUEUE_GENERATE_THUMBNAILS, data={"force": False}))

    if tasks.cluster_new_faces:
        jobs.append(
            JobItem(name=JobName.QUEUE_FACIAL_RECOGNITION, data={"force": False, "nightly": True})
        )

    return jobs


class NightlyScheduler:
    def __init__(
        self,
        lock: LockBackend,
        cron: CronBackend,
        dispatcher: JobDispatcher,
        config_store: SystemConfigStore,
    ):
        self.lock = lock
        self.cron = cron
        self.dispatcher = dispatcher
        self.config_store = config_store
        self.holds_lock = False

    def start(self, config: SystemConfig) -> bool:
        """Try the nightly lock once; on success register the cron job."""
        if self.holds_lock:
            return True

        self.holds_lock = self.lock.try_acquire(DatabaseLock.NIGHTLY_JOBS.value)
        if not self.holds_lock:
            logger.debug("Nightly jobs lock held by another process, not scheduling")
            return False

        expression = nightly_cron_expression(config)
        logger.debug(f"Scheduling nightly jobs for {expression}")
        self.cron.create(CronJob.NIGHTLY_JOBS.value, expression, self._on_tick, start=True)
        return True

    def on_config_update(self, config: SystemConfig) -> None:
        if not self.holds_lock:
            return

        expression = nightly_cron_expression(config)
        logger.debug(f"Scheduling nightly jobs for {expression}")
        self.cron.update(CronJob.NIGHTLY_JOBS.value, expression, start=True)

    def stop(self) -> None:
        if not self.holds_lock:
            return
        self.cron.delete(CronJob.NIGHTLY_JOBS.value)
        self.lock.release(DatabaseLock.NIGHTLY_JOBS.value)
        self.holds_lock = False

    async def handle_nightly_jobs(self) -> List[JobItem]:
        config = self.config_store.get(with_cache=False)
        jobs = build_nightly_jobs(config)
        await self.dispatcher.queue_all(jobs)
        logger.info(f"Queued {len(jobs)} nightly jobs")
        return jobs

    async def _on_tick(self) -> None:
        try:
            await self.handle_nightly_jobs()
        except Exception:
            logger.exception("Nightly jobs run failed")
