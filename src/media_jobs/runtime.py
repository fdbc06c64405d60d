"""Process wiring: builds every collaborator from ``Settings`` and drives the
lifecycle events in order.

Config changes reach every process through the versioned config row on the
shared queue file: the process that takes the change saves it, the others
notice the new version on their next poll and emit ``config.update`` locally.

Tests pass in-memory locks and cron backends; production gets the SQLite
lock table and APScheduler.
"""

import asyncio
from typing import Optional

from loguru import logger
from pydantic import ValidationError
from sqlalchemy.engine import Engine

from media_jobs.config import SystemConfigStore
from media_jobs.events import ConfigEvent, EventBus, ServerEvent
from media_jobs.models import Settings, SystemConfig
from media_jobs.queue.backends import CronBackend, LockBackend, QueueBackend
from media_jobs.queue.cron import APSchedulerCron
from media_jobs.queue.dispatcher import JobDispatcher
from media_jobs.queue.handlers import JobHandlerRegistry
from media_jobs.queue.models import WorkerRole
from media_jobs.queue.registry import QueueRegistry
from media_jobs.queue.sqlite_backend import SQLiteConfigTable, SQLiteLock, SQLiteQueue
from media_jobs.queue.worker import JobWorkerPool
from media_jobs.repositories import (
    AssetRepository,
    PersonRepository,
    TrashRepository,
    create_tables,
    get_engine,
)
from media_jobs.services.completion import CompletionRouter
from media_jobs.services.job_service import JobService
from media_jobs.services.nightly import NightlyScheduler


class JobsRuntime:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        config_store: Optional[SystemConfigStore] = None,
        backend: Optional[QueueBackend] = None,
        lock: Optional[LockBackend] = None,
        cron: Optional[CronBackend] = None,
        engine: Optional[Engine] = None,
        handlers: Optional[JobHandlerRegistry] = None,
        shared_config: Optional[SQLiteConfigTable] = None,
    ):
        self.settings = settings or Settings.from_env()
        self.config_store = config_store or SystemConfigStore()
        self.backend = backend or SQLiteQueue(self.settings.queue_db_path)
        self.lock = lock or SQLiteLock(self.settings.queue_db_path)
        self.cron = cron or APSchedulerCron(timezone=self.settings.cron_timezone)
        self.shared_config = shared_config or SQLiteConfigTable(self.settings.queue_db_path)
        self.engine = engine or get_engine(self.settings.database_url)
        create_tables(self.engine)

        self.events = EventBus()
        self.handlers = handlers if handlers is not None else JobHandlerRegistry()
        self.dispatcher = JobDispatcher(self.backend)
        self.registry = QueueRegistry(self.backend)
        self.trash = TrashRepository(self.engine)
        self.router = CompletionRouter(
            self.dispatcher,
            self.events,
            AssetRepository(self.engine),
            PersonRepository(self.engine),
        )
        self.nightly = NightlyScheduler(self.lock, self.cron, self.dispatcher, self.config_store)

        self.worker_pool = None
        if self.settings.worker_role == WorkerRole.MICROSERVICES:
            self.worker_pool = JobWorkerPool(
                self.backend,
                runner=lambda queue_name, item: self.jobs.on_job_start(queue_name, item),
                poll_interval_s=self.settings.poll_interval_s,
            )

        self.jobs = JobService(
            worker_role=self.settings.worker_role,
            backend=self.backend,
            dispatcher=self.dispatcher,
            registry=self.registry,
            handlers=self.handlers,
            router=self.router,
            nightly=self.nightly,
            events=self.events,
            config_store=self.config_store,
            worker_pool=self.worker_pool,
            handler_modules=self.settings.handler_modules,
        )
        self.jobs.subscribe(self.events)

        self._config_version = 0
        self._config_watch: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Emit ``config.init`` then ``app.bootstrap`` and start watching config."""
        logger.info(f"Starting media-jobs ({self.settings.worker_role.value})")
        await self._load_shared_config()
        config = self.config_store.get()
        await self.events.emit(ServerEvent.CONFIG_INIT, ConfigEvent(new_config=config))
        await self.events.emit(ServerEvent.APP_BOOTSTRAP)
        self._config_watch = asyncio.create_task(self._watch_config(), name="config-watch")

    async def update_config(self, config: SystemConfig) -> SystemConfig:
        """Store a new config, publish it to other processes and notify listeners."""
        old_config = self.config_store.get()
        self.config_store.set(config)
        self._config_version = await asyncio.to_thread(
            self.shared_config.save, config.model_dump(mode="json")
        )
        await self.events.emit(
            ServerEvent.CONFIG_UPDATE, ConfigEvent(new_config=config, old_config=old_config)
        )
        return config

    async def poll_config(self) -> bool:
        """Apply a config saved by another process. Returns True if it changed."""
        version = await asyncio.to_thread(self.shared_config.version)
        if version == self._config_version:
            return False

        old_config = self.config_store.get()
        if not await self._load_shared_config():
            return False
        logger.info(f"Config version {self._config_version} picked up from the shared store")
        await self.events.emit(
            ServerEvent.CONFIG_UPDATE,
            ConfigEvent(new_config=self.config_store.get(), old_config=old_config),
        )
        return True

    async def _load_shared_config(self) -> bool:
        stored = await asyncio.to_thread(self.shared_config.load)
        if stored is None:
            return False
        version, data = stored
        self._config_version = version
        try:
            config = SystemConfig.from_dict(data)
        except ValidationError as e:
            logger.error(f"Ignoring invalid shared config version {version}: {e}")
            return False
        self.config_store.set(config)
        return True

    async def _watch_config(self) -> None:
        while True:
            await asyncio.sleep(self.settings.config_poll_interval_s)
            try:
                await self.poll_config()
            except Exception:
                logger.exception("Config poll failed")

    async def stop(self) -> None:
        if self._config_watch is not None:
            self._config_watch.cancel()
            await asyncio.gather(self._config_watch, return_exceptions=True)
            self._config_watch = None
        await self.events.emit(ServerEvent.APP_SHUTDOWN)
        if self.worker_pool is not None:
            await self.worker_pool.shutdown()
        self.nightly.stop()
        if isinstance(self.cron, APSchedulerCron):
            self.cron.shutdown()
        for resource in (self.lock, self.backend, self.shared_config):
            close = getattr(resource, "close", None)
            if close is not None:
                close()
        self.engine.dispose()
        logger.info("media-jobs stopped")
