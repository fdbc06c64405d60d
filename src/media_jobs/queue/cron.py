"""APScheduler-backed cron jobs.

Jobs fire on the asyncio loop that was running when the first job was
registered; async callbacks are awaited there, sync ones run in the default
executor.
"""

import asyncio
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger

from .backends import CronBackend, CronCallback


class APSchedulerCron(CronBackend):
    def __init__(self, timezone: str = "UTC", misfire_grace_s: int = 300):
        self.timezone = timezone
        self.misfire_grace_s = misfire_grace_s
        self._aps: Optional[AsyncIOScheduler] = None

    def _scheduler(self) -> AsyncIOScheduler:
        if self._aps is None:
            self._aps = AsyncIOScheduler(
                timezone=self.timezone, event_loop=asyncio.get_running_loop()
            )
            self._aps.start()
            logger.info("Cron scheduler started")
        return self._aps

    def _trigger(self, expression: str) -> CronTrigger:
        return CronTrigger.from_crontab(expression, timezone=self.timezone)

    def create(self, name: str, expression: str, on_tick: CronCallback, start: bool = True) -> None:
        """Register ``on_tick`` under ``name``, replacing any job of that name.

        Must be called from within a running event loop the first time.
        """
        aps = self._scheduler()
        job = aps.add_job(
            on_tick,
            trigger=self._trigger(expression),
            id=name,
            name=name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self.misfire_grace_s,
        )
        if not start:
            job.pause()
        logger.debug(f"Cron job {name} registered for '{expression}'")

    def update(self, name: str, expression: str, start: bool = True) -> None:
        if self._aps is None:
            raise KeyError(f"No cron job named {name}")

        job = self._aps.reschedule_job(name, trigger=self._trigger(expression))
        if start:
            job.resume()
        else:
            job.pause()
        logger.debug(f"Cron job {name} rescheduled for '{expression}'")

    def delete(self, name: str) -> None:
        if self._aps is not None and self._aps.get_job(name) is not None:
            self._aps.remove_job(name)

    def next_fire_time(self, name: str):
        if self._aps is None:
            return None
        job = self._aps.get_job(name)
        return job.next_run_time if job else None

    def shutdown(self) -> None:
        if self._aps is not None:
            self._aps.shutdown(wait=False)
            self._aps = None
