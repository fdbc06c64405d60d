"""Pydantic models for configuration and data validation."""

import os
import re
from typing import Any, Dict, List

from pydantic import BaseModel, Field, field_validator

from media_jobs.queue.models import QueueName, WorkerRole

_START_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")

DEFAULT_QUEUE_CONCURRENCY: Dict[str, int] = {
    QueueName.THUMBNAIL_GENERATION.value: 3,
    QueueName.METADATA_EXTRACTION.value: 5,
    QueueName.VIDEO_CONVERSION.value: 1,
    QueueName.FACE_DETECTION.value: 2,
    QueueName.SMART_SEARCH.value: 2,
    QueueName.BACKGROUND_TASK.value: 5,
    QueueName.SEARCH.value: 5,
    QueueName.SIDECAR.value: 5,
    QueueName.LIBRARY.value: 5,
    QueueName.MIGRATION.value: 5,
    QueueName.NOTIFICATIONS.value: 5,
}


class NightlyTasksConfig(BaseModel):
    """Nightly maintenance batch toggles."""

    start_time: str = Field(default="00:00", description="Local time the batch runs, HH:MM")
    database_cleanup: bool = Field(
        default=True, description="Asset/user/person/memory/session/audit cleanup jobs"
    )
    generate_memories: bool = Field(default=True, description="Create 'on this day' memories")
    sync_quota_usage: bool = Field(default=True, description="Recompute per-user storage usage")
    missing_thumbnails: bool = Field(
        default=True, description="Backfill thumbnails for assets that have none"
    )
    cluster_new_faces: bool = Field(
        default=True, description="Run facial recognition over unassigned faces"
    )

    @field_validator("start_time")
    @classmethod
    def validate_start_time(cls, v: str) -> str:
        if not _START_TIME_RE.match(v):
            raise ValueError(f"start_time must be HH:MM, got {v!r}")
        return v


class QueueConcurrencyConfig(BaseModel):
    """Worker pool size for one concurrent queue."""

    concurrency: int = Field(default=1, ge=1, description="Jobs run in parallel per process")


class SystemConfig(BaseModel):
    """The nightly/job subset of the system configuration."""

    nightly_tasks: NightlyTasksConfig = Field(default_factory=NightlyTasksConfig)
    job: Dict[str, QueueConcurrencyConfig] = Field(
        default_factory=lambda: {
            name: QueueConcurrencyConfig(concurrency=n)
            for name, n in DEFAULT_QUEUE_CONCURRENCY.items()
        },
        description="Per-queue concurrency, keyed by queue name",
    )

    @field_validator("job")
    @classmethod
    def validate_queue_names(
        cls, v: Dict[str, QueueConcurrencyConfig]
    ) -> Dict[str, QueueConcurrencyConfig]:
        known = {q.value for q in QueueName}
        unknown = sorted(set(v) - known)
        if unknown:
            raise ValueError(f"Unknown queue name(s) in job config: {', '.join(unknown)}")
        return v

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SystemConfig":
        """Create config from dictionary (e.g., loaded from YAML).

        Queue entries given in ``job`` are layered over the defaults, so a
        YAML file only needs to list the queues it changes.
        """
        data = dict(data)
        if "job" in data:
            job = {
                name: {"concurrency": n} for name, n in DEFAULT_QUEUE_CONCURRENCY.items()
            }
            job.update(data["job"] or {})
            data["job"] = job
        return cls(**data)


class Settings(BaseModel):
    """Process settings read from the environment."""

    worker_role: WorkerRole = Field(default=WorkerRole.API, description="Execution role")
    database_url: str = Field(default="sqlite:///./media_jobs.db", description="Asset database")
    queue_db_path: str = Field(default="queue.db", description="Queue engine SQLite file")
    log_level: str = Field(default="INFO", description="Minimum log level")
    poll_interval_s: float = Field(default=1.0, gt=0.0, description="Idle consumer poll delay")
    cron_timezone: str = Field(default="UTC", description="Timezone for cron expressions")
    handler_modules: List[str] = Field(
        default_factory=list, description="Modules exposing register_handlers(registry)"
    )
    config_poll_interval_s: float = Field(
        default=5.0, gt=0.0, description="How often workers check the shared config version"
    )

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            worker_role=os.getenv("MEDIA_JOBS_WORKER", WorkerRole.API.value),
            database_url=os.getenv("DATABASE_URL", "sqlite:///./media_jobs.db"),
            queue_db_path=os.getenv("MEDIA_JOBS_QUEUE_DB", "queue.db"),
            log_level=os.getenv("MEDIA_JOBS_LOG_LEVEL", "INFO"),
            poll_interval_s=float(os.getenv("MEDIA_JOBS_POLL_INTERVAL", "1.0")),
            cron_timezone=os.getenv("MEDIA_JOBS_CRON_TZ", "UTC"),
            handler_modules=parse_module_list(os.getenv("MEDIA_JOBS_HANDLERS", "")),
            config_poll_interval_s=float(os.getenv("MEDIA_JOBS_CONFIG_POLL_INTERVAL", "5.0")),
        )


def parse_module_list(value: str) -> List[str]:
    """Split a comma-separated module list, dropping blanks."""
    return [name.strip() for name in value.split(",") if name.strip()]
