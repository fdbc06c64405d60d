"""Pydantic models for job queue data structures.

This module defines the names, states and payload types used throughout the
queue system. Enums are ``str`` based so that they compare equal to their
wire values and serialize without conversion.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class QueueName(str, Enum):
    """Named queues, in the order status reports visit them."""

    THUMBNAIL_GENERATION = "thumbnail-generation"
    METADATA_EXTRACTION = "metadata-extraction"
    VIDEO_CONVERSION = "video-conversion"
    FACE_DETECTION = "face-detection"
    FACIAL_RECOGNITION = "facial-recognition"
    SMART_SEARCH = "smart-search"
    DUPLICATE_DETECTION = "duplicate-detection"
    BACKGROUND_TASK = "background-task"
    STORAGE_TEMPLATE_MIGRATION = "storage-template-migration"
    MIGRATION = "migration"
    SEARCH = "search"
    SIDECAR = "sidecar"
    LIBRARY = "library"
    NOTIFICATIONS = "notifications"
    BACKUP_DATABASE = "backup-database"


class JobName(str, Enum):
    """Every unit of work the engine can carry."""

    # thumbnails
    QUEUE_GENERATE_THUMBNAILS = "queue-generate-thumbnails"
    GENERATE_THUMBNAILS = "generate-thumbnails"
    GENERATE_PERSON_THUMBNAIL = "generate-person-thumbnail"

    # metadata
    QUEUE_METADATA_EXTRACTION = "queue-metadata-extraction"
    METADATA_EXTRACTION = "metadata-extraction"

    # video
    QUEUE_VIDEO_CONVERSION = "queue-video-conversion"
    VIDEO_CONVERSION = "video-conversion"

    # faces
    QUEUE_FACE_DETECTION = "queue-face-detection"
    FACE_DETECTION = "face-detection"
    QUEUE_FACIAL_RECOGNITION = "queue-facial-recognition"
    FACIAL_RECOGNITION = "facial-recognition"

    # machine learning search
    QUEUE_SMART_SEARCH = "queue-smart-search"
    SMART_SEARCH = "smart-search"
    QUEUE_DUPLICATE_DETECTION = "queue-duplicate-detection"
    DUPLICATE_DETECTION = "duplicate-detection"

    # storage layout
    STORAGE_TEMPLATE_MIGRATION = "storage-template-migration"
    STORAGE_TEMPLATE_MIGRATION_SINGLE = "storage-template-migration-single"
    QUEUE_MIGRATION = "queue-migration"
    MIGRATE_ASSET = "migrate-asset"
    MIGRATE_PERSON = "migrate-person"

    # sidecar files
    QUEUE_SIDECAR = "queue-sidecar"
    SIDECAR_DISCOVERY = "sidecar-discovery"
    SIDECAR_SYNC = "sidecar-sync"
    SIDECAR_WRITE = "sidecar-write"

    # external libraries
    LIBRARY_QUEUE_SCAN_ALL = "library-queue-scan-all"
    LIBRARY_SYNC_FILES = "library-sync-files"
    LIBRARY_SYNC_ASSETS = "library-sync-assets"

    # search index
    QUEUE_SEARCH_REINDEX = "queue-search-reindex"

    # notifications
    NOTIFY_SIGNUP = "notify-signup"
    SEND_EMAIL = "notification-send-email"

    # maintenance
    ASSET_DELETION = "asset-deletion"
    ASSET_DELETION_CHECK = "asset-deletion-check"
    USER_DELETE_CHECK = "user-delete-check"
    USER_DELETION = "user-deletion"
    USER_SYNC_USAGE = "user-sync-usage"
    PERSON_CLEANUP = "person-cleanup"
    TAG_CLEANUP = "tag-cleanup"
    MEMORIES_CLEANUP = "memories-cleanup"
    MEMORIES_CREATE = "memories-create"
    CLEAN_OLD_SESSION_TOKENS = "clean-old-session-tokens"
    CLEAN_OLD_AUDIT_LOGS = "clean-old-audit-logs"
    BACKUP_DATABASE = "backup-database"


class ManualJobName(str, Enum):
    """Jobs an administrator may trigger directly."""

    TAG_CLEANUP = "tag-cleanup"
    PERSON_CLEANUP = "person-cleanup"
    USER_CLEANUP = "user-cleanup"
    MEMORY_CLEANUP = "memory-cleanup"
    MEMORY_CREATE = "memory-create"
    BACKUP_DATABASE = "backup-database"


class JobCommand(str, Enum):
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    EMPTY = "empty"
    CLEAR_FAILED = "clear-failed"


class JobStatus(str, Enum):
    """Terminal outcome of one handler run.

    SUCCESS and SKIPPED trigger follow-up jobs; FAILED raises ``job.failed``.
    """

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class JobState(str, Enum):
    """Row state inside the queue engine.

    State transitions:
        waiting → active      (consumer dequeues)
        active → completed    (handler returned success/skipped)
        active → failed       (handler failed)
        waiting → (removed)   (queue emptied)
        failed → (removed)    (clear-failed)

    ``paused`` is reported, never stored: it is the waiting count of a
    paused queue.
    """

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"
    PAUSED = "paused"


class DatabaseLock(str, Enum):
    NIGHTLY_JOBS = "nightly-jobs"


class CronJob(str, Enum):
    NIGHTLY_JOBS = "nightly-jobs"


class WorkerRole(str, Enum):
    """Execution role of a process.

    ``api`` processes own cron scheduling; ``microservices`` processes run
    queue consumers.
    """

    API = "api"
    MICROSERVICES = "microservices"


class JobItem(BaseModel):
    """Immutable job description.

    ``name`` selects both the target queue and the handler; ``data`` is an
    opaque, job-specific payload (asset id, ``force`` flag, ``source`` tag).
    """

    model_config = ConfigDict(frozen=True)

    name: JobName = Field(..., description="Job to run")
    data: Optional[Dict[str, Any]] = Field(default=None, description="Job-specific payload")


class QueuedJob(BaseModel):
    """A job row claimed from the engine by a consumer."""

    id: int = Field(..., description="Engine row id (insertion order)")
    queue_name: QueueName = Field(..., description="Queue the row belongs to")
    item: JobItem = Field(..., description="The job itself")
    worker_id: Optional[str] = Field(default=None, description="Consumer that claimed the row")
    started_at: Optional[datetime] = Field(default=None, description="Claim time")


class JobResult(BaseModel):
    """Outcome returned by ``JobService.on_job_start`` to the worker pool."""

    status: JobStatus = Field(..., description="Terminal status")
    error_message: Optional[str] = Field(default=None, description="Error details if failed")
    duration_s: float = Field(default=0.0, ge=0.0, description="Handler run time in seconds")


class JobCounts(BaseModel):
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    waiting: int = 0
    paused: int = 0


class QueueStatus(BaseModel):
    isActive: bool = False  # noqa: N815
    isPaused: bool = False  # noqa: N815


class JobStatusDto(BaseModel):
    jobCounts: JobCounts  # noqa: N815
    queueStatus: QueueStatus  # noqa: N815


class JobCommandDto(BaseModel):
    command: JobCommand
    force: Optional[bool] = None


class JobCreateDto(BaseModel):
    # Validated against ManualJobName by JobService.create
    name: str
