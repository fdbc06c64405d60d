"""Static queue layout and per-queue concurrency policy.

Every job name belongs to exactly one queue. Queues whose handlers are not
safe to run beside themselves are pinned to a single consumer.
"""

from typing import TYPE_CHECKING, Dict, FrozenSet

from loguru import logger

from .backends import QueueBackend
from .models import JobName, QueueName

if TYPE_CHECKING:
    from media_jobs.models import SystemConfig


NON_CONCURRENT_QUEUES: FrozenSet[QueueName] = frozenset(
    {
        QueueName.FACIAL_RECOGNITION,
        QueueName.STORAGE_TEMPLATE_MIGRATION,
        QueueName.DUPLICATE_DETECTION,
        QueueName.BACKUP_DATABASE,
    }
)

JOBS_TO_QUEUE: Dict[JobName, QueueName] = {
    # thumbnails
    JobName.QUEUE_GENERATE_THUMBNAILS: QueueName.THUMBNAIL_GENERATION,
    JobName.GENERATE_THUMBNAILS: QueueName.THUMBNAIL_GENERATION,
    JobName.GENERATE_PERSON_THUMBNAIL: QueueName.THUMBNAIL_GENERATION,
    # metadata
    JobName.QUEUE_METADATA_EXTRACTION: QueueName.METADATA_EXTRACTION,
    JobName.METADATA_EXTRACTION: QueueName.METADATA_EXTRACTION,
    # video
    JobName.QUEUE_VIDEO_CONVERSION: QueueName.VIDEO_CONVERSION,
    JobName.VIDEO_CONVERSION: QueueName.VIDEO_CONVERSION,
    # faces
    JobName.QUEUE_FACE_DETECTION: QueueName.FACE_DETECTION,
    JobName.FACE_DETECTION: QueueName.FACE_DETECTION,
    JobName.QUEUE_FACIAL_RECOGNITION: QueueName.FACIAL_RECOGNITION,
    JobName.FACIAL_RECOGNITION: QueueName.FACIAL_RECOGNITION,
    # machine learning search
    JobName.QUEUE_SMART_SEARCH: QueueName.SMART_SEARCH,
    JobName.SMART_SEARCH: QueueName.SMART_SEARCH,
    JobName.QUEUE_DUPLICATE_DETECTION: QueueName.DUPLICATE_DETECTION,
    JobName.DUPLICATE_DETECTION: QueueName.DUPLICATE_DETECTION,
    # storage layout
    JobName.STORAGE_TEMPLATE_MIGRATION: QueueName.STORAGE_TEMPLATE_MIGRATION,
    JobName.STORAGE_TEMPLATE_MIGRATION_SINGLE: QueueName.STORAGE_TEMPLATE_MIGRATION,
    JobName.QUEUE_MIGRATION: QueueName.MIGRATION,
    JobName.MIGRATE_ASSET: QueueName.MIGRATION,
    JobName.MIGRATE_PERSON: QueueName.MIGRATION,
    # sidecar files
    JobName.QUEUE_SIDECAR: QueueName.SIDECAR,
    JobName.SIDECAR_DISCOVERY: QueueName.SIDECAR,
    JobName.SIDECAR_SYNC: QueueName.SIDECAR,
    JobName.SIDECAR_WRITE: QueueName.SIDECAR,
    # external libraries
    JobName.LIBRARY_QUEUE_SCAN_ALL: QueueName.LIBRARY,
    JobName.LIBRARY_SYNC_FILES: QueueName.LIBRARY,
    JobName.LIBRARY_SYNC_ASSETS: QueueName.LIBRARY,
    # search index
    JobName.QUEUE_SEARCH_REINDEX: QueueName.SEARCH,
    # notifications
    JobName.NOTIFY_SIGNUP: QueueName.NOTIFICATIONS,
    JobName.SEND_EMAIL: QueueName.NOTIFICATIONS,
    # maintenance
    JobName.ASSET_DELETION: QueueName.BACKGROUND_TASK,
    JobName.ASSET_DELETION_CHECK: QueueName.BACKGROUND_TASK,
    JobName.USER_DELETE_CHECK: QueueName.BACKGROUND_TASK,
    JobName.USER_DELETION: QueueName.BACKGROUND_TASK,
    JobName.USER_SYNC_USAGE: QueueName.BACKGROUND_TASK,
    JobName.PERSON_CLEANUP: QueueName.BACKGROUND_TASK,
    JobName.TAG_CLEANUP: QueueName.BACKGROUND_TASK,
    JobName.MEMORIES_CLEANUP: QueueName.BACKGROUND_TASK,
    JobName.MEMORIES_CREATE: QueueName.BACKGROUND_TASK,
    JobName.CLEAN_OLD_SESSION_TOKENS: QueueName.BACKGROUND_TASK,
    JobName.CLEAN_OLD_AUDIT_LOGS: QueueName.BACKGROUND_TASK,
    JobName.BACKUP_DATABASE: QueueName.BACKUP_DATABASE,
}


def queue_for(job_name: JobName) -> QueueName:
    """Return the queue a job runs on."""
    return JOBS_TO_QUEUE[JobName(job_name)]


def is_concurrent_queue(queue_name: QueueName) -> bool:
    return QueueName(queue_name) not in NON_CONCURRENT_QUEUES


def resolve_concurrency(queue_name: QueueName, config: "SystemConfig") -> int:
    """Effective pool size for a queue.

    Non-concurrent queues always get 1, whatever the config says. Other
    queues take ``config.job[queue].concurrency`` and default to 1.
    """
    queue_name = QueueName(queue_name)
    if not is_concurrent_queue(queue_name):
        return 1

    queue_config = config.job.get(queue_name.value)
    if queue_config is None:
        return 1
    return queue_config.concurrency


class QueueRegistry:
    """Applies the concurrency policy to a queue engine."""

    def __init__(self, backend: QueueBackend):
        self.backend = backend

    def apply_concurrency(self, config: "SystemConfig") -> Dict[QueueName, int]:
        """Push the effective concurrency of every queue to the engine.

        Safe to call on every config event; returns what was applied.
        """
        logger.debug("Updating queue concurrency settings")
        applied = {}
        for queue_name in QueueName:
            concurrency = resolve_concurrency(queue_name, config)
            logger.debug(f"Setting {queue_name.value} concurrency to {concurrency}")
            self.backend.set_concurrency(queue_name, concurrency)
            applied[queue_name] = concurrency
        return applied
