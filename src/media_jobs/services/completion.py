"""Follow-up jobs and notifications that fire when a job completes.

Each completed job name maps to at most one action. Names without an entry
complete silently. Actions never retry and never re-enqueue the job that
triggered them.
"""

import asyncio
import base64
from typing import Awaitable, Callable, Dict, Optional

from loguru import logger

from media_jobs.api.db_models import AssetType, AssetVisibility
from media_jobs.events import (
    AssetUploadReadyAsset,
    AssetUploadReadyExif,
    AssetUploadReadyV1,
    ClientEventName,
    EventPublisher,
)
from media_jobs.queue.dispatcher import JobDispatcher
from media_jobs.queue.models import JobItem, JobName
from media_jobs.repositories import AssetEntity, AssetRepository, PersonRepository

CompletionAction = Callable[[JobItem], Awaitable[None]]

UPLOAD_SOURCES = ("upload", "copy")


def _b64(value: Optional[bytes]) -> Optional[str]:
    return base64.b64encode(value).decode("ascii") if value is not None else None


def map_asset(asset: AssetEntity) -> dict:
    """Legacy ``on_upload_success`` asset shape."""
    return {
        "id": asset.id,
        "ownerId": asset.ownerId,
        "type": asset.type.value,
        "originalFileName": asset.originalFileName,
        "fileCreatedAt": asset.fileCreatedAt,
        "fileModifiedAt": asset.fileModifiedAt,
        "localDateTime": asset.localDateTime,
        "isFavorite": asset.isFavorite,
        "isArchived": asset.visibility == AssetVisibility.ARCHIVE,
        "isTrashed": asset.deletedAt is not None,
        "visibility": asset.visibility.value,
        "duration": asset.duration or "0:00:00.00000",
        "checksum": _b64(asset.checksum),
        "thumbhash": _b64(asset.thumbhash),
        "livePhotoVideoId": asset.livePhotoVideoId,
        "stackId": asset.stackId,
        "exifInfo": asset.exifInfo.model_dump() if asset.exifInfo else None,
    }


def build_upload_ready(asset: AssetEntity) -> AssetUploadReadyV1:
    """``AssetUploadReadyV1`` payload. Requires ``asset.exifInfo``."""
    return AssetUploadReadyV1(
        asset=AssetUploadReadyAsset(
            id=asset.id,
            ownerId=asset.ownerId,
            originalFileName=asset.originalFileName,
            thumbhash=_b64(asset.thumbhash),
            checksum=_b64(asset.checksum),
            fileCreatedAt=asset.fileCreatedAt,
            fileModifiedAt=asset.fileModifiedAt,
            localDateTime=asset.localDateTime,
            duration=asset.duration,
            type=asset.type.value,
            deletedAt=asset.deletedAt,
            isFavorite=asset.isFavorite,
            visibility=asset.visibility.value,
            livePhotoVideoId=asset.livePhotoVideoId,
            stackId=asset.stackId,
        ),
        exif=AssetUploadReadyExif(**asset.exifInfo.model_dump()),
    )


class CompletionRouter:
    """Dispatch table from completed job name to follow-up action."""

    def __init__(
        self,
        dispatcher: JobDispatcher,
        events: EventPublisher,
        assets: AssetRepository,
        people: PersonRepository,
    ):
        self.dispatcher = dispatcher
        self.events = events
        self.assets = assets
        self.people = people
        self._actions: Dict[JobName, CompletionAction] = {
            JobName.SIDECAR_SYNC: self._queue_metadata_extraction,
            JobName.SIDECAR_DISCOVERY: self._queue_metadata_extraction,
            JobName.SIDECAR_WRITE: self._after_sidecar_write,
            JobName.STORAGE_TEMPLATE_MIGRATION_SINGLE: self._after_storage_migration,
            JobName.GENERATE_PERSON_THUMBNAIL: self._after_person_thumbnail,
            JobName.GENERATE_THUMBNAILS: self._after_thumbnails,
            JobName.SMART_SEARCH: self._after_smart_search,
            JobName.USER_DELETION: self._after_user_deletion,
        }

    def handles(self, name: JobName) -> bool:
        return JobName(name) in self._actions

    async def on_done(self, item: JobItem) -> None:
        action = self._actions.get(item.name)
        if action is not None:
            await action(item)

    async def _queue_metadata_extraction(self, item: JobItem) -> None:
        await self.dispatcher.queue(JobItem(name=JobName.METADATA_EXTRACTION, data=item.data))

    async def _after_sidecar_write(self, item: JobItem) -> None:
        data = item.data or {}
        await self.dispatcher.queue(
            JobItem(
                name=JobName.METADATA_EXTRACTION,
                data={"id": data.get("id"), "source": "sidecar-write"},
            )
        )

    async def _after_storage_migration(self, item: JobItem) -> None:
        data = item.data or {}
        if data.get("source") in UPLOAD_SOURCES:
            await self.dispatcher.queue(JobItem(name=JobName.GENERATE_THUMBNAILS, data=item.data))

    async def _after_person_thumbnail(self, item: JobItem) -> None:
        person_id = (item.data or {}).get("id")
        person = await asyncio.to_thread(self.people.get_by_id, person_id)
        if person:
            self.events.client_send(ClientEventName.PERSON_THUMBNAIL, person.ownerId, person.id)

    async def _after_thumbnails(self, item: JobItem) -> None:
        data = item.data or {}
        if not data.get("notify") and data.get("source") != "upload":
            return

        asset = await asyncio.to_thread(self.assets.get_by_id_with_exif, data.get("id"))
        if asset is None:
            logger.warning(f"Could not find asset {data.get('id')} after generating thumbnails")
            return

        jobs = [
            JobItem(name=JobName.SMART_SEARCH, data=item.data),
            JobItem(name=JobName.FACE_DETECTION, data=item.data),
        ]
        if asset.type == AssetType.VIDEO:
            jobs.append(JobItem(name=JobName.VIDEO_CONVERSION, data=item.data))
        await self.dispatcher.queue_all(jobs)

        if asset.visibility in (AssetVisibility.TIMELINE, AssetVisibility.ARCHIVE):
            self.events.client_send(ClientEventName.UPLOAD_SUCCESS, asset.ownerId, map_asset(asset))
            if asset.exifInfo:
                self.events.client_send(
                    ClientEventName.ASSET_UPLOAD_READY_V1, asset.ownerId, build_upload_ready(asset)
                )

    async def _after_smart_search(self, item: JobItem) -> None:
        if (item.data or {}).get("source") == "upload":
            await self.dispatcher.queue(JobItem(name=JobName.DUPLICATE_DETECTION, data=item.data))

    async def _after_user_deletion(self, item: JobItem) -> None:
        user_id = (item.data or {}).get("id")
        self.events.client_broadcast(ClientEventName.USER_DELETE, user_id)
