"""In-process event bus for lifecycle events and client notifications.

Server events (``config.init``, ``app.bootstrap``, ``job.failed``, ...) go to
listeners registered with ``on``. Client events are addressed to one user or
broadcast to all of them; the bus hands them to client listeners (a
websocket gateway, a test recorder) as ``ClientEvent`` objects.
"""

import inspect
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from media_jobs.queue.models import JobItem


class ServerEvent(str, Enum):
    CONFIG_INIT = "config.init"
    CONFIG_UPDATE = "config.update"
    APP_BOOTSTRAP = "app.bootstrap"
    APP_SHUTDOWN = "app.shutdown"
    JOB_FAILED = "job.failed"


class ClientEventName(str, Enum):
    PERSON_THUMBNAIL = "on_person_thumbnail"
    UPLOAD_SUCCESS = "on_upload_success"
    ASSET_UPLOAD_READY_V1 = "AssetUploadReadyV1"
    USER_DELETE = "on_user_delete"


class ConfigEvent(BaseModel):
    """Payload of ``config.init`` and ``config.update``."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    new_config: Any = Field(..., description="SystemConfig now in effect")
    old_config: Optional[Any] = Field(default=None, description="Previous config (update only)")


class JobFailedEvent(BaseModel):
    job: JobItem
    error: str


class ClientEvent(BaseModel):
    """One notification leaving the server. ``user_id`` is None for broadcasts."""

    event: ClientEventName
    user_id: Optional[str] = None
    payload: Any = None


class AssetUploadReadyAsset(BaseModel):
    id: str
    ownerId: str  # noqa: N815
    originalFileName: str  # noqa: N815
    thumbhash: Optional[str] = None
    checksum: str
    fileCreatedAt: Optional[datetime] = None  # noqa: N815
    fileModifiedAt: Optional[datetime] = None  # noqa: N815
    localDateTime: Optional[datetime] = None  # noqa: N815
    duration: Optional[str] = None
    type: str
    deletedAt: Optional[datetime] = None  # noqa: N815
    isFavorite: bool = False  # noqa: N815
    visibility: str
    livePhotoVideoId: Optional[str] = None  # noqa: N815
    stackId: Optional[str] = None  # noqa: N815


class AssetUploadReadyExif(BaseModel):
    assetId: str  # noqa: N815
    description: Optional[str] = None
    exifImageWidth: Optional[int] = None  # noqa: N815
    exifImageHeight: Optional[int] = None  # noqa: N815
    fileSizeInByte: Optional[int] = None  # noqa: N815
    orientation: Optional[str] = None
    dateTimeOriginal: Optional[datetime] = None  # noqa: N815
    modifyDate: Optional[datetime] = None  # noqa: N815
    timeZone: Optional[str] = None  # noqa: N815
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    projectionType: Optional[str] = None  # noqa: N815
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    make: Optional[str] = None
    model: Optional[str] = None
    lensModel: Optional[str] = None  # noqa: N815
    fNumber: Optional[float] = None  # noqa: N815
    focalLength: Optional[float] = None  # noqa: N815
    iso: Optional[int] = None
    exposureTime: Optional[str] = None  # noqa: N815
    profileDescription: Optional[str] = None  # noqa: N815
    rating: Optional[int] = None
    fps: Optional[float] = None


class AssetUploadReadyV1(BaseModel):
    asset: AssetUploadReadyAsset
    exif: AssetUploadReadyExif


ServerListener = Callable[[Any], Any]
ClientListener = Callable[[ClientEvent], Any]


class EventPublisher(ABC):
    """What job orchestration needs from the notification layer."""

    @abstractmethod
    async def emit(self, event: ServerEvent, payload: Any = None) -> None:
        """Deliver a server event to every listener."""
        pass

    @abstractmethod
    def client_send(self, event: ClientEventName, user_id: str, payload: Any = None) -> None:
        """Send a client event to one user's sessions."""
        pass

    @abstractmethod
    def client_broadcast(self, event: ClientEventName, payload: Any = None) -> None:
        """Send a client event to every connected user."""
        pass


class EventBus(EventPublisher):
    """Synchronous fan-out to in-process listeners.

    A listener that raises is logged and skipped; the remaining listeners
    still run.
    """

    def __init__(self):
        self._listeners: Dict[ServerEvent, List[ServerListener]] = {}
        self._client_listeners: List[ClientListener] = []

    def on(self, event: ServerEvent, listener: ServerListener) -> None:
        self._listeners.setdefault(ServerEvent(event), []).append(listener)

    def on_client(self, listener: ClientListener) -> None:
        self._client_listeners.append(listener)

    async def emit(self, event: ServerEvent, payload: Any = None) -> None:
        event = ServerEvent(event)
        for listener in list(self._listeners.get(event, [])):
            try:
                result = listener(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Listener for {event.value} failed")

    def client_send(self, event: ClientEventName, user_id: str, payload: Any = None) -> None:
        self._deliver(ClientEvent(event=event, user_id=user_id, payload=payload))

    def client_broadcast(self, event: ClientEventName, payload: Any = None) -> None:
        self._deliver(ClientEvent(event=event, payload=payload))

    def _deliver(self, message: ClientEvent) -> None:
        logger.debug(f"Client event {message.event.value} -> {message.user_id or '*'}")
        for listener in list(self._client_listeners):
            try:
                listener(message)
            except Exception:
                logger.exception(f"Client listener failed for {message.event.value}")
