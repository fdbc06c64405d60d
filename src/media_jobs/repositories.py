"""Storage collaborators used by job orchestration.

Statements are SQLAlchemy Core built from the declarative tables in
``media_jobs.api.db_models`` and run on a synchronous engine; async callers
wrap them in ``asyncio.to_thread``.
"""

from datetime import datetime
from typing import Iterator, Optional, Sequence

from pydantic import BaseModel, ConfigDict
from sqlalchemy import create_engine, select, update
from sqlalchemy.engine import Engine

from media_jobs.api.db_models import (
    Asset,
    AssetExif,
    AssetStatus,
    AssetType,
    AssetVisibility,
    Base,
    Person,
)


def get_engine(database_url: str) -> Engine:
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, connect_args=connect_args)


def create_tables(engine: Engine) -> None:
    Base.metadata.create_all(engine)


class ExifEntity(BaseModel):
    model_config = ConfigDict(from_attributes=True)

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


class AssetEntity(BaseModel):
    """An asset row, optionally joined with its exif row."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    ownerId: str  # noqa: N815
    originalFileName: str  # noqa: N815
    type: AssetType
    visibility: AssetVisibility
    status: AssetStatus
    deletedAt: Optional[datetime] = None  # noqa: N815
    checksum: bytes
    thumbhash: Optional[bytes] = None
    fileCreatedAt: Optional[datetime] = None  # noqa: N815
    fileModifiedAt: Optional[datetime] = None  # noqa: N815
    localDateTime: Optional[datetime] = None  # noqa: N815
    duration: Optional[str] = None
    isFavorite: bool = False  # noqa: N815
    livePhotoVideoId: Optional[str] = None  # noqa: N815
    stackId: Optional[str] = None  # noqa: N815
    exifInfo: Optional[ExifEntity] = None  # noqa: N815


class PersonEntity(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ownerId: str  # noqa: N815
    name: Optional[str] = None


class AssetRepository:
    def __init__(self, engine: Engine):
        self.engine = engine

    def get_by_id_with_exif(self, asset_id: str) -> Optional[AssetEntity]:
        with self.engine.connect() as conn:
            asset = conn.execute(select(Asset.__table__).where(Asset.id == asset_id)).mappings().first()
            if asset is None:
                return None
            exif = (
                conn.execute(select(AssetExif.__table__).where(AssetExif.assetId == asset_id))
                .mappings()
                .first()
            )

        return AssetEntity(**asset, exifInfo=ExifEntity(**exif) if exif else None)


class PersonRepository:
    def __init__(self, engine: Engine):
        self.engine = engine

    def get_by_id(self, person_id: str) -> Optional[PersonEntity]:
        with self.engine.connect() as conn:
            row = conn.execute(select(Person.__table__).where(Person.id == person_id)).mappings().first()
        return PersonEntity(**row) if row else None


class TrashRepository:
    """Bulk trash operations on the Asset table.

    Every write returns the number of rows it touched.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def get_deleted_ids(self) -> Iterator[str]:
        """Stream ids of assets marked deleted."""
        with self.engine.connect() as conn:
            result = conn.execution_options(stream_results=True).execute(
                select(Asset.id).where(Asset.status == AssetStatus.DELETED)
            )
            for row in result:
                yield row.id

    def restore(self, user_id: str) -> int:
        stmt = (
            update(Asset)
            .where(Asset.ownerId == user_id, Asset.status == AssetStatus.TRASHED)
            .values(status=AssetStatus.ACTIVE, deletedAt=None)
        )
        return self._execute(stmt)

    def empty(self, user_id: str) -> int:
        stmt = (
            update(Asset)
            .where(Asset.ownerId == user_id, Asset.status == AssetStatus.TRASHED)
            .values(status=AssetStatus.DELETED)
        )
        return self._execute(stmt)

    def restore_all(self, ids: Sequence[str]) -> int:
        if not ids:
            return 0

        stmt = (
            update(Asset)
            .where(Asset.status == AssetStatus.TRASHED, Asset.id.in_(list(ids)))
            .values(status=AssetStatus.ACTIVE, deletedAt=None)
        )
        return self._execute(stmt)

    def _execute(self, stmt) -> int:
        with self.engine.begin() as conn:
            return conn.execute(stmt).rowcount
