import enum
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Enum, Float, ForeignKey, Integer, LargeBinary, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class AssetType(str, enum.Enum):
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    AUDIO = "AUDIO"
    OTHER = "OTHER"


class AssetVisibility(str, enum.Enum):
    ARCHIVE = "archive"
    TIMELINE = "timeline"
    HIDDEN = "hidden"
    LOCKED = "locked"


class AssetStatus(str, enum.Enum):
    ACTIVE = "active"
    TRASHED = "trashed"
    DELETED = "deleted"


class Asset(Base):
    __tablename__ = "Asset"
    id = Column(String, primary_key=True)
    ownerId = Column(String, nullable=False, index=True)  # noqa: N815
    originalFileName = Column(String, nullable=False)  # noqa: N815
    type = Column(Enum(AssetType), default=AssetType.IMAGE, nullable=False)
    visibility = Column(Enum(AssetVisibility), default=AssetVisibility.TIMELINE, nullable=False)
    status = Column(Enum(AssetStatus), default=AssetStatus.ACTIVE, nullable=False, index=True)
    deletedAt = Column(DateTime, nullable=True)  # noqa: N815
    checksum = Column(LargeBinary, nullable=False)
    thumbhash = Column(LargeBinary, nullable=True)
    fileCreatedAt = Column(DateTime, default=datetime.utcnow)  # noqa: N815
    fileModifiedAt = Column(DateTime, default=datetime.utcnow)  # noqa: N815
    localDateTime = Column(DateTime, default=datetime.utcnow)  # noqa: N815
    duration = Column(String, nullable=True)  # "H:MM:SS.ffffff" for videos
    isFavorite = Column(Boolean, default=False)  # noqa: N815
    livePhotoVideoId = Column(String, nullable=True)  # noqa: N815
    stackId = Column(String, nullable=True)  # noqa: N815


class AssetExif(Base):
    __tablename__ = "AssetExif"
    assetId = Column(String, ForeignKey("Asset.id"), primary_key=True)  # noqa: N815
    description = Column(String, nullable=True)
    exifImageWidth = Column(Integer, nullable=True)  # noqa: N815
    exifImageHeight = Column(Integer, nullable=True)  # noqa: N815
    fileSizeInByte = Column(Integer, nullable=True)  # noqa: N815
    orientation = Column(String, nullable=True)
    dateTimeOriginal = Column(DateTime, nullable=True)  # noqa: N815
    modifyDate = Column(DateTime, nullable=True)  # noqa: N815
    timeZone = Column(String, nullable=True)  # noqa: N815
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    projectionType = Column(String, nullable=True)  # noqa: N815
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)
    country = Column(String, nullable=True)
    make = Column(String, nullable=True)
    model = Column(String, nullable=True)
    lensModel = Column(String, nullable=True)  # noqa: N815
    fNumber = Column(Float, nullable=True)  # noqa: N815
    focalLength = Column(Float, nullable=True)  # noqa: N815
    iso = Column(Integer, nullable=True)
    exposureTime = Column(String, nullable=True)  # noqa: N815
    profileDescription = Column(String, nullable=True)  # noqa: N815
    rating = Column(Integer, nullable=True)
    fps = Column(Float, nullable=True)


class Person(Base):
    __tablename__ = "Person"
    id = Column(String, primary_key=True)
    ownerId = Column(String, nullable=False)  # noqa: N815
    name = Column(String, default="")
