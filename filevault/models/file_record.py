"""File record model and its typed metadata / compression structures"""

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in the database"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_record_id() -> str:
    """Generate a record id (32 hex chars)"""
    return uuid4().hex


class EntityType(str, Enum):
    """Kind of entity a file is attached to"""

    KPI_ENTRY = "kpi-entry"
    USER_PROFILE = "user-profile"
    DEPARTMENT = "department"
    TEMPLATE = "template"
    OTHER = "other"


class CompressionStatus(str, Enum):
    """Lifecycle of the background compression for one record"""

    PROCESSING = "processing"
    COMPLETED = "completed"
    NOT_NEEDED = "not_needed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not CompressionStatus.PROCESSING


class CompressionType(str, Enum):
    """Which derivative is served by default"""

    PNG = "png"
    WEBP = "webp"
    BOTH = "both"
    NONE = "none"


class LocationMetadata(BaseModel):
    """Geolocation attached to a file"""

    model_config = ConfigDict(extra="ignore")

    latitude: Optional[float] = PydanticField(default=None, ge=-90, le=90)
    longitude: Optional[float] = PydanticField(default=None, ge=-180, le=180)
    altitude: Optional[float] = None
    accuracy: Optional[float] = None
    address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None


class ImageMetadata(BaseModel):
    """Image dimensions plus the recognised EXIF/camera fields"""

    model_config = ConfigDict(extra="ignore")

    width: Optional[int] = PydanticField(default=None, gt=0)
    height: Optional[int] = PydanticField(default=None, gt=0)
    orientation: Optional[int] = None
    exif: Dict[str, Any] = PydanticField(default_factory=dict)
    camera: Optional[str] = None
    lens: Optional[str] = None
    aperture: Optional[float] = None
    shutter_speed: Optional[float] = None
    iso: Optional[int] = None
    focal_length: Optional[float] = None


class DeviceMetadata(BaseModel):
    """Device that produced the file"""

    model_config = ConfigDict(extra="ignore")

    make: Optional[str] = None
    model: Optional[str] = None
    software: Optional[str] = None
    version: Optional[str] = None


class FileMetadata(BaseModel):
    """Typed metadata with one open extension map (custom)"""

    model_config = ConfigDict(extra="ignore")

    location: Optional[LocationMetadata] = None
    image: Optional[ImageMetadata] = None
    device: Optional[DeviceMetadata] = None
    custom: Dict[str, Any] = PydanticField(default_factory=dict)


class CompressionInfo(BaseModel):
    """Read model of the compression columns of a record"""

    status: CompressionStatus = CompressionStatus.NOT_NEEDED
    compressed: bool = False
    original_size: int = 0
    compressed_size: Optional[int] = None
    savings_percentage: Optional[float] = None
    compression_type: CompressionType = CompressionType.NONE
    folder_id: Optional[str] = None


class FileRecord(SQLModel, table=True):
    """Metadata for a stored file; the bytes live under {storage_root}/{folder_id}/"""

    __tablename__ = "file_records"

    id: str = Field(default_factory=generate_record_id, primary_key=True)
    original_name: str
    stored_filename: str = Field(index=True)
    mimetype: str
    size: int
    owner_id: str = Field(index=True)
    associated_id: Optional[str] = Field(default=None, index=True)  # KPI entry, user, department...
    entity_type: str = Field(default=EntityType.OTHER.value, index=True)
    description: Optional[str] = None
    is_public: bool = Field(default=False, index=True)
    tags: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False, default=list))
    # Timestamps are stored as naive UTC
    expires_at: Optional[datetime] = Field(default=None, index=True, sa_type=DateTime(timezone=False))
    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime(timezone=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=False))

    # Compression info, flattened so status scans are plain indexed queries
    compression_status: str = Field(default=CompressionStatus.NOT_NEEDED.value, index=True)
    compressed: bool = Field(default=False, index=True)
    original_size: int = 0
    compressed_size: Optional[int] = None
    savings_percentage: Optional[float] = None
    compression_type: str = Field(default=CompressionType.NONE.value)
    folder_id: Optional[str] = Field(default=None, index=True)

    # "metadata" is reserved on declarative classes, hence the attribute name
    file_metadata: Dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column("metadata", JSON, nullable=False, default=dict),
    )
    # Denormalised from file_metadata for the bounding-box query
    latitude: Optional[float] = Field(default=None, index=True)
    longitude: Optional[float] = Field(default=None, index=True)

    @property
    def extension(self) -> str:
        """Extension of the original name without the dot, lowercase"""
        return Path(self.original_name).suffix.lstrip(".").lower()

    def get_compression_info(self) -> CompressionInfo:
        return CompressionInfo(
            status=CompressionStatus(self.compression_status),
            compressed=self.compressed,
            original_size=self.original_size,
            compressed_size=self.compressed_size,
            savings_percentage=self.savings_percentage,
            compression_type=CompressionType(self.compression_type),
            folder_id=self.folder_id,
        )

    def get_metadata(self) -> FileMetadata:
        return FileMetadata.model_validate(self.file_metadata or {})

    def set_metadata(self, metadata: FileMetadata) -> None:
        """Replace the metadata document and refresh the location columns"""
        self.file_metadata = metadata.model_dump(mode="json", exclude_none=True)
        location = metadata.location
        self.latitude = location.latitude if location else None
        self.longitude = location.longitude if location else None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) > self.expires_at


class FileTag(SQLModel, table=True):
    """Tag membership index, kept in sync with FileRecord.tags"""

    __tablename__ = "file_tags"

    file_id: str = Field(foreign_key="file_records.id", primary_key=True)
    tag: str = Field(primary_key=True, index=True)
