"""File service: the operations exposed to the HTTP layer"""

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from filevault.config import Settings, settings
from filevault.database import DatabaseService, database
from filevault.exceptions import AuthorizationError, NotFoundError, ValidationError
from filevault.models.file_record import (
    CompressionStatus,
    EntityType,
    FileMetadata,
    FileRecord,
    LocationMetadata,
)
from filevault.services.access_policy import (
    FileView,
    Requester,
    can_download_record,
    can_modify,
    can_view_record,
    materialize,
)
from filevault.services.archive_service import ArchiveResult, ArchiveService
from filevault.services.cleanup_service import CleanupService
from filevault.services.compression_queue_service import CompressionOutcome, CompressionQueueService
from filevault.services.compression_service import CompressionOptions, CompressionService
from filevault.services.file_repository import BoundingBox, FileQuery, FileRepository
from filevault.services.metadata_service import MetadataService, with_custom, with_location
from filevault.services.storage_organizer import StorageOrganizer
from filevault.utils.file_security import guess_mimetype, validate_file_safety
from filevault.utils.logger import get_logger

logger = get_logger(__name__)

DERIVATIVE_MIMETYPES = {"png": "image/png", "webp": "image/webp"}


def _parse_error(e: PydanticValidationError) -> ValidationError:
    first = e.errors()[0] if e.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()))
    message = first.get("msg", str(e))
    return ValidationError(f"{field}: {message}" if field else message)


def _to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_tags(value: Any) -> List[str]:
    """Split comma-delimited tags, trimming each and dropping empties"""
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = list(value)
    tags = []
    for item in items:
        tag = str(item).strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tags


class UploadOptions(BaseModel):
    """Options sent alongside an upload (multipart form fields)"""

    model_config = ConfigDict(extra="ignore")

    entity_type: EntityType = EntityType.OTHER
    associated_id: Optional[str] = None
    description: Optional[str] = None
    is_public: bool = False
    tags: List[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None
    enable_compression: bool = True

    latitude: Optional[float] = None
    longitude: Optional[float] = None
    altitude: Optional[float] = None
    accuracy: Optional[float] = None
    address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None

    @field_validator("entity_type", mode="before")
    @classmethod
    def default_entity_type(cls, v):
        return v or EntityType.OTHER

    @field_validator("is_public", mode="before")
    @classmethod
    def parse_is_public(cls, v):
        # only the literal "true" makes a form upload public
        if isinstance(v, str):
            return v.strip().lower() == "true"
        return bool(v)

    @field_validator("enable_compression", mode="before")
    @classmethod
    def parse_enable_compression(cls, v):
        # on unless explicitly "false"
        if isinstance(v, str):
            return v.strip().lower() != "false"
        return True if v is None else bool(v)

    @field_validator("tags", mode="before")
    @classmethod
    def split_tags(cls, v):
        return parse_tags(v)

    @field_validator("expires_at", mode="before")
    @classmethod
    def empty_expiry(cls, v):
        return v or None

    @field_validator("expires_at")
    @classmethod
    def normalize_expiry(cls, v):
        return _to_naive_utc(v)

    @field_validator("latitude", "longitude", "altitude", "accuracy", mode="before")
    @classmethod
    def empty_number(cls, v):
        return None if v == "" else v

    @model_validator(mode="after")
    def check_location(self) -> "UploadOptions":
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be provided together")
        return self

    @classmethod
    def from_form(cls, data: Mapping[str, Any]) -> "UploadOptions":
        """Parse form fields, raising the service ValidationError"""
        try:
            return cls.model_validate(dict(data))
        except PydanticValidationError as e:
            raise _parse_error(e) from e

    def location(self) -> Optional[LocationMetadata]:
        if self.latitude is None or self.longitude is None:
            return None
        return LocationMetadata(
            latitude=self.latitude,
            longitude=self.longitude,
            altitude=self.altitude,
            accuracy=self.accuracy,
            address=self.address,
            city=self.city,
            country=self.country,
        )


class FileUpdate(BaseModel):
    """Fields an owner or admin may change after upload"""

    model_config = ConfigDict(extra="forbid")

    description: Optional[str] = None
    is_public: Optional[bool] = None
    tags: Optional[List[str]] = None
    expires_at: Optional[datetime] = None
    entity_type: Optional[EntityType] = None
    associated_id: Optional[str] = None

    @field_validator("tags", mode="before")
    @classmethod
    def split_tags(cls, v):
        return None if v is None else parse_tags(v)

    @field_validator("expires_at")
    @classmethod
    def normalize_expiry(cls, v):
        return _to_naive_utc(v)


class FilePage(BaseModel):
    docs: List[FileView]
    total: int
    page: int
    limit: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool


@dataclass
class UploadResult:
    file: FileView
    compression_task: Optional["asyncio.Task[CompressionOutcome]"] = None


@dataclass
class ServedFile:
    """What the HTTP layer needs to stream a file"""

    path: Path
    mimetype: str
    filename: str
    size: int
    as_attachment: bool = False
    headers: Optional[Dict[str, str]] = None


class FileService:
    """Coordinates storage, compression, access control and metadata"""

    def __init__(
        self,
        repository: FileRepository,
        organizer: StorageOrganizer,
        compression_queue: CompressionQueueService,
        archive_service: ArchiveService,
        cleanup_service: CleanupService,
        metadata_service: Optional[MetadataService] = None,
        config: Optional[Settings] = None,
    ):
        self.repository = repository
        self.organizer = organizer
        self.compression_queue = compression_queue
        self.archive_service = archive_service
        self.cleanup_service = cleanup_service
        self.metadata_service = metadata_service or MetadataService()
        self.config = config or settings

    @property
    def base_url(self) -> str:
        return self.config.public_base_url

    def _view(self, record: FileRecord, requester: Requester) -> FileView:
        return materialize(record, requester, self.base_url)

    def _page(self, records: List[FileRecord], total: int, query: FileQuery, requester: Requester) -> FilePage:
        total_pages = math.ceil(total / query.limit) if total else 0
        return FilePage(
            docs=[self._view(record, requester) for record in records],
            total=total,
            page=query.page,
            limit=query.limit,
            total_pages=total_pages,
            has_next_page=query.page < total_pages,
            has_previous_page=query.page > 1,
        )

    def _load(self, file_id: str) -> FileRecord:
        record = self.repository.get(file_id)
        if not record:
            raise NotFoundError("File not found")
        return record

    def _load_viewable(self, file_id: str, requester: Requester) -> FileRecord:
        record = self._load(file_id)
        if not can_view_record(record, requester):
            raise AuthorizationError("You do not have permission to access this file")
        return record

    def _load_modifiable(self, file_id: str, requester: Requester) -> FileRecord:
        record = self._load(file_id)
        if not can_modify(record.owner_id, requester):
            raise AuthorizationError("You do not have permission to modify this file")
        return record

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def upload(
        self,
        temp_path: Path,
        requester: Requester,
        original_name: str,
        mimetype: str,
        size: int,
        options: Optional[UploadOptions] = None,
    ) -> UploadResult:
        """
        Store an upload and, when eligible, start compressing it

        The record is persisted and returned before any compression work is
        done; the returned task (if any) resolves once the background job has
        written its terminal status.

        Raises:
            ValidationError: Missing or unsafe input
            StorageError: The upload could not be moved into storage
        """
        options = options or UploadOptions()
        if not original_name:
            raise ValidationError("Please select a file to upload")
        if size < 0:
            raise ValidationError("File size must not be negative")
        if size > self.config.max_file_size:
            raise ValidationError(f"File exceeds the {self.config.max_file_size} byte upload limit")

        is_safe, reason = validate_file_safety(original_name)
        if not is_safe:
            raise ValidationError(reason)
        # multipart clients do not always send a content type
        mimetype = mimetype or guess_mimetype(original_name)
        allowed = self.config.allowed_mimetypes
        if allowed and mimetype not in allowed:
            raise ValidationError(f"File type {mimetype} is not allowed")

        eligible = (
            options.enable_compression
            and self.config.enable_file_compression
            and self.compression_queue.compression_service.should_compress(mimetype, size)
        )

        record = FileRecord(
            original_name=original_name,
            mimetype=mimetype,
            size=size,
            owner_id=requester.id,
            associated_id=options.associated_id,
            entity_type=options.entity_type.value,
            description=options.description,
            is_public=options.is_public,
            tags=options.tags,
            expires_at=options.expires_at,
            compression_status=(
                CompressionStatus.PROCESSING.value if eligible else CompressionStatus.NOT_NEEDED.value
            ),
        )
        location = options.location()
        if location is not None:
            record.set_metadata(FileMetadata(location=location))

        record = await asyncio.to_thread(self.organizer.organize, Path(temp_path), record)

        # read EXIF before compression may replace the original
        if mimetype.startswith("image/"):
            record = await self._extract_and_store(record)

        task = None
        if eligible:
            task = self.compression_queue.dispatch(record)

        logger.info(
            f"File uploaded: {record.id} ({original_name}, {size} bytes, "
            f"compression: {record.compression_status})"
        )
        return UploadResult(file=self._view(record, requester), compression_task=task)

    async def _extract_and_store(self, record: FileRecord) -> FileRecord:
        path = self.organizer.readable_path(record)
        if path is None:
            return record
        metadata = await asyncio.to_thread(
            self.metadata_service.extract, path, record.mimetype, record.get_metadata()
        )
        return self._store_metadata(record, metadata)

    def _store_metadata(self, record: FileRecord, metadata: FileMetadata) -> FileRecord:
        record.set_metadata(metadata)
        updated = self.repository.update(
            record.id,
            file_metadata=record.file_metadata,
            latitude=record.latitude,
            longitude=record.longitude,
        )
        return updated or record

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_file(self, file_id: str, requester: Requester) -> FileView:
        return self._view(self._load_viewable(file_id, requester), requester)

    def get_file_by_filename(self, stored_filename: str, requester: Requester) -> FileView:
        record = self.repository.get_by_stored_filename(stored_filename)
        if not record:
            raise NotFoundError("File not found")
        if not can_view_record(record, requester):
            raise AuthorizationError("You do not have permission to access this file")
        return self._view(record, requester)

    def list_files(self, query: FileQuery, requester: Requester) -> FilePage:
        """Paginated listing; non-admins see public files plus their own"""
        visible_to = None if requester.is_admin else requester.id
        records, total = self.repository.list_page(query, visible_to=visible_to)
        return self._page(records, total, query, requester)

    def get_files_with_metadata(self, query: FileQuery, requester: Requester) -> FilePage:
        """Listing filtered on has_location / has_image_metadata / device make and model"""
        return self.list_files(query, requester)

    def search_files_by_location(
        self,
        latitude: float,
        longitude: float,
        radius_km: float,
        requester: Requester,
        query: Optional[FileQuery] = None,
    ) -> FilePage:
        if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
            raise ValidationError("latitude/longitude out of range")
        if radius_km <= 0:
            raise ValidationError("radius must be positive")

        query = (query or FileQuery()).model_copy(
            update={"bounding_box": BoundingBox.around(latitude, longitude, radius_km)}
        )
        return self.list_files(query, requester)

    def get_files_by_entity(self, entity_type: str, entity_id: str, requester: Requester) -> List[FileView]:
        records = self.repository.find_by_entity(entity_type, entity_id)
        return [self._view(record, requester) for record in records if can_view_record(record, requester)]

    def get_public_files(self, requester: Requester) -> List[FileView]:
        return [self._view(record, requester) for record in self.repository.find_public()]

    def validate_file_access(self, file_id: str, requester: Requester) -> bool:
        record = self.repository.get(file_id)
        return record is not None and can_view_record(record, requester)

    def validate_file_download(self, file_id: str, requester: Requester) -> bool:
        record = self.repository.get(file_id)
        return record is not None and can_download_record(record, requester)

    # ------------------------------------------------------------------
    # Byte access
    # ------------------------------------------------------------------

    def _served(self, record: FileRecord, as_attachment: bool) -> ServedFile:
        path = self.organizer.readable_path(record)
        if path is None:
            raise NotFoundError("File not found on disk")

        original = self.organizer.resolve_path(record)
        if path == original:
            mimetype, filename = record.mimetype, record.original_name
        else:
            # original was replaced by its derivative after compression
            ext = path.suffix.lstrip(".")
            mimetype = DERIVATIVE_MIMETYPES.get(ext, record.mimetype)
            filename = f"{Path(record.original_name).stem}.{ext}"

        return ServedFile(
            path=path,
            mimetype=mimetype,
            filename=filename,
            size=path.stat().st_size,
            as_attachment=as_attachment,
        )

    def resolve_serve(self, file_id: str, requester: Requester) -> ServedFile:
        record = self._load(file_id)
        if not can_view_record(record, requester):
            raise AuthorizationError("You do not have permission to view this file")
        return self._served(record, as_attachment=False)

    def resolve_download(self, file_id: str, requester: Requester) -> ServedFile:
        record = self._load(file_id)
        if not can_download_record(record, requester):
            raise AuthorizationError("You do not have permission to download this file")
        return self._served(record, as_attachment=True)

    def resolve_compressed(self, file_id: str, image_format: str, requester: Requester) -> ServedFile:
        """Path of the PNG or WebP derivative of a compressed image"""
        record = self._load(file_id)
        if not can_view_record(record, requester):
            raise AuthorizationError("You do not have permission to view this file")

        image_format = image_format.lower()
        if image_format not in DERIVATIVE_MIMETYPES:
            raise NotFoundError(f"Compressed {image_format} version not available for this file")

        info = record.get_compression_info()
        if not info.compressed or not info.folder_id:
            raise NotFoundError("This file does not have a compressed version available")

        path = self.organizer.derivative_paths(record)[image_format]
        if not path.is_file():
            raise NotFoundError("Compressed file not found on disk")

        size = path.stat().st_size
        return ServedFile(
            path=path,
            mimetype=DERIVATIVE_MIMETYPES[image_format],
            filename=f"{Path(record.original_name).stem}.{image_format}",
            size=size,
            headers={
                "X-Compression-Type": image_format,
                "X-Original-Size": str(info.original_size),
                "X-Compressed-Size": str(size),
            },
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def update_file(self, file_id: str, update: FileUpdate, requester: Requester) -> FileView:
        self._load_modifiable(file_id, requester)

        fields = update.model_dump(exclude_unset=True)
        # non-nullable columns ignore an explicit null
        for key in ("is_public", "entity_type"):
            if key in fields and fields[key] is None:
                del fields[key]
        if fields.get("entity_type") is not None:
            fields["entity_type"] = fields["entity_type"].value
        if "tags" in fields and fields["tags"] is None:
            fields["tags"] = []
        if not fields:
            raise ValidationError("No fields to update")

        record = self.repository.update(file_id, **fields)
        if not record:
            raise NotFoundError("File not found")
        logger.info(f"Updated file {file_id}: {sorted(fields)}")
        return self._view(record, requester)

    async def delete_file(self, file_id: str, requester: Requester) -> None:
        record = self._load_modifiable(file_id, requester)
        await asyncio.to_thread(self.cleanup_service.delete_stored_files, record)
        self.repository.delete(file_id)
        logger.info(f"Deleted file {file_id}")

    async def cleanup_expired_files(self, requester: Requester) -> int:
        """Delete expired files (admin only); returns the number deleted"""
        if not requester.is_admin:
            raise AuthorizationError("Only administrators can cleanup expired files")
        return await self.cleanup_service.cleanup_expired_files()

    def normalize_stuck_records(self) -> int:
        return self.compression_queue.normalize_stuck_records()

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def get_file_statistics(self, requester: Requester) -> Dict[str, Any]:
        visible_to = None if requester.is_admin else requester.id
        return self.repository.statistics(visible_to=visible_to, user_id=requester.id)

    def get_compression_stats(self, file_ids: Sequence[str], requester: Requester) -> Dict[str, Any]:
        """Original vs stored size over a set of files the requester can view"""
        records = [self._load_viewable(file_id, requester) for file_id in dict.fromkeys(file_ids)]

        original_size = sum(record.original_size or record.size for record in records)
        compressed_size = sum(
            record.compressed_size if record.compressed and record.compressed_size is not None
            else (record.original_size or record.size)
            for record in records
        )
        ratio = compressed_size / original_size if original_size else 1.0
        return {
            "original_size": original_size,
            "compressed_size": compressed_size,
            "compression_ratio": round(ratio, 4),
            "savings_percentage": round((1 - ratio) * 100, 2) if original_size else 0.0,
            "compressed_files": sum(1 for record in records if record.compressed),
            "total_files": len(records),
        }

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    async def extract_file_metadata(self, file_id: str, requester: Requester) -> FileMetadata:
        record = self._load_viewable(file_id, requester)
        record = await self._extract_and_store(record)
        return record.get_metadata()

    def add_location_metadata(
        self,
        file_id: str,
        requester: Requester,
        latitude: float,
        longitude: float,
        **options: Any,
    ) -> FileMetadata:
        record = self._load_modifiable(file_id, requester)
        metadata = with_location(record.get_metadata(), latitude, longitude, **options)
        return self._store_metadata(record, metadata).get_metadata()

    def add_custom_metadata(self, file_id: str, requester: Requester, key: str, value: Any) -> FileMetadata:
        record = self._load_modifiable(file_id, requester)
        metadata = with_custom(record.get_metadata(), key, value)
        return self._store_metadata(record, metadata).get_metadata()

    # ------------------------------------------------------------------
    # Archives
    # ------------------------------------------------------------------

    async def compress_files(
        self,
        file_ids: Sequence[str],
        requester: Requester,
        archive_name: Optional[str] = None,
    ) -> ArchiveResult:
        return await self.archive_service.compress_files(file_ids, requester, archive_name)

    async def compress_entity_files(self, entity_type: str, entity_id: str, requester: Requester) -> ArchiveResult:
        return await self.archive_service.compress_entity_files(entity_type, entity_id, requester)


def create_file_service(config: Optional[Settings] = None, db: Optional[DatabaseService] = None) -> FileService:
    """Wire a FileService and its collaborators from settings"""
    config = config or settings
    repository = FileRepository(db or database)
    organizer = StorageOrganizer(repository, config.storage_root)
    compression = CompressionService(organizer, CompressionOptions.from_settings(config))
    queue = CompressionQueueService(compression, repository, max_concurrent=config.compression_max_concurrent)
    return FileService(
        repository=repository,
        organizer=organizer,
        compression_queue=queue,
        archive_service=ArchiveService(repository, organizer, config.archive_root),
        cleanup_service=CleanupService(repository, organizer),
        metadata_service=MetadataService(),
        config=config,
    )
