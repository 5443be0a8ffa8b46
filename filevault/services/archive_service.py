"""Bulk ZIP archives of stored files"""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence

from pydantic import BaseModel

from filevault.exceptions import AuthorizationError, CompressionError, NotFoundError, ValidationError
from filevault.models.file_record import FileRecord
from filevault.services.access_policy import Requester, can_view_record
from filevault.services.file_repository import FileRepository
from filevault.services.storage_organizer import StorageOrganizer
from filevault.utils.file_security import get_safe_filename
from filevault.utils.logger import get_logger
from filevault.utils.zip_utils import create_zip_from_files, unique_archive_names

logger = get_logger(__name__)


class ArchiveResult(BaseModel):
    archive_path: Path
    archive_size: int
    file_count: int


def default_archive_name(now: Optional[datetime] = None) -> str:
    timestamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
    return f"archive_{timestamp}.zip"


def entity_archive_name(entity_type: str, entity_id: str, now: Optional[datetime] = None) -> str:
    date = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d")
    return f"{entity_type}_{entity_id}_{date}.zip"


class ArchiveService:
    """Builds ZIP archives after checking access to every requested file"""

    def __init__(self, repository: FileRepository, organizer: StorageOrganizer, archive_root: Path):
        self.repository = repository
        self.organizer = organizer
        self.archive_root = Path(archive_root)

    def _authorize(self, file_ids: Sequence[str], requester: Requester) -> List[FileRecord]:
        """Load every record and check access before any archive I/O"""
        records = self.repository.get_many(file_ids)
        ordered = []
        for file_id in file_ids:
            record = records.get(file_id)
            if record is None:
                raise NotFoundError(f"File {file_id} not found")
            if not can_view_record(record, requester):
                raise AuthorizationError(f"No access to file {file_id}")
            ordered.append(record)
        return ordered

    def _archive_path(self, archive_name: Optional[str]) -> Path:
        name = get_safe_filename(archive_name) if archive_name else default_archive_name()
        if not name.lower().endswith(".zip"):
            name = f"{name}.zip"
        return self.archive_root / name

    async def compress_files(
        self,
        file_ids: Sequence[str],
        requester: Requester,
        archive_name: Optional[str] = None,
    ) -> ArchiveResult:
        """
        Build a ZIP of the given files

        Raises:
            ValidationError: No ids were given
            NotFoundError: An id has no record; nothing is written
            AuthorizationError: The requester may not view one of the files;
                nothing is written
            CompressionError: Reading a file or writing the archive failed
        """
        file_ids = list(dict.fromkeys(file_ids))
        if not file_ids:
            raise ValidationError("At least one file id is required")

        records = self._authorize(file_ids, requester)
        archive_path = self._archive_path(archive_name)

        try:
            sources = []
            for record in records:
                path = self.organizer.readable_path(record)
                if path is None:
                    raise FileNotFoundError(f"Stored bytes missing for {record.id}")
                sources.append(path)

            names = unique_archive_names([record.original_name for record in records])
            archive_size = await asyncio.to_thread(
                create_zip_from_files, list(zip(sources, names)), archive_path
            )
        except Exception as e:
            logger.error(f"Failed to compress files into {archive_path.name}: {e}")
            raise CompressionError("Failed to compress files") from e

        logger.info(f"Created archive {archive_path.name} with {len(records)} files ({archive_size} bytes)")
        return ArchiveResult(archive_path=archive_path, archive_size=archive_size, file_count=len(records))

    async def compress_entity_files(
        self,
        entity_type: str,
        entity_id: str,
        requester: Requester,
    ) -> ArchiveResult:
        """Archive every file of an entity the requester can view"""
        records = [
            record
            for record in self.repository.find_by_entity(entity_type, entity_id)
            if can_view_record(record, requester)
        ]
        if not records:
            raise NotFoundError("No files found for this entity")

        return await self.compress_files(
            [record.id for record in records],
            requester,
            archive_name=entity_archive_name(entity_type, entity_id),
        )
