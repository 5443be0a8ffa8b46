"""Cleanup of empty upload folders and expired records"""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from filevault.models.file_record import FileRecord
from filevault.services.file_repository import FileRepository
from filevault.services.storage_organizer import StorageOrganizer, remove_if_empty
from filevault.utils.logger import get_logger

logger = get_logger(__name__)


class CleanupService:
    """Sweeps the storage root and removes expired uploads"""

    def __init__(self, repository: FileRepository, organizer: StorageOrganizer):
        self.repository = repository
        self.organizer = organizer

    @property
    def storage_root(self) -> Path:
        return self.organizer.storage_root

    def _sweep_empty_folders(self) -> int:
        if not self.storage_root.exists():
            return 0

        removed = 0
        try:
            entries = list(self.storage_root.iterdir())
        except OSError as e:
            logger.warning(f"Error scanning {self.storage_root}: {e}")
            return 0

        for folder in entries:
            try:
                if not folder.is_dir():
                    continue
                # emptiness is checked right before removal; a folder that
                # gains an entry in between makes rmdir fail and is kept
                if remove_if_empty(folder):
                    removed += 1
            except OSError as e:
                logger.warning(f"Failed to clean up folder {folder.name}: {e}")

        return removed

    async def cleanup_empty_folders(self) -> int:
        """
        Remove top-level folders of the storage root that hold no entries

        Returns:
            Number of folders removed
        """
        removed = await asyncio.to_thread(self._sweep_empty_folders)
        if removed > 0:
            logger.info(f"Cleaned up {removed} empty upload folders")
        return removed

    def stored_paths(self, record: FileRecord) -> List[Path]:
        """Every path that may hold bytes for a record"""
        paths = [self.organizer.resolve_path(record), self.organizer.sidecar_path(record)]
        paths.extend(self.organizer.derivative_paths(record).values())
        # original and derivative can be the same path for png/webp uploads
        return list(dict.fromkeys(paths))

    def delete_stored_files(self, record: FileRecord) -> int:
        """
        Delete the original, derivatives and sidecar of a record

        Missing files are ignored and other errors are logged; the folder is
        removed when it ends up empty.

        Returns:
            Number of files deleted
        """
        deleted = 0
        for path in self.stored_paths(record):
            try:
                if path.exists():
                    path.unlink()
                    deleted += 1
            except OSError as e:
                logger.warning(f"Failed to delete physical file {path}: {e}")

        folder = self.organizer.record_folder(record)
        if folder is not None:
            remove_if_empty(folder)
        return deleted

    async def cleanup_expired_files(self, now: Optional[datetime] = None) -> int:
        """
        Delete every record whose expires_at has passed, with its bytes

        Individual failures are logged and skipped.

        Returns:
            Number of records deleted
        """
        expired = self.repository.find_expired(now)
        if not expired:
            return 0

        deleted_count = 0
        for record in expired:
            try:
                await asyncio.to_thread(self.delete_stored_files, record)
                if self.repository.delete(record.id):
                    deleted_count += 1
            except Exception as e:
                logger.error(f"Failed to delete expired file {record.id}: {e}")

        logger.info(f"Cleaned up {deleted_count} of {len(expired)} expired files")
        return deleted_count

    async def get_storage_size(self) -> int:
        """Total bytes held under the storage root"""

        def _walk() -> int:
            total = 0
            if not self.storage_root.exists():
                return 0
            for file_path in self.storage_root.rglob("*"):
                try:
                    if file_path.is_file():
                        total += file_path.stat().st_size
                except OSError as e:
                    logger.warning(f"Failed to stat {file_path}: {e}")
            return total

        return await asyncio.to_thread(_walk)
