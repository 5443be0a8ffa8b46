"""On-disk layout of uploads: one random folder per upload holding the original and its derivatives"""

import errno
import os
import shutil
from pathlib import Path
from typing import Dict, Optional
from uuid import uuid4

from filevault.exceptions import StorageError
from filevault.models.file_record import FileRecord
from filevault.services.file_repository import FileRepository
from filevault.utils.logger import get_logger

logger = get_logger(__name__)


def generate_folder_id() -> str:
    return uuid4().hex


def build_stored_filename(owner_id: str, record_id: str, original_name: str) -> str:
    """
    Build `{owner_id}_{record_id}.{ext}` from the original name

    Names without an extension yield `{owner_id}_{record_id}`.
    """
    ext = Path(original_name).suffix.lower()
    return f"{owner_id}_{record_id}{ext}"


def remove_if_empty(folder: Path) -> bool:
    """Remove a directory if it holds no entries; errors are logged, never raised"""
    try:
        if folder.is_dir() and not any(folder.iterdir()):
            folder.rmdir()
            logger.debug(f"Removed empty folder: {folder.name}")
            return True
    except OSError as e:
        logger.warning(f"Could not remove folder {folder}: {e}")
    return False


def move_file(source: Path, destination: Path) -> None:
    """
    Move a file, atomically when both paths share a filesystem

    Across filesystems this degrades to copy-then-delete, so the bytes exist
    at the source until the copy is complete.
    """
    try:
        os.replace(source, destination)
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise
        shutil.move(str(source), str(destination))


class StorageOrganizer:
    """Places uploads into their folders and resolves paths for stored records"""

    def __init__(self, repository: FileRepository, storage_root: Path):
        self.repository = repository
        self.storage_root = Path(storage_root)

    def folder_path(self, folder_id: str) -> Path:
        return self.storage_root / folder_id

    def organize(self, temp_path: Path, record: FileRecord) -> FileRecord:
        """
        Move an uploaded temp file into a fresh folder and persist its record

        Steps: persist the record to obtain its id, create the folder, move the
        bytes to `{folder}/{owner_id}_{record_id}.{ext}` and store that name.
        The folder is created right before the move, and recreated once if
        the empty-folder sweep removes it in between.

        Args:
            temp_path: Where the upload currently lives
            record: Unsaved record (owner, name, mimetype, size and options set)

        Returns:
            The persisted record

        Raises:
            StorageError: If the folder cannot be created or the move fails.
                The record is rolled back and the temp file is left in place.
        """
        temp_path = Path(temp_path)
        folder_id = generate_folder_id()
        folder = self.folder_path(folder_id)

        record.folder_id = folder_id
        record.stored_filename = temp_path.name
        record.original_size = record.size
        try:
            record = self.repository.create(record)
        except Exception as e:
            logger.error(f"Failed to persist record for {record.original_name}: {e}")
            raise StorageError(f"Failed to persist file record: {e}") from e

        filename = build_stored_filename(record.owner_id, record.id, record.original_name)
        destination = folder / filename

        try:
            self._place(temp_path, destination)
        except OSError as e:
            self._rollback(record.id, folder)
            logger.error(f"Failed to move upload into folder {folder_id}: {e}")
            raise StorageError(f"Failed to move uploaded file: {e}") from e

        try:
            updated = self.repository.update(record.id, stored_filename=filename)
        except Exception as e:
            # put the bytes back where the caller expects them
            try:
                move_file(destination, temp_path)
            except OSError as move_error:
                logger.error(f"Failed to restore upload to {temp_path}: {move_error}")
            self._rollback(record.id, folder)
            raise StorageError(f"Failed to record stored filename: {e}") from e

        logger.info(f"File organized: {filename} in folder {folder_id}")
        return updated or record

    @staticmethod
    def _place(temp_path: Path, destination: Path) -> None:
        """Create the folder and move the upload in, once more if a sweep emptied it first"""
        for attempt in range(2):
            destination.parent.mkdir(parents=True, exist_ok=True)
            try:
                move_file(temp_path, destination)
                return
            except FileNotFoundError:
                if attempt or not temp_path.exists():
                    raise
                logger.debug(f"Storage folder {destination.parent.name} vanished before the move, recreating")

    def _rollback(self, record_id: str, folder: Path) -> None:
        try:
            self.repository.delete(record_id)
        except Exception as e:
            logger.error(f"Failed to roll back record {record_id}: {e}")
        remove_if_empty(folder)

    def resolve_path(self, record: FileRecord) -> Path:
        """Path of the stored original (it may no longer exist after compression)"""
        if record.folder_id:
            return self.folder_path(record.folder_id) / record.stored_filename
        return self.storage_root / record.stored_filename

    def derivative_paths(self, record: FileRecord) -> Dict[str, Path]:
        """Paths of the PNG and WebP derivatives, keyed by format"""
        stem = f"{record.owner_id}_{record.id}"
        base = self.resolve_path(record).parent
        return {
            "png": base / f"{stem}.png",
            "webp": base / f"{stem}.webp",
        }

    def sidecar_path(self, record: FileRecord) -> Path:
        """Path of the gzip sidecar written for text files"""
        original = self.resolve_path(record)
        return original.with_name(f"{original.name}.gz")

    def readable_path(self, record: FileRecord) -> Optional[Path]:
        """
        First existing path holding the record's content

        The original wins; once compression has deleted it, the chosen
        derivative is used, then the other one.
        """
        original = self.resolve_path(record)
        if original.is_file():
            return original

        derivatives = self.derivative_paths(record)
        preferred = "webp" if record.compression_type == "webp" else "png"
        for name in (preferred, "webp" if preferred == "png" else "png"):
            if derivatives[name].is_file():
                return derivatives[name]
        return None

    def record_folder(self, record: FileRecord) -> Optional[Path]:
        if record.folder_id:
            return self.folder_path(record.folder_id)
        return None
