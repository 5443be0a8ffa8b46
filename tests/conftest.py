"""Pytest configuration and shared fixtures"""

import os
from pathlib import Path
from typing import Callable, Generator

import pytest
from PIL import Image

from filevault.config import Settings
from filevault.database import DatabaseService
from filevault.models.file_record import FileRecord
from filevault.services.access_policy import Requester
from filevault.services.archive_service import ArchiveService
from filevault.services.cleanup_service import CleanupService
from filevault.services.compression_queue_service import CompressionQueueService
from filevault.services.compression_service import CompressionOptions, CompressionService
from filevault.services.file_repository import FileRepository
from filevault.services.file_service import FileService
from filevault.services.metadata_service import MetadataService
from filevault.services.storage_organizer import StorageOrganizer


@pytest.fixture(autouse=True)
def reset_env_vars() -> Generator[None, None, None]:
    """Reset environment variables before each test"""
    original_env = os.environ.copy()

    filevault_vars = [
        "ENVIRONMENT",
        "NODE_ENV",
        "LOG_LEVEL",
        "DATABASE_URL",
        "STORAGE_PATH",
        "ARCHIVE_PATH",
        "PUBLIC_BASE_URL",
        "ENABLE_FILE_COMPRESSION",
        "COMPRESSION_QUALITY",
        "COMPRESSION_THRESHOLD_SIZE",
        "COMPRESS_IMAGE_TYPES",
        "COMPRESS_PDF_TYPES",
        "COMPRESS_TEXT_TYPES",
        "COMPRESSION_MAX_CONCURRENT",
        "MAX_FILE_SIZE",
        "ALLOWED_MIMETYPES",
    ]

    for var in filevault_vars:
        os.environ.pop(var, None)

    yield

    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def db(tmp_path) -> Generator[DatabaseService, None, None]:
    """A file-backed SQLite database in the test's temp directory"""
    service = DatabaseService(f"sqlite:///{tmp_path / 'test.db'}")
    service.initialize()
    yield service
    service.close()


@pytest.fixture
def repository(db) -> FileRepository:
    return FileRepository(db)


@pytest.fixture
def storage_root(tmp_path) -> Path:
    root = tmp_path / "uploads"
    root.mkdir()
    return root


@pytest.fixture
def organizer(repository, storage_root) -> StorageOrganizer:
    return StorageOrganizer(repository, storage_root)


@pytest.fixture
def compression_options() -> CompressionOptions:
    return CompressionOptions()


@pytest.fixture
def compression_service(organizer, compression_options) -> CompressionService:
    return CompressionService(organizer, compression_options)


@pytest.fixture
def compression_queue(compression_service, repository) -> CompressionQueueService:
    return CompressionQueueService(compression_service, repository, max_concurrent=0)


@pytest.fixture
def cleanup_service(repository, organizer) -> CleanupService:
    return CleanupService(repository, organizer)


@pytest.fixture
def archive_service(repository, organizer, tmp_path) -> ArchiveService:
    return ArchiveService(repository, organizer, tmp_path / "archives")


@pytest.fixture
def test_settings(tmp_path, storage_root) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        storage_path=str(storage_root),
        archive_path=str(tmp_path / "archives"),
        public_base_url="https://files.example.com/api/v1/",
    )


@pytest.fixture
def file_service(
    repository, organizer, compression_queue, archive_service, cleanup_service, test_settings
) -> FileService:
    return FileService(
        repository=repository,
        organizer=organizer,
        compression_queue=compression_queue,
        archive_service=archive_service,
        cleanup_service=cleanup_service,
        metadata_service=MetadataService(),
        config=test_settings,
    )


@pytest.fixture
def owner() -> Requester:
    return Requester(id="user-1")


@pytest.fixture
def other_user() -> Requester:
    return Requester(id="user-2")


@pytest.fixture
def admin() -> Requester:
    return Requester(id="admin-1", role="admin")


@pytest.fixture
def upload_dir(tmp_path) -> Path:
    """Where the multipart layer would have left incoming files"""
    path = tmp_path / "incoming"
    path.mkdir()
    return path


@pytest.fixture
def make_image(upload_dir) -> Callable[..., Path]:
    """Write a test image and return its path"""

    def _make(name: str = "photo.jpg", size=(64, 48), color=(200, 40, 40), image_format: str = "JPEG", **save_kwargs) -> Path:
        path = upload_dir / name
        mode = "RGBA" if len(color) == 4 else "RGB"
        Image.new(mode, size, color).save(path, format=image_format, **save_kwargs)
        return path

    return _make


@pytest.fixture
def make_file(upload_dir) -> Callable[..., Path]:
    """Write arbitrary bytes and return the path"""

    def _make(name: str = "notes.txt", data: bytes = b"hello world\n") -> Path:
        path = upload_dir / name
        path.write_bytes(data)
        return path

    return _make


@pytest.fixture
def stored_record(repository, organizer, make_file) -> Callable[..., FileRecord]:
    """Organize a file into storage and return its persisted record"""

    def _store(
        name: str = "notes.txt",
        data: bytes = b"hello world\n",
        mimetype: str = "text/plain",
        owner_id: str = "user-1",
        **fields,
    ) -> FileRecord:
        path = make_file(name, data)
        record = FileRecord(
            original_name=name,
            mimetype=mimetype,
            size=len(data),
            owner_id=owner_id,
            **fields,
        )
        return organizer.organize(path, record)

    return _store
