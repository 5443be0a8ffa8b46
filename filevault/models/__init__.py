"""Models module"""

from filevault.models.file_record import (
    CompressionInfo,
    CompressionStatus,
    CompressionType,
    DeviceMetadata,
    EntityType,
    FileMetadata,
    FileRecord,
    FileTag,
    ImageMetadata,
    LocationMetadata,
)

__all__ = [
    "CompressionInfo",
    "CompressionStatus",
    "CompressionType",
    "DeviceMetadata",
    "EntityType",
    "FileMetadata",
    "FileRecord",
    "FileTag",
    "ImageMetadata",
    "LocationMetadata",
]
