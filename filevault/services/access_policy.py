"""Access decisions and URL materialisation for file records

Every function here is pure: decisions depend only on the record's owner and
public flag and on the requester, read at the moment of the call.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from filevault.models.file_record import (
    CompressionInfo,
    CompressionStatus,
    CompressionType,
    FileMetadata,
    FileRecord,
)

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Requester:
    """Authenticated caller, as supplied by the auth layer"""

    id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def can_view(is_public: bool, owner_id: str, requester_id: Optional[str], requester_role: Optional[str] = None) -> bool:
    if is_public:
        return True
    return requester_id == owner_id or requester_role == ADMIN_ROLE


def can_download(is_public: bool, owner_id: str, requester_id: Optional[str], requester_role: Optional[str] = None) -> bool:
    # Same rule as viewing today; kept separate so the two can diverge
    if is_public:
        return True
    return requester_id == owner_id or requester_role == ADMIN_ROLE


def can_modify(owner_id: str, requester: Requester) -> bool:
    """Updates, deletes and metadata writes: owner or admin, public or not"""
    return requester.id == owner_id or requester.is_admin


def can_view_record(record: FileRecord, requester: Requester) -> bool:
    return can_view(record.is_public, record.owner_id, requester.id, requester.role)


def can_download_record(record: FileRecord, requester: Requester) -> bool:
    return can_download(record.is_public, record.owner_id, requester.id, requester.role)


class FileView(BaseModel):
    """A record as returned to a requester, with URLs gated by the policy"""

    id: str
    original_name: str
    stored_filename: str
    mimetype: str
    size: int
    owner_id: str
    associated_id: Optional[str] = None
    entity_type: str
    description: Optional[str] = None
    is_public: bool
    tags: List[str]
    expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    compression: CompressionInfo
    metadata: FileMetadata

    can_access: bool
    can_download: bool
    file_by_id_url: str
    file_url: Optional[str] = None
    download_url: Optional[str] = None
    png_url: Optional[str] = None
    webp_url: Optional[str] = None


def _has_image_derivatives(info: CompressionInfo) -> bool:
    return (
        info.status is CompressionStatus.COMPLETED
        and info.compressed
        and info.compression_type in (CompressionType.PNG, CompressionType.WEBP, CompressionType.BOTH)
    )


def build_urls(record: FileRecord, base_url: str = "") -> Dict[str, Any]:
    """
    All URLs a record could expose, before any access gating

    The default `file_url` points at the chosen derivative when compression
    completed, otherwise at the original.
    """
    info = record.get_compression_info()
    prefix = f"{base_url}/files/{record.id}"

    urls: Dict[str, Any] = {
        "file_by_id_url": prefix,
        "download_url": f"{prefix}/download",
        "png_url": None,
        "webp_url": None,
    }

    if _has_image_derivatives(info):
        urls["png_url"] = f"{prefix}/compressed/png"
        urls["webp_url"] = f"{prefix}/compressed/webp"

    if _has_image_derivatives(info) and info.compression_type is CompressionType.WEBP:
        urls["file_url"] = urls["webp_url"]
    elif _has_image_derivatives(info) and info.compression_type is CompressionType.PNG:
        urls["file_url"] = urls["png_url"]
    else:
        urls["file_url"] = f"{prefix}/serve"

    return urls


def materialize(record: FileRecord, requester: Requester, base_url: str = "") -> FileView:
    """
    Build the requester-specific view of a record

    URLs are omitted (None) when the matching permission is false; list
    endpoints use this so denied records never leak a usable URL.
    """
    access = can_view_record(record, requester)
    download = can_download_record(record, requester)
    urls = build_urls(record, base_url)

    return FileView(
        id=record.id,
        original_name=record.original_name,
        stored_filename=record.stored_filename,
        mimetype=record.mimetype,
        size=record.size,
        owner_id=record.owner_id,
        associated_id=record.associated_id,
        entity_type=record.entity_type,
        description=record.description,
        is_public=record.is_public,
        tags=list(record.tags or []),
        expires_at=record.expires_at,
        created_at=record.created_at,
        updated_at=record.updated_at,
        compression=record.get_compression_info(),
        metadata=record.get_metadata(),
        can_access=access,
        can_download=download,
        file_by_id_url=urls["file_by_id_url"],
        file_url=urls["file_url"] if access else None,
        png_url=urls["png_url"] if access else None,
        webp_url=urls["webp_url"] if access else None,
        download_url=urls["download_url"] if download else None,
    )
