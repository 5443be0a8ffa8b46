"""Persistence of file records behind the query shapes the services need"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import delete as sa_delete
from sqlalchemy import func, or_, update
from sqlmodel import Session, select

from filevault.database import DatabaseService, database
from filevault.models.file_record import (
    CompressionStatus,
    FileRecord,
    FileTag,
    utcnow,
)
from filevault.utils.logger import get_logger

logger = get_logger(__name__)


SORTABLE_COLUMNS = {
    "created_at": FileRecord.created_at,
    "updated_at": FileRecord.updated_at,
    "original_name": FileRecord.original_name,
    "size": FileRecord.size,
    "mimetype": FileRecord.mimetype,
}


class BoundingBox(BaseModel):
    """Latitude/longitude rectangle, inclusive on every edge"""

    min_latitude: float
    max_latitude: float
    min_longitude: float
    max_longitude: float

    @classmethod
    def around(cls, latitude: float, longitude: float, radius_km: float) -> "BoundingBox":
        """Approximate a radius search with a degree box (111.32 km per degree)"""
        delta = radius_km / 111.32
        return cls(
            min_latitude=latitude - delta,
            max_latitude=latitude + delta,
            min_longitude=longitude - delta,
            max_longitude=longitude + delta,
        )


class FileQuery(BaseModel):
    """Filters, paging and sorting for listing records"""

    owner_id: Optional[str] = None
    associated_id: Optional[str] = None
    entity_type: Optional[str] = None
    is_public: Optional[bool] = None
    tags: List[str] = Field(default_factory=list)
    compression_status: Optional[str] = None
    has_location: Optional[bool] = None
    has_image_metadata: Optional[bool] = None
    device_make: Optional[str] = None
    device_model: Optional[str] = None
    bounding_box: Optional[BoundingBox] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)
    sort_by: str = "created_at"
    sort_order: str = "desc"

    @field_validator("sort_by")
    @classmethod
    def validate_sort_by(cls, v: str) -> str:
        if v not in SORTABLE_COLUMNS:
            raise ValueError(f"sort_by must be one of {sorted(SORTABLE_COLUMNS)}")
        return v

    @field_validator("sort_order")
    @classmethod
    def validate_sort_order(cls, v: str) -> str:
        v = v.lower()
        if v not in ("asc", "desc"):
            raise ValueError("sort_order must be 'asc' or 'desc'")
        return v


class FileRepository:
    """Repository over FileRecord / FileTag"""

    def __init__(self, db: Optional[DatabaseService] = None):
        self.db = db or database

    def _session(self) -> Session:
        return self.db.get_session()

    @staticmethod
    def _sync_tags(session: Session, record: FileRecord) -> None:
        session.exec(sa_delete(FileTag).where(FileTag.file_id == record.id))
        for tag in sorted(set(record.tags or [])):
            session.add(FileTag(file_id=record.id, tag=tag))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, record: FileRecord) -> FileRecord:
        """Insert a record together with its tag rows"""
        with self._session() as session:
            session.add(record)
            session.flush()
            self._sync_tags(session, record)
            session.commit()
            session.refresh(record)
            logger.debug(f"Created file record {record.id}")
            return record

    def update(self, file_id: str, **fields: Any) -> Optional[FileRecord]:
        """
        Apply a partial update (last writer wins)

        Args:
            file_id: Record id
            **fields: Column values to set

        Returns:
            The updated record, or None if it does not exist
        """
        with self._session() as session:
            record = session.get(FileRecord, file_id)
            if not record:
                return None
            for key, value in fields.items():
                setattr(record, key, value)
            record.updated_at = utcnow()
            session.add(record)
            if "tags" in fields:
                self._sync_tags(session, record)
            session.commit()
            session.refresh(record)
            return record

    def delete(self, file_id: str) -> bool:
        """Delete a record and its tag rows; returns False if it did not exist"""
        with self._session() as session:
            record = session.get(FileRecord, file_id)
            if not record:
                return False
            session.exec(sa_delete(FileTag).where(FileTag.file_id == file_id))
            session.delete(record)
            session.commit()
            logger.debug(f"Deleted file record {file_id}")
            return True

    def finalize_compression(self, file_id: str, status: CompressionStatus, **fields: Any) -> bool:
        """
        Write the terminal compression status exactly once

        The update only matches while the record is still `processing`, so a
        second finalize (or one racing normalize_stuck) is a no-op.

        Returns:
            True if this call performed the transition
        """
        if status is CompressionStatus.PROCESSING:
            raise ValueError("finalize_compression requires a terminal status")

        values: Dict[str, Any] = {"compression_status": status.value, "updated_at": utcnow()}
        values.update(fields)

        with self._session() as session:
            result = session.exec(
                update(FileRecord)
                .where(FileRecord.id == file_id)
                .where(FileRecord.compression_status == CompressionStatus.PROCESSING.value)
                .values(**values)
            )
            session.commit()
            applied = result.rowcount == 1

        if not applied:
            logger.warning(f"Compression result for {file_id} ignored, record is not processing")
        return applied

    def normalize_stuck(self) -> int:
        """Rewrite every `processing` record to `not_needed`; returns the count"""
        with self._session() as session:
            result = session.exec(
                update(FileRecord)
                .where(FileRecord.compression_status == CompressionStatus.PROCESSING.value)
                .values(
                    compression_status=CompressionStatus.NOT_NEEDED.value,
                    updated_at=utcnow(),
                )
            )
            session.commit()
            return result.rowcount or 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, file_id: str) -> Optional[FileRecord]:
        with self._session() as session:
            return session.get(FileRecord, file_id)

    def get_many(self, file_ids: Iterable[str]) -> Dict[str, FileRecord]:
        """Load several records at once, keyed by id (missing ids are absent)"""
        ids = list(file_ids)
        if not ids:
            return {}
        with self._session() as session:
            records = session.exec(select(FileRecord).where(FileRecord.id.in_(ids))).all()
            return {record.id: record for record in records}

    def get_by_stored_filename(self, stored_filename: str) -> Optional[FileRecord]:
        with self._session() as session:
            statement = select(FileRecord).where(FileRecord.stored_filename == stored_filename)
            return session.exec(statement).first()

    def find_by_entity(self, entity_type: str, associated_id: str) -> List[FileRecord]:
        with self._session() as session:
            statement = (
                select(FileRecord)
                .where(FileRecord.entity_type == entity_type)
                .where(FileRecord.associated_id == associated_id)
                .order_by(FileRecord.created_at.desc())
            )
            return list(session.exec(statement).all())

    def find_public(self) -> List[FileRecord]:
        with self._session() as session:
            statement = (
                select(FileRecord)
                .where(FileRecord.is_public == True)  # noqa: E712
                .order_by(FileRecord.created_at.desc())
            )
            return list(session.exec(statement).all())

    def find_expired(self, now: Optional[datetime] = None) -> List[FileRecord]:
        with self._session() as session:
            statement = (
                select(FileRecord)
                .where(FileRecord.expires_at.is_not(None))
                .where(FileRecord.expires_at < (now or utcnow()))
            )
            return list(session.exec(statement).all())

    def find_by_owner(self, owner_id: str) -> List[FileRecord]:
        with self._session() as session:
            statement = (
                select(FileRecord)
                .where(FileRecord.owner_id == owner_id)
                .order_by(FileRecord.created_at.desc())
            )
            return list(session.exec(statement).all())

    def find_by_tags(self, tags: Iterable[str]) -> List[FileRecord]:
        """Records carrying any of the given tags"""
        tags = [t for t in tags if t]
        if not tags:
            return []
        with self._session() as session:
            tagged = select(FileTag.file_id).where(FileTag.tag.in_(tags))
            statement = select(FileRecord).where(FileRecord.id.in_(tagged))
            return list(session.exec(statement).all())

    def find_in_bounding_box(self, box: BoundingBox) -> List[FileRecord]:
        with self._session() as session:
            statement = select(FileRecord).where(*self._bounding_box_clauses(box))
            return list(session.exec(statement).all())

    def find_by_compression_status(self, status: CompressionStatus) -> List[FileRecord]:
        with self._session() as session:
            statement = select(FileRecord).where(FileRecord.compression_status == status.value)
            return list(session.exec(statement).all())

    @staticmethod
    def _bounding_box_clauses(box: BoundingBox) -> list:
        return [
            FileRecord.latitude.is_not(None),
            FileRecord.longitude.is_not(None),
            FileRecord.latitude >= box.min_latitude,
            FileRecord.latitude <= box.max_latitude,
            FileRecord.longitude >= box.min_longitude,
            FileRecord.longitude <= box.max_longitude,
        ]

    def _filter_clauses(self, query: FileQuery, visible_to: Optional[str]) -> list:
        clauses = []
        if visible_to is not None:
            clauses.append(or_(FileRecord.is_public == True, FileRecord.owner_id == visible_to))  # noqa: E712
        if query.owner_id:
            clauses.append(FileRecord.owner_id == query.owner_id)
        if query.associated_id:
            clauses.append(FileRecord.associated_id == query.associated_id)
        if query.entity_type:
            clauses.append(FileRecord.entity_type == query.entity_type)
        if query.is_public is not None:
            clauses.append(FileRecord.is_public == query.is_public)
        if query.compression_status:
            clauses.append(FileRecord.compression_status == query.compression_status)
        if query.tags:
            clauses.append(FileRecord.id.in_(select(FileTag.file_id).where(FileTag.tag.in_(query.tags))))
        if query.has_location is True:
            clauses.append(FileRecord.latitude.is_not(None))
        elif query.has_location is False:
            clauses.append(FileRecord.latitude.is_(None))

        image = FileRecord.file_metadata["image"].as_string()
        if query.has_image_metadata is True:
            clauses.append(image.is_not(None))
        elif query.has_image_metadata is False:
            clauses.append(image.is_(None))
        if query.device_make:
            clauses.append(FileRecord.file_metadata[("device", "make")].as_string() == query.device_make)
        if query.device_model:
            clauses.append(FileRecord.file_metadata[("device", "model")].as_string() == query.device_model)
        if query.bounding_box:
            clauses.extend(self._bounding_box_clauses(query.bounding_box))
        return clauses

    def list_page(self, query: FileQuery, visible_to: Optional[str] = None) -> Tuple[List[FileRecord], int]:
        """
        Paginated, sorted listing

        Args:
            query: Filters and paging
            visible_to: Restrict to public records plus those owned by this id
                (None means no visibility restriction, i.e. admin)

        Returns:
            Tuple of (records on the page, total matching count)
        """
        clauses = self._filter_clauses(query, visible_to)
        column = SORTABLE_COLUMNS[query.sort_by]
        order = column.asc() if query.sort_order == "asc" else column.desc()

        with self._session() as session:
            total = session.exec(select(func.count()).select_from(FileRecord).where(*clauses)).one()
            statement = (
                select(FileRecord)
                .where(*clauses)
                .order_by(order, FileRecord.id)
                .offset((query.page - 1) * query.limit)
                .limit(query.limit)
            )
            return list(session.exec(statement).all()), total

    def find_all(self, query: FileQuery, visible_to: Optional[str] = None) -> List[FileRecord]:
        """Every record matching the filters, ignoring paging"""
        clauses = self._filter_clauses(query, visible_to)
        with self._session() as session:
            statement = select(FileRecord).where(*clauses).order_by(FileRecord.created_at.desc())
            return list(session.exec(statement).all())

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def statistics(self, visible_to: Optional[str] = None, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Aggregate counts and sizes over the records a requester can see

        Args:
            visible_to: Apply the non-admin visibility filter for this id
            user_id: Id whose own uploads are counted in `user_files`

        Returns:
            Dict with totals, per-mimetype and per-entity counts, visibility
            counts and compression figures
        """
        scope = self._filter_clauses(FileQuery(), visible_to)

        with self._session() as session:
            total_files, total_size = session.exec(
                select(func.count(), func.coalesce(func.sum(FileRecord.size), 0))
                .select_from(FileRecord)
                .where(*scope)
            ).one()

            by_type = session.exec(
                select(FileRecord.mimetype, func.count())
                .where(*scope)
                .group_by(FileRecord.mimetype)
            ).all()
            by_entity = session.exec(
                select(FileRecord.entity_type, func.count())
                .where(*scope)
                .group_by(FileRecord.entity_type)
            ).all()
            by_status = session.exec(
                select(FileRecord.compression_status, func.count())
                .where(*scope)
                .group_by(FileRecord.compression_status)
            ).all()
            public_files = session.exec(
                select(func.count())
                .select_from(FileRecord)
                .where(*scope)
                .where(FileRecord.is_public == True)  # noqa: E712
            ).one()
            user_files = 0
            if user_id:
                user_files = session.exec(
                    select(func.count())
                    .select_from(FileRecord)
                    .where(*scope)
                    .where(FileRecord.owner_id == user_id)
                ).one()
            compressed_count, compressed_original, compressed_size, avg_savings = session.exec(
                select(
                    func.count(),
                    func.coalesce(func.sum(FileRecord.original_size), 0),
                    func.coalesce(func.sum(FileRecord.compressed_size), 0),
                    func.avg(FileRecord.savings_percentage),
                )
                .select_from(FileRecord)
                .where(*scope)
                .where(FileRecord.compressed == True)  # noqa: E712
            ).one()

        return {
            "total_files": total_files,
            "total_size": int(total_size),
            "files_by_type": {mimetype: count for mimetype, count in by_type},
            "files_by_entity": {entity: count for entity, count in by_entity},
            "files_by_compression_status": {status: count for status, count in by_status},
            "public_files": public_files,
            "private_files": total_files - public_files,
            "user_files": user_files,
            "compression": {
                "compressed_files": compressed_count,
                "original_bytes": int(compressed_original),
                "compressed_bytes": int(compressed_size),
                "saved_bytes": int(compressed_original) - int(compressed_size),
                "average_savings_percentage": round(avg_savings, 2) if avg_savings is not None else 0.0,
            },
        }
