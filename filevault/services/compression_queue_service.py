"""Background dispatch of compression jobs and their status bookkeeping"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Set

from filevault.config import settings
from filevault.models.file_record import CompressionStatus, FileRecord, utcnow
from filevault.services.compression_service import CompressionResult, CompressionService
from filevault.services.file_repository import FileRepository
from filevault.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class CompressionOutcome:
    """What a dispatched job ended with"""

    file_id: str
    status: CompressionStatus
    result: Optional[CompressionResult] = None
    error: Optional[str] = None
    applied: bool = False  # False when the terminal write found the record no longer processing
    finished_at: datetime = field(default_factory=utcnow)


class CompressionQueueService:
    """
    Runs one detached task per eligible upload

    The upload request never waits on these tasks. Each task ends with exactly
    one conditional status write; failures are logged and recorded as
    `failed`, never raised to the uploader.
    """

    def __init__(
        self,
        compression_service: CompressionService,
        repository: FileRepository,
        max_concurrent: Optional[int] = None,
    ):
        self.compression_service = compression_service
        self.repository = repository
        self._max_concurrent = settings.compression_max_concurrent if max_concurrent is None else max_concurrent
        self._semaphore: Optional[asyncio.Semaphore] = (
            asyncio.Semaphore(self._max_concurrent) if self._max_concurrent > 0 else None
        )
        self._tasks: Set[asyncio.Task] = set()
        self._current_jobs: Dict[str, Dict[str, Any]] = {}
        self._accepting = True

    def dispatch(self, record: FileRecord) -> asyncio.Task:
        """
        Start compressing a record in the background

        The record must already be persisted with status `processing`.

        Returns:
            Task resolving to a CompressionOutcome
        """
        if not self._accepting:
            raise RuntimeError("Compression queue is shutting down")

        task = asyncio.create_task(self._run(record), name=f"compress-{record.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._current_jobs[record.id] = {
            "file_id": record.id,
            "mimetype": record.mimetype,
            "size": record.size,
            "status": "queued",
            "added_at": utcnow(),
        }
        logger.debug(f"Dispatched compression for {record.id} ({record.mimetype})")
        return task

    async def _run(self, record: FileRecord) -> CompressionOutcome:
        try:
            if self._semaphore is not None:
                async with self._semaphore:
                    return await self._process(record)
            return await self._process(record)
        finally:
            self._current_jobs.pop(record.id, None)

    async def _process(self, record: FileRecord) -> CompressionOutcome:
        if record.id in self._current_jobs:
            self._current_jobs[record.id]["status"] = "compressing"
            self._current_jobs[record.id]["started_at"] = utcnow()

        try:
            result = await self.compression_service.compress_file(record)
        except asyncio.CancelledError:
            # left as processing; normalize_stuck_records picks it up on next start
            logger.warning(f"Compression cancelled for {record.id}")
            raise
        except Exception as e:
            logger.error(f"Background compression failed for {record.id}: {e}")
            return self._finalize(record, CompressionStatus.FAILED, error=str(e))

        if result is None:
            return self._finalize(record, CompressionStatus.NOT_NEEDED)

        logger.info(f"Background compression completed for {record.id}")
        return self._finalize(record, CompressionStatus.COMPLETED, result=result)

    def _finalize(
        self,
        record: FileRecord,
        status: CompressionStatus,
        result: Optional[CompressionResult] = None,
        error: Optional[str] = None,
    ) -> CompressionOutcome:
        """Write the terminal status; folder_id is never touched"""
        fields: Dict[str, Any] = {"compressed": False}
        if result is not None:
            fields = {
                "compressed": True,
                "original_size": result.original_size,
                "compressed_size": result.compressed_size,
                "savings_percentage": result.savings_percentage,
                "compression_type": result.compression_type.value,
            }

        applied = False
        try:
            applied = self.repository.finalize_compression(record.id, status, **fields)
        except Exception as e:
            logger.error(f"Failed to record compression status for {record.id}: {e}")

        return CompressionOutcome(
            file_id=record.id,
            status=status,
            result=result,
            error=error,
            applied=applied,
        )

    def normalize_stuck_records(self) -> int:
        """Move every record left in `processing` to `not_needed`"""
        count = self.repository.normalize_stuck()
        if count:
            logger.info(f"Normalized {count} records stuck in processing")
        return count

    async def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop accepting jobs and drain in-flight ones

        Waits up to `timeout` seconds, then cancels what is left. Cancelled
        records stay `processing` until normalized.
        """
        self._accepting = False
        timeout = settings.shutdown_drain_timeout if timeout is None else timeout

        pending = set(self._tasks)
        if not pending:
            logger.info("Compression queue stopped")
            return

        logger.info(f"Draining {len(pending)} compression jobs (timeout: {timeout}s)")
        done, pending = await asyncio.wait(pending, timeout=timeout)

        if pending:
            logger.warning(f"Cancelling {len(pending)} unfinished compression jobs")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        logger.info("Compression queue stopped")

    def get_queue_status(self) -> Dict[str, Any]:
        return {
            "in_flight": len(self._tasks),
            "max_concurrent": self._max_concurrent or "unbounded",
            "accepting": self._accepting,
            "jobs": list(self._current_jobs.values()),
        }
