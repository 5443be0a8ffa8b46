"""Unit tests for background compression dispatch"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from filevault.exceptions import CompressionError
from filevault.models.file_record import CompressionStatus, CompressionType, FileRecord
from filevault.services.compression_queue_service import CompressionQueueService
from filevault.services.compression_service import CompressionResult


def processing_record(organizer, make_image, name="photo.jpg") -> FileRecord:
    path = make_image(name)
    return organizer.organize(
        path,
        FileRecord(
            original_name=name,
            mimetype="image/jpeg",
            size=path.stat().st_size,
            owner_id="user-1",
            compression_status=CompressionStatus.PROCESSING.value,
        ),
    )


class TestDispatch:
    """Test terminal status bookkeeping"""

    @pytest.mark.asyncio
    async def test_success_marks_completed(self, compression_queue, repository, organizer, make_image):
        record = processing_record(organizer, make_image)

        outcome = await compression_queue.dispatch(record)

        stored = repository.get(record.id)
        assert outcome.status is CompressionStatus.COMPLETED
        assert outcome.applied is True
        assert stored.compression_status == "completed"
        assert stored.compressed is True
        assert stored.compression_type in ("png", "webp")
        assert stored.compressed_size == outcome.result.compressed_size
        assert stored.folder_id == record.folder_id

    @pytest.mark.asyncio
    async def test_failure_marks_failed_and_keeps_folder(self, compression_queue, repository, stored_record):
        record = stored_record(
            "broken.jpg", b"not an image", mimetype="image/jpeg",
            compression_status=CompressionStatus.PROCESSING.value,
        )

        outcome = await compression_queue.dispatch(record)

        stored = repository.get(record.id)
        assert outcome.status is CompressionStatus.FAILED
        assert outcome.error
        assert stored.compression_status == "failed"
        assert stored.compressed is False
        assert stored.folder_id == record.folder_id

    @pytest.mark.asyncio
    async def test_ineligible_marks_not_needed(self, compression_queue, repository, stored_record):
        record = stored_record(
            "doc.pdf", b"%PDF-1.4", mimetype="application/pdf",
            compression_status=CompressionStatus.PROCESSING.value,
        )

        outcome = await compression_queue.dispatch(record)

        assert outcome.status is CompressionStatus.NOT_NEEDED
        assert repository.get(record.id).compression_status == "not_needed"

    @pytest.mark.asyncio
    async def test_terminal_status_is_written_once(self, compression_queue, repository, organizer, make_image):
        """A later finalize cannot overwrite the first terminal status"""
        record = processing_record(organizer, make_image)
        await compression_queue.dispatch(record)

        applied = repository.finalize_compression(record.id, CompressionStatus.FAILED)

        assert applied is False
        assert repository.get(record.id).compression_status == "completed"

    @pytest.mark.asyncio
    async def test_result_ignored_after_normalize(self, repository, organizer, make_image):
        """A job that finishes after its record was normalized does not revert it"""
        record = processing_record(organizer, make_image)
        gate = asyncio.Event()

        async def slow_compress(rec):
            await gate.wait()
            return CompressionResult(
                original_size=100, compressed_size=50, compression_ratio=0.5,
                savings_percentage=50.0, compression_type=CompressionType.WEBP,
            )

        service = AsyncMock()
        service.compress_file = slow_compress
        queue = CompressionQueueService(service, repository, max_concurrent=0)

        task = queue.dispatch(record)
        await asyncio.sleep(0)
        assert queue.normalize_stuck_records() == 1
        gate.set()
        outcome = await task

        assert outcome.applied is False
        assert repository.get(record.id).compression_status == "not_needed"

    @pytest.mark.asyncio
    async def test_upload_caller_never_sees_exception(self, repository, organizer, make_image):
        record = processing_record(organizer, make_image)
        service = AsyncMock()
        service.compress_file.side_effect = CompressionError("boom")
        queue = CompressionQueueService(service, repository, max_concurrent=0)

        outcome = await queue.dispatch(record)

        assert outcome.status is CompressionStatus.FAILED
        assert outcome.error == "boom"


class TestConcurrency:
    """Test admission and shutdown"""

    @pytest.mark.asyncio
    async def test_semaphore_bounds_running_jobs(self, repository, organizer, make_image):
        running = 0
        peak = 0

        async def tracked(rec):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return None

        service = AsyncMock()
        service.compress_file = tracked
        queue = CompressionQueueService(service, repository, max_concurrent=2)

        records = [processing_record(organizer, make_image, f"p{i}.jpg") for i in range(5)]
        outcomes = await asyncio.gather(*(queue.dispatch(r) for r in records))

        assert peak == 2
        assert all(o.status is CompressionStatus.NOT_NEEDED for o in outcomes)

    @pytest.mark.asyncio
    async def test_stop_cancels_after_timeout(self, repository, organizer, make_image):
        record = processing_record(organizer, make_image)

        async def never_finishes(rec):
            await asyncio.sleep(3600)

        service = AsyncMock()
        service.compress_file = never_finishes
        queue = CompressionQueueService(service, repository, max_concurrent=0)

        task = queue.dispatch(record)
        await queue.stop(timeout=0.05)

        assert task.cancelled()
        # left for normalize_stuck_records on the next start
        assert repository.get(record.id).compression_status == "processing"
        with pytest.raises(RuntimeError):
            queue.dispatch(record)

    @pytest.mark.asyncio
    async def test_stop_waits_for_fast_jobs(self, compression_queue, repository, organizer, make_image):
        record = processing_record(organizer, make_image)
        task = compression_queue.dispatch(record)

        await compression_queue.stop(timeout=10)

        assert task.done() and not task.cancelled()
        assert repository.get(record.id).compression_status == "completed"
