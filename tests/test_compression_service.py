"""Unit tests for the compression pipeline"""

import gzip
import os
from unittest.mock import patch

import pytest
from PIL import Image

from filevault.exceptions import CompressionError
from filevault.models.file_record import CompressionType, FileRecord
from filevault.services.compression_service import (
    CompressionOptions,
    CompressionService,
    is_text_type,
    savings_percentage,
    select_primary,
    should_compress,
)


class TestShouldCompress:
    """Test the eligibility predicate"""

    def test_images_compress_at_any_size(self):
        options = CompressionOptions()
        assert should_compress("image/jpeg", 10, options) is True
        assert should_compress("image/png", 10_000_000, options) is True

    def test_images_skipped_when_disabled(self):
        options = CompressionOptions(compress_images=False)
        assert should_compress("image/jpeg", 10_000_000, options) is False

    def test_small_non_images_skipped(self):
        options = CompressionOptions(threshold_size=300000)
        assert should_compress("text/plain", 299999, options) is False
        assert should_compress("text/plain", 300000, options) is True

    def test_pdf_never_compressed(self):
        """PDFs are refused even when compress_pdfs is on"""
        options = CompressionOptions(compress_pdfs=True)
        assert should_compress("application/pdf", 10_000_000, options) is False

    def test_text_respects_flag(self):
        assert should_compress("application/json", 500000, CompressionOptions(compress_text=False)) is False
        assert should_compress("application/json", 500000, CompressionOptions()) is True

    def test_other_types_skipped(self):
        assert should_compress("application/zip", 10_000_000, CompressionOptions()) is False

    @pytest.mark.parametrize(
        "mimetype",
        ["text/plain", "application/json", "application/xml", "text/csv", "application/javascript", "text/css", "text/html"],
    )
    def test_text_class(self, mimetype):
        assert is_text_type(mimetype) is True

    def test_options_from_settings(self, test_settings):
        options = CompressionOptions.from_settings(test_settings)
        assert options.quality == 85
        assert options.threshold_size == 300000
        assert options.max_width == 1920
        assert options.max_height == 1080


class TestSelectPrimary:
    """Test derivative selection"""

    def test_webp_wins_when_smaller_and_good(self):
        assert select_primary(1000, 800, 500) == (CompressionType.WEBP, 500)

    def test_png_when_webp_not_smaller(self):
        assert select_primary(1000, 500, 800) == (CompressionType.PNG, 500)

    def test_cutoff_applies_to_each_ratio(self):
        """webp needs to beat png and the cutoff; otherwise a good png wins"""
        assert select_primary(1000, 940, 930) == (CompressionType.WEBP, 930)
        assert select_primary(1000, 940, 960) == (CompressionType.PNG, 940)

    def test_neither_good_picks_smaller(self):
        assert select_primary(1000, 1200, 1100) == (CompressionType.WEBP, 1100)
        assert select_primary(1000, 1100, 1200) == (CompressionType.PNG, 1100)

    def test_savings_may_be_negative(self):
        assert savings_percentage(1000, 1100) == pytest.approx(-10.0)
        assert savings_percentage(1000, 250) == pytest.approx(75.0)


class TestCompressFile:
    """Test transcoding against real files"""

    @pytest.mark.asyncio
    async def test_image_produces_both_derivatives(self, compression_service, organizer, make_image):
        path = make_image("photo.jpg", size=(400, 300))
        record = organizer.organize(
            path,
            FileRecord(original_name="photo.jpg", mimetype="image/jpeg", size=path.stat().st_size, owner_id="u1"),
        )
        original = organizer.resolve_path(record)

        result = await compression_service.compress_file(record)

        targets = organizer.derivative_paths(record)
        assert result is not None
        assert targets["png"].exists()
        assert targets["webp"].exists()
        assert not original.exists()
        assert result.compression_type in (CompressionType.PNG, CompressionType.WEBP)
        assert result.folder_id == record.folder_id
        assert result.compressed_size == targets[result.compression_type.value].stat().st_size

    @pytest.mark.asyncio
    async def test_large_image_is_resized_to_fit(self, organizer, make_image):
        service = CompressionService(organizer, CompressionOptions(max_width=100, max_height=100))
        path = make_image("wide.png", size=(400, 200), image_format="PNG")
        record = organizer.organize(
            path,
            FileRecord(original_name="wide.png", mimetype="image/png", size=path.stat().st_size, owner_id="u1"),
        )

        await service.compress_file(record)

        with Image.open(organizer.derivative_paths(record)["webp"]) as img:
            assert img.size == (100, 50)

    @pytest.mark.asyncio
    async def test_small_image_is_not_upscaled(self, compression_service, organizer, make_image):
        path = make_image("small.jpg", size=(40, 30))
        record = organizer.organize(
            path,
            FileRecord(original_name="small.jpg", mimetype="image/jpeg", size=path.stat().st_size, owner_id="u1"),
        )

        await compression_service.compress_file(record)

        with Image.open(organizer.derivative_paths(record)["png"]) as img:
            assert img.size == (40, 30)

    @pytest.mark.asyncio
    async def test_png_upload_keeps_derivative_at_original_path(self, compression_service, organizer, make_image):
        """When the original already has the .png name it is replaced, not deleted"""
        path = make_image("logo.png", size=(50, 50), color=(0, 0, 255, 128), image_format="PNG")
        record = organizer.organize(
            path,
            FileRecord(original_name="logo.png", mimetype="image/png", size=path.stat().st_size, owner_id="u1"),
        )

        await compression_service.compress_file(record)

        assert organizer.resolve_path(record) == organizer.derivative_paths(record)["png"]
        assert organizer.resolve_path(record).exists()

    @pytest.mark.asyncio
    async def test_corrupt_image_raises_and_keeps_original(self, compression_service, stored_record, organizer):
        record = stored_record("broken.jpg", b"not an image", mimetype="image/jpeg")

        with pytest.raises(CompressionError):
            await compression_service.compress_file(record)

        assert organizer.resolve_path(record).exists()
        assert not organizer.derivative_paths(record)["webp"].exists()

    @pytest.mark.asyncio
    async def test_partial_encode_failure_removes_other_derivative(self, compression_service, organizer, make_image):
        path = make_image("photo.jpg")
        record = organizer.organize(
            path,
            FileRecord(original_name="photo.jpg", mimetype="image/jpeg", size=path.stat().st_size, owner_id="u1"),
        )

        with patch("filevault.services.compression_service.encode_webp", side_effect=OSError("disk full")):
            with pytest.raises(CompressionError):
                await compression_service.compress_file(record)

        assert organizer.resolve_path(record).exists()
        assert not organizer.derivative_paths(record)["png"].exists()

    @pytest.mark.asyncio
    async def test_png_original_untouched_when_webp_encode_fails(self, compression_service, organizer, make_image):
        path = make_image("big.png", size=(3000, 2000), image_format="PNG")
        record = organizer.organize(
            path,
            FileRecord(original_name="big.png", mimetype="image/png", size=path.stat().st_size, owner_id="u1"),
        )
        stored = organizer.resolve_path(record)
        original_bytes = stored.read_bytes()

        with patch("filevault.services.compression_service.encode_webp", side_effect=OSError("encoder crashed")):
            with pytest.raises(CompressionError):
                await compression_service.compress_file(record)

        assert stored.read_bytes() == original_bytes
        with Image.open(stored) as img:
            assert img.size == (3000, 2000)
        assert not organizer.derivative_paths(record)["webp"].exists()

    @pytest.mark.asyncio
    async def test_png_original_untouched_when_webp_write_fails(self, compression_service, organizer, make_image):
        path = make_image("wide.png", size=(2400, 1200), image_format="PNG")
        record = organizer.organize(
            path,
            FileRecord(original_name="wide.png", mimetype="image/png", size=path.stat().st_size, owner_id="u1"),
        )
        stored = organizer.resolve_path(record)
        original_bytes = stored.read_bytes()
        real_replace = os.replace

        def failing_replace(src, dst):
            if str(dst).endswith(".webp"):
                raise OSError("no space left")
            return real_replace(src, dst)

        with patch("filevault.utils.image_converter.os.replace", side_effect=failing_replace):
            with pytest.raises(CompressionError):
                await compression_service.compress_file(record)

        assert stored.read_bytes() == original_bytes
        assert sorted(p.name for p in stored.parent.iterdir()) == [stored.name]

    @pytest.mark.asyncio
    async def test_ineligible_returns_none(self, compression_service, stored_record):
        record = stored_record("doc.pdf", b"%PDF-1.4", mimetype="application/pdf")
        assert await compression_service.compress_file(record) is None

    @pytest.mark.asyncio
    async def test_text_gets_gzip_sidecar(self, organizer, stored_record):
        service = CompressionService(organizer, CompressionOptions(threshold_size=10))
        data = b"line of text\n" * 200
        record = stored_record("log.txt", data, mimetype="text/plain")

        result = await service.compress_file(record)

        sidecar = organizer.sidecar_path(record)
        assert result.compression_type is CompressionType.NONE
        assert organizer.resolve_path(record).exists()
        assert gzip.decompress(sidecar.read_bytes()) == data
        assert result.compressed_size == sidecar.stat().st_size
        assert result.savings_percentage > 0
