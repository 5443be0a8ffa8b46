"""Compression pipeline: eligibility, image transcoding and result selection"""

import asyncio
import gzip
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

from pydantic import BaseModel

from filevault.config import Settings, settings
from filevault.exceptions import CompressionError
from filevault.models.file_record import CompressionType, FileRecord
from filevault.services.storage_organizer import StorageOrganizer, remove_if_empty
from filevault.utils.image_converter import encode_png, encode_webp, fit_within, load_image, write_derivatives
from filevault.utils.logger import get_logger

logger = get_logger(__name__)

# A derivative must be below this fraction of the original to count as a win
GOOD_RATIO = 0.95
GZIP_LEVEL = 6

TEXT_MARKERS = ("json", "xml", "csv", "javascript", "css", "html")


@dataclass(frozen=True)
class CompressionOptions:
    quality: int = 85
    threshold_size: int = 300000
    compress_images: bool = True
    compress_pdfs: bool = False
    compress_text: bool = True
    max_width: int = 1920
    max_height: int = 1080

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "CompressionOptions":
        config = config or settings
        return cls(
            quality=config.compression_quality,
            threshold_size=config.compression_threshold_size,
            compress_images=config.compress_image_types,
            compress_pdfs=config.compress_pdf_types,
            compress_text=config.compress_text_types,
            max_width=config.compression_max_width,
            max_height=config.compression_max_height,
        )


class CompressionResult(BaseModel):
    """Outcome of a successful compression"""

    original_size: int
    compressed_size: int
    compression_ratio: float
    savings_percentage: float
    compression_type: CompressionType
    folder_id: Optional[str] = None
    png_path: Optional[Path] = None
    webp_path: Optional[Path] = None
    gzip_path: Optional[Path] = None


def is_image_type(mimetype: str) -> bool:
    return mimetype.startswith("image/")


def is_pdf_type(mimetype: str) -> bool:
    return mimetype == "application/pdf"


def is_text_type(mimetype: str) -> bool:
    return mimetype.startswith("text/") or any(marker in mimetype for marker in TEXT_MARKERS)


def should_compress(mimetype: str, size: int, options: CompressionOptions) -> bool:
    """
    Decide whether an upload enters the compression pipeline

    Rules, first match wins:
    1. images are compressed whenever image compression is on, at any size
    2. anything below the size threshold is skipped
    3. PDFs are never compressed, whatever compress_pdfs says
    4. text-class types are compressed when text compression is on
    5. everything else is skipped
    """
    if options.compress_images and is_image_type(mimetype):
        return True
    if size < options.threshold_size:
        return False
    if is_pdf_type(mimetype):
        return False
    if options.compress_text and is_text_type(mimetype):
        return True
    return False


def savings_percentage(original_size: int, compressed_size: int) -> float:
    if original_size <= 0:
        return 0.0
    return (original_size - compressed_size) / original_size * 100


def select_primary(original_size: int, png_size: int, webp_size: int) -> Tuple[CompressionType, int]:
    """
    Choose which derivative is served by default

    Returns:
        Tuple of (compression type, size of the chosen derivative)
    """
    if original_size <= 0:
        return (CompressionType.WEBP, webp_size) if webp_size < png_size else (CompressionType.PNG, png_size)

    png_ratio = png_size / original_size
    webp_ratio = webp_size / original_size

    if webp_ratio < png_ratio and webp_ratio < GOOD_RATIO:
        return CompressionType.WEBP, webp_size
    if png_ratio < GOOD_RATIO:
        return CompressionType.PNG, png_size
    # Neither is a real win; serve the smaller one anyway
    if webp_ratio < png_ratio:
        return CompressionType.WEBP, webp_size
    return CompressionType.PNG, png_size


def _gzip_file(source: Path, destination: Path) -> int:
    tmp_path = destination.with_name(f".{destination.name}.tmp")
    try:
        with open(source, "rb") as src, gzip.open(tmp_path, "wb", compresslevel=GZIP_LEVEL) as dst:
            shutil.copyfileobj(src, dst)
        os.replace(tmp_path, destination)
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise
    return destination.stat().st_size


class CompressionService:
    """Runs the transcode for one record; status bookkeeping lives in the dispatcher"""

    def __init__(self, organizer: StorageOrganizer, options: Optional[CompressionOptions] = None):
        self.organizer = organizer
        self.options = options or CompressionOptions.from_settings()

    def should_compress(self, mimetype: str, size: int) -> bool:
        return should_compress(mimetype, size, self.options)

    async def compress_file(self, record: FileRecord) -> Optional[CompressionResult]:
        """
        Compress a stored upload

        Returns:
            CompressionResult, or None when the record is not eligible

        Raises:
            CompressionError: If decoding, encoding or writing fails
        """
        if not self.should_compress(record.mimetype, record.size):
            return None

        if is_image_type(record.mimetype):
            return await self._compress_image(record)
        return await self._compress_text(record)

    async def _compress_image(self, record: FileRecord) -> CompressionResult:
        source = self.organizer.resolve_path(record)
        targets = self.organizer.derivative_paths(record)
        original_size = record.original_size or record.size

        try:
            img = await asyncio.to_thread(load_image, source)
            img = await asyncio.to_thread(fit_within, img, self.options.max_width, self.options.max_height)
        except Exception as e:
            logger.error(f"Failed to decode image {record.id}: {e}")
            raise CompressionError(f"Image compression failed: {e}") from e

        # Each encoder gets its own copy; Pillow images are not shared across threads
        results = await asyncio.gather(
            asyncio.to_thread(encode_png, img.copy()),
            asyncio.to_thread(encode_webp, img.copy(), self.options.quality),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            logger.error(f"Image encode failed for {record.id}: {errors[0]}")
            raise CompressionError(f"Image compression failed: {errors[0]}") from errors[0]

        png_data, webp_data = results
        payloads = {"png": (targets["png"], png_data), "webp": (targets["webp"], webp_data)}
        try:
            sizes = await asyncio.to_thread(write_derivatives, payloads, source)
        except Exception as e:
            logger.error(f"Failed to write derivatives for {record.id}: {e}")
            raise CompressionError(f"Image compression failed: {e}") from e

        self._verify_derivatives(source, targets, {"png": len(png_data), "webp": len(webp_data)})
        png_size, webp_size = sizes["png"], sizes["webp"]

        compression_type, compressed_size = select_primary(original_size, png_size, webp_size)
        self._remove_original(source, targets)

        savings = savings_percentage(original_size, compressed_size)
        logger.info(
            f"Compressed {record.id}: {original_size} -> {compressed_size} bytes "
            f"({compression_type.value}, {savings:.1f}% saved)"
        )
        return CompressionResult(
            original_size=original_size,
            compressed_size=compressed_size,
            compression_ratio=compressed_size / original_size if original_size else 0.0,
            savings_percentage=savings,
            compression_type=compression_type,
            folder_id=record.folder_id,
            png_path=targets["png"],
            webp_path=targets["webp"],
        )

    async def _compress_text(self, record: FileRecord) -> CompressionResult:
        source = self.organizer.resolve_path(record)
        sidecar = self.organizer.sidecar_path(record)
        original_size = record.original_size or record.size

        try:
            compressed_size = await asyncio.to_thread(_gzip_file, source, sidecar)
        except Exception as e:
            logger.error(f"Text compression failed for {record.id}: {e}")
            raise CompressionError(f"Text compression failed: {e}") from e

        logger.info(f"Wrote gzip sidecar for {record.id}: {original_size} -> {compressed_size} bytes")
        return CompressionResult(
            original_size=original_size,
            compressed_size=compressed_size,
            compression_ratio=compressed_size / original_size if original_size else 0.0,
            savings_percentage=savings_percentage(original_size, compressed_size),
            compression_type=CompressionType.NONE,
            folder_id=record.folder_id,
            gzip_path=sidecar,
        )

    def _verify_derivatives(self, source: Path, targets: Dict[str, Path], sizes: Dict[str, int]) -> None:
        for name, path in targets.items():
            if not path.exists() or path.stat().st_size != sizes[name]:
                self._discard_derivatives(source, targets)
                raise CompressionError(f"Image compression failed: {name} derivative missing after write")

    @staticmethod
    def _discard_derivatives(source: Path, targets: Dict[str, Path]) -> None:
        for path in targets.values():
            if path == source:
                continue
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to remove partial derivative {path.name}: {e}")

    @staticmethod
    def _remove_original(source: Path, targets: Dict[str, Path]) -> None:
        """Delete the original once both derivatives are confirmed on disk"""
        try:
            if source.exists() and source not in targets.values():
                source.unlink()
            remove_if_empty(source.parent)
        except OSError as e:
            logger.warning(f"Failed to clean up original {source.name}: {e}")
