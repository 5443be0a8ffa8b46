"""Pillow helpers producing the PNG and WebP derivatives of an upload"""

import io
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from PIL import Image

from filevault.utils.logger import get_logger

logger = get_logger(__name__)

# Modes each encoder writes without conversion
PNG_MODES = {"1", "L", "LA", "P", "RGB", "RGBA", "I", "I;16"}
WEBP_MODES = {"RGB", "RGBA"}


def has_alpha(img: Image.Image) -> bool:
    return img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info)


def load_image(input_path: Path) -> Image.Image:
    """Open and fully decode an image (raises on unreadable input)"""
    with Image.open(input_path) as img:
        img.load()
        return img.copy()


def fit_within(img: Image.Image, max_width: int, max_height: int) -> Image.Image:
    """
    Shrink an image to fit inside max_width x max_height

    Aspect ratio is preserved and images already inside the box are returned
    untouched (never upscaled).
    """
    width, height = img.size
    if width <= max_width and height <= max_height:
        return img

    resized = img.copy()
    resized.thumbnail((max_width, max_height), Image.Resampling.LANCZOS)
    logger.debug(f"Resized image from {width}x{height} to {resized.width}x{resized.height}")
    return resized


def _convert_mode(img: Image.Image, allowed: set) -> Image.Image:
    if img.mode in allowed:
        return img
    return img.convert("RGBA" if has_alpha(img) else "RGB")


def _encode(img: Image.Image, image_format: str, **save_kwargs: Any) -> bytes:
    buffer = io.BytesIO()
    img.save(buffer, format=image_format, **save_kwargs)
    return buffer.getvalue()


def encode_png(img: Image.Image) -> bytes:
    """Encode a maximally compressed PNG in memory"""
    return _encode(_convert_mode(img, PNG_MODES), "PNG", optimize=True, compress_level=9)


def encode_webp(img: Image.Image, quality: int = 85) -> bytes:
    """Encode a WebP at the given quality using the slowest, best method"""
    return _encode(_convert_mode(img, WEBP_MODES), "WEBP", quality=quality, method=6)


def write_derivatives(payloads: Dict[str, Tuple[Path, bytes]], keep: Optional[Path] = None) -> Dict[str, int]:
    """
    Write every encoded derivative, all or nothing

    Each payload goes to a temp file beside its target first. Only when all
    temp files are on disk with the expected size are they renamed into
    place. The target equal to ``keep`` (an original sharing the derivative's
    name) is renamed last, so it is only overwritten once the others landed.

    Returns:
        Written size per payload name
    """
    staged: Dict[str, Tuple[Path, Path]] = {}
    try:
        for name, (target, data) in payloads.items():
            tmp_path = target.with_name(f".{target.name}.tmp")
            staged[name] = (tmp_path, target)
            tmp_path.write_bytes(data)
            if tmp_path.stat().st_size != len(data):
                raise OSError(f"{name} derivative short write")

        for name in sorted(staged, key=lambda n: staged[n][1] == keep):
            tmp_path, target = staged[name]
            os.replace(tmp_path, target)
    except Exception:
        for tmp_path, _ in staged.values():
            tmp_path.unlink(missing_ok=True)
        raise

    return {name: target.stat().st_size for name, (_, target) in staged.items()}
