"""Metadata enrichment: image/EXIF extraction, location and custom keys"""

from pathlib import Path
from typing import Any, Dict, Optional

from PIL import ExifTags, Image
from PIL.TiffImagePlugin import IFDRational

from filevault.exceptions import ValidationError
from filevault.models.file_record import (
    DeviceMetadata,
    FileMetadata,
    ImageMetadata,
    LocationMetadata,
)
from filevault.utils.logger import get_logger

logger = get_logger(__name__)

# Upper bound on custom metadata key length
MAX_CUSTOM_KEY_LENGTH = 100


def _to_json_value(value: Any) -> Any:
    """Convert an EXIF value to something JSON can hold, or None to drop it"""
    if isinstance(value, IFDRational):
        try:
            return float(value)
        except (ZeroDivisionError, ValueError):
            return None
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8").strip("\x00").strip() or None
        except UnicodeDecodeError:
            return None
    if isinstance(value, str):
        return value.strip("\x00").strip() or None
    if isinstance(value, (tuple, list)):
        items = [_to_json_value(v) for v in value]
        return [v for v in items if v is not None] or None
    if isinstance(value, (int, float, bool)):
        return value
    return None


def _dms_to_degrees(dms: Any, ref: Optional[str]) -> Optional[float]:
    try:
        degrees, minutes, seconds = (float(v) for v in dms)
    except (TypeError, ValueError, ZeroDivisionError):
        return None
    result = degrees + minutes / 60 + seconds / 3600
    if ref in ("S", "W"):
        result = -result
    return result


def _read_exif(img: Image.Image) -> Dict[str, Any]:
    """Flatten the base and Exif IFDs into {tag name: JSON-safe value}"""
    exif = img.getexif()
    tags: Dict[str, Any] = {}

    for tag_id, value in exif.items():
        name = ExifTags.TAGS.get(tag_id)
        if name:
            tags[name] = value

    try:
        for tag_id, value in exif.get_ifd(ExifTags.IFD.Exif).items():
            name = ExifTags.TAGS.get(tag_id)
            if name:
                tags[name] = value
    except KeyError:
        pass

    return tags


def _read_gps(img: Image.Image) -> Optional[LocationMetadata]:
    try:
        gps = img.getexif().get_ifd(ExifTags.IFD.GPSInfo)
    except KeyError:
        return None
    if not gps:
        return None

    latitude = _dms_to_degrees(gps.get(ExifTags.GPS.GPSLatitude), gps.get(ExifTags.GPS.GPSLatitudeRef))
    longitude = _dms_to_degrees(gps.get(ExifTags.GPS.GPSLongitude), gps.get(ExifTags.GPS.GPSLongitudeRef))
    if latitude is None or longitude is None:
        return None
    if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
        return None

    altitude = gps.get(ExifTags.GPS.GPSAltitude)
    return LocationMetadata(
        latitude=latitude,
        longitude=longitude,
        altitude=_to_json_value(altitude) if altitude is not None else None,
    )


def extract_from_path(path: Path) -> FileMetadata:
    """
    Read image dimensions, orientation and EXIF from a file

    Returns:
        FileMetadata holding whatever could be read (image, device and, when
        the EXIF carries GPS coordinates, location)

    Raises:
        OSError / PIL.UnidentifiedImageError if the file is not a readable image
    """
    with Image.open(path) as img:
        raw = _read_exif(img)
        location = _read_gps(img)
        width, height = img.size

    exif = {name: v for name, v in ((n, _to_json_value(val)) for n, val in raw.items()) if v is not None}
    # Nested IFD pointers are offsets, not data
    for pointer in ("ExifOffset", "GPSInfo"):
        exif.pop(pointer, None)

    make = exif.get("Make")
    model = exif.get("Model")
    image = ImageMetadata(
        width=width,
        height=height,
        orientation=exif.get("Orientation"),
        exif=exif,
        camera=" ".join(p for p in (make, model) if p) or None,
        lens=exif.get("LensModel"),
        aperture=exif.get("FNumber"),
        shutter_speed=exif.get("ExposureTime"),
        iso=exif.get("ISOSpeedRatings") if isinstance(exif.get("ISOSpeedRatings"), int) else None,
        focal_length=exif.get("FocalLength"),
    )

    device = None
    if make or model or exif.get("Software"):
        device = DeviceMetadata(make=make, model=model, software=exif.get("Software"))

    return FileMetadata(image=image, device=device, location=location)


def merge_extracted(existing: FileMetadata, extracted: FileMetadata) -> FileMetadata:
    """
    Fold freshly extracted metadata into what a record already has

    Values already present win over extracted ones, so user-supplied
    location or device data is never overwritten.
    """
    merged = existing.model_copy(deep=True)

    if extracted.image is not None:
        current = existing.image.model_dump(exclude_none=True, exclude_defaults=True) if existing.image else {}
        merged.image = ImageMetadata(**{**extracted.image.model_dump(), **current})

    if extracted.device is not None:
        current = existing.device.model_dump(exclude_none=True) if existing.device else {}
        merged.device = DeviceMetadata(**{**extracted.device.model_dump(), **current})

    if extracted.location is not None and existing.location is None:
        merged.location = extracted.location

    return merged


def with_location(
    metadata: FileMetadata,
    latitude: float,
    longitude: float,
    altitude: Optional[float] = None,
    accuracy: Optional[float] = None,
    address: Optional[str] = None,
    city: Optional[str] = None,
    country: Optional[str] = None,
) -> FileMetadata:
    """Return a copy of metadata with its location replaced"""
    try:
        location = LocationMetadata(
            latitude=latitude,
            longitude=longitude,
            altitude=altitude,
            accuracy=accuracy,
            address=address,
            city=city,
            country=country,
        )
    except ValueError as e:
        raise ValidationError(f"Invalid location: {e}") from e

    updated = metadata.model_copy(deep=True)
    updated.location = location
    return updated


def with_custom(metadata: FileMetadata, key: str, value: Any) -> FileMetadata:
    """Return a copy of metadata with one custom key set"""
    key = (key or "").strip()
    if not key:
        raise ValidationError("Custom metadata key is required")
    if len(key) > MAX_CUSTOM_KEY_LENGTH:
        raise ValidationError(f"Custom metadata key must be at most {MAX_CUSTOM_KEY_LENGTH} characters")

    updated = metadata.model_copy(deep=True)
    updated.custom = {**updated.custom, key: value}
    return updated


class MetadataService:
    """Extracts metadata for stored images"""

    def extract(self, path: Path, mimetype: str, existing: FileMetadata) -> FileMetadata:
        """
        Extract and merge metadata for one stored file

        Non-images and unreadable files return `existing` unchanged; the
        failure is logged only.
        """
        if not mimetype.startswith("image/"):
            return existing

        try:
            extracted = extract_from_path(path)
        except Exception as e:
            logger.warning(f"Metadata extraction failed for {path.name}: {e}")
            return existing

        logger.debug(f"Extracted metadata from {path.name}")
        return merge_extracted(existing, extracted)
