"""Utility functions for creating ZIP archives"""

import os
import zipfile
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

from filevault.utils.file_security import get_safe_filename
from filevault.utils.logger import get_logger

logger = get_logger(__name__)

ZIP_COMPRESSION_LEVEL = 9


def unique_archive_names(names: Sequence[str]) -> List[str]:
    """
    Make display names unique inside one archive

    The second `report.pdf` becomes `report (1).pdf`, the third
    `report (2).pdf`, and so on.
    """
    seen: Dict[str, int] = {}
    taken = set()
    result = []

    for raw in names:
        name = get_safe_filename(raw)
        candidate = name
        if candidate.lower() in taken:
            stem, ext = os.path.splitext(name)
            count = seen.get(name.lower(), 0)
            while candidate.lower() in taken:
                count += 1
                candidate = f"{stem} ({count}){ext}"
            seen[name.lower()] = count
        taken.add(candidate.lower())
        result.append(candidate)

    return result


def create_zip_from_files(entries: Sequence[Tuple[Path, str]], zip_path: Path) -> int:
    """
    Write files into a ZIP at zip_path

    The archive is written to `{zip_path}.partial` and renamed into place
    only once it is complete; on any error the partial file is removed and
    the exception propagates.

    Args:
        entries: (source path, name inside the archive) pairs
        zip_path: Final archive path

    Returns:
        Size of the archive in bytes
    """
    zip_path.parent.mkdir(parents=True, exist_ok=True)
    partial_path = zip_path.with_name(f"{zip_path.name}.partial")

    try:
        with zipfile.ZipFile(
            partial_path,
            "w",
            compression=zipfile.ZIP_DEFLATED,
            compresslevel=ZIP_COMPRESSION_LEVEL,
        ) as zipf:
            for source_path, arcname in entries:
                zipf.write(source_path, arcname)
        os.replace(partial_path, zip_path)
    except BaseException:
        try:
            partial_path.unlink(missing_ok=True)
        except OSError as cleanup_error:
            logger.warning(f"Failed to remove partial archive {partial_path}: {cleanup_error}")
        raise

    size = zip_path.stat().st_size
    logger.debug(f"Created ZIP file with {len(entries)} files: {zip_path.name} ({size} bytes)")
    return size
