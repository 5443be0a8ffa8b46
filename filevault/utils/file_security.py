"""Upload name checks and filename helpers"""

import mimetypes
from pathlib import Path
from typing import Tuple

from filevault.utils.logger import get_logger

logger = get_logger(__name__)


# Extensions refused at upload time
BLOCKED_EXTENSIONS = {
    # Executables
    '.exe', '.msi', '.bat', '.cmd', '.com', '.scr', '.pif',
    # Shell and host scripts
    '.sh', '.bash', '.zsh', '.ps1', '.vbs', '.jse', '.wsf',
    # System libraries
    '.sys', '.dll', '.drv',
    '.lnk',
    # Installers and packages
    '.deb', '.rpm', '.pkg', '.dmg', '.app', '.jar', '.apk', '.ipa',
}

# Archives are accepted even when their inner name looks dangerous
ARCHIVE_EXTENSIONS = {
    '.zip', '.7z', '.rar', '.tar', '.gz', '.bz2', '.xz',
    '.tar.gz', '.tar.bz2', '.tar.xz', '.tgz',
}


def is_blocked_file(filename: str) -> bool:
    """
    Check whether a filename carries a blocked extension

    Every suffix is inspected, so `invoice.pdf.exe` and `setup.exe.pdf` are
    both refused.
    """
    return any(suffix.lower() in BLOCKED_EXTENSIONS for suffix in Path(filename).suffixes)


def is_archive(filename: str) -> bool:
    file_path = Path(filename)
    if len(file_path.suffixes) >= 2:
        compound_ext = ''.join(file_path.suffixes[-2:]).lower()
        if compound_ext in ARCHIVE_EXTENSIONS:
            return True
    return file_path.suffix.lower() in ARCHIVE_EXTENSIONS


def validate_file_safety(filename: str) -> Tuple[bool, str]:
    """
    Validate that an uploaded filename may be stored

    Args:
        filename: Original name supplied by the client

    Returns:
        Tuple of (is_safe, reason)
    """
    if not filename or not filename.strip():
        return False, "File name is required"

    if is_archive(filename):
        return True, "Archive file"

    if is_blocked_file(filename):
        ext = Path(filename).suffix.lower()
        logger.warning(f"Blocked upload: {filename} (extension: {ext})")
        return False, f"File type '{ext}' is not allowed"

    return True, "Safe file"


def get_safe_filename(filename: str) -> str:
    """
    Strip path separators and traversal sequences from a display name

    Used for ZIP entry names, which must never escape the archive root.
    """
    safe_name = filename.replace('/', '_').replace('\\', '_')
    safe_name = safe_name.replace('..', '_')
    safe_name = safe_name.strip('. ')
    return safe_name or "file"


def guess_mimetype(filename: str) -> str:
    mime_type, _ = mimetypes.guess_type(filename)
    return mime_type or "application/octet-stream"
