"""
Provides methods for checking the integrity of downloaded media files.
"""

import logging
from pathlib import Path

from signage_cache.exceptions import FileIntegrityError

log = logging.getLogger(__name__)

# Leading bytes of the container formats the player understands. A server that
# answers 200 with an HTML error page fails this check instead of being cached.
_SIGNATURES: dict[str, tuple[tuple[int, bytes], ...]] = {
    "jpg": ((0, b"\xff\xd8\xff"),),
    "jpeg": ((0, b"\xff\xd8\xff"),),
    "png": ((0, b"\x89PNG\r\n\x1a\n"),),
    "gif": ((0, b"GIF87a"), (0, b"GIF89a")),
    "webp": ((8, b"WEBP"),),
    "mp4": ((4, b"ftyp"),),
    "m4v": ((4, b"ftyp"),),
    "mov": ((4, b"ftyp"), (4, b"moov"), (4, b"wide"), (4, b"mdat")),
    "webm": ((0, b"\x1a\x45\xdf\xa3"),),
    "mkv": ((0, b"\x1a\x45\xdf\xa3"),),
}


class MediaIntegrityChecker:
    """A collection of static methods for validating downloaded files."""

    @staticmethod
    def check_size(filepath: Path, expected_size: int | None = None) -> bool:
        """
        Checks that the file exists, is not empty and, when known, has exactly
        the expected number of bytes.
        """
        try:
            actual = filepath.stat().st_size
        except OSError as e:
            log.warning(f"Integrity check failed for '{filepath.name}': {e}")
            return False
        if actual == 0:
            log.warning(f"Integrity check failed for '{filepath.name}': empty file.")
            return False
        if expected_size is not None and actual != expected_size:
            log.warning(
                f"Integrity check failed for '{filepath.name}': "
                f"{actual} bytes on disk, expected {expected_size}."
            )
            return False
        return True

    @staticmethod
    def check_signature(filepath: Path) -> bool:
        """
        Checks the file's magic bytes against its extension. Files with an
        extension not listed above always pass.
        """
        signatures = _SIGNATURES.get(filepath.suffix.lstrip(".").lower())
        if not signatures:
            return True
        try:
            with open(filepath, "rb") as f:
                head = f.read(16)
        except OSError as e:
            log.warning(f"Integrity check failed for '{filepath.name}': {e}")
            return False
        for offset, magic in signatures:
            if head[offset : offset + len(magic)] == magic:
                return True
        log.warning(
            f"Integrity check failed for '{filepath.name}': "
            "content does not match its file type."
        )
        return False

    @classmethod
    def verify(cls, filepath: Path, expected_size: int | None = None) -> bool:
        return cls.check_size(filepath, expected_size) and cls.check_signature(filepath)

    @classmethod
    def ensure_valid(cls, filepath: Path, expected_size: int | None = None) -> None:
        """Like `verify`, but raises FileIntegrityError on failure."""
        if not cls.verify(filepath, expected_size):
            raise FileIntegrityError(
                f"'{filepath.name}' failed the post-download integrity check."
            )
