"""
Utilities for handling cache file paths and URL parsing.
"""

import time
from collections.abc import Collection
from pathlib import Path
from urllib.parse import urlparse

from pathvalidate import sanitize_filename

DEFAULT_EXTENSION = "bin"


def create_dir(directory_path: Path) -> None:
    """Creates a directory if it does not already exist."""
    directory_path.mkdir(parents=True, exist_ok=True)


def url_extension(url: str) -> str:
    """
    Extracts the file extension from a URL path, ignoring query strings and
    fragments. Falls back to 'bin' when the path has none.
    """
    name = urlparse(url).path.rsplit("/", 1)[-1]
    if "." not in name:
        return DEFAULT_EXTENSION
    ext = sanitize_filename(name.rsplit(".", 1)[-1]).lower()
    return ext or DEFAULT_EXTENSION


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000


def build_media_path(
    media_dir: Path, content_id: str, url: str, taken: Collection[Path] = ()
) -> Path:
    """
    Builds a unique target path named `{content_id}_{timestamp}.{ext}`.

    The timestamp keeps a new version from colliding with an older version of
    the same content that may still be on disk or in flight.
    """
    safe_id = sanitize_filename(content_id, replacement_text="_") or "content"
    ext = url_extension(url)
    timestamp = now_ms()
    candidate = media_dir / f"{safe_id}_{timestamp}.{ext}"
    while candidate in taken or candidate.exists():
        timestamp += 1
        candidate = media_dir / f"{safe_id}_{timestamp}.{ext}"
    return candidate
