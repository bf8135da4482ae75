"""
Durable persistence for the cache metadata document.

Each document is written atomically: the JSON is written to a temporary file in
the same directory, flushed, fsync'ed and then renamed over the target. A crash
mid-write leaves either the old or the new document, never a torn one. A backup
copy is written after the primary so a primary damaged by other means (manual
edits, a bad sector) can still be recovered.
"""

import errno
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from signage_cache.exceptions import (
    CacheError,
    MetadataCorruptError,
    StorageExhaustedError,
)
from signage_cache.models.entry import CacheEntry

log = logging.getLogger(__name__)

DOCUMENT_VERSION = 1
_EXHAUSTION_ERRNOS = {errno.ENOSPC, errno.EDQUOT}


def is_storage_exhausted(error: OSError) -> bool:
    """True for 'no space left on device' and 'disk quota exceeded'."""
    return error.errno in _EXHAUSTION_ERRNOS


def translate_os_error(error: OSError, action: str) -> CacheError:
    """Maps an OSError to the cache error taxonomy."""
    if is_storage_exhausted(error):
        return StorageExhaustedError(f"Storage exhausted while {action}: {error}")
    return CacheError(f"Failed while {action}: {error}")


def write_atomic(path: Path, data: str) -> None:
    """Writes `data` to `path` via temp file, fsync and rename."""
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise

    # Make the rename itself durable where the platform allows it.
    if hasattr(os, "O_DIRECTORY"):
        try:
            dir_fd = os.open(path.parent, os.O_DIRECTORY)
        except OSError:
            return
        try:
            os.fsync(dir_fd)
        except OSError:
            pass
        finally:
            os.close(dir_fd)


class MetadataFile:
    """A primary metadata document plus its backup copy."""

    def __init__(self, primary_path: Path, backup_path: Path | None = None):
        self.primary_path = primary_path
        self.backup_path = backup_path or primary_path.with_name(
            f"{primary_path.stem}.backup{primary_path.suffix}"
        )

    @staticmethod
    def _parse(raw: str) -> dict[str, CacheEntry]:
        """Parses and validates a document. Raises MetadataCorruptError."""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MetadataCorruptError(f"Invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise MetadataCorruptError("Metadata document is not a JSON object.")

        # Versioned documents wrap the map; older ones are the bare map.
        entries_raw: Any = data.get("entries", data) if "version" in data else data
        if not isinstance(entries_raw, dict):
            raise MetadataCorruptError("Metadata 'entries' is not a JSON object.")

        entries: dict[str, CacheEntry] = {}
        try:
            for url, value in entries_raw.items():
                entry = CacheEntry.model_validate(value)
                entry.verified = False
                entries[url] = entry
        except (ValidationError, TypeError) as e:
            raise MetadataCorruptError(f"Invalid cache entry: {e}") from e
        return entries

    @staticmethod
    def _serialize(entries: dict[str, CacheEntry]) -> str:
        return json.dumps(
            {
                "version": DOCUMENT_VERSION,
                "entries": {url: e.to_document() for url, e in entries.items()},
            },
            indent=2,
        )

    def read_document(self, path: Path) -> dict[str, CacheEntry] | None:
        """
        Reads one document. Returns None if the file does not exist.
        Raises MetadataCorruptError if it exists but cannot be used.
        """
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            raise MetadataCorruptError(f"Could not read '{path.name}': {e}") from e
        return self._parse(raw)

    def load(self) -> tuple[dict[str, CacheEntry], str]:
        """
        Loads the metadata map, trying the primary document and then the backup.

        Returns the entries and where they came from: 'primary', 'backup',
        'empty' (nothing stored yet) or 'reset' (both documents corrupt).
        """
        primary_missing = False
        try:
            entries = self.read_document(self.primary_path)
            if entries is not None:
                return entries, "primary"
            primary_missing = True
        except MetadataCorruptError as e:
            log.warning(f"[yellow]Primary cache metadata is corrupt:[/] {e}")

        try:
            entries = self.read_document(self.backup_path)
            if entries is not None:
                log.info("Recovered cache metadata from backup.")
                return entries, "backup"
        except MetadataCorruptError as e:
            log.warning(f"[yellow]Backup cache metadata is corrupt:[/] {e}")
            return {}, "reset"

        return {}, "empty" if primary_missing else "reset"

    def save(self, entries: dict[str, CacheEntry]) -> None:
        """
        Persists the map to the primary document and then to the backup.

        Raises StorageExhaustedError when the device is full, CacheError for any
        other write failure.
        """
        payload = self._serialize(entries)
        for path in (self.primary_path, self.backup_path):
            try:
                write_atomic(path, payload)
            except OSError as e:
                raise translate_os_error(e, f"saving '{path.name}'") from e
        log.debug(f"Cache metadata saved ({len(entries)} entries).")

