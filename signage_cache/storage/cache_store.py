"""
A persistent, integrity-verified store of downloaded media keyed by source URL.

The store owns both the metadata map (URL -> CacheEntry) and the directory tree
holding the media files. All mutation of the map goes through this class and is
serialized with a single asyncio lock; blocking filesystem work is pushed to a
worker thread so the event loop keeps serving playback.
"""

import asyncio
import logging
import shutil
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from signage_cache.exceptions import CacheError, StorageExhaustedError
from signage_cache.models.entry import CacheEntry, MediaType
from signage_cache.models.stats import CacheStats
from signage_cache.utils.formatting import format_size
from signage_cache.utils.path import create_dir

from .metadata import MetadataFile, translate_os_error

log = logging.getLogger(__name__)

METADATA_FILENAME = "metadata.json"


async def unlink_file(path: Path) -> bool:
    """
    Deletes a file off the event loop.

    Returns False if the file was already gone; any other OSError propagates.
    """

    def _unlink() -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    return await asyncio.to_thread(_unlink)


class CacheStore:
    """
    Manages cached media files and their metadata, with crash-safe persistence
    and verification of every entry against the disk at startup.
    """

    def __init__(
        self,
        cache_dir: Path,
        on_storage_exhausted: Callable[[], Awaitable[Any]] | None = None,
    ):
        """
        Initializes the store. Nothing touches the disk until `initialize()`.

        Args:
            cache_dir: Root of the media cache directory tree.
            on_storage_exhausted: Optional coroutine function invoked when a
            metadata save fails because the device is full. It is expected to
            free space (typically by evicting part of the cache).
        """
        self.cache_dir = Path(cache_dir)
        self.metadata_file = MetadataFile(self.cache_dir / METADATA_FILENAME)
        self._entries: dict[str, CacheEntry] = {}
        self._initialized = False
        self._lock = asyncio.Lock()
        self._on_storage_exhausted = on_storage_exhausted

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def media_dir(self, media_type: MediaType) -> Path:
        """Directory holding files of the given media type."""
        return self.cache_dir / media_type.subdir

    def _create_layout(self) -> None:
        create_dir(self.cache_dir)
        for media_type in MediaType:
            create_dir(self.media_dir(media_type))

    async def initialize(self) -> list[str]:
        """
        Creates the directory layout, loads metadata (falling back to the backup
        copy, then to an empty cache) and drops entries whose file is missing.
        Safe to call more than once. Returns the URLs dropped because their file
        was missing.
        """
        async with self._lock:
            if self._initialized:
                log.debug("Cache store already initialized.")
                return []

            log.debug(f"Initializing cache store at '{self.cache_dir}'...")
            await asyncio.to_thread(self._create_layout)

            entries, source = await asyncio.to_thread(self.metadata_file.load)
            self._entries = entries
            if source == "reset":
                log.warning(
                    "[yellow]Cache metadata could not be recovered; "
                    "starting with an empty cache.[/yellow]"
                )

            dropped = await self._verify_locked()
            if source in ("backup", "reset") or dropped:
                try:
                    await self._save_locked()
                except CacheError as e:
                    # The in-memory map is still correct; the next save retries.
                    log.warning(f"[yellow]Could not persist recovered metadata:[/] {e}")

            self._initialized = True
            log.info(
                f"Cache ready: {len(self._entries)} files, "
                f"{format_size(self.total_size())}."
            )
            return dropped

    def _find_missing(self) -> list[str]:
        return [url for url, e in self._entries.items() if not e.local_path.is_file()]

    async def _verify_locked(self) -> list[str]:
        """Marks present entries verified and drops the rest. Caller holds the lock."""
        missing = await asyncio.to_thread(self._find_missing)
        for url in missing:
            log.info(f"Cached file missing, dropping entry: [dim]{url}[/dim]")
            del self._entries[url]
        for entry in self._entries.values():
            entry.verified = True
        return missing

    async def verify(self) -> list[str]:
        """Re-checks every entry against the disk. Returns the URLs dropped."""
        async with self._lock:
            dropped = await self._verify_locked()
            if dropped:
                await self._save_locked()
            return dropped

    async def _save_locked(self) -> None:
        await asyncio.to_thread(self.metadata_file.save, dict(self._entries))

    def get_entry(self, url: str) -> CacheEntry | None:
        return self._entries.get(url)

    def get_cached_path(self, url: str) -> Path | None:
        """Returns the local file for `url`, but only if it has been verified."""
        entry = self._entries.get(url)
        return entry.local_path if entry and entry.verified else None

    def needs_update(self, url: str, updated_at: str) -> bool:
        """
        True if `url` has no verified entry or its version token differs.
        Tokens are compared as plain strings, never parsed as dates.
        """
        entry = self._entries.get(url)
        if entry is None or not entry.verified:
            return True
        return entry.updated_at != updated_at

    def entries(self) -> list[CacheEntry]:
        return list(self._entries.values())

    def lru_entries(self) -> list[CacheEntry]:
        """Verified entries, least recently cached first."""
        return sorted(
            (e for e in self._entries.values() if e.verified),
            key=lambda e: e.cached_at,
        )

    def total_size(self) -> int:
        return sum(e.size for e in self._entries.values() if e.verified)

    def stats(self) -> CacheStats:
        verified = [e for e in self._entries.values() if e.verified]
        total_size = sum(e.size for e in verified)
        video_count = sum(1 for e in verified if e.type is MediaType.VIDEO)
        return CacheStats(
            total_files=len(verified),
            video_count=video_count,
            image_count=len(verified) - video_count,
            total_size=total_size,
            total_size_formatted=format_size(total_size),
        )

    async def free_space(self) -> int:
        """Free bytes on the filesystem holding the cache."""
        usage = await asyncio.to_thread(shutil.disk_usage, self.cache_dir)
        return usage.free

    async def _commit(self, entry: CacheEntry) -> None:
        async with self._lock:
            previous = self._entries.get(entry.url)
            self._entries[entry.url] = entry
            try:
                await self._save_locked()
            except CacheError:
                if previous is None:
                    del self._entries[entry.url]
                else:
                    self._entries[entry.url] = previous
                raise

    async def put(self, entry: CacheEntry) -> None:
        """
        Inserts or replaces the entry for `entry.url` and persists it.

        If the save fails because storage is exhausted, part of the cache is
        reclaimed through the storage-pressure handler and the save is retried
        once before the error is surfaced.
        """
        entry.verified = True
        try:
            await self._commit(entry)
        except StorageExhaustedError as e:
            if self._on_storage_exhausted is None:
                raise
            log.warning(f"[yellow]{e} Reclaiming space and retrying once.[/yellow]")
            await self._on_storage_exhausted()
            await self._commit(entry)

    async def remove(self, url: str) -> bool:
        """Drops the entry for `url` and deletes its file if it still exists."""
        async with self._lock:
            entry = self._entries.pop(url, None)
            if entry is None:
                return False
            try:
                await self._save_locked()
            except CacheError:
                self._entries[url] = entry
                raise

        try:
            await unlink_file(entry.local_path)
        except OSError as e:
            log.warning(f"[yellow]Could not delete '{entry.local_path}':[/] {e}")
        return True

    async def forget(self, urls: list[str]) -> list[CacheEntry]:
        """
        Drops several entries with a single metadata save. The files are not
        touched; callers delete them first.
        """
        async with self._lock:
            removed = [self._entries.pop(url) for url in urls if url in self._entries]
            if removed:
                await self._save_locked()
            return removed

    def _wipe_tree(self) -> None:
        try:
            shutil.rmtree(self.cache_dir)
        except FileNotFoundError:
            log.debug("Cache directory not found or already deleted.")
        except OSError as e:
            raise translate_os_error(e, "deleting the cache directory") from e
        self._create_layout()

    async def clear(self) -> None:
        """
        Deletes every cached file, recreates the directory tree and persists an
        empty metadata map. Errors propagate to the caller.
        """
        log.info("Clearing media cache...")
        async with self._lock:
            await asyncio.to_thread(self._wipe_tree)
            self._entries.clear()
            await self._save_locked()
        log.info("[green]✓ Media cache cleared.[/green]")
