"""
Least-recently-cached reclamation over the cache store, triggered by cache size
or free disk space pressure.
"""

import logging
from collections.abc import Collection

from signage_cache.models.config import CacheConfig
from signage_cache.models.stats import EvictionResult
from signage_cache.utils.formatting import format_size

from .cache_store import CacheStore, unlink_file

log = logging.getLogger(__name__)


class EvictionManager:
    """Deletes the oldest cached files first until a byte target is met."""

    def __init__(self, store: CacheStore, config: CacheConfig, event_logger=None):
        self.store = store
        self.max_cache_bytes = config.max_cache_bytes
        self.warning_cache_bytes = config.warning_cache_bytes
        self.min_free_bytes = config.min_free_bytes
        self.eviction_fraction = config.eviction_fraction
        self.event_logger = event_logger

    async def evict(
        self, target_bytes: int | None = None, protect: Collection[str] = ()
    ) -> EvictionResult:
        """
        Evicts entries by ascending `cached_at`.

        With `target_bytes`, stops once at least that many bytes were freed.
        Without it, stops once the cache total is under the warning threshold.
        All file deletions happen before the single metadata save reflecting them.
        """
        result = EvictionResult()
        if target_bytes is not None and target_bytes <= 0:
            return result

        remaining = self.store.total_size()
        for entry in self.store.lru_entries():
            if target_bytes is not None:
                if result.bytes_freed >= target_bytes:
                    break
            elif remaining <= self.warning_cache_bytes:
                break
            if entry.url in protect:
                continue

            try:
                deleted = await unlink_file(entry.local_path)
            except OSError as e:
                # Leave this entry and everything newer alone.
                log.warning(
                    f"[yellow]Eviction stopped, could not delete "
                    f"'{entry.local_path}':[/] {e}"
                )
                break

            if not deleted:
                log.debug(f"Evicted file already gone: {entry.local_path}")
            result.evicted_urls.append(entry.url)
            result.bytes_freed += entry.size
            remaining -= entry.size

        if result:
            await self.store.forget(result.evicted_urls)
            log.info(
                f"Evicted {len(result.evicted_urls)} cached files "
                f"({format_size(result.bytes_freed)} freed)."
            )
            if self.event_logger:
                self.event_logger.cache_evicted(
                    count=len(result.evicted_urls),
                    bytes_freed=result.bytes_freed,
                    total_size=self.store.total_size(),
                )
        return result

    async def enforce_size_limit(self, protect: Collection[str] = ()) -> EvictionResult:
        """Shrinks the cache to the warning threshold once it exceeds the hard maximum."""
        total = self.store.total_size()
        if total <= self.max_cache_bytes:
            return EvictionResult()
        log.warning(
            f"[yellow]Cache size {format_size(total)} exceeds the limit of "
            f"{format_size(self.max_cache_bytes)}.[/yellow]"
        )
        return await self.evict(protect=protect)

    async def ensure_free_space(self) -> EvictionResult:
        """Evicts the shortfall when free disk space drops below the floor."""
        if self.min_free_bytes <= 0:
            return EvictionResult()
        try:
            free = await self.store.free_space()
        except OSError as e:
            log.debug(f"Could not read free disk space: {e}")
            return EvictionResult()
        if free >= self.min_free_bytes:
            return EvictionResult()
        shortfall = self.min_free_bytes - free
        log.warning(
            f"[yellow]Low disk space ({format_size(free)} free); "
            f"reclaiming {format_size(shortfall)}.[/yellow]"
        )
        return await self.evict(target_bytes=shortfall)

    async def reclaim_fraction(self, fraction: float | None = None) -> EvictionResult:
        """Frees a share of the current cache, used when the device is full."""
        fraction = self.eviction_fraction if fraction is None else fraction
        target = int(self.store.total_size() * fraction)
        if target <= 0:
            return EvictionResult()
        return await self.evict(target_bytes=target)
