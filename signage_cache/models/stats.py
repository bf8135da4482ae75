"""
Dataclasses summarizing cache contents and manifest sync progress.
"""

from dataclasses import dataclass, field


@dataclass
class CacheStats:
    """Aggregate view of the cache, as shown by the UI and the `stats` command."""

    total_files: int = 0
    video_count: int = 0
    image_count: int = 0
    total_size: int = 0
    total_size_formatted: str = "0 B"


@dataclass
class SyncProgress:
    """Tracks how far the current manifest is from being fully playable offline."""

    total: int = 0
    ready: int = 0
    downloading: int = 0
    failed: int = 0
    abandoned: int = 0
    current: list[str] = field(default_factory=list)

    @property
    def percentage(self) -> float:
        if self.total == 0:
            return 100.0
        return (self.ready / self.total) * 100

    @property
    def settled(self) -> bool:
        """True once every item is either ready or given up on."""
        return self.ready + self.abandoned >= self.total


@dataclass
class EvictionResult:
    """Outcome of one eviction pass."""

    evicted_urls: list[str] = field(default_factory=list)
    bytes_freed: int = 0

    def __bool__(self) -> bool:
        return bool(self.evicted_urls)
