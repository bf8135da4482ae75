"""
Pytest fixtures shared by the cache, scheduler and orchestrator tests.

Transfers are simulated by `FakeDownloader`, whose fetches can be held open
with per-URL `asyncio.Event` gates and made to fail on demand.
"""

import asyncio
from pathlib import Path

import pytest
import pytest_asyncio

from signage_cache.exceptions import DownloadError
from signage_cache.media.downloader import DownloadProgress
from signage_cache.models.config import MB, CacheConfig
from signage_cache.models.entry import CacheEntry, ContentDescriptor, MediaType
from signage_cache.storage.cache_store import CacheStore

# Smallest payload that passes the JPEG signature check.
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 1020


class FakeDownloader:
    """Stands in for `Downloader`; writes a fixed payload to the destination."""

    def __init__(self, payload: bytes = JPEG_BYTES, gated: bool = False):
        self.payload = payload
        self.gated = gated
        self.gates: dict[str, asyncio.Event] = {}
        self.started: list[str] = []
        self.next_failures: dict[str, list[Exception]] = {}
        self.always_fail: dict[str, Exception] = {}
        self.active = 0
        self.peak = 0
        self.closed = False

    def gate(self, url: str) -> asyncio.Event:
        return self.gates.setdefault(url, asyncio.Event())

    def release(self, url: str) -> None:
        self.gate(url).set()

    def release_all(self) -> None:
        self.gated = False
        for event in self.gates.values():
            event.set()

    def fail_next(self, url: str, error: Exception | None = None) -> None:
        self.next_failures.setdefault(url, []).append(
            error or DownloadError("Download failed with status: 503", status=503)
        )

    async def fetch(self, url: str, destination: Path, on_progress=None) -> int:
        self.started.append(url)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.gated:
                await self.gate(url).wait()
            if url in self.always_fail:
                raise self.always_fail[url]
            pending = self.next_failures.get(url)
            if pending:
                raise pending.pop(0)
            destination.write_bytes(self.payload)
            size = len(self.payload)
            if on_progress:
                on_progress(DownloadProgress(size // 2, size, 50.0))
                on_progress(DownloadProgress(size, size, 100.0))
            return size
        finally:
            self.active -= 1

    async def close(self) -> None:
        self.closed = True


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingEventLogger:
    """Collects cache events instead of writing them anywhere."""

    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def _record(self, name):
        def record(**kwargs):
            self.events.append((name, kwargs))

        return record

    def __getattr__(self, name):
        return self._record(name)

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def wait_until():
    """Polls a predicate until it is true or the timeout expires."""
    return _wait_until


@pytest.fixture
def config(tmp_path) -> CacheConfig:
    return CacheConfig(
        cache_dir=str(tmp_path / "cache"),
        max_cache_bytes=10 * MB,
        warning_cache_bytes=8 * MB,
        min_free_bytes=0,
        max_concurrent=2,
        transfer_timeout_seconds=5,
        retry_interval_seconds=0.05,
        hard_cap=10,
        fast_retry_attempts=5,
        cooldown_seconds=30,
    )


@pytest.fixture
def downloader() -> FakeDownloader:
    return FakeDownloader()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def event_logger() -> RecordingEventLogger:
    return RecordingEventLogger()


@pytest_asyncio.fixture
async def store(config) -> CacheStore:
    cache_store = CacheStore(Path(config.cache_dir))
    await cache_store.initialize()
    return cache_store


@pytest.fixture
def entry_factory():
    """Creates a media file on disk and a matching (unsaved) CacheEntry."""

    def make(
        store: CacheStore,
        url: str,
        cached_at: int,
        size: int = 100,
        media_type: MediaType = MediaType.IMAGE,
        updated_at: str = "v1",
        content_id: str | None = None,
    ) -> CacheEntry:
        content_id = content_id or f"c{cached_at}"
        path = store.media_dir(media_type) / f"{content_id}_{cached_at}.bin"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"x" * size)
        return CacheEntry(
            url=url,
            local_path=path,
            type=media_type,
            updated_at=updated_at,
            cached_at=cached_at,
            size=size,
            content_id=content_id,
        )

    return make


@pytest.fixture
def descriptor_factory():
    def make(
        name: str,
        updated_at: str = "2024-05-01T10:00:00Z",
        media_type: str = "image",
    ) -> ContentDescriptor:
        return ContentDescriptor(
            url=f"https://cdn.example.com/media/{name}.jpg",
            type=media_type,
            content_id=name,
            updated_at=updated_at,
            title=name.title(),
        )

    return make
