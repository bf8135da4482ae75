"""
The main orchestrator: diffs the manifest against the cache, drives downloads
through the scheduler, runs the retry tick and exposes status to the player UI.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from contextlib import suppress
from enum import Enum
from pathlib import Path

from signage_cache.media.downloader import Downloader
from signage_cache.models.config import CacheConfig
from signage_cache.models.entry import ContentDescriptor
from signage_cache.models.stats import CacheStats, SyncProgress
from signage_cache.storage.cache_store import CacheStore
from signage_cache.storage.eviction import EvictionManager

from .retry_policy import RetryPolicy, RetryState
from .scheduler import DownloadScheduler, DownloadTask, TaskState

log = logging.getLogger(__name__)


class ItemStatus(str, Enum):
    """Per-item status as shown by the UI."""

    READY = "ready"
    DOWNLOADING = "downloading"
    ERROR = "error"


class Orchestrator:
    """Keeps every item of the current manifest playable from local storage."""

    def __init__(
        self,
        config: CacheConfig,
        store: CacheStore,
        scheduler: DownloadScheduler,
        retry_policy: RetryPolicy,
        eviction: EvictionManager | None = None,
        event_logger=None,
    ):
        self.config = config
        self.store = store
        self.scheduler = scheduler
        self.retry_policy = retry_policy
        self.eviction = eviction
        self.event_logger = event_logger

        self.scheduler.on_progress = self._on_progress
        self.scheduler.on_finished = self._on_finished
        self.scheduler.attempts_for = self.retry_policy.attempts

        self._descriptors: dict[str, ContentDescriptor] = {}
        self._status: dict[str, ItemStatus] = {}
        self._progress: dict[str, float] = {}
        self._abandoned: set[str] = set()
        self._errors: dict[str, str] = {}
        self._retry_task: asyncio.Task | None = None

    async def initialize(self) -> None:
        """Loads and verifies the cache, then enforces the size limit."""
        await self.store.initialize()
        if self.eviction:
            await self.eviction.enforce_size_limit()

    # ------------------------------------------------------------------
    # Manifest diff
    # ------------------------------------------------------------------

    def sync(self, descriptors: Iterable[ContentDescriptor]) -> list[DownloadTask]:
        """
        Diffs the manifest against the cache. Cached, version-matching items are
        marked ready without any network activity; everything else is handed to
        the scheduler. Returns the download tasks created by this call.
        """
        incoming: dict[str, ContentDescriptor] = {}
        for descriptor in descriptors:
            incoming.setdefault(descriptor.url, descriptor)

        to_download: list[ContentDescriptor] = []
        for url, descriptor in incoming.items():
            previous = self._descriptors.get(url)
            if previous is None or previous.updated_at != descriptor.updated_at:
                # New to this manifest or republished: close its circuit.
                self.retry_policy.reset(url)
                self._abandoned.discard(url)
                if previous is not None:
                    # A stale transfer still running is replaced once it unwinds.
                    self.scheduler.cancel_download(url)

            if not self.store.needs_update(url, descriptor.updated_at):
                self._status[url] = ItemStatus.READY
                self._progress[url] = 100.0
                continue

            if (
                previous is not None
                and previous.updated_at == descriptor.updated_at
                and self._status.get(url) is ItemStatus.ERROR
            ):
                continue  # Left to the retry tick.

            to_download.append(descriptor)

        for url in [u for u in self._descriptors if u not in incoming]:
            self.scheduler.cancel_download(url)
            self._status.pop(url, None)
            self._progress.pop(url, None)
            self._abandoned.discard(url)
            self._errors.pop(url, None)

        self._descriptors = incoming
        self.retry_policy.prune(incoming)
        return self._enqueue(to_download)

    def _enqueue(self, descriptors: list[ContentDescriptor]) -> list[DownloadTask]:
        for descriptor in descriptors:
            self._status[descriptor.url] = ItemStatus.DOWNLOADING
            self._progress.setdefault(descriptor.url, 0.0)
        created = self.scheduler.enqueue(descriptors)
        if created:
            log.info(
                f"Scheduled {len(created)} of {len(self._descriptors)} items "
                "for download."
            )
        return created

    # ------------------------------------------------------------------
    # Scheduler callbacks
    # ------------------------------------------------------------------

    def _on_progress(self, task: DownloadTask) -> None:
        if task.url in self._descriptors:
            self._progress[task.url] = task.percentage

    def _on_finished(self, task: DownloadTask) -> None:
        url = task.url
        descriptor = self._descriptors.get(url)
        if descriptor is None:
            return
        if task.updated_at != descriptor.updated_at:
            self._replace_stale(task, descriptor)
            return
        if task.state is TaskState.DONE:
            self.retry_policy.record_success(url)
            self._errors.pop(url, None)
            self._status[url] = ItemStatus.READY
            self._progress[url] = 100.0
            return
        if task.cancelled:
            return

        self._errors[url] = task.error or "Unknown error"
        self._status[url] = ItemStatus.ERROR
        state = self.retry_policy.record_failure(url)
        if state is RetryState.ABANDONED:
            task.state = TaskState.ABANDONED
            self._abandoned.add(url)
            if self.event_logger:
                self.event_logger.download_abandoned(
                    url=url, attempts=self.retry_policy.attempts(url)
                )

    def _replace_stale(self, task: DownloadTask, descriptor: ContentDescriptor) -> None:
        """
        The manifest moved on while `task` was in flight. Its outcome says
        nothing about the current version, which is downloaded next.
        """
        log.debug(
            f"Version {task.updated_at} of {task.url} superseded by "
            f"{descriptor.updated_at}."
        )
        if self.store.needs_update(descriptor.url, descriptor.updated_at):
            self._progress[descriptor.url] = 0.0
            self._enqueue([descriptor])
        else:
            self._status[descriptor.url] = ItemStatus.READY
            self._progress[descriptor.url] = 100.0

    # ------------------------------------------------------------------
    # Retry tick
    # ------------------------------------------------------------------

    def tick(self) -> list[DownloadTask]:
        """
        One pass of the retry loop. Items never attempted go first, then failed
        items the retry policy currently allows. Abandoned items are skipped.
        """
        fresh: list[str] = []
        failed: list[str] = []
        for url, descriptor in self._descriptors.items():
            if self.scheduler.is_tracked(url):
                continue
            if not self.store.needs_update(url, descriptor.updated_at):
                self._status[url] = ItemStatus.READY
                continue
            if self.retry_policy.is_abandoned(url):
                self._abandoned.add(url)
                self._status[url] = ItemStatus.ERROR
                continue
            if self.retry_policy.attempts(url) == 0:
                fresh.append(url)
            else:
                failed.append(url)

        urls = self.retry_policy.prioritize(fresh, failed)
        if not urls:
            return []
        log.debug(f"Retry tick: restarting {len(urls)} items.")
        return self._enqueue([self._descriptors[u] for u in urls])

    async def _retry_loop(self) -> None:
        """Runs the retry tick periodically in the background."""
        while True:
            try:
                await asyncio.sleep(self.config.retry_interval_seconds)
                self.tick()
            except asyncio.CancelledError:
                log.debug("Retry loop cancelled.")
                break
            except Exception as e:
                log.warning(f"Error in retry loop: {e}")

    async def start_retry_loop(self) -> None:
        """Starts the periodic background retry task."""
        if self._retry_task is None or self._retry_task.done():
            self._retry_task = asyncio.create_task(self._retry_loop())
            log.debug("Started retry loop.")

    async def stop_retry_loop(self) -> None:
        """Stops the background retry task gracefully."""
        if self._retry_task and not self._retry_task.done():
            self._retry_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._retry_task
            log.debug("Stopped retry loop.")
        self._retry_task = None

    # ------------------------------------------------------------------
    # UI-facing reads
    # ------------------------------------------------------------------

    @property
    def status(self) -> dict[str, ItemStatus]:
        return dict(self._status)

    @property
    def progress(self) -> dict[str, float]:
        return dict(self._progress)

    @property
    def errors(self) -> dict[str, str]:
        """Last failure message per URL that is not currently cached."""
        return {
            url: message
            for url, message in self._errors.items()
            if self._status.get(url) is ItemStatus.ERROR
        }

    def is_abandoned(self, url: str) -> bool:
        return url in self._abandoned

    def playable_path(self, url: str) -> Path | None:
        """
        The file to show for `url`. While a new version downloads, the old
        committed file keeps being served.
        """
        return self.store.get_cached_path(url)

    def active_items(self) -> dict[str, str]:
        """URL -> title for transfers currently running."""
        return {
            url: self._descriptors[url].title
            for url in self.scheduler.active_urls()
            if url in self._descriptors
        }

    def summary(self) -> SyncProgress:
        progress = SyncProgress(total=len(self._descriptors))
        for url in self._descriptors:
            status = self._status.get(url)
            if status is ItemStatus.READY:
                progress.ready += 1
            elif status is ItemStatus.DOWNLOADING:
                progress.downloading += 1
            elif status is ItemStatus.ERROR:
                if url in self._abandoned:
                    progress.abandoned += 1
                else:
                    progress.failed += 1
        progress.current = [title or url for url, title in self.active_items().items()]
        return progress

    def stats(self) -> CacheStats:
        return self.store.stats()

    async def wait_idle(self) -> None:
        await self.scheduler.wait_idle()

    async def clear_cache(self) -> None:
        """
        Cancels every transfer and wipes the cache. Failures propagate, since
        this is a destructive operation invoked by a person.
        """
        await self.scheduler.cancel_all()
        await self.store.clear()
        for url in self._descriptors:
            self.retry_policy.reset(url)
        self._status.clear()
        self._progress.clear()
        self._abandoned.clear()
        self._errors.clear()
        log.info("Cache cleared; the next sync downloads everything again.")

    async def close(self) -> None:
        await self.stop_retry_loop()
        await self.scheduler.cancel_all()
        await self.scheduler.downloader.close()


def create_orchestrator(
    config: CacheConfig,
    downloader: Downloader | None = None,
    event_logger=None,
    clock: Callable[[], float] = time.monotonic,
) -> Orchestrator:
    """
    Wires the store, eviction manager, scheduler and retry policy for `config`.

    Args:
        config: Validated cache configuration.
        downloader: Transfer primitive; a pooled HTTP downloader by default.
        event_logger: Optional `CacheEventLogger` for the JSONL event log.
        clock: Monotonic time source for the retry cooldown.
    """
    store = CacheStore(Path(config.cache_dir))
    eviction = EvictionManager(store, config, event_logger=event_logger)
    store._on_storage_exhausted = eviction.reclaim_fraction

    if downloader is None:
        downloader = Downloader(
            chunk_size=config.chunk_size,
            progress_interval=config.progress_interval_seconds,
            max_connections=config.max_concurrent,
        )
    scheduler = DownloadScheduler(
        store, downloader, config, eviction=eviction, event_logger=event_logger
    )
    retry_policy = RetryPolicy(
        hard_cap=config.hard_cap,
        fast_retry_attempts=config.fast_retry_attempts,
        cooldown_seconds=config.cooldown_seconds,
        clock=clock,
    )
    return Orchestrator(
        config,
        store,
        scheduler,
        retry_policy,
        eviction=eviction,
        event_logger=event_logger,
    )
