"""
Bounded-concurrency transfer engine.

At most `max_concurrent` transfers run at once; everything else waits in a FIFO
queue of lightweight task descriptors. Each transfer races a hard timeout, and a
finished file is only committed to the cache store after it has been verified.
The previous version of the same URL is deleted strictly after that commit.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from signage_cache.exceptions import (
    CacheError,
    DownloadError,
    FailureKind,
    FileIntegrityError,
    StorageExhaustedError,
)
from signage_cache.media.downloader import Downloader, DownloadProgress
from signage_cache.media.integrity import MediaIntegrityChecker
from signage_cache.models.config import CacheConfig
from signage_cache.models.entry import CacheEntry, ContentDescriptor, MediaType
from signage_cache.storage.cache_store import CacheStore, unlink_file
from signage_cache.storage.eviction import EvictionManager
from signage_cache.utils.path import build_media_path, now_ms

log = logging.getLogger(__name__)


class TaskState(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    DONE = "done"
    FAILED = "failed"
    ABANDONED = "abandoned"


@dataclass
class DownloadTask:
    """One scheduled transfer. Lives only as long as the process."""

    url: str
    type: MediaType
    content_id: str
    updated_at: str
    target_path: Path
    title: str = ""
    attempts: int = 0
    state: TaskState = TaskState.PENDING
    failure: FailureKind | None = None
    error: str | None = None
    cancelled: bool = False
    bytes_written: int = 0
    content_length: int = 0
    percentage: float = 0.0
    started_at: float = field(default=0.0, repr=False)


TaskCallback = Callable[[DownloadTask], None]


def _consume_result(transfer: asyncio.Task) -> None:
    # An abandoned (timed out) transfer may still finish with an error later.
    if not transfer.cancelled() and transfer.exception() is not None:
        log.debug(f"Late transfer failure ignored: {transfer.exception()}")


class DownloadScheduler:
    """Runs downloads with a process-wide concurrency bound and URL dedup."""

    def __init__(
        self,
        store: CacheStore,
        downloader: Downloader,
        config: CacheConfig,
        eviction: EvictionManager | None = None,
        on_progress: TaskCallback | None = None,
        on_finished: TaskCallback | None = None,
        event_logger=None,
    ):
        self.store = store
        self.downloader = downloader
        self.eviction = eviction
        self.max_concurrent = config.max_concurrent
        self.transfer_timeout = config.transfer_timeout_seconds
        self.on_progress = on_progress
        self.on_finished = on_finished
        # Failed attempts so far for a URL; wired to the retry policy.
        self.attempts_for: Callable[[str], int] | None = None
        self.event_logger = event_logger

        self._queue: deque[DownloadTask] = deque()
        self._active: dict[str, DownloadTask] = {}
        self._runners: dict[str, asyncio.Task] = {}
        self._transfers: dict[str, asyncio.Task] = {}
        self._idle = asyncio.Event()
        self._idle.set()
        self.peak_concurrent = 0
        self._draining = False

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    def active_urls(self) -> list[str]:
        return list(self._active)

    def is_active(self, url: str) -> bool:
        return url in self._active

    def is_tracked(self, url: str) -> bool:
        """True while `url` is running or waiting in the queue."""
        return url in self._active or any(t.url == url for t in self._queue)

    def _reserved_paths(self) -> set[Path]:
        paths = {t.target_path for t in self._queue}
        paths.update(t.target_path for t in self._active.values())
        return paths

    def enqueue(self, items: Iterable[ContentDescriptor]) -> list[DownloadTask]:
        """
        Schedules downloads for the given descriptors. URLs already running or
        queued are skipped. Returns the tasks that were actually created.
        """
        if self._draining:
            log.debug("Scheduler is draining; new downloads refused.")
            return []
        created = []
        for item in items:
            if self.is_tracked(item.url):
                log.debug(f"Already scheduled, skipping: {item.url}")
                continue
            target = build_media_path(
                self.store.media_dir(item.type),
                item.content_id,
                item.url,
                taken=self._reserved_paths(),
            )
            task = DownloadTask(
                url=item.url,
                type=item.type,
                content_id=item.content_id,
                updated_at=item.updated_at,
                target_path=target,
                title=item.title,
            )
            self._queue.append(task)
            created.append(task)

        if created:
            log.debug(
                f"Queued {len(created)} downloads "
                f"({self.active_count} active, {self.pending_count} waiting)."
            )
        self._pump()
        return created

    def _pump(self) -> None:
        """Starts queued tasks while there is a free transfer slot."""
        while self._queue and len(self._active) < self.max_concurrent:
            self._start(self._queue.popleft())
        if self._queue or self._active:
            self._idle.clear()
        else:
            self._idle.set()

    def _start(self, task: DownloadTask) -> None:
        task.state = TaskState.ACTIVE
        previous_failures = self.attempts_for(task.url) if self.attempts_for else 0
        task.attempts = previous_failures + 1
        task.started_at = time.monotonic()
        self._active[task.url] = task
        self.peak_concurrent = max(self.peak_concurrent, len(self._active))
        self._runners[task.url] = asyncio.create_task(
            self._run(task), name=f"download:{task.url}"
        )
        log.info(f"⬇ Downloading {task.title or task.content_id} ({task.type.value})")
        if self.event_logger:
            self.event_logger.download_started(
                url=task.url, content_id=task.content_id, attempt=task.attempts
            )

    async def _run(self, task: DownloadTask) -> None:
        try:
            await self._process(task)
        except asyncio.CancelledError:
            task.cancelled = True
            self._fail(task, FailureKind.OTHER, "Download cancelled")
        except Exception as e:
            self._fail(task, FailureKind.OTHER, f"Unexpected error: {e}")
            log.error(
                f"[red]✗ Unexpected error downloading {task.url}: {e}[/red]",
                exc_info=log.getEffectiveLevel() == logging.DEBUG,
            )
        finally:
            self._active.pop(task.url, None)
            self._runners.pop(task.url, None)

        # Before the queue moves on, so a replacement enqueued by the callback
        # keeps the scheduler from reporting idle in between.
        try:
            if self.on_finished:
                self.on_finished(task)
        finally:
            self._pump()

    def _fail(self, task: DownloadTask, kind: FailureKind, message: str) -> None:
        task.state = TaskState.FAILED
        task.failure = kind
        task.error = message
        if not task.cancelled:
            log.warning(
                f"[yellow]✗ Download failed ({kind.value}):[/] "
                f"{task.title or task.url} - {message}"
            )
        if self.event_logger:
            self.event_logger.download_failed(
                url=task.url, failure=kind.value, error=message, attempt=task.attempts
            )

    def _handle_progress(self, task: DownloadTask, progress: DownloadProgress) -> None:
        task.bytes_written = progress.bytes_written
        task.content_length = progress.content_length
        task.percentage = progress.percentage
        if self.on_progress:
            self.on_progress(task)

    async def _transfer(self, task: DownloadTask) -> int:
        """
        Races the transfer against the hard timeout. On expiry the transfer is
        cancelled but not awaited; it may keep running briefly.
        """
        transfer = asyncio.create_task(
            self.downloader.fetch(
                task.url,
                task.target_path,
                on_progress=lambda p: self._handle_progress(task, p),
            )
        )
        transfer.add_done_callback(_consume_result)
        self._transfers[task.url] = transfer
        try:
            done, _ = await asyncio.wait({transfer}, timeout=self.transfer_timeout)
        except asyncio.CancelledError:
            transfer.cancel()
            raise
        finally:
            self._transfers.pop(task.url, None)

        if transfer not in done:
            transfer.cancel()
            raise DownloadError(
                f"Transfer exceeded {self.transfer_timeout:g}s", FailureKind.TIMEOUT
            )
        return transfer.result()

    async def _process(self, task: DownloadTask) -> None:
        if self.eviction:
            await self.eviction.ensure_free_space()

        try:
            size = await self._transfer(task)
        except DownloadError as e:
            if e.kind is not FailureKind.STORAGE_EXHAUSTED or not self.eviction:
                self._fail(task, e.kind, str(e))
                return
            log.warning(
                "[yellow]Storage exhausted during download; "
                "evicting and retrying.[/yellow]"
            )
            await self.eviction.reclaim_fraction()
            try:
                size = await self._transfer(task)
            except DownloadError as retry_error:
                self._fail(task, retry_error.kind, str(retry_error))
                return

        try:
            await asyncio.to_thread(
                MediaIntegrityChecker.ensure_valid, task.target_path, size
            )
        except FileIntegrityError as e:
            await self._discard(task.target_path)
            self._fail(task, FailureKind.OTHER, str(e))
            return

        previous = self.store.get_entry(task.url)
        entry = CacheEntry(
            url=task.url,
            local_path=task.target_path,
            type=task.type,
            updated_at=task.updated_at,
            cached_at=now_ms(),
            size=size,
            content_id=task.content_id,
            verified=True,
        )
        try:
            await self.store.put(entry)
        except CacheError as e:
            await self._discard(task.target_path)
            kind = (
                FailureKind.STORAGE_EXHAUSTED
                if isinstance(e, StorageExhaustedError)
                else FailureKind.OTHER
            )
            self._fail(task, kind, f"Could not commit download: {e}")
            return

        # The new version is committed; only now may the old file go.
        if previous and previous.local_path != task.target_path:
            await self._discard(previous.local_path)

        task.state = TaskState.DONE
        task.bytes_written = size
        task.percentage = 100.0
        elapsed = time.monotonic() - task.started_at
        log.info(f"[green]✓ Cached:[/] {task.target_path.name} ({size} bytes)")
        if self.event_logger:
            self.event_logger.download_completed(
                url=task.url,
                content_id=task.content_id,
                size_bytes=size,
                duration_s=elapsed,
            )

        if self.eviction:
            try:
                await self.eviction.enforce_size_limit(protect={task.url})
            except CacheError as e:
                log.warning(f"[yellow]Size-limit eviction failed:[/] {e}")

    @staticmethod
    async def _discard(path: Path) -> None:
        try:
            await unlink_file(path)
        except OSError as e:
            log.warning(f"[yellow]Could not delete '{path}':[/] {e}")

    def cancel_download(self, url: str) -> bool:
        """
        Best-effort cancellation. A queued task is dropped; a running transfer is
        cancelled, which does not guarantee its I/O has stopped when this returns.
        """
        for task in list(self._queue):
            if task.url == url:
                self._queue.remove(task)
                task.cancelled = True
                task.state = TaskState.FAILED
                task.error = "Download cancelled"
                self._pump()
                return True

        transfer = self._transfers.get(url)
        if transfer and not transfer.done():
            transfer.cancel()
            return True
        return False

    async def cancel_all(self) -> None:
        """
        Drops the queue, cancels running transfers and waits for them to settle.
        Nothing can be enqueued until this returns.
        """
        self._draining = True
        for task in self._queue:
            task.cancelled = True
            task.state = TaskState.FAILED
            task.error = "Download cancelled"
        self._queue.clear()
        for transfer in list(self._transfers.values()):
            transfer.cancel()
        runners = list(self._runners.values())
        try:
            if runners:
                await asyncio.gather(*runners, return_exceptions=True)
        finally:
            self._draining = False
        self._pump()

    async def wait_idle(self) -> None:
        """Waits until nothing is running or queued."""
        await self._idle.wait()
