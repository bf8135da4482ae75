"""
Handles the low-level downloading of media files over HTTP: a streamed GET
written straight to disk, with throttled percentage progress and failures
tagged by kind so callers never have to inspect error messages.
"""

import asyncio
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import aiofiles
import aiohttp

from signage_cache.exceptions import DownloadError, FailureKind
from signage_cache.storage.metadata import is_storage_exhausted

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class DownloadProgress:
    """Snapshot passed to progress callbacks."""

    bytes_written: int
    content_length: int
    percentage: float


ProgressCallback = Callable[[DownloadProgress], None]


class ProgressThrottle:
    """
    Forwards progress only when the whole-number percentage changes and the
    minimum interval has passed, plus always the final 100%.
    """

    def __init__(self, callback: ProgressCallback | None, interval: float = 0.5):
        self.callback = callback
        self.interval = interval
        self._last_percent = -1
        self._last_emit = float("-inf")

    def update(self, bytes_written: int, content_length: int) -> None:
        if self.callback is None:
            return
        percentage = (
            min(100.0, bytes_written / content_length * 100) if content_length > 0 else 0.0
        )
        whole = int(percentage)
        now = time.monotonic()
        if whole == self._last_percent:
            return
        if whole < 100 and now - self._last_emit < self.interval:
            return
        self._last_percent = whole
        self._last_emit = now
        self.callback(DownloadProgress(bytes_written, content_length, percentage))


def _remove_partial(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        log.warning(f"Could not remove partial download '{path.name}': {e}")


class Downloader:
    """A streamed HTTP downloader sharing one connection pool per process."""

    def __init__(
        self,
        chunk_size: int = 262144,
        progress_interval: float = 0.5,
        max_connections: int = 4,
        session: aiohttp.ClientSession | None = None,
    ):
        self.chunk_size = chunk_size
        self.progress_interval = progress_interval
        self.max_connections = max_connections
        self._session = session
        self._owns_session = session is None
        self._session_lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        """
        Gets or creates the aiohttp ClientSession used for transfers.

        No total timeout is set here; the scheduler enforces the hard per-item
        limit itself.
        """
        async with self._session_lock:
            if self._session and not self._session.closed:
                return self._session

            connector = aiohttp.TCPConnector(
                limit=self.max_connections * 2,
                limit_per_host=self.max_connections,
                ttl_dns_cache=600,
                keepalive_timeout=30,
                enable_cleanup_closed=True,
            )
            timeout = aiohttp.ClientTimeout(total=None, sock_connect=15, sock_read=60)
            self._session = aiohttp.ClientSession(connector=connector, timeout=timeout)
            self._owns_session = True
            log.debug(f"Created download pool with limit_per_host={self.max_connections}")
        return self._session

    async def close(self) -> None:
        """Closes the connection pool if this downloader created it."""
        async with self._session_lock:
            if self._owns_session and self._session and not self._session.closed:
                await self._session.close()
                log.debug("Downloader connection pool closed.")
            self._session = None

    async def fetch(
        self,
        url: str,
        destination: Path,
        on_progress: ProgressCallback | None = None,
    ) -> int:
        """
        Downloads `url` into `destination` and returns the number of bytes written.

        The file is flushed and fsync'ed before returning. On any failure the
        partial file is deleted and a DownloadError tagged with its FailureKind is
        raised. Cancellation also deletes the partial file before propagating.
        """
        throttle = ProgressThrottle(on_progress, self.progress_interval)
        try:
            session = await self._get_session()
            async with session.get(url, allow_redirects=True) as response:
                if response.status != 200:
                    raise DownloadError(
                        f"Download failed with status: {response.status}",
                        FailureKind.OTHER,
                        status=response.status,
                    )

                # A transfer-encoded body is decoded on the fly, so its length
                # header says nothing about the bytes that land on disk.
                content_length = (
                    0
                    if "Content-Encoding" in response.headers
                    else (response.content_length or 0)
                )
                bytes_written = 0
                async with aiofiles.open(destination, "wb") as f:
                    async for chunk in response.content.iter_chunked(self.chunk_size):
                        await f.write(chunk)
                        bytes_written += len(chunk)
                        throttle.update(bytes_written, content_length)
                    await f.flush()
                    await asyncio.to_thread(os.fsync, f.fileno())

                if content_length and bytes_written != content_length:
                    raise DownloadError(
                        f"Incomplete download: {bytes_written} of "
                        f"{content_length} bytes received"
                    )
                throttle.update(bytes_written, bytes_written or 1)
                return bytes_written

        except DownloadError:
            await asyncio.to_thread(_remove_partial, destination)
            raise
        except asyncio.TimeoutError as e:
            await asyncio.to_thread(_remove_partial, destination)
            raise DownloadError(
                f"Transfer timed out: {e or 'no data'}", FailureKind.TIMEOUT
            ) from e
        except aiohttp.ClientError as e:
            await asyncio.to_thread(_remove_partial, destination)
            raise DownloadError(f"Network error: {e}", FailureKind.OTHER) from e
        except OSError as e:
            await asyncio.to_thread(_remove_partial, destination)
            kind = (
                FailureKind.STORAGE_EXHAUSTED
                if is_storage_exhausted(e)
                else FailureKind.OTHER
            )
            raise DownloadError(f"Could not write '{destination.name}': {e}", kind) from e
        except asyncio.CancelledError:
            _remove_partial(destination)
            raise
