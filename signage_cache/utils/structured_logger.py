"""
Structured event logging for the media cache.
Writes one JSON object per line so a fleet of players can be audited offline.
"""

import json
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Any


class StructuredLogger:
    """
    Logger that emits each event both to the standard logger and, when a log
    directory is configured, to a JSON Lines file.

    Usage:
        logger = StructuredLogger("signage_cache", log_dir=Path("logs"))
        logger.info("download_completed", url="https://...", size_bytes=1024)
    """

    def __init__(self, name: str, log_dir: Path | None = None):
        """
        Args:
            name: Logger name
            log_dir: Directory for JSON log files (None = console only)
        """
        self.name = name
        self.log_dir = log_dir
        self._logger = logging.getLogger(name)

        self._json_file = None
        if log_dir is not None:
            log_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self.json_log_path = log_dir / f"cache_events_{timestamp}.jsonl"
            self._json_file = open(self.json_log_path, "a", encoding="utf-8")  # noqa: SIM115

        self._session_context: dict[str, Any] = {
            "session_id": f"{int(time.time())}_{id(self)}",
        }

    @property
    def writes_json(self) -> bool:
        return self._json_file is not None and not self._json_file.closed

    def set_session_context(self, **kwargs) -> None:
        """Set context that appears in every JSON entry."""
        self._session_context.update(kwargs)

    @staticmethod
    def _format_message(event: str, **context) -> str:
        parts = [f"[{event}]"]
        parts.extend(f"{key}={value}" for key, value in context.items())
        return " ".join(parts)

    def _write_json(self, level: str, event: str, **context) -> None:
        if not self.writes_json:
            return
        entry = {
            "timestamp": datetime.now().isoformat(),
            "level": level,
            "event": event,
            **self._session_context,
            **context,
        }
        try:
            self._json_file.write(json.dumps(entry, default=str) + "\n")
            self._json_file.flush()
        except (OSError, ValueError) as e:
            self._logger.warning(f"Event log write failed: {e}")

    def log(self, level: int, event: str, **context) -> None:
        self._logger.log(level, self._format_message(event, **context))
        self._write_json(logging.getLevelName(level), event, **context)

    def debug(self, event: str, **context) -> None:
        self.log(logging.DEBUG, event, **context)

    def info(self, event: str, **context) -> None:
        self.log(logging.INFO, event, **context)

    def warning(self, event: str, **context) -> None:
        self.log(logging.WARNING, event, **context)

    def error(self, event: str, **context) -> None:
        self.log(logging.ERROR, event, **context)

    def close(self) -> None:
        if self._json_file and not self._json_file.closed:
            self._json_file.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class CacheEventLogger:
    """Typed helpers for the events the cache emits."""

    def __init__(self, logger: StructuredLogger):
        self.logger = logger

    def download_started(self, url: str, content_id: str, attempt: int):
        self.logger.debug(
            "download_started", url=url, content_id=content_id, attempt=attempt
        )

    def download_completed(
        self, url: str, content_id: str, size_bytes: int, duration_s: float
    ):
        """Log a download that was verified and committed to the cache."""
        speed = size_bytes / duration_s / (1024 * 1024) if duration_s > 0 else 0.0
        self.logger.info(
            "download_completed",
            url=url,
            content_id=content_id,
            size_bytes=size_bytes,
            size_mb=round(size_bytes / (1024 * 1024), 2),
            duration_s=round(duration_s, 2),
            avg_speed_mbps=round(speed, 2),
        )

    def download_failed(self, url: str, failure: str, error: str, attempt: int):
        self.logger.warning(
            "download_failed", url=url, failure=failure, error=error, attempt=attempt
        )

    def download_abandoned(self, url: str, attempts: int):
        """Log an item whose retry circuit has opened."""
        self.logger.error("download_abandoned", url=url, attempts=attempts)

    def cache_evicted(self, count: int, bytes_freed: int, total_size: int):
        self.logger.info(
            "cache_evicted",
            count=count,
            bytes_freed=bytes_freed,
            total_size=total_size,
        )

    def close(self) -> None:
        self.logger.close()


def create_event_logger(log_dir: Path | None = None) -> CacheEventLogger:
    """Creates the cache event logger; JSON output only when `log_dir` is set."""
    base = StructuredLogger("signage_cache.events", log_dir=log_dir)
    return CacheEventLogger(base)
