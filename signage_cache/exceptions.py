"""
Defines custom exceptions for the media cache to allow for more specific error handling.
"""

from enum import Enum


class FailureKind(Enum):
    """Classification of a failed transfer, produced by the transfer primitive."""

    TIMEOUT = "timeout"
    STORAGE_EXHAUSTED = "storage_exhausted"
    OTHER = "other"


class SignageCacheError(Exception):
    """Base exception for all application-specific errors."""


class ConfigurationError(SignageCacheError):
    """Raised for issues related to configuration loading or validation."""


class CacheError(SignageCacheError):
    """Raised when the cache store cannot read or persist its state."""


class MetadataCorruptError(CacheError):
    """Raised when a metadata document cannot be parsed or validated."""


class StorageExhaustedError(CacheError):
    """Raised when the device has run out of space (ENOSPC) or quota (EDQUOT)."""


class FileIntegrityError(SignageCacheError):
    """Raised when a downloaded file fails a post-download integrity check."""


class DownloadError(SignageCacheError):
    """
    Raised when a transfer fails. Carries a `FailureKind` tag so callers never
    need to inspect the message text.
    """

    def __init__(
        self,
        message: str,
        kind: FailureKind = FailureKind.OTHER,
        status: int | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status = status

