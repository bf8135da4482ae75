"""
Media Processing Layer.

This package is responsible for all media file transfer operations: streamed
downloading and post-download integrity validation.
"""

from .downloader import Downloader, DownloadProgress
from .integrity import MediaIntegrityChecker

__all__ = ["DownloadProgress", "Downloader", "MediaIntegrityChecker"]
