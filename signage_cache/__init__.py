"""Offline-first media cache and download orchestration for signage players."""

__version__ = "1.0.0"
