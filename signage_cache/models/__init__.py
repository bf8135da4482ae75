"""
Data Models Layer.

This package contains the Pydantic models and dataclasses that define the core
data structures used throughout the application, such as configuration, cache
entries, manifest descriptors and statistics.
"""

from .config import CacheConfig
from .entry import CacheEntry, ContentDescriptor, MediaType
from .stats import CacheStats, EvictionResult, SyncProgress

__all__ = [
    "CacheConfig",
    "CacheEntry",
    "CacheStats",
    "ContentDescriptor",
    "EvictionResult",
    "MediaType",
    "SyncProgress",
]
