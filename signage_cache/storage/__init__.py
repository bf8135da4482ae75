"""
Storage Layer.

This package handles all data persistence: the media cache directory tree and
its metadata, LRU eviction, and the INI configuration file.
"""

from .cache_store import CacheStore
from .config_manager import ConfigManager
from .eviction import EvictionManager
from .metadata import MetadataFile

__all__ = ["CacheStore", "ConfigManager", "EvictionManager", "MetadataFile"]
