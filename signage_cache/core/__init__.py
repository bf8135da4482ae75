"""
Core application engine for keeping the manifest playable offline.

The `Orchestrator` diffs each manifest against the cache and owns the retry
tick. It delegates transfers to the `DownloadScheduler`, which bounds
concurrency and commits verified files to the cache store. `RetryPolicy`
decides when a failed item may be attempted again.
"""

from .orchestrator import ItemStatus, Orchestrator, create_orchestrator
from .retry_policy import RetryPolicy, RetryState
from .scheduler import DownloadScheduler, DownloadTask, TaskState

__all__ = [
    "DownloadScheduler",
    "DownloadTask",
    "ItemStatus",
    "Orchestrator",
    "RetryPolicy",
    "RetryState",
    "TaskState",
    "create_orchestrator",
]
