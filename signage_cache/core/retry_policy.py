"""
Per-item retry policy with a two-tier backoff and a circuit breaker.

The policy does not schedule anything itself; an external periodic tick asks it
which failed items may be retried now.
"""

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum

log = logging.getLogger(__name__)


class RetryState(Enum):
    """Where an item sits in the retry ladder."""

    FRESH = "fresh"  # Never attempted
    FAST = "fast"  # Retried on every tick
    COOLDOWN = "cooldown"  # Retried once the cooldown has elapsed
    ABANDONED = "abandoned"  # Circuit open until reset


@dataclass
class AttemptRecord:
    attempts: int = 0
    last_attempt_at: float | None = None


class RetryPolicy:
    """
    Tracks failed attempts per URL.

    - attempts < fast_retry_attempts: retry on every tick
    - fast_retry_attempts <= attempts < hard_cap: retry only after the cooldown
      measured from the last failed attempt
    - attempts >= hard_cap: abandoned until `reset()`
    """

    def __init__(
        self,
        hard_cap: int = 10,
        fast_retry_attempts: int = 5,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            hard_cap: Failed attempts after which an item is abandoned.
            fast_retry_attempts: Failed attempts retried without any delay.
            cooldown_seconds: Minimum gap between attempts in the slow tier.
            clock: Monotonic time source, replaceable in tests.
        """
        self.hard_cap = hard_cap
        self.fast_retry_attempts = fast_retry_attempts
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._records: dict[str, AttemptRecord] = {}

    def attempts(self, url: str) -> int:
        record = self._records.get(url)
        return record.attempts if record else 0

    def last_attempt_at(self, url: str) -> float | None:
        record = self._records.get(url)
        return record.last_attempt_at if record else None

    def state(self, url: str) -> RetryState:
        attempts = self.attempts(url)
        if attempts == 0:
            return RetryState.FRESH
        if attempts >= self.hard_cap:
            return RetryState.ABANDONED
        if attempts < self.fast_retry_attempts:
            return RetryState.FAST
        return RetryState.COOLDOWN

    def is_abandoned(self, url: str) -> bool:
        return self.state(url) is RetryState.ABANDONED

    def record_failure(self, url: str) -> RetryState:
        """Counts a failed attempt and returns the item's new state."""
        record = self._records.setdefault(url, AttemptRecord())
        record.attempts += 1
        record.last_attempt_at = self._clock()

        state = self.state(url)
        if state is RetryState.ABANDONED:
            log.error(
                f"[red]✗ Giving up on {url} after {record.attempts} failed attempts. "
                "No automatic retries until the manifest reports it again.[/red]"
            )
        elif state is RetryState.COOLDOWN and record.attempts == self.fast_retry_attempts:
            log.warning(
                f"[yellow]{url} failed {record.attempts} times; retrying at most "
                f"every {self.cooldown_seconds:.0f}s from now on.[/yellow]"
            )
        return state

    def record_success(self, url: str) -> None:
        self._records.pop(url, None)

    def reset(self, url: str) -> None:
        """Closes the circuit for `url`, e.g. when a new version is published."""
        if self._records.pop(url, None) is not None:
            log.debug(f"Retry counter reset for {url}")

    def should_retry(self, url: str) -> bool:
        """True if a failed item may be attempted again right now."""
        state = self.state(url)
        if state is RetryState.ABANDONED:
            return False
        if state is not RetryState.COOLDOWN:
            return True
        last = self.last_attempt_at(url)
        return last is None or self._clock() - last >= self.cooldown_seconds

    def prioritize(self, fresh: Iterable[str], failed: Iterable[str]) -> list[str]:
        """
        Orders the URLs to (re)start on a tick: never-attempted items first, then
        failed items that the policy currently allows.
        """
        ordered = list(dict.fromkeys(fresh))
        seen = set(ordered)
        for url in failed:
            if url not in seen and self.should_retry(url):
                ordered.append(url)
                seen.add(url)
        return ordered

    def prune(self, keep: Iterable[str]) -> None:
        """Forgets counters for URLs no longer in the manifest."""
        keep_set = set(keep)
        for url in [u for u in self._records if u not in keep_set]:
            del self._records[url]
