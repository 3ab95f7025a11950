"""Thread-safe fetch counters.

Fetch tasks, the politeness buffer and the scheduler manager all update the
same :class:`FetchCounters` instance; the manager reads it to build its
status line.
"""

from __future__ import annotations

from collections import defaultdict
from enum import StrEnum
from threading import Lock


class FetchCounter(StrEnum):
    """Names of the counters maintained during a fetch run."""

    URLS_QUEUED = "urls_queued"
    URLS_REMAINING = "urls_remaining"
    URLS_FETCHING = "urls_fetching"
    URLS_FETCHED = "urls_fetched"
    URLS_FAILED = "urls_failed"
    URLS_SKIPPED = "urls_skipped"
    DOMAINS_PROCESSING = "domains_processing"
    FETCHED_BYTES = "fetched_bytes"
    FETCHED_TIME = "fetched_time_ms"


class FetchCounters:
    """In-process counter set guarded by a single lock."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, int] = defaultdict(int)

    def increment(self, name: FetchCounter, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] += amount

    def decrement(self, name: FetchCounter, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] -= amount

    def get(self, name: FetchCounter) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def snapshot(self) -> dict[str, int]:
        """Return a copy of every counter, including zero-valued ones."""
        with self._lock:
            return {c.value: self._counters.get(c, 0) for c in FetchCounter}
