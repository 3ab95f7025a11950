"""In-memory per-host queues feeding the scheduler manager."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

from politefetch.fetcher.grouping import is_special_key, parse_grouping_key
from politefetch.fetcher.policy import FetcherPolicy
from politefetch.models import FetchList, ScoredUrl

logger = structlog.get_logger()


@dataclass(frozen=True)
class QueueInfo:
    """Snapshot of one host queue."""

    ref: str
    size: int
    ready_in: float  # seconds until the queue may be polled, 0 if ready


@dataclass
class _HostQueue:
    ref: str
    crawl_delay_ms: int
    order: int
    urls: list[ScoredUrl] = field(default_factory=list)
    next_fetch_time: float = 0.0
    outstanding: bool = False


class HostQueues:
    """One FIFO-by-score queue per grouping key.

    :meth:`poll` hands out at most one batch per host at a time, picking
    the ready queue with the most URLs (oldest queue first on ties).  The
    host becomes ready again ``crawl_delay`` after :meth:`finished` is
    called for its batch.  Once the policy's crawl end time has passed,
    spacing is ignored and whole queues are handed out so the scheduler
    can report their URLs as skipped.

    Args:
        policy: Default crawl delay for keys without one, the per-host URL
            limit for the remaining crawl time, and the default batch size.
        max_urls_per_batch: Largest batch handed out; defaults to
            ``policy.default_urls_per_request()``.
        clock_fn: Monotonic clock.
        wall_clock_fn: Epoch clock compared against the crawl end time.
    """

    def __init__(
        self,
        policy: FetcherPolicy | None = None,
        max_urls_per_batch: int | None = None,
        clock_fn: Callable[[], float] = time.monotonic,
        wall_clock_fn: Callable[[], float] = time.time,
    ) -> None:
        self._policy = policy or FetcherPolicy()
        if max_urls_per_batch is None:
            max_urls_per_batch = self._policy.default_urls_per_request()
        if max_urls_per_batch < 1:
            raise ValueError(f"max_urls_per_batch must be >= 1: {max_urls_per_batch}")
        self._max_urls_per_batch = max_urls_per_batch
        self._clock = clock_fn
        self._wall_clock = wall_clock_fn
        self._lock = threading.Lock()
        self._queues: dict[str, _HostQueue] = {}
        self._order = 0

    @property
    def max_urls_per_batch(self) -> int:
        return self._max_urls_per_batch

    def add(self, key: str, item: ScoredUrl) -> None:
        """Queue *item* under the regular grouping *key*.

        Raises:
            ValueError: For special or malformed keys.
        """
        if is_special_key(key):
            raise ValueError(f"Can't queue URL under special grouping key: {key}")
        delay = parse_grouping_key(key).crawl_delay_ms
        with self._lock:
            queue = self._queues.get(key)
            if queue is None:
                queue = _HostQueue(
                    ref=key,
                    crawl_delay_ms=self._policy.crawl_delay_ms if delay is None else delay,
                    order=self._order,
                )
                self._order += 1
                self._queues[key] = queue
            # Highest score first; equal scores keep arrival order
            pos = len(queue.urls)
            while pos > 0 and queue.urls[pos - 1].score < item.score:
                pos -= 1
            queue.urls.insert(pos, item)

    def poll(self) -> FetchList | None:
        wall_now = self._wall_clock()
        past_end = self._policy.is_past_end_time(wall_now)
        with self._lock:
            now = self._clock()
            self._prune(now)
            ready = [
                q
                for q in self._queues.values()
                if q.urls
                and not q.outstanding
                and (past_end or q.next_fetch_time <= now)
            ]
            if not ready:
                return None
            queue = min(ready, key=lambda q: (-len(q.urls), q.order))

            if past_end:
                limit = len(queue.urls)
            else:
                limit = min(
                    self._max_urls_per_batch, max(1, self._policy.max_urls(wall_now))
                )
            urls = tuple(queue.urls[:limit])
            del queue.urls[:limit]
            queue.outstanding = True
            return FetchList(
                ref=queue.ref,
                urls=urls,
                fetch_delay_ms=queue.crawl_delay_ms,
                is_last=not queue.urls,
            )

    def _prune(self, now: float) -> None:
        """Forget drained queues whose delay has run out; caller holds the lock."""
        expired = [
            ref
            for ref, q in self._queues.items()
            if not q.urls and not q.outstanding and q.next_fetch_time <= now
        ]
        for ref in expired:
            del self._queues[ref]

    def finished(self, batch: FetchList) -> None:
        with self._lock:
            queue = self._queues.get(batch.ref)
            if queue is None:
                return
            now = self._clock()
            queue.outstanding = False
            queue.next_fetch_time = now + batch.fetch_delay
            # Drained queues are kept until their delay runs out
            self._prune(now)

    def is_empty(self) -> bool:
        with self._lock:
            return not any(q.urls for q in self._queues.values())

    @property
    def host_count(self) -> int:
        """Queues tracked, including drained ones still inside their delay."""
        with self._lock:
            return len(self._queues)

    @property
    def remaining(self) -> int:
        with self._lock:
            return sum(len(q.urls) for q in self._queues.values())

    def get_next_queue(self) -> QueueInfo | None:
        with self._lock:
            now = self._clock()
            waiting = [q for q in self._queues.values() if q.urls and not q.outstanding]
            if not waiting:
                return None
            queue = min(waiting, key=lambda q: (q.next_fetch_time, -len(q.urls), q.order))
            return QueueInfo(
                ref=queue.ref,
                size=len(queue.urls),
                ready_in=max(0.0, queue.next_fetch_time - now),
            )

    def log_pending_queues(self, max_queues: int) -> None:
        with self._lock:
            now = self._clock()
            queues = sorted(
                (q for q in self._queues.values() if q.urls),
                key=lambda q: (-len(q.urls), q.order),
            )[:max_queues]
            entries = [
                {
                    "ref": q.ref,
                    "size": len(q.urls),
                    "outstanding": q.outstanding,
                    "ready_in": round(max(0.0, q.next_fetch_time - now), 1),
                }
                for q in queues
            ]
        logger.info("pending_queues", count=len(entries), queues=entries)
