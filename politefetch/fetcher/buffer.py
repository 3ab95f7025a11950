"""Politeness buffer: admits grouped batches onto the worker pool.

For every host reference the buffer guarantees that

* at most one batch is being fetched at any instant, and
* a batch never starts before the previous batch for the same reference
  finished plus that batch's fetch delay.

A reference lives in exactly one of three states: absent, *pending*
(idle, with the time its next batch may start) or *active* (a worker is
fetching one of its batches).  Both maps, plus the heap of batches that
arrived too early, are guarded by a single lock and every transition
happens inside one critical section.

Batches that arrive before their reference is eligible are parked on a
delayed heap and re-admitted by :meth:`FetchBuffer.dispatch_due` once due,
so one slow host never holds up admission for the others.

Every submitted batch is handed to ``on_release`` exactly once, after its
URLs have all been emitted, whether it was fetched or skipped.  The
scheduler manager uses this to tell its queue provider a batch is done.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections.abc import Callable, Iterable
from enum import StrEnum

import structlog

from politefetch.counters import FetchCounter, FetchCounters
from politefetch.errors import PoolSaturatedError, SchedulerInvariantError, UrlStatus
from politefetch.fetcher.executor import DEFAULT_REQUEST_TIMEOUT, BoundedExecutor
from politefetch.fetcher.grouping import is_special_key, status_for_special_key
from politefetch.fetcher.policy import FetcherPolicy
from politefetch.fetcher.task import FetchTask, emit_unfetched
from politefetch.models import FetchList
from politefetch.types import Fetcher, OutputSink

logger = structlog.get_logger()

# How long to wait before doing a hard termination (seconds).
DEFAULT_TERMINATION_TIMEOUT = 100.0


class Admission(StrEnum):
    """What :meth:`FetchBuffer.submit` did with a batch."""

    DISPATCHED = "dispatched"
    DELAYED = "delayed"
    DEFERRED = "deferred"
    TIME_LIMIT = "time_limit"
    SPECIAL_KEY = "special_key"
    REJECTED = "rejected"


class FetchBuffer:
    """Serializes and rate-limits batches per reference on a bounded pool.

    Args:
        fetcher: Fetch operation run by each :class:`FetchTask`.
        sink: Receives one outcome per URL.
        policy: Supplies the crawl-end deadline.
        executor: Worker pool; defaults to ``fetcher.max_threads`` workers.
        counters: Shared counters, created if not given.
        request_timeout: Seconds to wait for a free worker.
        termination_timeout: Seconds :meth:`close` waits for workers.
        clock_fn: Monotonic clock used for spacing.
        wall_clock_fn: Epoch clock used for the crawl-end deadline.
        sleep_fn: Used by :meth:`process` while waiting on delayed batches.
        on_release: Called with each batch once it has been fully handled.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        sink: OutputSink,
        *,
        policy: FetcherPolicy | None = None,
        executor: BoundedExecutor | None = None,
        counters: FetchCounters | None = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        termination_timeout: float = DEFAULT_TERMINATION_TIMEOUT,
        clock_fn: Callable[[], float] = time.monotonic,
        wall_clock_fn: Callable[[], float] = time.time,
        sleep_fn: Callable[[float], None] = time.sleep,
        on_release: Callable[[FetchList], None] | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._sink = sink
        self._sink_lock = threading.Lock()
        self._policy = policy or FetcherPolicy()
        self._executor = executor or BoundedExecutor(
            fetcher.max_threads, request_timeout=request_timeout
        )
        self.counters = counters or FetchCounters()
        self._termination_timeout = termination_timeout
        self._clock = clock_fn
        self._wall_clock = wall_clock_fn
        self._sleep = sleep_fn
        self._on_release = on_release

        self._ref_lock = threading.Lock()
        # ref -> earliest start of its next batch; None retires the ref
        self._active: dict[str, float | None] = {}
        self._active_delay: dict[str, float] = {}
        self._pending: dict[str, float] = {}
        self._delayed: list[tuple[float, int, FetchList]] = []
        self._seq = itertools.count()
        self._closed = False

    # ── Admission ──────────────────────────────────────────────────

    def submit(self, batch: FetchList) -> Admission:
        """Admit *batch*: dispatch it, park it, or emit its URLs as skipped.

        Raises:
            RuntimeError: The buffer is closed.
            Exception: A worker task failed earlier; the failure is fatal.
        """
        if self._closed:
            raise RuntimeError("FetchBuffer is closed")
        self.raise_failure()

        if is_special_key(batch.ref):
            status, reason = status_for_special_key(batch.ref)
            self._skip(batch, status)
            logger.debug("fetch_buffer_special_key", reason=reason, urls=len(batch))
            return Admission.SPECIAL_KEY

        # Past the crawl end time, nothing more gets fetched.
        if self._policy.is_past_end_time(self._wall_clock()):
            self._skip(batch, UrlStatus.SKIPPED_TIME_LIMIT)
            logger.debug("fetch_buffer_time_limit_skip", ref=batch.ref, urls=len(batch))
            return Admission.TIME_LIMIT

        with self._ref_lock:
            now = self._clock()
            if batch.ref in self._active:
                active = True
            else:
                active = False
                next_fetch_time = self._pending.get(batch.ref)
                if next_fetch_time is not None and next_fetch_time > now:
                    heapq.heappush(
                        self._delayed, (next_fetch_time, next(self._seq), batch)
                    )
                    logger.debug(
                        "fetch_buffer_waiting",
                        ref=batch.ref,
                        wait_ms=int((next_fetch_time - now) * 1000),
                    )
                    return Admission.DELAYED
                self._make_active(batch, now)

        if active:
            # Still fetching from the same server
            self._skip(batch, UrlStatus.SKIPPED_DEFERRED)
            logger.debug("fetch_buffer_ref_active", ref=batch.ref, urls=len(batch))
            return Admission.DEFERRED

        return self._dispatch(batch)

    def _make_active(self, batch: FetchList, now: float) -> None:
        """Pending (or absent) to active; caller holds the ref lock."""
        self._pending.pop(batch.ref, None)
        self._active[batch.ref] = None if batch.is_last else now + batch.fetch_delay
        self._active_delay[batch.ref] = batch.fetch_delay

    def _dispatch(self, batch: FetchList) -> Admission:
        def _task_finished(ref: str) -> None:
            self.finished(ref)
            self._release(batch)

        task = FetchTask(
            batch,
            self._fetcher,
            self._sink,
            self._sink_lock,
            self.counters,
            on_finished=_task_finished,
            cancel_event=self._executor.cancel_event,
            clock_fn=self._clock,
        )
        self.counters.increment(FetchCounter.URLS_QUEUED, len(batch))
        self.counters.increment(FetchCounter.URLS_REMAINING, len(batch))
        try:
            self._executor.execute(task, on_cancel=task.abandon)
        except PoolSaturatedError as exc:
            logger.error("fetch_buffer_rejected", ref=batch.ref, error=str(exc))
            self.finished(batch.ref)
            self.counters.decrement(FetchCounter.URLS_REMAINING, len(batch))
            self._skip(batch, UrlStatus.SKIPPED_DEFERRED)
            return Admission.REJECTED
        return Admission.DISPATCHED

    def _skip(self, batch: FetchList, status: UrlStatus) -> None:
        count = emit_unfetched(self._sink, self._sink_lock, batch.urls, status)
        self.counters.increment(FetchCounter.URLS_SKIPPED, count)
        self._release(batch)

    def _release(self, batch: FetchList) -> None:
        if self._on_release is not None:
            self._on_release(batch)

    # ── Completion ─────────────────────────────────────────────────

    def finished(self, ref: str) -> None:
        """Completion callback: move *ref* from active back to pending.

        The next batch may start no earlier than the time computed at
        admission, and no earlier than the fetch delay after now.  A ref
        whose batch was the last one is dropped entirely.

        Raises:
            SchedulerInvariantError: *ref* is not active.
        """
        with self._ref_lock:
            if ref not in self._active:
                raise SchedulerInvariantError(f"finished called on non-active ref: {ref}")
            next_fetch_time = self._active.pop(ref)
            delay = self._active_delay.pop(ref, 0.0)
            if next_fetch_time is not None:
                self._pending[ref] = max(next_fetch_time, self._clock() + delay)

    # ── Delayed batches ────────────────────────────────────────────

    def dispatch_due(self) -> int:
        """Re-admit every parked batch whose time has come.

        Returns:
            Number of batches taken off the delayed heap.
        """
        due: list[FetchList] = []
        with self._ref_lock:
            now = self._clock()
            while self._delayed and self._delayed[0][0] <= now:
                due.append(heapq.heappop(self._delayed)[2])
        for batch in due:
            self.submit(batch)
        return len(due)

    def next_due_time(self) -> float | None:
        """Clock time at which the earliest parked batch becomes due."""
        with self._ref_lock:
            return self._delayed[0][0] if self._delayed else None

    @property
    def delayed_count(self) -> int:
        with self._ref_lock:
            return len(self._delayed)

    @property
    def running_count(self) -> int:
        """Tasks on the worker pool that have not finished yet."""
        return self._executor.active_count

    def raise_failure(self) -> None:
        """Re-raise the exception that killed a worker task, if any."""
        self._executor.raise_failure()

    def process(self, batches: Iterable[FetchList]) -> None:
        """Submit every batch, then wait until none is left parked."""
        for batch in batches:
            self.dispatch_due()
            self.submit(batch)

        while True:
            self.dispatch_due()
            due = self.next_due_time()
            if due is None:
                break
            self._sleep(max(0.0, due - self._clock()))

    # ── Introspection ──────────────────────────────────────────────

    def is_active(self, ref: str) -> bool:
        with self._ref_lock:
            return ref in self._active

    def is_pending(self, ref: str) -> bool:
        with self._ref_lock:
            return ref in self._pending

    def active_refs(self) -> set[str]:
        with self._ref_lock:
            return set(self._active)

    def pending_refs(self) -> dict[str, float]:
        with self._ref_lock:
            return dict(self._pending)

    # ── Shutdown ───────────────────────────────────────────────────

    def close(self) -> bool:
        """Wait for running batches and shut the pool down.

        Parked batches that never got their turn are emitted as
        ``SKIPPED_INTERRUPTED``.

        Returns:
            ``False`` if the pool had to be terminated forcefully.
        """
        if self._closed:
            return True
        self._closed = True

        with self._ref_lock:
            leftover = [entry[2] for entry in self._delayed]
            self._delayed.clear()
        for batch in leftover:
            self._skip(batch, UrlStatus.SKIPPED_INTERRUPTED)
        if leftover:
            logger.warning("fetch_buffer_dropped_delayed", batches=len(leftover))

        clean = self._executor.terminate(self._termination_timeout)
        if not clean:
            logger.warning("fetch_buffer_hard_termination")
        logger.info("fetch_buffer_counters", **self.counters.snapshot())
        return clean

    def __enter__(self) -> FetchBuffer:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
