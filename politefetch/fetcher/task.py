"""Fetch task: one worker fetching one batch, URL by URL."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable

import structlog

from politefetch.counters import FetchCounter, FetchCounters
from politefetch.errors import FetchError, IOFetchError, UrlStatus
from politefetch.models import FetchedDatum, FetchList, FetchOutcome, ScoredUrl
from politefetch.types import Fetcher, OutputSink

logger = structlog.get_logger()


def emit_unfetched(
    sink: OutputSink,
    sink_lock: threading.Lock,
    items: Iterable[ScoredUrl],
    status: UrlStatus,
) -> int:
    """Emit every URL in *items* with a non-fetch *status*; returns the count."""
    count = 0
    with sink_lock:
        for item in items:
            sink.add(FetchOutcome(FetchedDatum.unfetched(item), status))
            count += 1
    return count


class FetchTask:
    """Runs on a pool worker; fetches the URLs of one batch sequentially.

    Every URL produces exactly one outcome on the sink.  Categorized
    :class:`FetchError` failures keep their status; anything else the
    fetcher raises is recorded as an I/O error.  ``on_finished(ref)`` is
    always called once the task stops, even after a partial run.

    Setting *cancel_event* stops the task before its next URL; the URLs it
    did not get to are emitted as ``SKIPPED_INTERRUPTED``.
    """

    def __init__(
        self,
        batch: FetchList,
        fetcher: Fetcher,
        sink: OutputSink,
        sink_lock: threading.Lock,
        counters: FetchCounters,
        on_finished: Callable[[str], None],
        cancel_event: threading.Event | None = None,
        clock_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self.batch = batch
        self._fetcher = fetcher
        self._sink = sink
        self._sink_lock = sink_lock
        self._counters = counters
        self._on_finished = on_finished
        self._cancel_event = cancel_event or threading.Event()
        self._clock = clock_fn
        self._done = False
        self._done_lock = threading.Lock()

    @property
    def ref(self) -> str:
        return self.batch.ref

    def __call__(self) -> None:
        self.run()

    def run(self) -> None:
        self._counters.increment(FetchCounter.DOMAINS_PROCESSING)
        urls = self.batch.urls
        index = 0
        try:
            while index < len(urls):
                if self._cancel_event.is_set():
                    break
                item = urls[index]
                index += 1
                self._fetch_one(item)
        finally:
            self._counters.decrement(FetchCounter.DOMAINS_PROCESSING)
            if index < len(urls):
                lost = emit_unfetched(
                    self._sink,
                    self._sink_lock,
                    urls[index:],
                    UrlStatus.SKIPPED_INTERRUPTED,
                )
                self._counters.decrement(FetchCounter.URLS_REMAINING, lost)
                self._counters.increment(FetchCounter.URLS_SKIPPED, lost)
                logger.warning(
                    "fetch_task_interrupted",
                    ref=self.ref,
                    fetched=index,
                    interrupted=lost,
                )
            self._complete()

    def abandon(self) -> None:
        """Account for a task that was cancelled before it ever ran."""
        lost = emit_unfetched(
            self._sink, self._sink_lock, self.batch.urls, UrlStatus.SKIPPED_INTERRUPTED
        )
        self._counters.decrement(FetchCounter.URLS_REMAINING, lost)
        self._counters.increment(FetchCounter.URLS_SKIPPED, lost)
        logger.warning("fetch_task_abandoned", ref=self.ref, interrupted=lost)
        self._complete()

    def _complete(self) -> None:
        with self._done_lock:
            if self._done:
                return
            self._done = True
        self._on_finished(self.ref)

    def _fetch_one(self, item: ScoredUrl) -> None:
        datum = FetchedDatum.unfetched(item)
        error: FetchError | None = None
        # Stays this way only if the fetch itself is interrupted
        status = UrlStatus.SKIPPED_INTERRUPTED

        self._counters.increment(FetchCounter.URLS_FETCHING)
        try:
            start = self._clock()
            datum = self._fetcher.get(item)
            elapsed_ms = int((self._clock() - start) * 1000)

            self._counters.increment(FetchCounter.FETCHED_TIME, elapsed_ms)
            self._counters.increment(FetchCounter.URLS_FETCHED)
            self._counters.increment(FetchCounter.FETCHED_BYTES, datum.content_length)
            status = UrlStatus.FETCHED
            logger.debug(
                "fetched",
                url=item.url,
                bytes=datum.content_length,
                elapsed_ms=elapsed_ms,
            )
        except FetchError as exc:
            self._counters.increment(FetchCounter.URLS_FAILED)
            error = exc
            status = exc.status
        except Exception as exc:
            logger.warning("fetch_unexpected_error", url=item.url, exc_info=True)
            self._counters.increment(FetchCounter.URLS_FAILED)
            error = IOFetchError(item.url, cause=exc)
            status = error.status
        finally:
            self._counters.decrement(FetchCounter.URLS_FETCHING)
            self._counters.decrement(FetchCounter.URLS_REMAINING)

            # Sinks aren't required to be thread-safe.
            with self._sink_lock:
                self._sink.add(FetchOutcome(datum, status, error))
