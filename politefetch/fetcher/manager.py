"""Scheduler manager: pumps ready batches from a queue provider into the buffer."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

import structlog

from politefetch.counters import FetchCounter, FetchCounters
from politefetch.fetcher.buffer import DEFAULT_TERMINATION_TIMEOUT, FetchBuffer
from politefetch.fetcher.executor import BoundedExecutor
from politefetch.fetcher.policy import FetcherPolicy
from politefetch.types import Fetcher, OutputSink, QueueProvider

logger = structlog.get_logger()

STATUS_UPDATE_INTERVAL = 10.0
NO_URLS_SLEEP_TIME = 0.1
# Time we'll wait for a free worker.
COMMAND_TIMEOUT = 120.0
QUEUE_LOG_INTERVAL = 5 * 60.0
NUM_QUEUES_TO_LOG = 100


class FetcherManager:
    """Control loop feeding a :class:`FetchBuffer` from a :class:`QueueProvider`.

    Every polled batch goes through :meth:`FetchBuffer.submit`, so the
    crawl-end deadline, the one-batch-per-host rule and the crawl-delay
    spacing are enforced in one place.  The buffer hands each batch back
    to ``provider.finished`` once all of its URLs have been emitted.

    The provider may still be receiving URLs while we fetch, so an empty
    poll is not the end of the run: the loop keeps going until
    :meth:`stop` is called (or, with ``run(until_done=True)``, until
    :meth:`is_done`).
    """

    def __init__(
        self,
        provider: QueueProvider,
        fetcher: Fetcher,
        sink: OutputSink,
        *,
        policy: FetcherPolicy | None = None,
        counters: FetchCounters | None = None,
        executor: BoundedExecutor | None = None,
        request_timeout: float = COMMAND_TIMEOUT,
        terminate_timeout: float = DEFAULT_TERMINATION_TIMEOUT,
        status_interval: float = STATUS_UPDATE_INTERVAL,
        queue_log_interval: float = QUEUE_LOG_INTERVAL,
        num_queues_to_log: int = NUM_QUEUES_TO_LOG,
        idle_sleep: float = NO_URLS_SLEEP_TIME,
        clock_fn: Callable[[], float] = time.monotonic,
        wall_clock_fn: Callable[[], float] = time.time,
    ) -> None:
        self._provider = provider
        self.counters = counters or FetchCounters()
        self._buffer = FetchBuffer(
            fetcher,
            sink,
            policy=policy,
            executor=executor,
            counters=self.counters,
            request_timeout=request_timeout,
            termination_timeout=terminate_timeout,
            clock_fn=clock_fn,
            wall_clock_fn=wall_clock_fn,
            on_release=provider.finished,
        )
        self._status_interval = status_interval
        self._queue_log_interval = queue_log_interval
        self._num_queues_to_log = num_queues_to_log
        self._idle_sleep = idle_sleep
        self._clock = clock_fn
        self._stop_event = threading.Event()
        self._status = ""

    @property
    def status(self) -> str:
        """Last human-readable progress line."""
        return self._status

    @property
    def active_count(self) -> int:
        return self._buffer.running_count

    def is_done(self) -> bool:
        """True when nothing is being fetched and nothing is left to fetch."""
        return (
            self._buffer.running_count == 0
            and self._buffer.delayed_count == 0
            and self._provider.is_empty()
        )

    def stop(self) -> None:
        """Ask :meth:`run` to exit; safe to call from any thread."""
        self._stop_event.set()

    def run(self, until_done: bool = False) -> bool:
        """Run the loop until stopped.

        Args:
            until_done: Also exit once :meth:`is_done` holds.

        Returns:
            ``True`` if the worker pool shut down cleanly.

        Raises:
            Exception: Whatever killed a worker task, e.g. a
                :class:`~politefetch.errors.SchedulerInvariantError`.
        """
        next_queue_log_time = 0.0
        next_status_time = 0.0
        urls_fetching = -1
        domains_fetching = -1

        try:
            while not self._stop_event.is_set():
                self._buffer.raise_failure()
                cur_urls = self.counters.get(FetchCounter.URLS_FETCHING)
                cur_domains = self.counters.get(FetchCounter.DOMAINS_PROCESSING)
                now = self._clock()

                if (
                    cur_urls != urls_fetching
                    or cur_domains != domains_fetching
                    or now >= next_status_time
                ):
                    urls_fetching = cur_urls
                    domains_fetching = cur_domains
                    self._update_status(urls_fetching, domains_fetching)
                    next_status_time = self._clock() + self._status_interval

                if now >= next_queue_log_time:
                    self._provider.log_pending_queues(self._num_queues_to_log)
                    next_queue_log_time = self._clock() + self._queue_log_interval

                self._buffer.dispatch_due()
                batch = self._provider.poll()
                if batch is not None:
                    admission = self._buffer.submit(batch)
                    logger.debug(
                        "fetcher_manager_submitted",
                        ref=batch.ref,
                        urls=len(batch),
                        admission=admission.value,
                    )
                elif until_done and self.is_done():
                    break
                else:
                    self._stop_event.wait(self._idle_sleep)

            if not self.is_done():
                logger.warning("fetcher_manager_stopped_with_work", status=self._status)
        except Exception:
            logger.error("fetcher_manager_unexpected_error", exc_info=True)
            raise
        finally:
            clean = self._buffer.close()
            if not clean:
                logger.warning("fetcher_manager_hard_termination")
        return clean

    def _update_status(self, urls_fetching: int, domains_fetching: int) -> None:
        urls_remaining = self.counters.get(FetchCounter.URLS_REMAINING)
        if urls_fetching == 0:
            next_queue = self._provider.get_next_queue()
            if next_queue is not None and next_queue.size > 0:
                status = (
                    f"Nothing to fetch ({urls_remaining} URLs remaining, "
                    f"next host is {next_queue.ref} with {next_queue.size} URLs "
                    f"in {int(next_queue.ready_in)} seconds)"
                )
            else:
                status = "Nothing to fetch (0 URLs remaining)"
        else:
            status = (
                f"Fetching {urls_fetching} URLs from {domains_fetching} domains "
                f"({urls_remaining} URLs remaining)"
            )
        if status != self._status:
            logger.info("fetcher_status", status=status)
        self._status = status
