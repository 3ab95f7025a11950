"""Bounded worker pool used by the politeness buffer."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor

import structlog

from politefetch.errors import PoolSaturatedError

logger = structlog.get_logger()

DEFAULT_REQUEST_TIMEOUT = 10.0


class BoundedExecutor:
    """Thread pool that refuses work instead of queueing it without bound.

    A bounded semaphore holds one permit per worker.  :meth:`execute` waits
    up to ``request_timeout`` seconds for a permit and raises
    :class:`PoolSaturatedError` if none frees up.  The permit is released when
    the task finishes, whatever its outcome.

    Tasks report per-item failures as data, so an exception escaping a task
    is a programming error.  The first one is kept as :attr:`failure`, the
    :attr:`cancel_event` is set so other tasks stop, and the exception is
    re-raised by :meth:`execute` and :meth:`terminate`.

    Args:
        max_threads: Number of workers.
        request_timeout: Seconds to wait for a free worker.
        name: Thread name prefix.
    """

    def __init__(
        self,
        max_threads: int,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        name: str = "politefetch",
    ) -> None:
        if max_threads < 1:
            raise ValueError(f"max_threads must be >= 1: {max_threads}")
        self.max_threads = max_threads
        self.request_timeout = request_timeout
        self.cancel_event = threading.Event()
        self._pool = ThreadPoolExecutor(max_workers=max_threads, thread_name_prefix=name)
        self._permits = threading.BoundedSemaphore(max_threads)
        self._lock = threading.Lock()
        self._active = 0
        self._idle = threading.Condition(self._lock)
        self._shutdown = False
        self._failure: BaseException | None = None

    def execute(
        self,
        task: Callable[[], object],
        on_cancel: Callable[[], None] | None = None,
    ) -> Future[object]:
        """Run *task* on a free worker.

        *on_cancel* is called instead if the pool is shut down before the
        task gets to run.

        Raises:
            PoolSaturatedError: No worker became free within the timeout,
                or the pool has been shut down.
        """
        self.raise_failure()
        with self._lock:
            if self._shutdown:
                raise PoolSaturatedError("executor is shut down")
        if not self._permits.acquire(timeout=self.request_timeout):
            raise PoolSaturatedError(
                f"no free worker after {self.request_timeout:.1f}s"
            )
        with self._lock:
            if self._shutdown:
                self._permits.release()
                raise PoolSaturatedError("executor is shut down")
            # Counted before submit so terminate() waits for this task
            self._active += 1
        try:
            future = self._pool.submit(task)
        except RuntimeError as exc:
            # Only reachable after a forced shutdown
            self._release()
            raise PoolSaturatedError(str(exc)) from exc

        def _done(f: Future[object]) -> None:
            try:
                if f.cancelled():
                    if on_cancel is not None:
                        on_cancel()
                elif f.exception() is not None:
                    self._record_failure(f.exception())
            finally:
                self._release()

        future.add_done_callback(_done)
        return future

    def _record_failure(self, exc: BaseException) -> None:
        logger.error("executor_task_failed", error=repr(exc), exc_info=exc)
        with self._lock:
            if self._failure is None:
                self._failure = exc
        self.cancel_event.set()

    def _release(self) -> None:
        with self._lock:
            self._active -= 1
            if self._active == 0:
                self._idle.notify_all()
        self._permits.release()

    @property
    def failure(self) -> BaseException | None:
        """First exception that escaped a task, if any."""
        with self._lock:
            return self._failure

    def raise_failure(self) -> None:
        failure = self.failure
        if failure is not None:
            raise failure

    @property
    def active_count(self) -> int:
        """Tasks submitted and not yet finished."""
        with self._lock:
            return self._active

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no task is running; ``False`` on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            while self._active > 0:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._idle.wait(remaining)
            return True

    def terminate(self, timeout: float) -> bool:
        """Drain in-flight tasks, forcing shutdown after *timeout* seconds.

        Returns:
            ``True`` if every task finished in time, ``False`` if the pool
            had to be shut down with work still running.  Running tasks see
            :attr:`cancel_event` set and stop after their current URL.

        Raises:
            Exception: The first exception that escaped a task.
        """
        with self._lock:
            self._shutdown = True
        drained = self.wait_idle(timeout)
        if not drained:
            logger.warning(
                "executor_forced_shutdown",
                timeout=timeout,
                active=self.active_count,
            )
            self.cancel_event.set()
            self._pool.shutdown(wait=False, cancel_futures=True)
        else:
            self._pool.shutdown(wait=True)
        self.raise_failure()
        return drained
