"""Tests for politefetch.fetcher.executor.BoundedExecutor."""

from __future__ import annotations

import threading
import time

import pytest

from politefetch.errors import PoolSaturatedError
from politefetch.fetcher.executor import BoundedExecutor


class TestBoundedExecutor:
    def test_rejects_zero_threads(self) -> None:
        with pytest.raises(ValueError):
            BoundedExecutor(0)

    def test_runs_tasks(self) -> None:
        executor = BoundedExecutor(2, request_timeout=1.0)
        results: list[int] = []
        futures = [executor.execute(lambda i=i: results.append(i)) for i in range(5)]
        for f in futures:
            f.result(timeout=5)
        assert sorted(results) == [0, 1, 2, 3, 4]
        assert executor.terminate(5.0)

    def test_saturation_raises_after_timeout(self) -> None:
        executor = BoundedExecutor(1, request_timeout=0.05)
        release = threading.Event()
        executor.execute(lambda: release.wait(5))
        try:
            with pytest.raises(PoolSaturatedError):
                executor.execute(lambda: None)
        finally:
            release.set()
        assert executor.terminate(5.0)

    def test_task_failure_is_fatal(self) -> None:
        executor = BoundedExecutor(1, request_timeout=2.0)
        error = RuntimeError("boom")

        def boom() -> None:
            raise error

        executor.execute(boom)
        assert executor.wait_idle(5.0)
        # The permit is released, but the pool refuses further work
        assert executor.active_count == 0
        assert executor.failure is error
        assert executor.cancel_event.is_set()
        with pytest.raises(RuntimeError, match="boom"):
            executor.execute(lambda: None)
        with pytest.raises(RuntimeError, match="boom"):
            executor.terminate(1.0)

    def test_waiting_submit_sees_shutdown(self) -> None:
        executor = BoundedExecutor(1, request_timeout=5.0)
        release = threading.Event()
        executor.execute(lambda: release.wait(5))
        errors: list[Exception] = []

        def submit() -> None:
            try:
                executor.execute(lambda: None)
            except PoolSaturatedError as exc:
                errors.append(exc)

        submitter = threading.Thread(target=submit)
        submitter.start()
        terminator = threading.Thread(target=executor.terminate, args=(5.0,))
        terminator.start()
        time.sleep(0.1)
        release.set()
        submitter.join(5)
        terminator.join(5)

        assert len(errors) == 1
        assert "shut down" in str(errors[0])
        assert executor.active_count == 0

    def test_active_count_and_wait_idle(self) -> None:
        executor = BoundedExecutor(2, request_timeout=1.0)
        release = threading.Event()
        started = threading.Event()

        def work() -> None:
            started.set()
            release.wait(5)

        executor.execute(work)
        assert started.wait(5)
        assert executor.active_count == 1
        assert executor.wait_idle(0.05) is False
        release.set()
        assert executor.wait_idle(5.0) is True
        assert executor.active_count == 0
        executor.terminate(1.0)

    def test_execute_after_terminate_raises(self) -> None:
        executor = BoundedExecutor(1)
        assert executor.terminate(1.0)
        with pytest.raises(PoolSaturatedError, match="shut down"):
            executor.execute(lambda: None)

    def test_forced_termination_sets_cancel_event(self) -> None:
        executor = BoundedExecutor(1, request_timeout=1.0)
        started = threading.Event()

        def stubborn() -> None:
            started.set()
            executor.cancel_event.wait(5)

        executor.execute(stubborn)
        assert started.wait(5)
        assert executor.terminate(0.05) is False
        assert executor.cancel_event.is_set()
