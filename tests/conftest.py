"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable
from pathlib import Path

import pytest

from politefetch.models import FetchedDatum, ScoredUrl, UserAgent
from politefetch.sink import CollectingSink


class FakeClock:
    """Manually advanced clock; ``sleep`` just moves time forward."""

    def __init__(self, start: float = 1000.0) -> None:
        self._lock = threading.Lock()
        self.now = start

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.advance(seconds)


class FakeFetcher:
    """In-memory :class:`~politefetch.types.Fetcher`.

    ``responses`` maps URL to either bytes (fetched content) or an
    exception instance to raise.  Unknown URLs return ``b"ok"``.
    """

    def __init__(
        self,
        responses: dict[str, bytes | BaseException] | None = None,
        *,
        max_threads: int = 2,
        agent_name: str = "testbot",
        content_type: str = "text/plain",
        on_get: Callable[[ScoredUrl], None] | None = None,
    ) -> None:
        self.responses = responses or {}
        self._max_threads = max_threads
        self._user_agent = UserAgent(agent_name)
        self.content_type = content_type
        self.on_get = on_get
        self.lock = threading.Lock()
        self.calls: list[str] = []

    @property
    def user_agent(self) -> UserAgent:
        return self._user_agent

    @property
    def max_threads(self) -> int:
        return self._max_threads

    def get(self, item: ScoredUrl) -> FetchedDatum:
        with self.lock:
            self.calls.append(item.url)
        if self.on_get is not None:
            self.on_get(item)
        result = self.responses.get(item.url, b"ok")
        if isinstance(result, BaseException):
            raise result
        return FetchedDatum(
            url=item.url,
            final_url=item.url,
            status_code=200,
            content=result,
            content_type=self.content_type,
            metadata=dict(item.metadata),
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def make_fetcher() -> type[FakeFetcher]:
    """Factory for fetchers with canned responses."""
    return FakeFetcher


@pytest.fixture
def sink() -> CollectingSink:
    return CollectingSink()


@pytest.fixture
def tmp_data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory for tests."""
    data_dir = tmp_path / ".politefetch"
    data_dir.mkdir()
    return data_dir

