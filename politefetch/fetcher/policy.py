"""Limits applied to every fetch of a run."""

from __future__ import annotations

import sys
import time
from dataclasses import dataclass, replace

NO_MIN_RESPONSE_RATE = 0
NO_REDIRECTS = 0

DEFAULT_MAX_CONTENT_SIZE = 64 * 1024
DEFAULT_MAX_CONNECTIONS_PER_HOST = 2
DEFAULT_MAX_REDIRECTS = 20
DEFAULT_ACCEPT_LANGUAGE = "en-us,en-gb,en;q=0.7,*;q=0.3"

# Interval between batched fetch requests, in milliseconds.
DEFAULT_FETCH_INTERVAL_MS = 5 * 60 * 1000
# Interval between requests, in milliseconds.
DEFAULT_CRAWL_DELAY_MS = 30 * 1000

_UNLIMITED_URLS = sys.maxsize


@dataclass(frozen=True)
class FetcherPolicy:
    """Immutable set of limits for one fetch run.

    Attributes:
        min_response_rate: Lower bound on bytes/second; slower responses
            are aborted.  ``0`` disables the check.
        max_content_size: Bytes of content to keep per response.
        crawl_end_time: Absolute deadline (epoch seconds); ``None`` means
            the crawl never times out.
        crawl_delay_ms: Default delay between requests to one server.
        max_redirects: Redirects followed before giving up.
        max_connections_per_host: Parallel connections allowed per host.
        accept_language: ``Accept-Language`` request header.
        valid_mime_types: Accepted content types, or ``None`` for all.
    """

    min_response_rate: int = NO_MIN_RESPONSE_RATE
    max_content_size: int = DEFAULT_MAX_CONTENT_SIZE
    crawl_end_time: float | None = None
    crawl_delay_ms: int = DEFAULT_CRAWL_DELAY_MS
    max_redirects: int = DEFAULT_MAX_REDIRECTS
    max_connections_per_host: int = DEFAULT_MAX_CONNECTIONS_PER_HOST
    accept_language: str = DEFAULT_ACCEPT_LANGUAGE
    valid_mime_types: frozenset[str] | None = None

    def __post_init__(self) -> None:
        if self.crawl_delay_ms < 0:
            raise ValueError(f"crawl_delay_ms must be >= 0: {self.crawl_delay_ms}")
        # Catch the common error of specifying the delay in seconds
        if 0 < self.crawl_delay_ms < 100:
            raise ValueError(
                f"crawl_delay_ms must be milliseconds, not seconds: "
                f"{self.crawl_delay_ms}"
            )
        if self.max_redirects < 0:
            raise ValueError(f"max_redirects must be >= 0: {self.max_redirects}")
        if self.max_connections_per_host < 1:
            raise ValueError(
                f"max_connections_per_host must be >= 1: {self.max_connections_per_host}"
            )

    def with_crawl_delay(self, crawl_delay_ms: int) -> FetcherPolicy:
        """Copy of this policy with a different crawl delay."""
        return replace(self, crawl_delay_ms=crawl_delay_ms)

    def is_past_end_time(self, now: float | None = None) -> bool:
        if self.crawl_end_time is None:
            return False
        return (time.time() if now is None else now) > self.crawl_end_time

    def max_urls(self, now: float | None = None) -> int:
        """Maximum number of URLs one server can get in the remaining time."""
        if self.crawl_end_time is None or self.crawl_delay_ms == 0:
            return _UNLIMITED_URLS
        remaining_ms = (
            self.crawl_end_time - (time.time() if now is None else now)
        ) * 1000
        if remaining_ms <= 0:
            return 0
        return 1 + int(remaining_ms // self.crawl_delay_ms)

    def default_urls_per_request(self) -> int:
        """URLs one server can get per fetch interval at this crawl delay."""
        if self.crawl_delay_ms > 0:
            return max(1, DEFAULT_FETCH_INTERVAL_MS // self.crawl_delay_ms)
        return _UNLIMITED_URLS

    def accepts_mime_type(self, content_type: str) -> bool:
        if not self.valid_mime_types:
            return True
        mime = content_type.split(";", 1)[0].strip().lower()
        return mime in self.valid_mime_types
