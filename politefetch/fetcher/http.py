"""Default fetch operation over ``httpx``.

Implements the :class:`~politefetch.types.Fetcher` protocol: return a
:class:`FetchedDatum` or raise a categorized :class:`FetchError`.
"""

from __future__ import annotations

import threading
import time
from datetime import UTC, datetime
from urllib.parse import urljoin, urlsplit

import httpx
import structlog

from politefetch.errors import (
    AbortedFetchError,
    HttpFetchError,
    InvalidUrlError,
    IOFetchError,
    RedirectFetchError,
    UrlStatus,
)
from politefetch.fetcher.policy import NO_MIN_RESPONSE_RATE, FetcherPolicy
from politefetch.models import FetchedDatum, ScoredUrl, UserAgent

logger = structlog.get_logger()

DEFAULT_MAX_THREADS = 10
DEFAULT_TIMEOUT = 30.0
DEFAULT_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"

# Don't judge the response rate until the transfer has run this long.
MIN_RATE_CHECK_SECONDS = 1.0

_REDIRECT_CODES = frozenset({301, 302, 303, 307, 308})


class HttpFetcher:
    """Fetches one URL at a time through a shared ``httpx.Client``.

    Redirects are followed manually so the chain can be capped at
    ``policy.max_redirects``.  Content beyond ``policy.max_content_size`` is
    dropped (the datum is truncated, not failed).
    At most ``policy.max_connections_per_host`` requests run against one
    ``scheme://host:port`` at a time; further callers wait for a slot.

    Args:
        user_agent: Crawler identity for the ``User-Agent`` header.
        policy: Fetch limits.
        max_threads: Worker count the scheduler should use with us.
        timeout: Per-request timeout in seconds.
        transport: Optional transport, e.g. ``httpx.MockTransport`` in tests.
    """

    def __init__(
        self,
        user_agent: UserAgent,
        policy: FetcherPolicy | None = None,
        *,
        max_threads: int = DEFAULT_MAX_THREADS,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._user_agent = user_agent
        self.policy = policy or FetcherPolicy()
        self._max_threads = max_threads
        self._slots_lock = threading.Lock()
        self._host_slots: dict[str, threading.BoundedSemaphore] = {}
        self._client = httpx.Client(
            headers={
                "User-Agent": user_agent.header,
                "Accept": DEFAULT_ACCEPT,
                "Accept-Language": self.policy.accept_language,
            },
            follow_redirects=False,
            timeout=timeout,
            limits=httpx.Limits(
                max_connections=max_threads,
                max_keepalive_connections=max_threads,
            ),
            transport=transport,
        )

    @property
    def user_agent(self) -> UserAgent:
        return self._user_agent

    @property
    def max_threads(self) -> int:
        return self._max_threads

    def get(self, item: ScoredUrl) -> FetchedDatum:
        url = item.url
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise InvalidUrlError(url, f"unsupported URL: {url}")

        current = url
        redirects = 0
        start = time.monotonic()
        while True:
            try:
                datum = self._get_once(item, current, start)
            except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
                raise InvalidUrlError(url, str(exc)) from exc
            except httpx.HTTPError as exc:
                raise IOFetchError(url, cause=exc) from exc

            if isinstance(datum, tuple):
                redirect_status, location = datum
                if self.policy.max_redirects == 0:
                    raise HttpFetchError(url, redirect_status, {"location": location})
                redirects += 1
                if redirects > self.policy.max_redirects:
                    raise RedirectFetchError(url, self.policy.max_redirects)
                logger.debug("http_redirect", url=url, location=location, hops=redirects)
                current = location
                continue
            return datum

    def _get_once(
        self, item: ScoredUrl, url: str, start: float
    ) -> FetchedDatum | tuple[int, str]:
        """Fetch *url*; 3xx responses give ``(status, absolute location)``."""
        with self._host_slot(url), self._client.stream("GET", url) as response:
            status = response.status_code
            if status in _REDIRECT_CODES and "location" in response.headers:
                return status, urljoin(url, response.headers["location"])
            if status >= 300 or status < 200:
                raise HttpFetchError(url, status, dict(response.headers))

            content_type = response.headers.get("content-type", "")
            if not self.policy.accepts_mime_type(content_type):
                raise AbortedFetchError(
                    url,
                    UrlStatus.ABORTED_INVALID_MIMETYPE,
                    f"content type not accepted: {content_type}",
                )

            content = self._read_content(response, url, start)
            elapsed = time.monotonic() - start

        return FetchedDatum(
            url=item.url,
            final_url=str(response.url),
            status_code=status,
            content=content,
            content_type=content_type,
            headers=dict(response.headers),
            fetch_time=datetime.now(UTC).timestamp(),
            elapsed_ms=elapsed * 1000,
            response_rate=len(content) / elapsed if elapsed > 0 else 0.0,
            metadata=dict(item.metadata),
        )

    def _host_slot(self, url: str) -> threading.BoundedSemaphore:
        parts = urlsplit(url)
        host = f"{parts.scheme}://{parts.netloc.lower()}"
        with self._slots_lock:
            slot = self._host_slots.get(host)
            if slot is None:
                slot = threading.BoundedSemaphore(self.policy.max_connections_per_host)
                self._host_slots[host] = slot
            return slot

    def _read_content(self, response: httpx.Response, url: str, start: float) -> bytes:
        max_size = self.policy.max_content_size
        min_rate = self.policy.min_response_rate
        chunks: list[bytes] = []
        total = 0
        for chunk in response.iter_bytes():
            chunks.append(chunk)
            total += len(chunk)
            if total >= max_size:
                logger.debug("http_content_truncated", url=url, limit=max_size)
                break
            if min_rate != NO_MIN_RESPONSE_RATE:
                elapsed = time.monotonic() - start
                if elapsed >= MIN_RATE_CHECK_SECONDS and total / elapsed < min_rate:
                    raise AbortedFetchError(
                        url,
                        UrlStatus.ABORTED_SLOW_RESPONSE,
                        f"{total / elapsed:.0f} bytes/s is below {min_rate}",
                    )
        return b"".join(chunks)[:max_size]

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpFetcher:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
