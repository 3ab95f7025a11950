"""URL status taxonomy and categorized fetch errors.

Per-URL failures are data: the fetch operation raises one of the
:class:`FetchError` subclasses below, and the fetch task records its
:attr:`FetchError.status` as the URL's terminal status.  Only
:class:`SchedulerInvariantError` (a programming error) and setup errors are
allowed to propagate out of the scheduler.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum


class UrlStatus(StrEnum):
    """Terminal status recorded for every URL that enters the fetch stage."""

    FETCHED = "FETCHED"

    # Never attempted
    SKIPPED_BLOCKED = "SKIPPED_BLOCKED"
    SKIPPED_UNKNOWN_HOST = "SKIPPED_UNKNOWN_HOST"
    SKIPPED_INVALID_URL = "SKIPPED_INVALID_URL"
    SKIPPED_DEFERRED = "SKIPPED_DEFERRED"
    SKIPPED_BY_SCORER = "SKIPPED_BY_SCORER"
    SKIPPED_TIME_LIMIT = "SKIPPED_TIME_LIMIT"
    SKIPPED_INTERRUPTED = "SKIPPED_INTERRUPTED"

    # Attempted but abandoned by the transport
    ABORTED_SLOW_RESPONSE = "ABORTED_SLOW_RESPONSE"
    ABORTED_INVALID_MIMETYPE = "ABORTED_INVALID_MIMETYPE"

    # HTTP-level failures
    HTTP_REDIRECTION_ERROR = "HTTP_REDIRECTION_ERROR"
    HTTP_TOO_MANY_REDIRECTS = "HTTP_TOO_MANY_REDIRECTS"
    HTTP_UNAUTHORIZED = "HTTP_UNAUTHORIZED"
    HTTP_FORBIDDEN = "HTTP_FORBIDDEN"
    HTTP_NOT_FOUND = "HTTP_NOT_FOUND"
    HTTP_GONE = "HTTP_GONE"
    HTTP_CLIENT_ERROR = "HTTP_CLIENT_ERROR"
    HTTP_SERVER_ERROR = "HTTP_SERVER_ERROR"
    HTTP_OTHER_ERROR = "HTTP_OTHER_ERROR"

    ERROR_INVALID_URL = "ERROR_INVALID_URL"
    ERROR_IOEXCEPTION = "ERROR_IOEXCEPTION"


def status_from_http_code(http_status: int) -> UrlStatus:
    """Map a failing HTTP status code onto a :class:`UrlStatus`."""
    if 300 <= http_status < 400:
        return UrlStatus.HTTP_REDIRECTION_ERROR
    if http_status == 401:
        return UrlStatus.HTTP_UNAUTHORIZED
    if http_status == 403:
        return UrlStatus.HTTP_FORBIDDEN
    if http_status == 404:
        return UrlStatus.HTTP_NOT_FOUND
    if http_status == 410:
        return UrlStatus.HTTP_GONE
    if 400 <= http_status < 500:
        return UrlStatus.HTTP_CLIENT_ERROR
    if 500 <= http_status < 600:
        return UrlStatus.HTTP_SERVER_ERROR
    return UrlStatus.HTTP_OTHER_ERROR


# ── Fetch errors (raised by the external fetch operation) ──────────


class FetchError(Exception):
    """Base class for categorized per-URL fetch failures."""

    status: UrlStatus = UrlStatus.ERROR_IOEXCEPTION

    def __init__(self, url: str, message: str = "") -> None:
        super().__init__(message or self.status.value)
        self.url = url
        self.message = message or self.status.value

    def to_dict(self) -> dict[str, object]:
        return {
            "error": {
                "type": type(self).__name__,
                "status": self.status.value,
                "url": self.url,
                "message": self.message,
            },
        }

    def format(self) -> str:
        return f"Error [{self.status.value}]: {self.url} ({self.message})"


class InvalidUrlError(FetchError):
    """The URL could not be parsed or uses an unsupported scheme."""

    status = UrlStatus.ERROR_INVALID_URL


class IOFetchError(FetchError):
    """Transport-level failure such as DNS, connect or read errors."""

    status = UrlStatus.ERROR_IOEXCEPTION

    def __init__(
        self, url: str, message: str = "", *, cause: BaseException | None = None
    ) -> None:
        if not message and cause is not None:
            message = f"{type(cause).__name__}: {cause}"
        super().__init__(url, message)
        self.cause = cause


class HttpFetchError(FetchError):
    """The server answered with a non-success HTTP status."""

    def __init__(
        self,
        url: str,
        http_status: int,
        headers: Mapping[str, str] | None = None,
        message: str = "",
    ) -> None:
        self.http_status = http_status
        self.headers: dict[str, str] = dict(headers or {})
        self.status = status_from_http_code(http_status)
        super().__init__(url, message or f"HTTP {http_status}")

    def to_dict(self) -> dict[str, object]:
        data = super().to_dict()
        data["error"]["http_status"] = self.http_status  # type: ignore[index]
        return data


class RedirectFetchError(FetchError):
    """Redirect chain exceeded the configured maximum."""

    status = UrlStatus.HTTP_TOO_MANY_REDIRECTS

    def __init__(self, url: str, redirects: int, message: str = "") -> None:
        self.redirects = redirects
        super().__init__(url, message or f"more than {redirects} redirects")


class AbortedFetchError(FetchError):
    """The transport gave up on a response that was too slow or had the wrong type."""

    _REASONS = frozenset(
        {
            UrlStatus.ABORTED_SLOW_RESPONSE,
            UrlStatus.ABORTED_INVALID_MIMETYPE,
        }
    )

    def __init__(self, url: str, reason: UrlStatus, message: str = "") -> None:
        if reason not in self._REASONS:
            raise ValueError(f"Not an abort reason: {reason}")
        self.status = reason
        super().__init__(url, message)


# ── Scheduler errors ───────────────────────────────────────────────


class PoolSaturatedError(RuntimeError):
    """The bounded worker pool did not free a slot within its timeout."""


class SchedulerInvariantError(RuntimeError):
    """A politeness invariant was violated; always fatal."""
