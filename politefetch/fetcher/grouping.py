"""Grouping keys: the host reference that rate-limits a set of URLs.

A regular key looks like ``000001-93.184.216.34-30000``: a zero-padded URL
count, the host's IP address (or registrable domain), and the crawl delay
in milliseconds (or ``unset``).  URLs that must never be fetched get one of
the sentinel keys below instead; all of them share the ``GroupingKey-``
prefix.
"""

from __future__ import annotations

import re
import socket
import threading
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import urlsplit

import structlog
import tldextract

from politefetch.errors import UrlStatus
from politefetch.fetcher.robots import (
    MAX_CRAWL_DELAY_MS,
    MAX_WARNINGS,
    RobotRules,
    fetch_robots,
    robots_url_for,
)
from politefetch.types import Fetcher

logger = structlog.get_logger()

KEY_PREFIX = "GroupingKey-"

# URL was blocked by robots.txt
BLOCKED_GROUPING_KEY = KEY_PREFIX + "blocked"
# Host couldn't be resolved to an IP address
UNKNOWN_HOST_GROUPING_KEY = KEY_PREFIX + "unknown"
# Couldn't process robots.txt, so defer fetch of URL
DEFERRED_GROUPING_KEY = KEY_PREFIX + "deferred"
# Score generator asked for the URL to be skipped
SKIPPED_GROUPING_KEY = KEY_PREFIX + "skipped"
# URL isn't valid
INVALID_URL_GROUPING_KEY = KEY_PREFIX + "invalid"

UNSET_DURATION = "unset"

_GROUPING_KEY_RE = re.compile(r"(\d{6})-(.+)-(\d+|unset)")

_SPECIAL_KEY_STATUS: dict[str, tuple[UrlStatus, str]] = {
    BLOCKED_GROUPING_KEY: (UrlStatus.SKIPPED_BLOCKED, "blocked by robots.txt"),
    UNKNOWN_HOST_GROUPING_KEY: (UrlStatus.SKIPPED_UNKNOWN_HOST, "unknown host"),
    DEFERRED_GROUPING_KEY: (
        UrlStatus.SKIPPED_DEFERRED,
        "robots.txt could not be processed, deferred",
    ),
    SKIPPED_GROUPING_KEY: (UrlStatus.SKIPPED_BY_SCORER, "skipped by scorer"),
    INVALID_URL_GROUPING_KEY: (UrlStatus.SKIPPED_INVALID_URL, "invalid URL"),
}


@dataclass(frozen=True)
class GroupingKey:
    """Parsed form of a regular grouping key."""

    count: int
    domain: str
    crawl_delay_ms: int | None

    def __str__(self) -> str:
        return make_grouping_key(self.count, self.domain, self.crawl_delay_ms)


def is_special_key(key: str) -> bool:
    return key.startswith(KEY_PREFIX)


def make_grouping_key(count: int, domain: str, crawl_delay_ms: int | None) -> str:
    """Format a regular key; ``None`` delay is rendered as ``unset``."""
    if crawl_delay_ms is None:
        return f"{count:06d}-{domain}-{UNSET_DURATION}"
    return f"{count:06d}-{domain}-{crawl_delay_ms}"


def parse_grouping_key(key: str) -> GroupingKey:
    """Parse a regular key.

    Raises:
        ValueError: If *key* is special or not in the regular format.
    """
    m = _GROUPING_KEY_RE.fullmatch(key)
    if m is None:
        raise ValueError(f"Invalid grouping key: {key}")
    delay = m.group(3)
    return GroupingKey(
        count=int(m.group(1)),
        domain=m.group(2),
        crawl_delay_ms=None if delay == UNSET_DURATION else int(delay),
    )


def status_for_special_key(key: str) -> tuple[UrlStatus, str]:
    """Map a sentinel key to the status (and message) its URLs are given.

    Raises:
        ValueError: For regular keys or unknown sentinels.
    """
    if not is_special_key(key):
        raise ValueError(f"Can't make skipped status for regular grouping key: {key}")
    try:
        return _SPECIAL_KEY_STATUS[key]
    except KeyError:
        raise ValueError(f"Unknown special grouping key: {key}") from None


# Bundled public suffix snapshot only; never touches the network.
_domain_extractor = tldextract.TLDExtract(suffix_list_urls=())


def registrable_domain(host: str) -> str:
    """Return the pay-level domain of *host* (``www.bbc.co.uk`` -> ``bbc.co.uk``).

    Hosts without a recognized public suffix (IPs, ``localhost``) are
    returned unchanged.
    """
    ext = _domain_extractor(host)
    if ext.domain and ext.suffix:
        return f"{ext.domain}.{ext.suffix}"
    return host


class SimpleGroupingKeyGenerator:
    """Groups URLs by server IP (or registrable domain) and robots.txt delay.

    robots.txt rules are fetched once per host and cached for the life of
    the generator, as are hosts that failed to resolve.

    Args:
        robots_fetcher: Fetch operation used for robots.txt files.
        use_registered_domain: Group by registrable domain instead of IP;
            skips DNS resolution.
        resolve: Host to IP resolver.
        max_crawl_delay_ms: Passed on to the robots.txt parser.
        max_warnings: Passed on to the robots.txt parser.
    """

    def __init__(
        self,
        robots_fetcher: Fetcher,
        *,
        use_registered_domain: bool = False,
        resolve: Callable[[str], str] = socket.gethostbyname,
        max_crawl_delay_ms: int = MAX_CRAWL_DELAY_MS,
        max_warnings: int = MAX_WARNINGS,
    ) -> None:
        self._robots_fetcher = robots_fetcher
        self._use_registered_domain = use_registered_domain
        self._resolve = resolve
        self._max_crawl_delay_ms = max_crawl_delay_ms
        self._max_warnings = max_warnings
        self._lock = threading.Lock()
        self._bad_hosts: set[str] = set()
        self._rules: dict[str, RobotRules] = {}

    def grouping_key(self, url: str) -> str:
        try:
            parts = urlsplit(url)
            host = (parts.hostname or "").lower()
            # Forces port validation
            _ = parts.port
        except ValueError:
            return INVALID_URL_GROUPING_KEY
        if not host or parts.scheme not in ("http", "https"):
            # e.g. mailto: links
            return INVALID_URL_GROUPING_KEY

        address = ""
        if not self._use_registered_domain:
            with self._lock:
                if host in self._bad_hosts:
                    return UNKNOWN_HOST_GROUPING_KEY
            try:
                address = self._resolve(host)
            except (OSError, UnicodeError):
                logger.debug("grouping_unknown_host", host=host)
                with self._lock:
                    self._bad_hosts.add(host)
                return UNKNOWN_HOST_GROUPING_KEY

        rules = self.rules_for(url)

        if rules.defer_visits:
            return DEFERRED_GROUPING_KEY
        if not rules.is_allowed(url):
            return BLOCKED_GROUPING_KEY

        # The real URL count per host is unknown here, so it's always 1.
        domain = registrable_domain(host) if self._use_registered_domain else address
        return make_grouping_key(1, domain, rules.crawl_delay_ms)

    def rules_for(self, url: str) -> RobotRules:
        """Return the cached robots.txt rules for *url*'s host, fetching once."""
        cache_key = robots_url_for(url)
        with self._lock:
            rules = self._rules.get(cache_key)
        if rules is None:
            rules = fetch_robots(
                self._robots_fetcher,
                url,
                max_crawl_delay_ms=self._max_crawl_delay_ms,
                max_warnings=self._max_warnings,
            )
            with self._lock:
                rules = self._rules.setdefault(cache_key, rules)
        return rules

    @property
    def cached_hosts(self) -> int:
        with self._lock:
            return len(self._rules)
