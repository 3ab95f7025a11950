"""robots.txt rule engine.

Parses a host's exclusion policy into an ordered list of path-prefix rules
plus an optional crawl delay, and answers allow/disallow queries.

The parser is lenient about the many non-standard variants
seen in the wild (HTML-wrapped files, odd line endings, BOMs, multiple agent
names per line, unknown directives).  Malformed input never aborts parsing;
problems are counted on the returned :class:`RobotRules` and the first few
are logged.

Matching is first-prefix-wins in file order, not longest-prefix.  A
longest-prefix mode is available via ``is_allowed(..., longest_match=True)``.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING
from urllib.parse import unquote, urlsplit

import structlog

from politefetch.errors import FetchError, HttpFetchError, RedirectFetchError
from politefetch.models import ScoredUrl

if TYPE_CHECKING:
    from politefetch.types import Fetcher

logger = structlog.get_logger()

# Field names; matched against lower-cased lines.
_USER_AGENT_FIELD = "user-agent:"
_DISALLOW_FIELD = "disallow:"
_ALLOW_FIELD = "allow:"
_CRAWL_DELAY_FIELD = "crawl-delay:"
_IGNORED_FIELDS = ("sitemap:", "host:", "noindex:", "acap-")

_SIMPLE_HTML_RE = re.compile(r"<(html|head|body)\s*>", re.IGNORECASE)
_USER_AGENT_RE = re.compile(r"user-agent:", re.IGNORECASE)
_HTML_TAG_RE = re.compile(r"<[^>]+>")
# LF, CR (and so CRLF), NEL, LS, PS
_LINE_SPLIT_RE = re.compile("[\n\r\u0085\u2028\u2029]")
_AGENT_SPLIT_RE = re.compile(r"[ \t,]")
_BAD_ESCAPE_RE = re.compile(r"%(?![0-9a-fA-F]{2})")
_DELAY_RE = re.compile(r"^(\d+(\.\d*)?|\.\d+)$")

_UTF8_BOM = b"\xef\xbb\xbf"

# Max number of warnings logged for any one robots.txt file.
MAX_WARNINGS = 5

# Largest crawl delay honored; anything bigger disallows the whole host.
MAX_CRAWL_DELAY_MS = 200_000


@dataclass(frozen=True)
class RobotRule:
    """Single rule mapping a path prefix to an allow flag."""

    prefix: str
    allow: bool


@dataclass(frozen=True)
class RobotRules:
    """Parsed exclusion policy for one host and one agent name.

    Attributes:
        rules: Path-prefix rules in file order.
        crawl_delay_ms: Crawl delay in milliseconds, ``None`` when unset.
        defer_visits: The policy could not be determined; retry later and
            fetch nothing from the host meanwhile.
        num_warnings: Count of malformed lines seen while parsing.
    """

    rules: tuple[RobotRule, ...] = ()
    crawl_delay_ms: int | None = None
    defer_visits: bool = False
    num_warnings: int = field(default=0, compare=False)

    @classmethod
    def allow_everything(cls, **kwargs: object) -> RobotRules:
        return cls(rules=(RobotRule("", True),), **kwargs)  # type: ignore[arg-type]

    @classmethod
    def allow_nothing(cls, **kwargs: object) -> RobotRules:
        return cls(rules=(RobotRule("/", False),), **kwargs)  # type: ignore[arg-type]

    def allow_all(self) -> bool:
        """True if this rule set is the single-allow special case."""
        return len(self.rules) == 1 and self.rules[0].allow

    def allow_none(self) -> bool:
        """True if this rule set is the single ``("/", disallow)`` case."""
        return (
            len(self.rules) == 1
            and not self.rules[0].allow
            and self.rules[0].prefix == "/"
        )

    def is_allowed(self, url_or_path: str, *, longest_match: bool = False) -> bool:
        """Return whether *url_or_path* may be fetched.

        Args:
            url_or_path: Absolute URL or bare path (``/a/b.html``).
            longest_match: Use the longest matching prefix instead of the
                first one in file order.  On equal length, allow wins.
        """
        path = _path_for(url_or_path)

        # Always allow robots.txt itself
        if path.lower() == "/robots.txt":
            return True

        if self.allow_all():
            return True
        if self.allow_none():
            return False

        # Rules are lower-cased at parse time, so paths are too.
        path = path.lower()
        if longest_match:
            best: RobotRule | None = None
            for rule in self.rules:
                if path.startswith(rule.prefix) and (
                    best is None
                    or len(rule.prefix) > len(best.prefix)
                    or (len(rule.prefix) == len(best.prefix) and rule.allow)
                ):
                    best = rule
            return True if best is None else best.allow

        for rule in self.rules:
            if path.startswith(rule.prefix):
                return rule.allow
        return True


def _path_for(url_or_path: str) -> str:
    """Extract and percent-decode the path component."""
    if "://" in url_or_path:
        path = urlsplit(url_or_path).path
    else:
        path = url_or_path
    if not path:
        path = "/"
    try:
        return unquote(path, errors="strict")
    except UnicodeDecodeError:
        # Still try to match on the raw path
        return path


def rules_from_status(http_status: int, *, url: str = "") -> RobotRules:
    """Build rules for a robots.txt fetch that produced no usable body.

    Args:
        http_status: Status code of the robots.txt response.
        url: robots.txt URL, for logging only.

    Raises:
        ValueError: For 2xx codes; a successful fetch must be parsed.
    """
    if 200 <= http_status < 300:
        raise ValueError(f"Can't build robots rules from a {http_status} response")
    if 300 <= http_status < 400:
        # Only seen after an endless redirect chain; treat as temporary.
        logger.debug("robots_redirect_deferred", url=url, status=http_status)
        return RobotRules.allow_nothing(defer_visits=True)
    if http_status in (401, 403):
        return RobotRules.allow_nothing()
    if 400 <= http_status < 500:
        # No robots.txt means no restrictions; 410 is treated like 404.
        return RobotRules.allow_everything()
    # Server errors and anything unexpected: try again later.
    logger.debug("robots_status_deferred", url=url, status=http_status)
    return RobotRules.allow_nothing(defer_visits=True)


class _WarningCounter:
    """Counts parse problems; logs only the first few for a document."""

    def __init__(self, url: str, max_logged: int) -> None:
        self.url = url
        self.max_logged = max_logged
        self.count = 0

    def report(self, msg: str, **context: object) -> None:
        self.count += 1
        if self.count == 1:
            logger.warning("robots_parse_problem", url=self.url)
        if self.count <= self.max_logged:
            logger.warning("robots_warning", url=self.url, msg=msg, **context)


def _decode(content: bytes) -> str:
    if content.startswith(_UTF8_BOM):
        return content[len(_UTF8_BOM) :].decode("utf-8", errors="replace")
    return content.decode("ascii", errors="replace")


def _decode_path(path: str, warnings: _WarningCounter) -> str:
    if _BAD_ESCAPE_RE.search(path):
        warnings.report("can't decode path", path=path)
        return path
    try:
        return unquote(path, errors="strict")
    except UnicodeDecodeError:
        warnings.report("can't decode path", path=path)
        return path


def _parse_crawl_delay(value: str) -> int:
    """Seconds (integer or decimal) to milliseconds; ValueError if malformed."""
    if not _DELAY_RE.match(value):
        raise ValueError(value)
    if "." in value:
        # Some sites use values like 0.5; round half up.
        return math.floor(float(value) * 1000.0 + 0.5)
    return int(value) * 1000


def parse_robots(
    agent_name: str,
    content: bytes | None,
    *,
    url: str = "",
    is_html_type: bool = False,
    max_crawl_delay_ms: int = MAX_CRAWL_DELAY_MS,
    max_warnings: int = MAX_WARNINGS,
) -> RobotRules:
    """Parse robots.txt *content* for the crawler called *agent_name*.

    Args:
        agent_name: Our robot name; a ``User-agent`` token matches when it
            is a case-insensitive substring of this name.
        content: Raw robots.txt bytes, or ``None``.
        url: Where the content came from, for logging only.
        is_html_type: The response was served as ``text/html``.
        max_crawl_delay_ms: Crawl delays above this disallow every path.
        max_warnings: Number of problems logged per document.

    Returns:
        The parsed :class:`RobotRules`.
    """
    # Nothing there means no restrictions.
    if not content:
        return RobotRules.allow_everything()

    text = _decode(content)
    warnings = _WarningCounter(url, max_warnings)

    # HTML without any agent field is somebody's error page, not a policy.
    has_html = False
    if is_html_type or _SIMPLE_HTML_RE.search(text):
        if not _USER_AGENT_RE.search(text):
            logger.debug("robots_html_not_policy", url=url)
            return RobotRules.allow_everything()
        logger.debug("robots_html_markup", url=url)
        has_html = True

    rules: list[RobotRule] = []
    crawl_delay_ms: int | None = None
    matched_real_name = False
    matched_wildcard = False
    adding_rules = False
    finished_agent_fields = False

    target_name = agent_name.lower()

    for raw_line in _LINE_SPLIT_RE.split(text):
        line = raw_line
        if has_html:
            line = _HTML_TAG_RE.sub("", line)

        hash_pos = line.find("#")
        if hash_pos >= 0:
            line = line[:hash_pos]
        line = line.strip().lower()

        if line.startswith(_USER_AGENT_FIELD):
            if matched_real_name:
                if finished_agent_fields:
                    # The next record belongs to someone else.
                    break
                # Waiting for this record's directives.
                continue
            if finished_agent_fields:
                # A new record starts.
                finished_agent_fields = False
                adding_rules = False

            names = _AGENT_SPLIT_RE.split(line[len(_USER_AGENT_FIELD) :].strip())
            for name in names:
                if not name:
                    continue
                if name in target_name:
                    matched_real_name = True
                    adding_rules = True
                    # In case we previously hit a wildcard record
                    rules.clear()
                    break
                if name == "*" and not matched_wildcard:
                    matched_wildcard = True
                    adding_rules = True

        elif line.startswith(_DISALLOW_FIELD) or line.startswith(_ALLOW_FIELD):
            finished_agent_fields = True
            if not adding_rules:
                continue

            allow = line.startswith(_ALLOW_FIELD)
            field_len = len(_ALLOW_FIELD) if allow else len(_DISALLOW_FIELD)
            path = _decode_path(line[field_len:].strip(), warnings)
            if not path:
                # Disallow: <nothing> and Allow: <nothing> both allow all.
                rules.clear()
            else:
                rules.append(RobotRule(path, allow))

        elif line.startswith(_CRAWL_DELAY_FIELD):
            finished_agent_fields = True
            if not adding_rules:
                continue

            delay_string = line[len(_CRAWL_DELAY_FIELD) :].strip()
            if delay_string:
                try:
                    crawl_delay_ms = _parse_crawl_delay(delay_string)
                except ValueError:
                    warnings.report("can't decode crawl delay", value=delay_string)

        elif line.startswith(_IGNORED_FIELDS):
            pass

        elif ":" in line:
            warnings.report("unknown directive", line=line)
            finished_agent_fields = True

        elif line:
            warnings.report("unknown line", line=line, size=len(content))
            finished_agent_fields = True

    if crawl_delay_ms is not None and crawl_delay_ms > max_crawl_delay_ms:
        # Some sites use values like 3600 seconds; skip them entirely.
        warnings.report(
            "crawl delay exceeds max value, disallowing all URLs",
            crawl_delay_ms=crawl_delay_ms,
        )
        return RobotRules.allow_nothing(num_warnings=warnings.count)

    return RobotRules(
        rules=tuple(rules),
        crawl_delay_ms=crawl_delay_ms,
        num_warnings=warnings.count,
    )


def robots_url_for(url: str) -> str:
    """Return ``<scheme>://<host>[:port]/robots.txt`` for *url*.

    Raises:
        ValueError: If *url* has no host.
    """
    parts = urlsplit(url)
    host = (parts.hostname or "").lower()
    if not host:
        raise ValueError(f"No host name for url: {url}")
    if ":" in host:
        host = f"[{host}]"
    port = f":{parts.port}" if parts.port else ""
    return f"{parts.scheme or 'http'}://{host}{port}/robots.txt"


def fetch_robots(
    fetcher: Fetcher,
    url: str,
    *,
    max_crawl_delay_ms: int = MAX_CRAWL_DELAY_MS,
    max_warnings: int = MAX_WARNINGS,
) -> RobotRules:
    """Fetch and parse the robots.txt governing *url*.

    Every outcome maps onto a rule set: a body is parsed, an HTTP error
    goes through :func:`rules_from_status`, and transport failures or
    unexpected errors are treated like a server error (deferred).
    """
    robots_url = robots_url_for(url)
    try:
        datum = fetcher.get(ScoredUrl(robots_url))
        is_html_type = datum.content_type.lower().startswith("text/html")
        return parse_robots(
            fetcher.user_agent.agent_name,
            datum.content,
            url=robots_url,
            is_html_type=is_html_type,
            max_crawl_delay_ms=max_crawl_delay_ms,
            max_warnings=max_warnings,
        )
    except HttpFetchError as exc:
        return rules_from_status(exc.http_status, url=robots_url)
    except RedirectFetchError:
        return rules_from_status(301, url=robots_url)
    except FetchError as exc:
        logger.debug("robots_fetch_failed", url=robots_url, error=exc.message)
        return rules_from_status(500, url=robots_url)
    except Exception:  # noqa: BLE001
        logger.warning("robots_fetch_unexpected_error", url=robots_url, exc_info=True)
        return rules_from_status(500, url=robots_url)
