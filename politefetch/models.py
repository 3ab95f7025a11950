"""Records that flow through the fetch stage."""

from __future__ import annotations

from dataclasses import dataclass, field

from politefetch.errors import FetchError, UrlStatus


@dataclass(frozen=True)
class UserAgent:
    """Crawler identity sent with every request and matched against robots.txt."""

    agent_name: str
    email: str = ""
    web_address: str = ""
    browser_version: str = "Mozilla/5.0"
    crawler_version: str = ""

    @property
    def header(self) -> str:
        """Render the ``User-Agent`` header value."""
        name = self.agent_name
        if self.crawler_version:
            name = f"{name}/{self.crawler_version}"
        details = "; ".join(v for v in (self.web_address, self.email) if v)
        if details:
            return f"{self.browser_version} (compatible; {name}; {details})"
        return f"{self.browser_version} (compatible; {name})"


@dataclass(frozen=True)
class ScoredUrl:
    """A URL plus its upstream score and pass-through metadata."""

    url: str
    score: float = 1.0
    metadata: dict[str, object] = field(default_factory=dict, compare=False)


@dataclass
class FetchedDatum:
    """Result of fetching one URL.

    For URLs that were never fetched (skipped, failed) only ``url`` and
    ``metadata`` are meaningful.
    """

    url: str
    final_url: str = ""
    status_code: int = 0
    content: bytes = b""
    content_type: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    fetch_time: float = 0.0  # epoch seconds when the fetch completed
    elapsed_ms: float = 0.0
    response_rate: float = 0.0  # bytes/second
    metadata: dict[str, object] = field(default_factory=dict)

    @classmethod
    def unfetched(cls, item: ScoredUrl) -> FetchedDatum:
        return cls(url=item.url, final_url=item.url, metadata=dict(item.metadata))

    @property
    def content_length(self) -> int:
        return len(self.content)


@dataclass(frozen=True)
class FetchOutcome:
    """One ``(datum, status)`` record emitted to the output sink."""

    datum: FetchedDatum
    status: UrlStatus
    error: FetchError | None = None

    @property
    def url(self) -> str:
        return self.datum.url

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {
            "url": self.datum.url,
            "status": self.status.value,
        }
        if self.status == UrlStatus.FETCHED:
            data.update(
                final_url=self.datum.final_url,
                status_code=self.datum.status_code,
                content_type=self.datum.content_type,
                bytes=self.datum.content_length,
                elapsed_ms=round(self.datum.elapsed_ms, 1),
            )
        if self.error is not None:
            data["error"] = self.error.message
        if self.datum.metadata:
            data["metadata"] = self.datum.metadata
        return data


@dataclass(frozen=True)
class FetchList:
    """An ordered batch of URLs that share one host reference.

    Attributes:
        ref: Grouping key shared by every URL in the batch.
        urls: URLs to fetch, in order.
        fetch_delay_ms: Minimum spacing before the next batch for ``ref``.
        is_last: No further batches will arrive for ``ref``.
    """

    ref: str
    urls: tuple[ScoredUrl, ...]
    fetch_delay_ms: int = 0
    is_last: bool = False

    def __len__(self) -> int:
        return len(self.urls)

    @property
    def fetch_delay(self) -> float:
        """Delay in seconds."""
        return self.fetch_delay_ms / 1000.0
