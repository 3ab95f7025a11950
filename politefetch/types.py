"""Shared Protocol types for politefetch.

Defines the structural interfaces (PEP 544 Protocols) of the collaborators
the scheduler core talks to.  The core depends on these Protocols, never on
concrete implementations, so tests and embedding pipelines can inject their
own fetcher, sink or queue provider.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from politefetch.fetcher.queues import QueueInfo
    from politefetch.models import (
        FetchedDatum,
        FetchList,
        FetchOutcome,
        ScoredUrl,
        UserAgent,
    )

# ── Fetch operation ────────────────────────────────────────────────


@runtime_checkable
class Fetcher(Protocol):
    """Structural interface for the "fetch one URL" operation.

    ``get`` returns a :class:`~politefetch.models.FetchedDatum` on success
    and raises a :class:`~politefetch.errors.FetchError` subclass on
    failure.
    """

    @property
    def user_agent(self) -> UserAgent: ...  # noqa: D102

    @property
    def max_threads(self) -> int: ...  # noqa: D102

    def get(self, item: ScoredUrl) -> FetchedDatum:
        """Fetch *item* and return its content."""
        ...


# ── Output sink ────────────────────────────────────────────────────


@runtime_checkable
class OutputSink(Protocol):
    """Receiver of ``(datum, status)`` outcomes.

    Implementations need not be thread-safe: the fetch tasks serialize
    their writes.
    """

    def add(self, outcome: FetchOutcome) -> None:
        """Record one outcome."""
        ...


# ── Pluggable scoring and grouping ─────────────────────────────────


@runtime_checkable
class ScoreGenerator(Protocol):
    """Assigns a fetch priority to a URL; negative scores mean skip."""

    def score(self, url: str) -> float:
        """Return the score for *url*."""
        ...


@runtime_checkable
class GroupingKeyGenerator(Protocol):
    """Maps a URL to the grouping key that rate-limits it."""

    def grouping_key(self, url: str) -> str:
        """Return the grouping key (or a special sentinel key) for *url*."""
        ...


# ── Host queue provider ────────────────────────────────────────────


@runtime_checkable
class QueueProvider(Protocol):
    """Per-host queues feeding the scheduler manager."""

    def poll(self) -> FetchList | None:
        """Return the next batch that may be fetched now, if any."""
        ...

    def finished(self, batch: FetchList) -> None:
        """Release the host of *batch* for its next batch."""
        ...

    def is_empty(self) -> bool:
        """Return ``True`` when no URLs remain queued."""
        ...

    def get_next_queue(self) -> QueueInfo | None:
        """Describe the queue that will become ready soonest."""
        ...

    def log_pending_queues(self, max_queues: int) -> None:
        """Log the largest pending queues for observability."""
        ...
