"""Output sinks for fetch outcomes."""

from __future__ import annotations

import json
import threading
from typing import IO

from politefetch.errors import UrlStatus
from politefetch.models import FetchOutcome


class CollectingSink:
    """Keeps every outcome in memory, in arrival order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._outcomes: list[FetchOutcome] = []

    def add(self, outcome: FetchOutcome) -> None:
        with self._lock:
            self._outcomes.append(outcome)

    @property
    def outcomes(self) -> list[FetchOutcome]:
        with self._lock:
            return list(self._outcomes)

    def by_status(self, status: UrlStatus) -> list[FetchOutcome]:
        return [o for o in self.outcomes if o.status == status]

    def __len__(self) -> int:
        with self._lock:
            return len(self._outcomes)


class JsonLinesSink:
    """Writes one JSON object per outcome to a text stream."""

    def __init__(self, stream: IO[str]) -> None:
        self._stream = stream
        self.count = 0

    def add(self, outcome: FetchOutcome) -> None:
        line = json.dumps(
            outcome.to_dict(), ensure_ascii=True, sort_keys=True, default=str
        )
        self._stream.write(line + "\n")
        self.count += 1
