"""Tests for records, counters and output sinks."""

from __future__ import annotations

import io
import json
import threading

from politefetch.counters import FetchCounter, FetchCounters
from politefetch.errors import HttpFetchError, UrlStatus
from politefetch.models import FetchedDatum, FetchList, FetchOutcome, ScoredUrl, UserAgent
from politefetch.sink import CollectingSink, JsonLinesSink

# ─── Records ─────────────────────────────────────────────────


class TestUserAgent:
    def test_header_minimal(self) -> None:
        assert UserAgent("mybot").header == "Mozilla/5.0 (compatible; mybot)"

    def test_header_full(self) -> None:
        agent = UserAgent(
            "mybot",
            email="bot@example.com",
            web_address="https://example.com/bot",
            crawler_version="1.2",
        )
        assert agent.header == (
            "Mozilla/5.0 (compatible; mybot/1.2; "
            "https://example.com/bot; bot@example.com)"
        )


class TestFetchRecords:
    def test_unfetched_copies_metadata(self) -> None:
        item = ScoredUrl("http://a.com/", metadata={"depth": 3})
        datum = FetchedDatum.unfetched(item)
        assert datum.url == "http://a.com/"
        assert datum.content == b""
        assert datum.metadata == {"depth": 3}
        datum.metadata["depth"] = 4
        assert item.metadata == {"depth": 3}

    def test_fetch_list(self) -> None:
        batch = FetchList("ref", (ScoredUrl("http://a.com/"),), fetch_delay_ms=1500)
        assert len(batch) == 1
        assert batch.fetch_delay == 1.5
        assert batch.is_last is False

    def test_outcome_to_dict_fetched(self) -> None:
        datum = FetchedDatum(
            url="http://a.com/",
            final_url="http://a.com/home",
            status_code=200,
            content=b"hello",
            content_type="text/plain",
            elapsed_ms=12.345,
        )
        d = FetchOutcome(datum, UrlStatus.FETCHED).to_dict()
        assert d == {
            "url": "http://a.com/",
            "status": "FETCHED",
            "final_url": "http://a.com/home",
            "status_code": 200,
            "content_type": "text/plain",
            "bytes": 5,
            "elapsed_ms": 12.3,
        }

    def test_outcome_to_dict_failed(self) -> None:
        item = ScoredUrl("http://a.com/x", metadata={"src": "seed"})
        outcome = FetchOutcome(
            FetchedDatum.unfetched(item),
            UrlStatus.HTTP_NOT_FOUND,
            HttpFetchError(item.url, 404),
        )
        assert outcome.url == "http://a.com/x"
        assert outcome.to_dict() == {
            "url": "http://a.com/x",
            "status": "HTTP_NOT_FOUND",
            "error": "HTTP 404",
            "metadata": {"src": "seed"},
        }


# ─── Counters ────────────────────────────────────────────────


class TestFetchCounters:
    def test_increment_decrement(self) -> None:
        counters = FetchCounters()
        counters.increment(FetchCounter.URLS_FETCHED)
        counters.increment(FetchCounter.URLS_FETCHED, 4)
        counters.decrement(FetchCounter.URLS_FETCHED, 2)
        assert counters.get(FetchCounter.URLS_FETCHED) == 3
        assert counters.get(FetchCounter.URLS_FAILED) == 0

    def test_snapshot_has_every_counter(self) -> None:
        snap = FetchCounters().snapshot()
        assert set(snap) == {c.value for c in FetchCounter}
        assert all(v == 0 for v in snap.values())

    def test_concurrent_updates(self) -> None:
        counters = FetchCounters()

        def bump() -> None:
            for _ in range(1000):
                counters.increment(FetchCounter.URLS_QUEUED)

        threads = [threading.Thread(target=bump) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert counters.get(FetchCounter.URLS_QUEUED) == 8000


# ─── Sinks ───────────────────────────────────────────────────


def _outcome(url: str, status: UrlStatus) -> FetchOutcome:
    return FetchOutcome(FetchedDatum.unfetched(ScoredUrl(url)), status)


class TestSinks:
    def test_collecting_sink(self) -> None:
        sink = CollectingSink()
        sink.add(_outcome("http://a.com/1", UrlStatus.FETCHED))
        sink.add(_outcome("http://a.com/2", UrlStatus.SKIPPED_BLOCKED))
        assert len(sink) == 2
        assert [o.url for o in sink.by_status(UrlStatus.SKIPPED_BLOCKED)] == [
            "http://a.com/2"
        ]

    def test_json_lines_sink(self) -> None:
        stream = io.StringIO()
        sink = JsonLinesSink(stream)
        sink.add(_outcome("http://a.com/1", UrlStatus.SKIPPED_DEFERRED))
        sink.add(_outcome("http://a.com/2", UrlStatus.SKIPPED_TIME_LIMIT))
        lines = stream.getvalue().splitlines()
        assert sink.count == 2
        assert [json.loads(line)["status"] for line in lines] == [
            "SKIPPED_DEFERRED",
            "SKIPPED_TIME_LIMIT",
        ]
