"""Tests for the politefetch CLI."""

from __future__ import annotations

import importlib
import json
from pathlib import Path

import httpx
import pytest
from click.testing import CliRunner

from politefetch import __version__
from politefetch.cli import cli

# The package re-exports the ``fetch`` command under the submodule's name, so
# ``import politefetch.cli.fetch as ...`` would bind the Command, not the module.
fetch_module = importlib.import_module("politefetch.cli.fetch")

ROBOTS_TXT = b"User-agent: *\nDisallow: /private\n"


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def no_config(tmp_path: Path) -> list[str]:
    return ["--config", str(tmp_path / "none.toml")]


def test_version(runner: CliRunner) -> None:
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


# ─── robots ──────────────────────────────────────────────────


class TestRobotsCommand:
    def test_rules_and_checks(
        self, runner: CliRunner, no_config: list[str], tmp_path: Path
    ) -> None:
        robots_file = tmp_path / "robots.txt"
        robots_file.write_bytes(
            b"User-agent: mybot\nDisallow: /private\nAllow: /\nCrawl-delay: 2\n"
        )
        result = runner.invoke(
            cli,
            [
                *no_config,
                "robots",
                str(robots_file),
                "-a",
                "mybot",
                "-c",
                "/private/x",
                "-c",
                "http://example.com/public",
            ],
        )
        assert result.exit_code == 0, result.output
        assert "Agent:       mybot" in result.output
        assert "disallow  /private" in result.output
        assert "allow     /" in result.output
        assert "Crawl delay: 2000 ms" in result.output
        assert "blocked  /private/x" in result.output
        assert "allowed  http://example.com/public" in result.output

    def test_allow_all(
        self, runner: CliRunner, no_config: list[str], tmp_path: Path
    ) -> None:
        robots_file = tmp_path / "robots.txt"
        robots_file.write_bytes(b"")
        result = runner.invoke(cli, [*no_config, "robots", str(robots_file)])
        assert result.exit_code == 0
        assert "Agent:       politefetch" in result.output
        assert "Rules:       allow all" in result.output
        assert "Crawl delay: unset" in result.output

    def test_longest_match_flag(
        self, runner: CliRunner, no_config: list[str], tmp_path: Path
    ) -> None:
        robots_file = tmp_path / "robots.txt"
        robots_file.write_bytes(b"User-agent: *\nDisallow: /\nAllow: /public\n")
        args = [*no_config, "robots", str(robots_file), "-c", "/public/a"]
        first = runner.invoke(cli, args)
        longest = runner.invoke(cli, [*args, "--longest-match"])
        assert "blocked  /public/a" in first.output
        assert "allowed  /public/a" in longest.output

    def test_missing_file(self, runner: CliRunner, no_config: list[str]) -> None:
        result = runner.invoke(cli, [*no_config, "robots", "/nonexistent/robots.txt"])
        assert result.exit_code != 0


# ─── config ──────────────────────────────────────────────────


def test_config_show(runner: CliRunner, tmp_path: Path) -> None:
    config_file = tmp_path / "config.toml"
    config_file.write_text("[fetch]\ncrawl_delay_ms = 1500\n")
    result = runner.invoke(cli, ["--config", str(config_file), "config", "show"])
    assert result.exit_code == 0
    assert "[fetch]" in result.output
    assert "  crawl_delay_ms = 1500" in result.output
    assert "[robots]" in result.output


# ─── fetch ───────────────────────────────────────────────────


def _handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/robots.txt":
        return httpx.Response(200, content=ROBOTS_TXT, headers={"content-type": "text/plain"})
    return httpx.Response(
        200, content=b"<html>page</html>", headers={"content-type": "text/html"}
    )


@pytest.fixture
def mock_http(monkeypatch: pytest.MonkeyPatch) -> None:
    real = fetch_module.HttpFetcher

    def make_fetcher(*args: object, **kwargs: object) -> object:
        return real(*args, transport=httpx.MockTransport(_handler), **kwargs)

    monkeypatch.setattr(fetch_module, "HttpFetcher", make_fetcher)
    monkeypatch.setattr(fetch_module, "configure_logging", lambda level="info": None)
    # Group by registered domain so no DNS lookups happen
    monkeypatch.setenv("POLITEFETCH_ROBOTS_USE_REGISTERED_DOMAIN", "true")


class TestFetchCommand:
    def test_fetch_to_file(
        self,
        runner: CliRunner,
        no_config: list[str],
        tmp_path: Path,
        mock_http: None,
    ) -> None:
        urls_file = tmp_path / "urls.txt"
        urls_file.write_text(
            "# seeds\n"
            "http://a.example.com/page1\n"
            "\n"
            "http://b.example.com/private/x\n"
            "mailto:someone@example.com\n"
        )
        out = tmp_path / "out.jsonl"
        result = runner.invoke(
            cli,
            [*no_config, "fetch", str(urls_file), "-o", str(out), "--crawl-delay", "0"],
        )
        assert result.exit_code == 0, result.output

        records = [json.loads(line) for line in out.read_text().splitlines()]
        statuses = {r["url"]: r["status"] for r in records}
        assert statuses == {
            "http://a.example.com/page1": "FETCHED",
            "http://b.example.com/private/x": "SKIPPED_BLOCKED",
            "mailto:someone@example.com": "SKIPPED_INVALID_URL",
        }
        fetched = next(r for r in records if r["status"] == "FETCHED")
        assert fetched["bytes"] == len(b"<html>page</html>")
        assert "Fetched 1, failed 0, skipped 2 of 3 URLs" in result.output

    def test_fetch_same_host_batches(
        self,
        runner: CliRunner,
        no_config: list[str],
        tmp_path: Path,
        mock_http: None,
    ) -> None:
        urls_file = tmp_path / "urls.txt"
        urls_file.write_text(
            "\n".join(f"http://www.example.com/p{i}" for i in range(5)) + "\n"
        )
        out = tmp_path / "out.jsonl"
        result = runner.invoke(
            cli,
            [*no_config, "fetch", str(urls_file), "-o", str(out), "--crawl-delay", "0"],
        )
        assert result.exit_code == 0, result.output
        records = [json.loads(line) for line in out.read_text().splitlines()]
        assert len(records) == 5
        assert {r["status"] for r in records} == {"FETCHED"}

    def test_past_crawl_end_time(
        self,
        runner: CliRunner,
        no_config: list[str],
        tmp_path: Path,
        mock_http: None,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("POLITEFETCH_FETCH_CRAWL_END_TIME", "1.0")
        urls_file = tmp_path / "urls.txt"
        urls_file.write_text("http://a.example.com/1\nhttp://a.example.com/2\n")
        out = tmp_path / "out.jsonl"
        result = runner.invoke(
            cli,
            [*no_config, "fetch", str(urls_file), "-o", str(out), "--crawl-delay", "0"],
        )
        assert result.exit_code == 0, result.output
        records = [json.loads(line) for line in out.read_text().splitlines()]
        assert [r["status"] for r in records] == ["SKIPPED_TIME_LIMIT"] * 2
        assert "Fetched 0, failed 0, skipped 2 of 2 URLs" in result.output

    def test_bad_crawl_delay(
        self,
        runner: CliRunner,
        no_config: list[str],
        tmp_path: Path,
        mock_http: None,
    ) -> None:
        urls_file = tmp_path / "urls.txt"
        urls_file.write_text("http://www.example.com/\n")
        result = runner.invoke(
            cli, [*no_config, "fetch", str(urls_file), "--crawl-delay", "5"]
        )
        assert result.exit_code != 0


# ─── URL grouping ────────────────────────────────────────────


class _PathScorer:
    def score(self, url: str) -> float:
        return -1.0 if "/skip" in url else 2.0


def test_group_urls_with_scorer() -> None:
    from unittest.mock import MagicMock

    from politefetch.fetcher.queues import HostQueues
    from politefetch.sink import CollectingSink
    from politefetch.types import ScoreGenerator

    generator = MagicMock()
    generator.grouping_key.return_value = "000001-10.0.0.1-unset"
    queues = HostQueues()
    sink = CollectingSink()
    scorer = _PathScorer()
    assert isinstance(scorer, ScoreGenerator)

    queued = fetch_module.group_urls(
        ["http://a.com/keep", "http://a.com/skip/me"], generator, queues, sink, scorer
    )

    assert queued == 1
    generator.grouping_key.assert_called_once_with("http://a.com/keep")
    assert [(o.url, o.status.value) for o in sink.outcomes] == [
        ("http://a.com/skip/me", "SKIPPED_BY_SCORER")
    ]
    batch = queues.poll()
    assert batch is not None
    assert batch.urls[0].score == 2.0


def test_read_urls(tmp_path: Path) -> None:
    urls_file = tmp_path / "urls.txt"
    urls_file.write_text("# comment\n\n  http://a.com/  \nhttp://b.com/\n")
    assert fetch_module.read_urls(urls_file) == ["http://a.com/", "http://b.com/"]
