"""CLI command: fetch (politely fetch a list of URLs)."""

from __future__ import annotations

import sys
from pathlib import Path

import click
import structlog

from politefetch.cli import configure_logging
from politefetch.config import Config, load_config
from politefetch.counters import FetchCounter
from politefetch.fetcher.grouping import (
    SKIPPED_GROUPING_KEY,
    SimpleGroupingKeyGenerator,
    is_special_key,
    status_for_special_key,
)
from politefetch.fetcher.http import HttpFetcher
from politefetch.fetcher.manager import FetcherManager
from politefetch.fetcher.policy import FetcherPolicy
from politefetch.fetcher.queues import HostQueues
from politefetch.models import FetchedDatum, FetchOutcome, ScoredUrl
from politefetch.sink import JsonLinesSink
from politefetch.types import (
    Fetcher,
    GroupingKeyGenerator,
    OutputSink,
    ScoreGenerator,
)

logger = structlog.get_logger()


def read_urls(path: Path) -> list[str]:
    """One URL per line; blank lines and ``#`` comments are skipped."""
    urls = []
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            urls.append(line)
    return urls


def group_urls(
    urls: list[str],
    generator: GroupingKeyGenerator,
    queues: HostQueues,
    sink: OutputSink,
    scorer: ScoreGenerator | None = None,
) -> int:
    """Queue each URL under its grouping key; special keys go straight to *sink*.

    A negative score from *scorer* skips the URL without a robots.txt lookup.

    Returns:
        Number of URLs queued for fetching.
    """
    queued = 0
    for url in urls:
        score = scorer.score(url) if scorer is not None else 1.0
        item = ScoredUrl(url, score=score)
        key = SKIPPED_GROUPING_KEY if score < 0 else generator.grouping_key(url)
        if is_special_key(key):
            status, reason = status_for_special_key(key)
            logger.debug("url_not_fetchable", url=url, reason=reason)
            sink.add(FetchOutcome(FetchedDatum.unfetched(item), status))
        else:
            queues.add(key, item)
            queued += 1
    return queued


def build_manager(
    config: Config,
    queues: HostQueues,
    fetcher: Fetcher,
    sink: OutputSink,
    policy: FetcherPolicy,
) -> FetcherManager:
    sched = config.scheduler
    return FetcherManager(
        queues,
        fetcher,
        sink,
        policy=policy,
        request_timeout=sched.request_timeout,
        terminate_timeout=sched.buffer_termination_timeout,
        status_interval=sched.status_interval,
        queue_log_interval=sched.queue_log_interval,
        num_queues_to_log=sched.num_queues_to_log,
        idle_sleep=sched.idle_sleep,
    )


@click.command()
@click.argument(
    "urls_file", type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write JSON lines here instead of stdout.",
)
@click.option(
    "--crawl-delay",
    type=int,
    default=None,
    help="Default crawl delay in ms for hosts without one in robots.txt.",
)
@click.pass_context
def fetch(
    ctx: click.Context,
    urls_file: Path,
    output: Path | None,
    crawl_delay: int | None,
) -> None:
    """Fetch every URL in URLS_FILE, honoring robots.txt and crawl delays."""
    config = load_config(ctx.obj.get("config_path") if ctx.obj else None)
    configure_logging(config.node.log_level)

    try:
        policy = config.fetch.to_policy()
        if crawl_delay is not None:
            policy = policy.with_crawl_delay(crawl_delay)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc

    user_agent = config.fetch.user_agent()
    robots_fetcher = HttpFetcher(
        user_agent,
        FetcherPolicy(max_content_size=config.robots.max_robots_size),
        max_threads=1,
        timeout=config.robots.fetch_timeout,
    )
    page_fetcher = HttpFetcher(
        user_agent,
        policy,
        max_threads=config.fetch.max_threads,
        timeout=config.fetch.timeout,
    )
    generator = SimpleGroupingKeyGenerator(
        robots_fetcher,
        use_registered_domain=config.robots.use_registered_domain,
        max_crawl_delay_ms=config.robots.max_crawl_delay_ms,
        max_warnings=config.robots.max_warnings,
    )
    queues = HostQueues(
        policy, max_urls_per_batch=config.fetch.max_urls_per_batch or None
    )

    stream = output.open("w", encoding="utf-8") if output else sys.stdout
    try:
        sink = JsonLinesSink(stream)
        urls = read_urls(urls_file)
        queued = group_urls(urls, generator, queues, sink)
        logger.info("urls_grouped", total=len(urls), queued=queued)

        manager = build_manager(config, queues, page_fetcher, sink, policy)
        try:
            manager.run(until_done=True)
        except KeyboardInterrupt:
            manager.stop()
            logger.warning("fetch_interrupted")
        counters = manager.counters
        click.echo(
            f"Fetched {counters.get(FetchCounter.URLS_FETCHED)}, "
            f"failed {counters.get(FetchCounter.URLS_FAILED)}, "
            f"skipped {len(urls) - queued + counters.get(FetchCounter.URLS_SKIPPED)} "
            f"of {len(urls)} URLs",
            err=True,
        )
    finally:
        robots_fetcher.close()
        page_fetcher.close()
        if output:
            stream.close()
