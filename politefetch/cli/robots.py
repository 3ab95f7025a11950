"""CLI command: robots (parse a robots.txt file and check paths)."""

from __future__ import annotations

from pathlib import Path

import click

from politefetch.config import load_config
from politefetch.fetcher.robots import parse_robots


@click.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--agent", "-a", default=None, help="Robot name (default: from config).")
@click.option(
    "--check",
    "-c",
    "paths",
    multiple=True,
    help="Path or URL to test; may be repeated.",
)
@click.option("--html", is_flag=True, help="Treat the file as served as text/html.")
@click.option(
    "--longest-match",
    is_flag=True,
    help="Use longest-prefix matching instead of first match.",
)
@click.pass_context
def robots(
    ctx: click.Context,
    file: Path,
    agent: str | None,
    paths: tuple[str, ...],
    html: bool,
    longest_match: bool,
) -> None:
    """Parse a robots.txt FILE and show the rules that apply to AGENT."""
    config = load_config(ctx.obj.get("config_path") if ctx.obj else None)
    agent_name = agent or config.fetch.agent_name

    rules = parse_robots(
        agent_name,
        file.read_bytes(),
        url=str(file),
        is_html_type=html,
        max_crawl_delay_ms=config.robots.max_crawl_delay_ms,
        max_warnings=config.robots.max_warnings,
    )

    click.echo(f"Agent:       {agent_name}")
    if rules.allow_all():
        click.echo("Rules:       allow all")
    elif rules.allow_none():
        click.echo("Rules:       allow none")
    elif not rules.rules:
        click.echo("Rules:       (none)")
    else:
        click.echo("Rules:")
        for rule in rules.rules:
            verb = "allow" if rule.allow else "disallow"
            click.echo(f"  {verb:<9} {rule.prefix}")
    delay = "unset" if rules.crawl_delay_ms is None else f"{rules.crawl_delay_ms} ms"
    click.echo(f"Crawl delay: {delay}")
    click.echo(f"Warnings:    {rules.num_warnings}")

    for path in paths:
        allowed = rules.is_allowed(path, longest_match=longest_match)
        label = click.style("allowed", fg="green") if allowed else click.style(
            "blocked", fg="red"
        )
        click.echo(f"{label}  {path}")
