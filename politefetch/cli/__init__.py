"""politefetch CLI: Click command groups and sub-commands.

- ``robots`` parses a robots.txt file and checks paths against it
- ``fetch`` politely fetches a list of URLs, writing JSON lines
- ``config show`` prints the effective configuration
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
import structlog

from politefetch import __version__


def configure_logging(level: str = "info") -> None:
    """Route structlog through stdlib logging to stderr; stdout carries results."""
    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        force=True,
    )
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


# Configure structlog once at CLI entry
configure_logging()


@click.group()
@click.version_option(version=__version__, prog_name="politefetch")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: ~/.politefetch/config.toml).",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """politefetch: polite, rate-limited fetching for crawlers."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# Register sub-command modules
from politefetch.cli.config import config_group  # noqa: E402
from politefetch.cli.fetch import fetch  # noqa: E402
from politefetch.cli.robots import robots  # noqa: E402

cli.add_command(robots)
cli.add_command(fetch)
cli.add_command(config_group)
