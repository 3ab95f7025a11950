"""CLI commands: config show."""

from __future__ import annotations

import click

from politefetch.config import config_as_dict, load_config


@click.group("config")
def config_group() -> None:
    """Configuration management."""


@config_group.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show current configuration."""
    config = load_config(ctx.obj.get("config_path") if ctx.obj else None)
    for section_name, section in config_as_dict(config).items():
        click.echo(f"[{section_name}]")
        for key, value in section.items():
            click.echo(f"  {key} = {value}")
        click.echo()
