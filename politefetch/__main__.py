"""Allow ``python -m politefetch``."""

from politefetch.cli import cli

cli()
