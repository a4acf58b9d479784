"""entityforge CLI entry point."""

import logging

import click

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


@click.group()
@click.option(
    "--log-level",
    envvar="ENTITYFORGE_LOG_LEVEL",
    default="WARNING",
    show_default=True,
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    help="Logging level (also read from ENTITYFORGE_LOG_LEVEL).",
)
def cli(log_level: str):
    """entityforge - metadata-driven data access tooling."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Register subcommand groups
from entityforge.cli.metadata_cmd import metadata  # noqa: E402

cli.add_command(metadata)
