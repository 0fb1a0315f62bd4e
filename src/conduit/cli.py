"""Root CLI group and version flag."""

import logging

import click

from conduit import __version__
from conduit.commands.chat import chat
from conduit.commands.check import check


@click.group()
@click.version_option(version=__version__, prog_name="conduit")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="warning",
    show_default=True,
    help="Log level for diagnostics written to stderr.",
)
def cli(log_level: str) -> None:
    """Conduit: drive an agent CLI as an interactive session."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


cli.add_command(check)
cli.add_command(chat)
