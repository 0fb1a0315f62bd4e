"""conduit check: report whether the agent binary can be invoked."""

from __future__ import annotations

import asyncio
from pathlib import Path

import click

from conduit.config.parser import ConfigError, load_config
from conduit.process.launcher import agent_version, resolve_binary


@click.command()
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Path to conduit.yaml (default: ./conduit.yaml if present).",
)
@click.option("--binary", default=None, help="Agent binary to check instead of the configured one.")
def check(config_file: str | None, binary: str | None) -> None:
    """Check that the agent binary is installed and answers --version."""
    try:
        config = load_config(Path(config_file) if config_file else None)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    name = binary or config.binary
    resolved = resolve_binary(name)
    version = asyncio.run(agent_version(name, config.version_check_timeout))
    if version is None:
        click.echo(f"{name}: not available (looked for {resolved})", err=True)
        raise SystemExit(1)
    click.echo(f"{name}: {version} ({resolved})")
