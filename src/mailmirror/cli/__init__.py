"""Command line entry points for mailmirror."""

import logging

import typer
from typer import Typer

from ..configuration.cli import config_app
from ..sync.cli import credentials_app, sync_app


cli = Typer(help="mailmirror command line tools")
cli.add_typer(config_app, name="config")
cli.add_typer(sync_app, name="sync")
cli.add_typer(credentials_app, name="credentials")


@cli.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


__all__ = ["cli", "config_app", "credentials_app", "sync_app"]
