"""Entry point for the credpool command line."""

import os
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from credpool import __version__
from credpool.cli.commands import accounts, profiles
from credpool.config.settings import CONFIG_FILE_ENV, get_settings
from credpool.core.logging import setup_logging
from credpool.exceptions import ConfigError


app = typer.Typer(
    name="credpool",
    help="Pool OAuth credentials across accounts and swap live logins",
    no_args_is_help=True,
)
app.add_typer(accounts.app, name="accounts")
app.add_typer(profiles.app, name="profiles")

console = Console()


def version_callback(value: bool) -> None:
    if value:
        console.print(f"credpool {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    config: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="TOML configuration file"),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="DEBUG, INFO, WARNING or ERROR"),
    ] = None,
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit",
        ),
    ] = False,
) -> None:
    """Configure logging and settings shared by every command."""
    if config is not None:
        # Subcommands load settings on their own
        os.environ[CONFIG_FILE_ENV] = str(config)

    try:
        settings = get_settings()
    except ConfigError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1) from e

    setup_logging(log_level or settings.log_level, json_logs=settings.json_logs)


def app_main() -> None:
    app()


if __name__ == "__main__":
    app_main()
