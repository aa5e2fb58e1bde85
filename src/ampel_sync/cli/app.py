"""Main CLI application for Ampel."""

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from ampel_sync import __version__
from ampel_sync.cli import accounts as accounts_cmd
from ampel_sync.cli import dashboard as dashboard_cmd
from ampel_sync.cli import merge as merge_cmd
from ampel_sync.cli import sync as sync_cmd
from ampel_sync.cli.common import run_async_command
from ampel_sync.config import get_settings
from ampel_sync.credentials import TokenCipher
from ampel_sync.db import create_tables, dispose_engine
from ampel_sync.logging import setup_logging

app = typer.Typer(
    name="ampel",
    help="Pull request traffic lights across GitHub, GitLab and Bitbucket.",
    add_completion=False,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"ampel version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging."),
    ] = False,
    quiet: Annotated[
        bool,
        typer.Option("--quiet", "-q", help="Suppress non-error output (WARNING level)."),
    ] = False,
) -> None:
    """Ampel - aggregate pull requests and merge the green ones."""
    settings = get_settings()
    log_config = settings.logging

    setup_logging(
        level=settings.log_level,
        verbose=verbose,
        quiet=quiet,
        log_file=Path(log_config.log_file) if log_config.log_file else None,
        rotation=log_config.rotation,
        retention=log_config.retention,
        serialize=log_config.serialize,
    )


@app.command("init-db")
def init_db() -> None:
    """Create the database tables (development; use alembic in production)."""

    async def _init() -> None:
        try:
            await create_tables()
        finally:
            await dispose_engine()

    run_async_command(_init(), error_prefix="Database setup failed")
    console.print(f"Database ready at {get_settings().database_url}")


@app.command("generate-key")
def generate_key() -> None:
    """Print a new encryption key for AMPEL_ENCRYPTION_KEY."""
    console.print(TokenCipher.generate_key())


# Register subcommands
app.add_typer(accounts_cmd.app, name="accounts")
app.add_typer(dashboard_cmd.app, name="dashboard")
app.add_typer(merge_cmd.app, name="merge")
app.add_typer(sync_cmd.app, name="sync")


if __name__ == "__main__":
    app()
