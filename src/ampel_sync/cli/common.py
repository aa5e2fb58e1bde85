"""Pieces shared by the command groups: the console, error-to-exit-code
handling, the service opener and the common options."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Coroutine
from contextlib import asynccontextmanager
from enum import Enum
from typing import Annotated, TypeVar

import typer
from rich.console import Console

from ampel_sync.db import dispose_engine
from ampel_sync.exceptions import AmpelError
from ampel_sync.schemas import parse_repo_string
from ampel_sync.service import AmpelService
from ampel_sync.status import AmpelStatus

# Shared console instance for CLI output
console = Console()

T = TypeVar("T")

AMPEL_COLORS = {
    AmpelStatus.GREEN: "green",
    AmpelStatus.YELLOW: "yellow",
    AmpelStatus.RED: "red",
}


class OutputFormat(str, Enum):
    """Output format for CLI commands."""

    TEXT = "text"
    JSON = "json"


def run_async_command(
    coro: Coroutine[object, object, T],
    *,
    error_prefix: str = "Error",
) -> T:
    """Execute async code from a synchronous CLI command with unified error handling.

    Domain errors print their message and exit with code 1; anything else
    also names the exception type.

    Raises:
        typer.Exit: Re-raised from deliberate exits, or raised with code 1 on error
    """
    try:
        return asyncio.run(coro)
    except typer.Exit:
        raise
    except AmpelError as e:
        console.print(f"[red]{error_prefix}:[/red] {e}")
        raise typer.Exit(1) from None
    except Exception as e:
        console.print(f"[red]{error_prefix}:[/red] {type(e).__name__}: {e}")
        raise typer.Exit(1) from None


@asynccontextmanager
async def open_service() -> AsyncGenerator[AmpelService, None]:
    """Service over the configured database; the engine is disposed on exit."""
    try:
        yield AmpelService.from_settings()
    finally:
        await dispose_engine()


def colored(status: AmpelStatus) -> str:
    color = AMPEL_COLORS[status]
    return f"[{color}]{status.value}[/{color}]"


def validate_repo(repo: str) -> tuple[str, str]:
    """Parse a repository argument.

    Raises:
        typer.Exit(1): If the format is invalid
    """
    try:
        return parse_repo_string(repo)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None


OutputFormatOption = Annotated[
    OutputFormat,
    typer.Option(
        "--format",
        "-f",
        help="Output format",
    ),
]

OwnerOption = Annotated[
    str,
    typer.Option(
        "--owner",
        "-o",
        envvar="AMPEL_OWNER",
        help="Local user whose accounts and pull requests are shown",
    ),
]
"""Owner of accounts, repositories and bulk merges.

Usage:
    def list_accounts(owner: OwnerOption = "local"):
"""
