"""Dashboard command: every tracked pull request with its traffic light."""

import json
from typing import Annotated

import typer
from rich.table import Table

from ampel_sync.schemas import DashboardSnapshot, RepositoryRead
from ampel_sync.status import AmpelStatus

from .common import (
    OutputFormat,
    OutputFormatOption,
    OwnerOption,
    colored,
    console,
    open_service,
    run_async_command,
)

app = typer.Typer(help="Show pull requests and their ampel status")


@app.command("show")
def show(
    owner: OwnerOption = "local",
    include_closed: Annotated[
        bool, typer.Option("--all", "-a", help="Include merged and closed pull requests")
    ] = False,
    only: Annotated[
        AmpelStatus | None, typer.Option("--only", help="Only green, yellow or red")
    ] = None,
    output_format: OutputFormatOption = OutputFormat.TEXT,
) -> None:
    """Show the dashboard.

    Examples:
        ampel dashboard show
        ampel dashboard show --only green
        ampel dashboard show --format json
    """

    async def _show() -> DashboardSnapshot:
        async with open_service() as service:
            return await service.get_dashboard_snapshot(owner, include_closed=include_closed)

    dashboard = run_async_command(_show())
    rows = dashboard.by_status(only) if only else dashboard.pull_requests

    if output_format == OutputFormat.JSON:
        console.print_json(json.dumps([row.to_json_dict() for row in rows]))
        return

    if not rows:
        console.print("[dim]No pull requests[/dim]")
        return

    table = Table(title=f"Pull requests of {owner}")
    table.add_column("ID", style="cyan")
    table.add_column("Repository")
    table.add_column("PR", justify="right")
    table.add_column("Title", max_width=50)
    table.add_column("Author")
    table.add_column("Ampel")
    table.add_column("Blockers")
    for row in rows:
        table.add_row(
            str(row.snapshot_id),
            f"{row.provider.value}:{row.repository}",
            f"#{row.number}",
            row.title,
            row.author,
            colored(row.ampel_status),
            ", ".join(row.blockers),
        )
    console.print(table)

    counts = dashboard.counts
    console.print(
        f"  {colored(AmpelStatus.GREEN)} {counts['green']}  "
        f"{colored(AmpelStatus.YELLOW)} {counts['yellow']}  "
        f"{colored(AmpelStatus.RED)} {counts['red']}"
    )


@app.command("repos")
def repos(owner: OwnerOption = "local") -> None:
    """List tracked repositories and their last sync result."""

    async def _repos() -> list[RepositoryRead]:
        async with open_service() as service:
            return await service.list_repositories(owner)

    repositories = run_async_command(_repos())
    table = Table(title=f"Repositories of {owner}")
    table.add_column("ID", style="cyan")
    table.add_column("Repository")
    table.add_column("Account")
    table.add_column("Last sync")
    table.add_column("Error", max_width=50)
    for repo in repositories:
        table.add_row(
            str(repo.id),
            f"{repo.provider.value}:{repo.full_name}",
            str(repo.account_id) if repo.account_id is not None else "[red]detached[/red]",
            repo.last_synced_at.strftime("%Y-%m-%d %H:%M") if repo.last_synced_at else "never",
            f"[red]{repo.last_sync_error}[/red]" if repo.last_sync_error else "",
        )
    console.print(table)
