"""Bulk merge commands."""

import json
from typing import Annotated

import typer
from rich.table import Table

from ampel_sync.db.models import BulkMergeItemStatus, BulkMergeStatus
from ampel_sync.providers.schemas import MergeStrategy
from ampel_sync.schemas import BulkMergeRead

from .common import (
    OutputFormat,
    OutputFormatOption,
    OwnerOption,
    console,
    open_service,
    run_async_command,
)

app = typer.Typer(help="Merge many pull requests at once")

_ITEM_STYLE = {
    BulkMergeItemStatus.PENDING: "dim",
    BulkMergeItemStatus.IN_PROGRESS: "blue",
    BulkMergeItemStatus.SUCCESS: "green",
    BulkMergeItemStatus.FAILED: "red",
    BulkMergeItemStatus.SKIPPED: "yellow",
}

_OPERATION_STYLE = {
    BulkMergeStatus.PENDING: "dim",
    BulkMergeStatus.RUNNING: "blue",
    BulkMergeStatus.SUCCESS: "green",
    BulkMergeStatus.PARTIAL_FAILURE: "yellow",
    BulkMergeStatus.FAILED: "red",
}


def _print_operation(operation: BulkMergeRead, output_format: OutputFormat) -> None:
    if output_format == OutputFormat.JSON:
        console.print_json(json.dumps(operation.to_json_dict()))
        return

    style = _OPERATION_STYLE[operation.status]
    console.print(
        f"[bold]Bulk merge {operation.id}[/bold] ({operation.strategy.value}): "
        f"[{style}]{operation.status.value}[/{style}]"
    )
    table = Table()
    table.add_column("#", justify="right")
    table.add_column("Snapshot", style="cyan")
    table.add_column("PR", justify="right")
    table.add_column("Status")
    table.add_column("Detail", max_width=60)
    for item in operation.items:
        item_style = _ITEM_STYLE[item.status]
        table.add_row(
            str(item.position + 1),
            str(item.snapshot_id) if item.snapshot_id is not None else "-",
            f"#{item.pr_number}",
            f"[{item_style}]{item.status.value}[/{item_style}]",
            item.error or (item.merge_sha or "")[:12],
        )
    console.print(table)


@app.command("submit")
def submit(
    snapshot_ids: Annotated[list[int], typer.Argument(help="Snapshot IDs from the dashboard")],
    strategy: Annotated[
        MergeStrategy | None,
        typer.Option("--strategy", "-s", help="merge, squash or rebase"),
    ] = None,
    delay: Annotated[
        float | None,
        typer.Option("--delay", help="Seconds between merges in the same repository"),
    ] = None,
    force: Annotated[bool, typer.Option("--force", help="Also merge Red pull requests")] = False,
    delete_branch: Annotated[
        bool | None,
        typer.Option("--delete-branch/--keep-branch", help="Delete source branches after merge"),
    ] = None,
    owner: OwnerOption = "local",
    output_format: OutputFormatOption = OutputFormat.TEXT,
) -> None:
    """Merge pull requests and wait for the result.

    Examples:
        ampel merge submit 12 13 14
        ampel merge submit 12 13 --strategy merge --delay 5 --delete-branch
    """

    async def _submit() -> BulkMergeRead:
        async with open_service() as service:
            operation_id = await service.submit_bulk_merge(
                snapshot_ids,
                strategy,
                owner_id=owner,
                delay_seconds=delay,
                force=force,
                delete_branch=delete_branch,
            )
            return await service.wait_for_bulk_merge(operation_id)

    operation = run_async_command(_submit(), error_prefix="Bulk merge rejected")
    _print_operation(operation, output_format)
    if operation.status is not BulkMergeStatus.SUCCESS:
        raise typer.Exit(1)


@app.command("status")
def status(
    operation_id: Annotated[int, typer.Argument(help="Bulk merge operation ID")],
    output_format: OutputFormatOption = OutputFormat.TEXT,
) -> None:
    """Show a bulk merge and its items."""

    async def _status() -> BulkMergeRead:
        async with open_service() as service:
            return await service.get_bulk_merge_status(operation_id)

    _print_operation(run_async_command(_status()), output_format)


@app.command("cancel")
def cancel(operation_id: Annotated[int, typer.Argument(help="Bulk merge operation ID")]) -> None:
    """Skip the items of a bulk merge that have not started yet."""

    async def _cancel() -> int:
        async with open_service() as service:
            return await service.cancel_bulk_merge(operation_id)

    cancelled = run_async_command(_cancel())
    console.print(f"Cancelled {cancelled} pending items")
