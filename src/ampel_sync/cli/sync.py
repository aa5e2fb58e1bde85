"""Sync commands: run the scheduler and inspect its job queue."""

import json
from typing import Annotated, Any

import typer
from rich.table import Table

from ampel_sync.db import SyncJobRepository, SyncJobStatus, get_session

from .common import (
    OutputFormat,
    OutputFormatOption,
    console,
    open_service,
    run_async_command,
)

app = typer.Typer(help="Synchronize pull requests from providers")

_JOB_STYLE = {
    SyncJobStatus.PENDING: "dim",
    SyncJobStatus.RUNNING: "blue",
    SyncJobStatus.DONE: "green",
    SyncJobStatus.FAILED: "red",
    SyncJobStatus.CANCELLED: "yellow",
}


@app.command("once")
def sync_once(output_format: OutputFormatOption = OutputFormat.TEXT) -> None:
    """Run every job that is due right now, then exit.

    Examples:
        ampel sync once
        ampel sync once --format json
    """

    async def _run() -> list[dict[str, Any]]:
        async with open_service() as service:
            await service.scheduler.recover()
            outcomes = await service.scheduler.run_once()
            return [o.to_dict() for o in outcomes]

    outcomes = run_async_command(_run(), error_prefix="Sync failed")

    if output_format == OutputFormat.JSON:
        console.print_json(json.dumps(outcomes))
        return

    if not outcomes:
        console.print("[dim]No jobs due[/dim]")
        return

    for outcome in outcomes:
        status = SyncJobStatus(outcome["status"])
        style = _JOB_STYLE[status]
        line = f"  Job {outcome['job_id']} ({outcome['kind']}): [{style}]{status.value}[/{style}]"
        poll = outcome.get("poll")
        if poll:
            line += f" - {poll['open_prs']} open, {poll['closed']} closed"
            if poll["ci_unknown"] or poll["reviews_unknown"]:
                line += " [yellow](degraded)[/yellow]"
        if outcome.get("error"):
            line += f" [dim]{outcome['error']}[/dim]"
        console.print(line)


@app.command("serve")
def serve() -> None:
    """Run the background scheduler until interrupted."""

    async def _serve() -> None:
        async with open_service() as service:
            await service.start()
            console.print("[dim]Scheduler running, press Ctrl+C to stop[/dim]")
            try:
                await service.scheduler.wait()
            finally:
                await service.shutdown()

    try:
        run_async_command(_serve(), error_prefix="Scheduler stopped")
    except KeyboardInterrupt:
        console.print("[dim]Stopped[/dim]")


@app.command("jobs")
def list_jobs(
    status: Annotated[
        SyncJobStatus | None,
        typer.Option("--status", "-s", help="Only jobs in this state"),
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum jobs to show")] = 20,
    output_format: OutputFormatOption = OutputFormat.TEXT,
) -> None:
    """Show the most recent sync jobs."""

    async def _jobs() -> list[dict[str, Any]]:
        async with open_service(), get_session() as session:
            jobs = await SyncJobRepository(session).list_recent(status, limit)
            return [
                {
                    "id": job.id,
                    "kind": job.kind.value,
                    "status": job.status.value,
                    "repository_id": job.repository_id,
                    "account_id": job.account_id,
                    "attempts": job.attempts,
                    "due_at": job.due_at.isoformat(),
                    "last_error": job.last_error,
                }
                for job in jobs
            ]

    jobs = run_async_command(_jobs())

    if output_format == OutputFormat.JSON:
        console.print_json(json.dumps(jobs))
        return

    table = Table(title="Sync jobs")
    table.add_column("ID", style="cyan")
    table.add_column("Kind")
    table.add_column("Target")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Due")
    table.add_column("Last error", max_width=50)
    for job in jobs:
        job_status = SyncJobStatus(job["status"])
        style = _JOB_STYLE[job_status]
        target = (
            f"repo {job['repository_id']}"
            if job["repository_id"] is not None
            else f"account {job['account_id']}"
        )
        table.add_row(
            str(job["id"]),
            job["kind"],
            target,
            f"[{style}]{job_status.value}[/{style}]",
            str(job["attempts"]),
            job["due_at"][:19],
            job["last_error"] or "",
        )
    console.print(table)


@app.command("rate-limit")
def rate_limit(account_id: Annotated[int, typer.Argument(help="Account ID")]) -> None:
    """Ask the provider for an account's current quota."""

    async def _rate_limit() -> dict[str, Any]:
        async with open_service() as service:
            account = await service.vault.get_account(account_id)
            adapter = service.factory.create(
                account.provider,
                service.vault.credentials_for(account),
                account.instance_url or None,
                account_id=account.id,
            )
            try:
                info = await adapter.get_rate_limit()
            finally:
                await adapter.close()
            return info.model_dump(mode="json")

    info = run_async_command(_rate_limit(), error_prefix="Could not fetch rate limit")
    console.print(f"  Limit:     {info['limit']}")
    console.print(f"  Remaining: {info['remaining']}")
    console.print(f"  Resets at: {info['reset_at']}")
