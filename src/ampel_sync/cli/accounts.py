"""Account commands: connect, list, revalidate and remove provider credentials."""

import json
from typing import Annotated

import typer
from rich.table import Table

from ampel_sync.db.models import ValidationStatus
from ampel_sync.providers.schemas import ProviderKind
from ampel_sync.schemas import AccountRead

from .common import (
    OutputFormat,
    OutputFormatOption,
    OwnerOption,
    console,
    open_service,
    run_async_command,
    validate_repo,
)

app = typer.Typer(help="Manage provider accounts")

_STATUS_STYLE = {
    ValidationStatus.VALID: "green",
    ValidationStatus.PENDING: "dim",
    ValidationStatus.EXPIRED: "yellow",
    ValidationStatus.INVALID: "red",
}


def _print_account(account: AccountRead, verb: str) -> None:
    default = " [bold](default)[/bold]" if account.is_default else ""
    style = _STATUS_STYLE[account.validation_status]
    console.print(
        f"{verb} account {account.id}: {account.provider.value} '{account.label}' "
        f"as {account.username} [{style}]{account.validation_status.value}[/{style}]{default}"
    )


@app.command("list")
def list_accounts(
    owner: OwnerOption = "local",
    output_format: OutputFormatOption = OutputFormat.TEXT,
) -> None:
    """List connected accounts (tokens are never shown)."""

    async def _list() -> list[AccountRead]:
        async with open_service() as service:
            return await service.list_accounts(owner)

    accounts = run_async_command(_list())

    if output_format == OutputFormat.JSON:
        console.print_json(json.dumps([a.to_json_dict() for a in accounts]))
        return

    if not accounts:
        console.print(f"[dim]No accounts for {owner}[/dim]")
        return

    table = Table(title=f"Accounts of {owner}")
    table.add_column("ID", style="cyan")
    table.add_column("Provider")
    table.add_column("Instance")
    table.add_column("Label")
    table.add_column("User")
    table.add_column("Status")
    table.add_column("Expires")
    table.add_column("Default")
    for a in accounts:
        style = _STATUS_STYLE[a.validation_status]
        table.add_row(
            str(a.id),
            a.provider.value,
            a.instance_url or "cloud",
            a.label,
            a.username,
            f"[{style}]{a.validation_status.value}[/{style}]",
            a.token_expires_at.strftime("%Y-%m-%d") if a.token_expires_at else "-",
            "*" if a.is_default else "",
        )
    console.print(table)


@app.command("add")
def add_account(
    provider: Annotated[ProviderKind, typer.Argument(help="github, gitlab or bitbucket")],
    label: Annotated[str, typer.Argument(help="Name for this account, e.g. 'work'")],
    token: Annotated[
        str,
        typer.Option(
            "--token",
            prompt=True,
            hide_input=True,
            envvar="AMPEL_TOKEN",
            help="Access token or Bitbucket app password",
        ),
    ],
    instance_url: Annotated[
        str | None,
        typer.Option("--instance-url", help="GitHub Enterprise or self-managed GitLab URL"),
    ] = None,
    username: Annotated[
        str | None,
        typer.Option("--username", "-u", help="Bitbucket username"),
    ] = None,
    owner: OwnerOption = "local",
) -> None:
    """Validate a token with its provider and store it encrypted.

    Examples:
        ampel accounts add github work
        ampel accounts add gitlab self-hosted --instance-url https://gitlab.example.com
        ampel accounts add bitbucket team -u alice
    """

    async def _add() -> AccountRead:
        async with open_service() as service:
            return await service.add_account(
                owner, provider, label, token, instance_url=instance_url, username=username
            )

    account = run_async_command(_add(), error_prefix="Could not add account")
    _print_account(account, "Added")
    if account.token_expires_at:
        console.print(f"  [dim]Token expires {account.token_expires_at.isoformat()}[/dim]")


@app.command("default")
def set_default(account_id: Annotated[int, typer.Argument(help="Account ID")]) -> None:
    """Make an account the default for its provider."""

    async def _set() -> AccountRead:
        async with open_service() as service:
            return await service.set_default(account_id)

    _print_account(run_async_command(_set()), "Default is now")


@app.command("revalidate")
def revalidate(account_id: Annotated[int, typer.Argument(help="Account ID")]) -> None:
    """Re-check a stored token; a valid token resumes polling."""

    async def _revalidate() -> AccountRead:
        async with open_service() as service:
            return await service.revalidate(account_id)

    account = run_async_command(_revalidate(), error_prefix="Revalidation failed")
    _print_account(account, "Checked")
    if account.validation_status is not ValidationStatus.VALID:
        raise typer.Exit(1)


@app.command("remove")
def remove_account(
    account_id: Annotated[int, typer.Argument(help="Account ID")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")] = False,
) -> None:
    """Delete an account; its repositories keep their history."""
    if not yes:
        typer.confirm(f"Remove account {account_id}?", abort=True)

    async def _remove() -> None:
        async with open_service() as service:
            await service.remove_account(account_id)

    run_async_command(_remove())
    console.print(f"Removed account {account_id}")


@app.command("track")
def track_repository(
    account_id: Annotated[int, typer.Argument(help="Account used to poll the repository")],
    repo: Annotated[str, typer.Argument(help="Repository in owner/name format")],
) -> None:
    """Start tracking a repository's pull requests.

    Examples:
        ampel accounts track 1 octocat/hello-world
        ampel accounts track 2 group/subgroup/project
    """
    owner, name = validate_repo(repo)

    async def _track() -> str:
        async with open_service() as service:
            tracked = await service.track_repository(account_id, owner, name)
            return tracked.full_name

    full_name = run_async_command(_track(), error_prefix="Could not track repository")
    console.print(f"Tracking [cyan]{full_name}[/cyan]; first poll scheduled")
