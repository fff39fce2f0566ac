"""CLI commands for mailbox sync and stored credentials."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from mailmirror.configuration.settings import DEFAULT_CONFIG_PATH, SecretStore, bootstrap_settings

from .credentials import KeyringCredentialProvider
from .models import SyncOutcome, SyncStatus
from .service import MailboxSyncService, credential_index_path


console = Console()
error_console = Console(stderr=True)

sync_app = typer.Typer(help="Run and inspect mailbox synchronization")
credentials_app = typer.Typer(help="Manage stored mailbox credentials")

T = TypeVar("T")


def open_service(config_path: Path) -> MailboxSyncService:
    settings = bootstrap_settings(path=config_path)
    return MailboxSyncService.from_settings(settings)


def open_credentials(config_path: Path) -> KeyringCredentialProvider:
    settings = bootstrap_settings(path=config_path)
    return KeyringCredentialProvider(
        secret_store=SecretStore(),
        index_path=credential_index_path(settings),
        api_base_url=settings.sync.api_base_url,
        request_timeout=settings.sync.request_timeout_seconds,
    )


def _run_with_service(
    config_path: Path, operation: Callable[[MailboxSyncService], Awaitable[T]]
) -> T:
    async def runner() -> T:
        service = open_service(config_path)
        try:
            return await operation(service)
        finally:
            await service.aclose()

    return asyncio.run(runner())


def _print_outcome(outcome: SyncOutcome) -> None:
    if outcome.status == SyncStatus.FAILED:
        error_console.print(
            f"[bold red]✗ Sync failed for {outcome.user_id}:[/bold red] {outcome.error}"
        )
        raise typer.Exit(1)
    console.print(
        f"[bold green]✓[/bold green] {outcome.user_id}: {outcome.status.value} "
        f"({len(outcome.new_ids)} new, {len(outcome.deleted_ids)} deleted)"
    )
    if outcome.cursor:
        console.print(f"Cursor: {outcome.cursor}")


# ---------------------------------------------------------------------------
# sync
# ---------------------------------------------------------------------------


@sync_app.command("run")
def run_sync(
    user_id: str = typer.Argument(..., help="User to synchronize"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config file"),
) -> None:
    """Run a history sync for USER_ID, following every continuation page."""

    outcome = _run_with_service(config_path, lambda service: service.sync_user(user_id))
    _print_outcome(outcome)


@sync_app.command("first-batch")
def first_batch(
    user_id: str = typer.Argument(..., help="User to synchronize"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config file"),
) -> None:
    """List the newest messages page by page, up to the legacy page bound."""

    outcome = _run_with_service(config_path, lambda service: service.sync_first_batch(user_id))
    _print_outcome(outcome)


@sync_app.command("reconcile")
def reconcile(
    user_id: str = typer.Argument(..., help="User to reconcile"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config file"),
) -> None:
    """Delete local emails missing from the complete remote listing."""

    deleted = _run_with_service(
        config_path, lambda service: service.reconcile_deletions(user_id)
    )
    console.print(f"Removed {len(deleted)} stale emails for {user_id}")


@sync_app.command("status")
def status(
    user_id: str = typer.Argument(..., help="User to inspect"),
    limit: int = typer.Option(10, "--limit", "-n", help="Recent emails to show"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config file"),
) -> None:
    """Show cursor, stored count and the most recent emails for USER_ID."""

    async def collect(service: MailboxSyncService) -> Dict[str, Any]:
        report = await service.status(user_id)
        report["recent"] = await service.recent_emails(user_id, limit)
        return report

    report = _run_with_service(config_path, collect)

    if json_output:
        payload = dict(report)
        payload["recent"] = [record.model_dump(exclude={"embedding"}) for record in report["recent"]]
        typer.echo(json.dumps(payload, default=str))
        return

    console.print(f"[bold]User:[/bold] {user_id}")
    console.print(f"Cursor: {report['cursor'] or '[yellow]not seeded[/yellow]'}")
    console.print(f"Stored emails: {report['stored_emails']}")

    if not report["recent"]:
        return
    table = Table(title="Recent emails")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("From", style="green")
    table.add_column("Subject")
    for record in report["recent"]:
        table.add_row(record.id, record.sender, record.subject)
    console.print(table)


@sync_app.command("reset-cursor")
def reset_cursor(
    user_id: str = typer.Argument(..., help="User whose cursor to clear"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config file"),
) -> None:
    """Clear the sync cursor; the next sync re-seeds it from the profile."""

    _run_with_service(config_path, lambda service: service.reset_cursor(user_id))
    console.print(f"Cursor cleared for {user_id}")


@sync_app.command("poll")
def poll(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config file"),
) -> None:
    """Poll every registered user until interrupted."""

    async def run_forever(service: MailboxSyncService) -> None:
        for user_id in service.credentials.list_user_ids():
            service.connections.connect(user_id, _console_sender(user_id))
        await service.start()
        if not service.poller.running:
            console.print("[yellow]Polling is disabled in the configuration.[/yellow]")
            return
        console.print(
            f"Polling {len(service.credentials.list_user_ids())} users every "
            f"{service.poller.interval_seconds}s. Press Ctrl+C to stop."
        )
        await asyncio.Event().wait()

    try:
        _run_with_service(config_path, run_forever)
    except KeyboardInterrupt:
        console.print("Stopped")


def _console_sender(user_id: str) -> Callable[[Dict[str, Any]], Awaitable[None]]:
    async def send(payload: Dict[str, Any]) -> None:
        ids = payload.get("email_ids") or []
        if ids:
            console.print(f"[green]{user_id}[/green]: {len(ids)} changed emails")
        else:
            console.print(f"[green]{user_id}[/green]: checking for new mail")

    return send


# ---------------------------------------------------------------------------
# credentials
# ---------------------------------------------------------------------------


@credentials_app.command("add")
def add_credential(
    user_id: str = typer.Argument(..., help="User identifier"),
    token: str = typer.Option(..., "--token", prompt=True, hide_input=True, help="Gmail access token"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config file"),
) -> None:
    """Store an access token for USER_ID in the system keychain."""

    provider = open_credentials(config_path)
    try:
        provider.add_user(user_id, token)
    except ValueError as exc:
        error_console.print(f"[bold red]✗[/bold red] {exc}")
        raise typer.Exit(1)
    console.print(f"[bold green]✓[/bold green] Stored credential for {user_id}")


@credentials_app.command("list")
def list_credentials(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config file"),
) -> None:
    """List users with a stored credential."""

    user_ids = open_credentials(config_path).list_user_ids()
    if not user_ids:
        console.print("[yellow]No users registered.[/yellow]")
        console.print("Add one with: mailmirror credentials add USER_ID")
        return
    table = Table(title="Registered users")
    table.add_column("User", style="cyan")
    for user_id in user_ids:
        table.add_row(user_id)
    console.print(table)


@credentials_app.command("remove")
def remove_credential(
    user_id: str = typer.Argument(..., help="User identifier"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config file"),
) -> None:
    """Forget the stored credential for USER_ID."""

    if not open_credentials(config_path).remove_user(user_id):
        error_console.print(f"[yellow]{user_id} was not registered[/yellow]")
        raise typer.Exit(1)
    console.print(f"Removed credential for {user_id}")


__all__ = ["credentials_app", "sync_app"]
