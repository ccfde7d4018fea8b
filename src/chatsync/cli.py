"""
Command-line interface for the chatsync client core.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from chatsync.config import Settings
from chatsync.errors import ApiError, user_message

app = typer.Typer(
    name="chatsync",
    help="chatsync - offline-first sync and realtime client for the messaging API",
)
console = Console()

_state: dict[str, Any] = {"env_file": None, "log_level": None}


def configure_logging(level: str = "INFO") -> None:
    """Route all chatsync logging through rich."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _settings() -> Settings:
    settings = Settings.from_env(_state["env_file"])
    configure_logging(_state["log_level"] or settings.log_level)
    return settings


def _build_context(settings: Settings):
    from chatsync.auth.secure_store import EncryptedFileSecureStore
    from chatsync.context import ChatSyncContext
    from chatsync.storage.sqlite_store import SQLiteStore

    return ChatSyncContext(
        settings,
        store=SQLiteStore(settings.data_dir / "chatsync.db"),
        secure_store=EncryptedFileSecureStore(settings.data_dir / "credentials.enc"),
    )


def _run(body: Callable[[Any], Awaitable[None]]) -> None:
    """Run a command body inside a started context, rendering API errors."""

    async def _main() -> None:
        context = _build_context(_settings())
        await context.start(realtime=False)
        try:
            await body(context)
        finally:
            await context.close()

    try:
        asyncio.run(_main())
    except ApiError as e:
        console.print(f"[red]{user_message(e)}[/red] [dim]({e.message})[/dim]")
        raise typer.Exit(1) from e


def _parse_json(raw: str | None, what: str) -> dict[str, Any] | None:
    if raw is None:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        console.print(f"[red]{what} is not valid JSON: {e}[/red]")
        raise typer.Exit(2) from e
    if not isinstance(value, dict):
        console.print(f"[red]{what} must be a JSON object[/red]")
        raise typer.Exit(2)
    return value


@app.callback()
def main(
    env_file: Path = typer.Option(None, "--env-file", "-e", help="Load settings from a .env file"),
    log_level: str = typer.Option(None, "--log-level", "-l", help="Override CHATSYNC_LOG_LEVEL"),
):
    """Global options."""
    _state["env_file"] = env_file
    _state["log_level"] = log_level


@app.command()
def login(
    email: str = typer.Argument(..., help="Account email"),
    password: str = typer.Option(..., prompt=True, hide_input=True, help="Account password"),
):
    """Sign in and store the session."""

    async def _login(context):
        user = await context.login(email, password)
        console.print(f"\n[bold green]Signed in[/bold green] as {user.get('name') or user.get('email') or email}")
        console.print(f"Token valid for {context.auth.token_remaining_seconds()}s")

    _run(_login)


@app.command()
def logout():
    """Sign out and clear the stored session."""

    async def _logout(context):
        if not context.auth.is_authenticated() and not context.auth.has_refresh_token:
            console.print("[yellow]Not signed in[/yellow]")
        await context.logout()
        console.print("[bold]Signed out[/bold]")

    _run(_logout)


@app.command()
def status():
    """Show session and sync status."""

    async def _status(context):
        snapshot = context.auth.snapshot()
        sync_status = context.sync_status()

        console.print("\n[bold]Session[/bold]\n")
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Field")
        table.add_column("Value")
        table.add_row("State", snapshot.state.value)
        table.add_row("Authenticated", "[green]yes[/green]" if snapshot.is_authenticated else "[red]no[/red]")
        identity = snapshot.identity or {}
        table.add_row("User", str(identity.get("email") or identity.get("id") or "-"))
        if snapshot.credential is not None:
            table.add_row("Access token", snapshot.credential.masked()["access_token"])
            table.add_row("Expires at", snapshot.credential.expires_at.isoformat())
        console.print(table)

        console.print("\n[bold]Sync[/bold]\n")
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Field")
        table.add_column("Value")
        table.add_row("Online", "yes" if sync_status.is_online else "no")
        table.add_row("Pending changes", str(sync_status.pending_change_count))
        table.add_row("Conflicts", str(sync_status.conflict_count))
        table.add_row("Cursor", sync_status.last_sync_cursor or "-")
        table.add_row("Last sync", sync_status.last_sync_at.isoformat() if sync_status.last_sync_at else "-")
        console.print(table)

        if sync_status.recent_errors:
            console.print("\n[bold red]Recent errors[/bold red]")
            for error in list(sync_status.recent_errors)[-10:]:
                console.print(f"  {error.occurred_at:%H:%M:%S} [{error.stage}] {error.message}")

    _run(_status)


@app.command()
def sync():
    """Run a sync pass now."""

    async def _sync(context):
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            task = progress.add_task("Syncing...", total=None)
            completed = await context.force_sync()
            progress.update(task, completed=True)

        result = context.sync_status()
        if completed:
            console.print("\n[bold green]Sync complete[/bold green]")
        else:
            console.print("\n[bold yellow]Sync did not complete[/bold yellow]")
            for error in list(result.recent_errors)[-3:]:
                console.print(f"  [{error.stage}] {error.message}")
        console.print(f"Pending changes: {result.pending_change_count}, conflicts: {result.conflict_count}")

    _run(_sync)


@app.command()
def record(
    entity_type: str = typer.Argument(..., help="messages, chats, users or departments"),
    action: str = typer.Argument(..., help="create, update or delete"),
    payload: str = typer.Argument("{}", help="Record body as a JSON object"),
    record_id: str = typer.Option(None, "--id", help="Id of the record being changed"),
    sync_now: bool = typer.Option(False, "--sync", help="Sync immediately after recording"),
):
    """Journal a local change."""
    data = _parse_json(payload, "Payload")

    async def _record(context):
        client_id = await context.record_local_change(entity_type, action, data, record_id)
        console.print(f"Recorded [bold]{client_id}[/bold]")
        if sync_now:
            await context.force_sync()
        console.print(f"Pending changes: {context.sync_status().pending_change_count}")

    _run(_record)


@app.command()
def conflicts():
    """List conflicts waiting for manual resolution."""

    async def _conflicts(context):
        pending = await context.sync.list_conflicts()
        if not pending:
            console.print("[green]No conflicts[/green]")
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Id")
        table.add_column("Type")
        table.add_column("Conflict")
        table.add_column("Local")
        table.add_column("Server")
        for conflict in pending:
            table.add_row(
                conflict.client_id,
                conflict.entity_type.value,
                conflict.conflict_type,
                json.dumps(conflict.local_payload)[:60],
                json.dumps(conflict.remote_payload)[:60] if conflict.remote_payload is not None else "-",
            )
        console.print(table)

    _run(_conflicts)


@app.command()
def resolve(
    conflict_id: str = typer.Argument(..., help="Conflict id (see `chatsync conflicts`)"),
    resolution: str = typer.Argument(..., help="server, client or merged"),
    merged: str = typer.Option(None, "--merged", help="Merged record as a JSON object"),
):
    """Resolve a conflict manually."""
    merged_data = _parse_json(merged, "Merged record")

    async def _resolve(context):
        await context.resolve_manual_conflict(conflict_id, resolution, merged_data)
        console.print(f"[green]Resolved {conflict_id} ({resolution})[/green]")

    _run(_resolve)


if __name__ == "__main__":
    app()
