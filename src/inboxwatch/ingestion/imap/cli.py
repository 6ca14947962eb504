"""CLI commands for watching IMAP mailboxes."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, NoReturn, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from inboxwatch.errors import (
    ConfigurationError,
    FatalConnectionError,
    WatcherError,
)
from inboxwatch.errors.user_messages import format_error_for_cli
from inboxwatch.privacy.audit import AuditLogger

from .attachment_sink import LocalAttachmentSink
from .config import MailboxWatchConfig, OutputFormat, PostProcessAction
from .connection_manager import self_test
from .credentials import ImapCredentials, KeyringCredentialStore
from .formatter import NormalizedEvent
from .sync_state import SqliteStateStore
from .watcher import MailboxWatcher

console = Console()
error_console = Console(stderr=True)

app = typer.Typer(help="Watch an IMAP mailbox and emit new-mail events")
state_app = typer.Typer(help="Inspect or reset persisted high-water-marks")
credentials_app = typer.Typer(help="Manage IMAP credentials in the OS keychain")
app.add_typer(state_app, name="state")
app.add_typer(credentials_app, name="credentials")

DEFAULT_WORKSPACE = Path.home() / ".inboxwatch"
DEFAULT_ACCOUNT = "default"


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=error_console, rich_tracebacks=True)],
        force=True,
    )


def _scope_key(account: str, mailbox: str) -> str:
    return f"{account}:{mailbox}"


def _fail(error: Exception, json_output: bool, exit_code: int = 1) -> NoReturn:
    if json_output:
        payload = error.to_dict() if isinstance(error, WatcherError) else {"message": str(error)}
        print(json.dumps({"success": False, "error": payload}))
    elif isinstance(error, WatcherError):
        error_console.print(f"[bold red]✗[/bold red] {format_error_for_cli(error)}")
    else:
        error_console.print(f"[bold red]✗ Error:[/bold red] {error}")
    raise typer.Exit(exit_code)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@credentials_app.command("set")
def set_credentials(
    host: str = typer.Option(..., "--host", "-h", help="IMAP hostname"),
    username: str = typer.Option(..., "--username", "-u", help="Login user name"),
    password: str = typer.Option(
        ..., "--password", "-p", prompt=True, hide_input=True, help="Password or app password"
    ),
    port: int = typer.Option(993, "--port", help="IMAP port"),
    no_tls: bool = typer.Option(False, "--no-tls", help="Connect without TLS"),
    account: str = typer.Option(DEFAULT_ACCOUNT, "--account", "-a", help="Credential entry name"),
) -> None:
    """Store IMAP credentials in the OS keychain."""
    try:
        credentials = ImapCredentials(
            host=host,
            port=port,
            username=username,
            secret=password,
            tls_required=not no_tls,
        )
    except ValidationError as e:
        error_console.print(f"[bold red]✗ Invalid credentials:[/bold red] {e}")
        raise typer.Exit(2)

    KeyringCredentialStore().save(account, credentials)
    console.print(f"[bold green]✓ Credentials stored as '{account}'[/bold green]")


@credentials_app.command("delete")
def delete_credentials(
    account: str = typer.Option(DEFAULT_ACCOUNT, "--account", "-a", help="Credential entry name"),
) -> None:
    """Remove stored IMAP credentials."""
    if KeyringCredentialStore().delete(account):
        console.print(f"[bold green]✓ Deleted credentials '{account}'[/bold green]")
    else:
        console.print(f"[yellow]No credentials stored as '{account}'[/yellow]")


# ---------------------------------------------------------------------------
# Connection test
# ---------------------------------------------------------------------------


@app.command("test-connection")
def test_connection(
    account: str = typer.Option(DEFAULT_ACCOUNT, "--account", "-a", help="Credential entry name"),
    allow_unauthorized_certs: bool = typer.Option(
        False, "--allow-unauthorized-certs", help="Skip TLS certificate verification"
    ),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Log in with stored credentials and list mailboxes.

    Examples:
        inboxwatch test-connection --account work
        inboxwatch test-connection --account work --json
    """
    try:
        credentials = KeyringCredentialStore().load(account)
    except ConfigurationError as e:
        _fail(e, json_output, exit_code=2)

    if not json_output:
        console.print(f"[bold blue]Testing IMAP connection to {credentials.host}...[/bold blue]")

    result = self_test(credentials, allow_unauthorized_certs=allow_unauthorized_certs)

    if json_output:
        print(json.dumps(result.to_dict()))
    elif result.ok:
        console.print(f"[bold green]✓ {result.message}[/bold green]")
        console.print(f"Mailboxes found: {len(result.mailboxes)}")
    else:
        error_console.print(f"[bold red]✗ Connection failed:[/bold red] {result.message}")

    if not result.ok:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Watch
# ---------------------------------------------------------------------------


@app.command("watch")
def watch(
    account: str = typer.Option(DEFAULT_ACCOUNT, "--account", "-a", help="Credential entry name"),
    mailbox: str = typer.Option("INBOX", "--mailbox", "-m", help="Mailbox to watch"),
    output_format: OutputFormat = typer.Option(
        OutputFormat.SIMPLE, "--format", "-f", help="Event format"
    ),
    action: PostProcessAction = typer.Option(
        PostProcessAction.READ, "--action", help="What to do with delivered messages"
    ),
    download_attachments: bool = typer.Option(
        False, "--download-attachments", help="Extract attachments (simple format)"
    ),
    attachment_prefix: str = typer.Option(
        "attachment_", "--attachment-prefix", help="Key prefix for attachment handles"
    ),
    criteria: Optional[str] = typer.Option(
        None, "--criteria", "-c", help='JSON search criteria, e.g. \'["UNSEEN"]\''
    ),
    force_reconnect: Optional[float] = typer.Option(
        None, "--force-reconnect", help="Reconnect every N minutes"
    ),
    idle_timeout: float = typer.Option(
        300, "--idle-timeout", help="IDLE renewal / poll interval in seconds"
    ),
    reset_on_uidvalidity_change: bool = typer.Option(
        False,
        "--reset-on-uidvalidity-change",
        help="Forget the high-water-mark when the mailbox is recreated",
    ),
    allow_unauthorized_certs: bool = typer.Option(
        False, "--allow-unauthorized-certs", help="Skip TLS certificate verification"
    ),
    workspace: Path = typer.Option(
        DEFAULT_WORKSPACE, "--workspace", "-w", help="Directory for state, attachments and audit logs"
    ),
    json_output: bool = typer.Option(False, "--json", help="Print events as JSON lines"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Watch a mailbox in the foreground and print new-mail events.

    Press Ctrl+C to stop.

    Examples:
        inboxwatch watch --account work --format resolved
        inboxwatch watch --criteria '["UNSEEN", ["SINCE", "2024-05-01"]]' --json
    """
    _configure_logging(verbose)

    try:
        config = MailboxWatchConfig(
            mailbox=mailbox,
            post_process_action=action,
            format=output_format,
            download_attachments=download_attachments,
            attachment_prefix=attachment_prefix,
            custom_search_criteria=criteria,
            allow_unauthorized_certs=allow_unauthorized_certs,
            force_reconnect_minutes=force_reconnect,
            idle_timeout_seconds=idle_timeout,
            reset_on_uidvalidity_change=reset_on_uidvalidity_change,
        )
        config.search_criteria()
        credentials = KeyringCredentialStore().load(account)
    except ValidationError as e:
        error_console.print(f"[bold red]✗ Invalid configuration:[/bold red] {e}")
        raise typer.Exit(2)
    except ConfigurationError as e:
        _fail(e, json_output, exit_code=2)

    workspace_path = Path(workspace).expanduser()
    state_store = SqliteStateStore(workspace_path / "state.db")

    async def print_batch(events: List[NormalizedEvent]) -> None:
        for event in events:
            if json_output:
                print(json.dumps(event.to_payload()), flush=True)
            else:
                console.print(
                    f"[bold]#{event.uid}[/bold] {event.subject or '(no subject)'}"
                    f" [dim]{event.from_ or ''}[/dim]"
                    + (f" [cyan]+{len(event.attachments)} attachments[/cyan]" if event.attachments else "")
                )

    watcher = MailboxWatcher(
        config,
        credentials,
        state_store.slot(_scope_key(account, mailbox)),
        attachment_sink=LocalAttachmentSink(workspace_path / "attachments"),
        event_handler=print_batch,
        audit_logger=AuditLogger(workspace_path / "audit"),
    )

    if not json_output:
        console.print(f"[bold blue]Watching {mailbox} on {credentials.host}[/bold blue]")
        console.print("[yellow]Press Ctrl+C to stop.[/yellow]")

    try:
        asyncio.run(_run_watcher(watcher))
    except KeyboardInterrupt:
        if not json_output:
            console.print("\n[bold yellow]Watcher stopped[/bold yellow]")
    except WatcherError as e:
        _fail(e, json_output)
    finally:
        state_store.close()


async def _run_watcher(watcher: MailboxWatcher) -> None:
    """Run until a fatal error; other errors are reported and watching continues."""
    await watcher.start()
    try:
        while True:
            error = await watcher.errors.get()
            if isinstance(error, FatalConnectionError):
                raise error
            error_console.print(f"[bold yellow]![/bold yellow] {format_error_for_cli(error)}")
    finally:
        await watcher.stop()


# ---------------------------------------------------------------------------
# Persisted state
# ---------------------------------------------------------------------------


@state_app.command("show")
def show_state(
    workspace: Path = typer.Option(DEFAULT_WORKSPACE, "--workspace", "-w", help="Workspace directory"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """List stored high-water-marks."""
    store = SqliteStateStore(Path(workspace).expanduser() / "state.db")
    try:
        states = list(store.iter_all())
    finally:
        store.close()

    if json_output:
        print(json.dumps([state.model_dump(mode="json") for state in states]))
        return

    if not states:
        console.print("[yellow]No watcher state stored[/yellow]")
        return

    table = Table(title="Watcher State")
    table.add_column("Scope", style="cyan")
    table.add_column("Last UID", justify="right")
    table.add_column("UIDVALIDITY", justify="right")
    table.add_column("Updated")
    for state in states:
        table.add_row(
            state.scope_key,
            str(state.last_message_uid) if state.last_message_uid is not None else "-",
            str(state.uidvalidity) if state.uidvalidity is not None else "-",
            state.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


@state_app.command("reset")
def reset_state(
    account: str = typer.Option(DEFAULT_ACCOUNT, "--account", "-a", help="Credential entry name"),
    mailbox: str = typer.Option("INBOX", "--mailbox", "-m", help="Watched mailbox"),
    workspace: Path = typer.Option(DEFAULT_WORKSPACE, "--workspace", "-w", help="Workspace directory"),
) -> None:
    """Forget the high-water-mark; the next watch delivers all matching messages."""
    store = SqliteStateStore(Path(workspace).expanduser() / "state.db")
    try:
        removed = store.remove(_scope_key(account, mailbox))
    finally:
        store.close()

    if removed:
        console.print(f"[bold green]✓ Reset state for {_scope_key(account, mailbox)}[/bold green]")
    else:
        console.print(f"[yellow]No state stored for {_scope_key(account, mailbox)}[/yellow]")


__all__ = ["app"]
