"""
inboxsync CLI.

Small operator tools around the synchronization layer: follow a contact's
conversation live, inspect its ticket episodes, and print room names.
"""

import asyncio
import logging
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from inboxsync.logging_config import setup_logging

app = typer.Typer(
    name="inboxsync",
    help="inboxsync - Real-time conversation sync for the customer-service console",
    no_args_is_help=True,
)

console = Console()

_CATEGORY_STYLE = {
    "needs_reply": "yellow",
    "automated": "cyan",
    "resolved": "green",
}


def _init_logging() -> None:
    # Fall back to console logging if the log directory is not writable
    try:
        setup_logging(context="cli")
    except PermissionError:
        logging.basicConfig(level=logging.INFO)


@app.command()
def watch(
    contact_id: str = typer.Argument(..., help="Contact to follow"),
    token: Optional[str] = typer.Option(None, envvar="INBOXSYNC_API_TOKEN", help="Bearer token"),
) -> None:
    """
    Follow a contact's conversation live.

    Connects, loads the conversation and prints every new message and
    connection status change until interrupted.
    """
    from inboxsync.config import settings

    _init_logging()
    config = settings.model_copy(update={"api_token": token}) if token else settings

    try:
        asyncio.run(_watch(contact_id, config))
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped[/dim]")


async def _watch(contact_id: str, config: Any) -> None:
    from inboxsync.events import EventKind
    from inboxsync.exceptions import AuthError
    from inboxsync.session import SyncSession

    session = SyncSession.from_settings(config)
    done = asyncio.Event()

    def show(message: Any) -> None:
        if message.contact_id != contact_id:
            return
        arrow = "<-" if message.direction.value == "incoming" else "->"
        console.print(
            f"[dim]{message.created_at:%H:%M:%S}[/dim] {arrow} "
            f"[bold]{message.content}[/bold] [dim]({message.status.value})[/dim]"
        )

    def print_message(event: Any) -> None:
        show(event.data)

    def print_status(event: Any) -> None:
        if event.kind is EventKind.RECONNECTING:
            console.print(f"[yellow]Reconnecting (attempt {event.attempt}) in {event.delay:.1f}s[/yellow]")
        elif event.kind is EventKind.CONNECTION_ESTABLISHED:
            console.print("[green]✓ Connected[/green]")
        elif event.kind is EventKind.CONNECTION_LOST:
            console.print(f"[yellow]Connection lost: {event.reason}[/yellow]")
        else:
            console.print(f"[bold red]{event.kind.value}:[/bold red] {event.reason}")
            done.set()

    for kind in (EventKind.MESSAGE_RECEIVED, EventKind.MESSAGE_SENT):
        session.on(kind, print_message)
    for kind in (
        EventKind.CONNECTION_ESTABLISHED,
        EventKind.CONNECTION_LOST,
        EventKind.RECONNECTING,
        EventKind.RECONNECT_FAILED,
        EventKind.AUTH_ERROR,
    ):
        session.on(kind, print_status)

    try:
        async with session:
            await session.open_contact(contact_id)
            history = session.store.messages(contact_id)
            console.print(f"[bold blue]Contact {contact_id}:[/bold blue] {len(history)} message(s) loaded")
            for message in history[-10:]:
                show(message)
            await done.wait()
    except AuthError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


@app.command()
def episodes(
    contact_id: str = typer.Argument(..., help="Contact whose episodes to derive"),
    token: Optional[str] = typer.Option(None, envvar="INBOXSYNC_API_TOKEN", help="Bearer token"),
) -> None:
    """Fetch a contact's conversation and print its ticket episodes."""
    from inboxsync.api import ApiClient
    from inboxsync.config import settings
    from inboxsync.episodes import group_episodes
    from inboxsync.exceptions import InboxSyncError

    _init_logging()

    async def fetch() -> Any:
        async with ApiClient(
            settings.api_url,
            token=token or settings.api_token or None,
            timeout=settings.request_timeout,
            page_size=settings.history_page_size,
        ) as api:
            return await api.fetch_conversation(contact_id)

    try:
        snapshot = asyncio.run(fetch())
    except InboxSyncError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    messages = sorted(snapshot.messages, key=lambda m: m.sort_key)
    tickets = {t.id: t for t in snapshot.tickets}
    derived = group_episodes(messages, tickets)

    if not derived:
        console.print(f"[yellow]No messages for contact {contact_id}[/yellow]")
        return

    table = Table(title=f"Episodes for contact {contact_id}")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Ticket")
    table.add_column("Category")
    table.add_column("Messages", justify="right")
    table.add_column("Unread", justify="right")
    table.add_column("Started")
    table.add_column("Last message")

    for i, episode in enumerate(derived, start=1):
        style = _CATEGORY_STYLE.get(episode.category.value, "white")
        last = episode.last_message.content
        table.add_row(
            str(i),
            episode.ticket_id or "-",
            f"[{style}]{episode.category.value}[/{style}]",
            str(episode.message_count),
            str(episode.unread_count),
            f"{episode.started_at:%Y-%m-%d %H:%M}",
            last if len(last) <= 40 else last[:37] + "...",
        )

    console.print(table)


@app.command()
def rooms(
    contact: list[str] = typer.Option([], "--contact", help="Contact id"),
    ticket: list[str] = typer.Option([], "--ticket", help="Ticket id"),
    session: list[str] = typer.Option([], "--session", help="Session id"),
    admin: list[str] = typer.Option([], "--admin", help="Admin id"),
) -> None:
    """Print the room names for the given entity ids."""
    from inboxsync.rooms import admin_room, contact_room, session_room, ticket_room

    names = (
        [contact_room(i) for i in contact]
        + [ticket_room(i) for i in ticket]
        + [session_room(i) for i in session]
        + [admin_room(i) for i in admin]
    )
    if not names:
        console.print("[yellow]No ids given[/yellow]")
        raise typer.Exit(1)
    for name in names:
        console.print(name)


if __name__ == "__main__":
    app()
