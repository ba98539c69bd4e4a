"""CLI: inbox chats, inbox send, inbox pending"""

import json
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from inbox_sync.models.events import RevertNotice
from inbox_sync.models.pending import MutationState
from inbox_sync.store import DEFAULT_STORE_PATH, JsonFileStore, PendingStore

console = Console()


def _get_client():
    from inbox_sync.cli.main import _get_client
    return _get_client()


def _run(coro):
    from inbox_sync.cli.main import _run
    return _run(coro)


@click.command("chats")
@click.option("-s", "--search", "query", default=None, help="Fuzzy name filter")
@click.option("--json-output", "--json", is_flag=True)
def chats_cmd(query: Optional[str], json_output: bool):
    """List conversations, newest first."""

    client = _get_client()

    async def _chats():
        await client.connect()
        try:
            view = await client.conversations()
            if query:
                view.search(query, immediate=True)
            summaries = view.summaries
        finally:
            await client.disconnect()
        if json_output:
            click.echo(json.dumps([s.model_dump(mode="json") for s in summaries], indent=2))
            return
        table = Table(title=f"Conversations ({len(summaries)})")
        table.add_column("Partner", style="bold")
        table.add_column("Phone")
        table.add_column("Labels")
        table.add_column("Latest message")
        table.add_column("At")
        for s in summaries:
            labels = " ".join(f"[{label.color}]{label.label_name}[/]" for label in s.labels)
            stamp = s.latest_message_timestamp.isoformat() if s.latest_message_timestamp else ""
            table.add_row(f"{s.name}\n[dim]{s.person_id}[/dim]", s.phone, labels, s.latest_message, stamp)
        console.print(table)

    _run(_chats())


@click.command("send")
@click.argument("partner_id")
@click.argument("message")
@click.option("--reply-to", default=None, help="ID of the message being replied to")
def send_cmd(partner_id: str, message: str, reply_to: Optional[str]):
    """Send a message to a chat partner."""

    def on_revert(notice: RevertNotice) -> None:
        console.print(f"[red]Failed to send message: {notice.reason}[/red]")
        if notice.draft:
            console.print(f"[dim]Draft kept: {notice.draft}[/dim]")

    client = _get_client()

    async def _send():
        await client.connect()
        try:
            thread = await client.open_thread(partner_id, on_revert=on_revert)
            await thread.wait_recovered()
            with console.status("Sending..."):
                outcome = await thread.send_message(message, reply_to_id=reply_to)
            if outcome is not None and outcome.state == MutationState.CONFIRMED and outcome.message:
                console.print(f"[green]Sent[/green] [dim]{outcome.message.id}[/dim]")
            elif outcome is not None and outcome.state == MutationState.SUBMITTED:
                console.print("[yellow]Submitted; waiting for confirmation.[/yellow]")
        finally:
            await client.disconnect()

    _run(_send())


@click.command("pending")
@click.argument("partner_id", required=False)
@click.option("--json-output", "--json", is_flag=True)
def pending_cmd(partner_id: Optional[str], json_output: bool):
    """Show mutations not yet confirmed by the server."""

    async def _pending():
        backend = JsonFileStore(DEFAULT_STORE_PATH)
        store = PendingStore(backend)
        entries = {}
        for key in await backend.keys():
            if partner_id and not key.endswith(f":{partner_id}"):
                continue
            entries[key] = await store.get(key)
        if json_output:
            click.echo(json.dumps(entries, indent=2))
            return
        if not entries:
            console.print(f"[dim]Nothing pending in {backend.path}[/dim]")
            return
        table = Table(title="Pending mutations")
        table.add_column("Key", style="bold")
        table.add_column("Entries")
        for key, value in entries.items():
            table.add_row(key, str(len(value)) if isinstance(value, list) else "?")
        console.print(table)

    _run(_pending())
