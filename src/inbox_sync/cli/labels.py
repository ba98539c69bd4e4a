"""CLI: inbox labels catalog|show|set"""

import asyncio

import click
from rich.console import Console
from rich.table import Table

from inbox_sync.models.events import RevertNotice
from inbox_sync.models.pending import MutationKind, MutationState
from inbox_sync.transport.remote import LABEL_CATALOG_TABLE

console = Console()


def _get_client():
    from inbox_sync.cli.main import _get_client
    return _get_client()


def _run(coro):
    from inbox_sync.cli.main import _run
    return _run(coro)


@click.group()
def labels():
    """Conversation labels."""


@labels.command("catalog")
def labels_catalog():
    """List the labels that can be assigned."""

    client = _get_client()

    async def _catalog():
        await client.connect()
        try:
            rows = await client.service.query(LABEL_CATALOG_TABLE)
            catalog = client.normalizer.catalog(rows)
        finally:
            await client.disconnect()
        table = Table(title="Labels")
        table.add_column("ID", style="bold")
        table.add_column("Name")
        for label in catalog:
            table.add_row(label.id, f"[{label.color}]{label.label_name}[/]")
        console.print(table)

    _run(_catalog())


@labels.command("show")
@click.argument("partner_id")
def labels_show(partner_id: str):
    """Show the labels assigned to a conversation."""

    client = _get_client()

    async def _show():
        await client.connect()
        try:
            thread = await client.open_thread(partner_id)
            await thread.wait_recovered()
            if not thread.selected_labels:
                console.print("[dim]No labels.[/dim]")
            for label in thread.selected_labels:
                console.print(f"[{label.color}]{label.label_name}[/] [dim]{label.id}[/dim]")
            if thread.pending_labels_id:
                console.print(f"[yellow]Unconfirmed change {thread.pending_labels_id}[/yellow]")
        finally:
            await client.disconnect()

    _run(_show())


@labels.command("set")
@click.argument("partner_id")
@click.argument("label_ids", nargs=-1)
@click.option("--timeout", default=10.0, type=float, help="Seconds to wait for the server echo")
def labels_set(partner_id: str, label_ids: tuple, timeout: float):
    """Replace the labels of a conversation with LABEL_IDS (none clears them)."""

    def on_revert(notice: RevertNotice) -> None:
        console.print(f"[red]Failed to update labels. Changes have been reverted: {notice.reason}[/red]")

    client = _get_client()

    async def _set() -> int:
        await client.connect()
        try:
            thread = await client.open_thread(partner_id, on_revert=on_revert)
            await thread.wait_recovered()
            by_id = {label.id: label for label in thread.label_catalog}
            unknown = [label_id for label_id in label_ids if label_id not in by_id]
            if unknown:
                console.print(f"[red]Unknown label id(s): {', '.join(unknown)}[/red]")
                return 1
            with console.status("Updating labels..."):
                await thread.set_labels([by_id[label_id] for label_id in label_ids])
                state = await thread.wait_resolved(MutationKind.LABELS, timeout=timeout)
            if state == MutationState.CONFIRMED:
                names = ", ".join(label.label_name for label in thread.selected_labels) or "none"
                console.print(f"[green]Labels: {names}[/green]")
            return 0
        except asyncio.TimeoutError:
            console.print("[yellow]No confirmation yet; the change stays pending.[/yellow]")
            return 0
        finally:
            await client.disconnect()

    if _run(_set()):
        raise SystemExit(1)
