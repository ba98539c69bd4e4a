"""
inbox-sync CLI: `inbox` command.

Commands:
  inbox auth login|status|logout   Save or clear credentials
  inbox chats                      Conversation list
  inbox send <partner> <message>   Send a message
  inbox labels <cmd>               Label catalog and assignments
  inbox pending [partner]          Unconfirmed mutations in the local store
"""

import asyncio
import json
import logging
from pathlib import Path

try:
    import click
    from rich.console import Console
    from rich.logging import RichHandler
except ImportError:
    raise SystemExit("CLI requires extras: pip install inbox-sync[cli]")

from inbox_sync.client import AsyncInboxSync
from inbox_sync.transport.http import DEFAULT_BASE_URL

console = Console()
CONFIG_FILE = Path.home() / ".inbox_sync" / "config.json"


def _load_config() -> dict:
    try:
        return json.loads(CONFIG_FILE.read_text())
    except (FileNotFoundError, json.JSONDecodeError):
        return {}


def _save_config(cfg: dict) -> None:
    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    CONFIG_FILE.write_text(json.dumps(cfg, indent=2))


def _get_client() -> AsyncInboxSync:
    cfg = _load_config()
    if not cfg.get("access_token") or not cfg.get("user_id"):
        console.print("[red]Not logged in. Run `inbox auth login` first.[/red]")
        raise SystemExit(1)
    return AsyncInboxSync(
        access_token=cfg["access_token"],
        user_id=cfg["user_id"],
        base_url=cfg.get("base_url", DEFAULT_BASE_URL),
        api_key=cfg.get("api_key"),
    )


def _run(coro):
    return asyncio.run(coro)


@click.group()
@click.version_option("0.1.0")
@click.option("-v", "--verbose", is_flag=True, help="Log engine activity")
def main(verbose: bool):
    """inbox-sync CLI: messages and labels with optimistic updates."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(message)s", handlers=[RichHandler(console=console)])


# Register subcommands from separate modules
from inbox_sync.cli.auth import auth
from inbox_sync.cli.chats import chats_cmd, send_cmd, pending_cmd
from inbox_sync.cli.labels import labels

main.add_command(auth)
main.add_command(chats_cmd)
main.add_command(send_cmd)
main.add_command(pending_cmd)
main.add_command(labels)


if __name__ == "__main__":
    main()
