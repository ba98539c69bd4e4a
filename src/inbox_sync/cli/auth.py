"""CLI: inbox auth login|status|logout"""

from typing import Optional

import click
from rich.console import Console

from inbox_sync.transport.http import DEFAULT_BASE_URL

console = Console()


def _load_config() -> dict:
    from inbox_sync.cli.main import _load_config
    return _load_config()


def _save_config(cfg: dict) -> None:
    from inbox_sync.cli.main import _save_config
    _save_config(cfg)


@click.group()
def auth():
    """Authentication commands."""


@auth.command("login")
@click.option("--token", prompt="Access token", hide_input=True)
@click.option("--user-id", prompt="User ID")
@click.option("--base-url", default=None, help="Data service base URL")
@click.option("--api-key", default=None, help="Project API key")
def auth_login(token: str, user_id: str, base_url: Optional[str], api_key: Optional[str]):
    """Save credentials for later commands."""
    cfg = _load_config()
    _save_config({
        **cfg,
        "access_token": token,
        "user_id": user_id,
        "base_url": base_url or cfg.get("base_url", DEFAULT_BASE_URL),
        "api_key": api_key or cfg.get("api_key"),
    })
    console.print(f"[green]Logged in as {user_id}[/green]")
    console.print("[dim]Token saved to ~/.inbox_sync/config.json[/dim]")


@auth.command("status")
def auth_status():
    """Show current auth status."""
    cfg = _load_config()
    if cfg.get("access_token"):
        console.print(f"[green]Logged in[/green] as {cfg.get('user_id')} ({cfg.get('base_url', DEFAULT_BASE_URL)})")
    else:
        console.print("[yellow]Not logged in. Run `inbox auth login`.[/yellow]")


@auth.command("logout")
def auth_logout():
    """Clear saved credentials."""
    _save_config({})
    console.print("[green]Logged out.[/green]")
