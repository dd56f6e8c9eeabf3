"""CLI: wa-relay session clear"""

from typing import Optional

import click
from rich.console import Console

from wa_relay.errors import SessionLockedError

console = Console()


@click.group()
def session():
    """Stored credential management."""


@session.command("clear")
@click.option("--config", "config_file", default=None, help="YAML/JSON settings file.")
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation.")
def session_clear(config_file: Optional[str], yes: bool):
    """Delete stored credentials. The next start pairs from scratch."""
    from wa_relay.cli.main import _load_settings
    from wa_relay.session_store import SessionStore

    settings = _load_settings(config_file)
    store = SessionStore(settings.auth_dir, settings.device_id)
    if not yes:
        click.confirm(f"Delete credentials for device '{settings.device_id}' in {settings.auth_dir}?", abort=True)
    try:
        store.acquire()
    except SessionLockedError as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(1)
    try:
        store.clear()
    finally:
        store.release()
    console.print(f"[green]Credentials for '{settings.device_id}' cleared.[/green]")
