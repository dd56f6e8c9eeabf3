"""CLI: wa-relay status|send|logout|pair|qr against a running relay."""

import json
from typing import Any, Optional

import click
import httpx
from rich.console import Console
from rich.table import Table

from wa_relay import qr

console = Console()

url_option = click.option("--url", default="http://localhost:3000", envvar="WA_RELAY_URL", show_default=True,
                          help="Base URL of the running relay.")
api_key_option = click.option("--api-key", default=None, envvar="WA_RELAY_API_KEY", help="x-api-key header value.")


def _run(coro):
    from wa_relay.cli.main import _run
    return _run(coro)


async def _request(method: str, url: str, path: str, api_key: Optional[str] = None,
                   **kwargs: Any) -> httpx.Response:
    headers = {"x-api-key": api_key} if api_key else {}
    async with httpx.AsyncClient(base_url=url, headers=headers, timeout=30.0) as client:
        try:
            return await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            console.print(f"[red]Could not reach relay at {url}: {e}[/red]")
            raise SystemExit(1)


def _fail_on_error(resp: httpx.Response) -> dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        data = {"message": resp.text}
    if resp.status_code >= 400:
        message = data.get("message") or data.get("detail") or resp.reason_phrase
        console.print(f"[red]{resp.status_code}: {message}[/red]")
        raise SystemExit(1)
    return data


@click.command("status")
@url_option
@click.option("--json-output", "--json", is_flag=True)
def status_cmd(url, json_output):
    """Show the session state."""

    async def _status():
        data = _fail_on_error(await _request("GET", url, "/status"))
        if json_output:
            click.echo(json.dumps(data, indent=2))
            return
        color = "green" if data.get("connected") else "yellow"
        console.print(f"Phase: [{color}]{data.get('phase')}[/{color}]")
        if data.get("deviceNumber"):
            console.print(f"Device: {data['deviceNumber']}")
        if data.get("closeReason"):
            console.print(f"[dim]Last close: {data['closeReason']}[/dim]")
        if data.get("reconnecting"):
            console.print(f"[dim]Reconnecting (attempt {data.get('attempt')})[/dim]")
        sinks = data.get("sinks") or {}
        if sinks:
            table = Table(title="Sinks")
            for column in ("Sink", "Delivered", "Failed", "Dropped", "Pending"):
                table.add_column(column)
            for name, stats in sinks.items():
                table.add_row(name, str(stats.get("delivered", 0)), str(stats.get("failed", 0)),
                              str(stats.get("dropped", 0)), str(stats.get("pending", 0)))
            console.print(table)

    _run(_status())


@click.command("send")
@click.argument("number")
@click.argument("message")
@url_option
@api_key_option
def send_cmd(number, message, url, api_key):
    """Send a text message."""

    async def _send():
        with console.status("Sending..."):
            resp = await _request("POST", url, "/send", api_key, json={"number": number, "message": message})
        data = _fail_on_error(resp)
        console.print(f"[green]Sent {data.get('messageId')} to {data.get('to')}[/green]")

    _run(_send())


@click.command("logout")
@url_option
@api_key_option
def logout_cmd(url, api_key):
    """Unlink the device and delete its credentials."""

    async def _logout():
        with console.status("Logging out..."):
            resp = await _request("GET", url, "/logout", api_key)
        _fail_on_error(resp)
        console.print("[green]Logged out.[/green]")

    _run(_logout())


@click.command("pair")
@url_option
@api_key_option
def pair_cmd(url, api_key):
    """Start a fresh pairing after a logout."""

    async def _pair():
        data = _fail_on_error(await _request("POST", url, "/pair", api_key))
        console.print(f"Phase: {data['status'].get('phase')}")

    _run(_pair())


@click.command("qr")
@url_option
def qr_cmd(url):
    """Print the current pairing QR code."""

    async def _qr():
        data = _fail_on_error(await _request("GET", url, "/qr", params={"format": "json"}))
        if not data.get("qr"):
            console.print(f"[yellow]{data.get('message')}[/yellow]")
            return
        qr.print_terminal(data["qr"])

    _run(_qr())
