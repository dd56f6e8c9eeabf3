"""
wa-relay CLI — `wa-relay` command.

Commands:
  wa-relay serve                   Run the relay and its HTTP control surface
  wa-relay status                  Show the session state of a running relay
  wa-relay send <number> <text>    One-shot outbound message
  wa-relay logout                  Unlink the device
  wa-relay pair                    Re-initialize after a logout
  wa-relay qr                      Print the current pairing QR code
  wa-relay session clear           Delete stored credentials
"""

import asyncio
import logging
import os
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler

from wa_relay import __version__
from wa_relay.config import CONFIG_FILE_ENV, RelaySettings, get_settings

console = Console()


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _load_settings(config_file: Optional[str]) -> RelaySettings:
    if config_file:
        os.environ[CONFIG_FILE_ENV] = config_file
        get_settings.cache_clear()
    return get_settings()


def _run(coro):
    return asyncio.run(coro)


@click.group()
@click.version_option(__version__)
def main():
    """wa-relay — keep a WhatsApp session alive and relay its messages."""


@main.command("serve")
@click.option("--config", "config_file", default=None, help="YAML/JSON settings file.")
@click.option("--host", default=None, help="Override the bind address.")
@click.option("--port", default=None, type=int, help="Override the listen port.")
@click.option("--log-level", default=None, help="Override the log level.")
def serve_cmd(config_file: Optional[str], host: Optional[str], port: Optional[int], log_level: Optional[str]):
    """Run the relay with its HTTP control surface."""
    import uvicorn

    from wa_relay.client import WaRelay
    from wa_relay.server import create_app

    settings = _load_settings(config_file)
    _setup_logging((log_level or settings.log_level).upper())
    app = create_app(WaRelay(settings))
    config = uvicorn.Config(
        app,
        host=host or settings.host,
        port=port or settings.port,
        log_config=None,
        log_level=(log_level or settings.log_level).lower(),
    )
    uvicorn.Server(config).run()


# Register subcommands from separate modules
from wa_relay.cli.control import logout_cmd, pair_cmd, qr_cmd, send_cmd, status_cmd  # noqa: E402
from wa_relay.cli.session import session  # noqa: E402

main.add_command(status_cmd)
main.add_command(send_cmd)
main.add_command(logout_cmd)
main.add_command(pair_cmd)
main.add_command(qr_cmd)
main.add_command(session)


if __name__ == "__main__":
    main()
