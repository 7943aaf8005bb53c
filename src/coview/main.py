#!/usr/bin/env python3
"""CoView - CLI entry point."""

import asyncio
import logging
import os
import signal
import sys
from collections.abc import Callable, Coroutine
from pathlib import Path
from typing import Any

import click
import sentry_sdk
import structlog
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from . import __version__
from .browser import BrowserHost
from .config import CoViewConfig, load_config
from .relay import Relay, RelayError, RelayState
from .state_store import SessionStateStore
from .viewer import ViewerClient, ViewerError


def _init_sentry() -> bool:
    """Initialize Sentry for error tracking."""
    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=f"coview@{__version__}",
        traces_sample_rate=1.0 if environment == "development" else 0.2,
        integrations=[
            AsyncioIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        send_default_pii=False,
        attach_stacktrace=True,
        max_breadcrumbs=50,
        server_name="coview",
        ignore_errors=[
            "ConnectionRefusedError",
            "ConnectionResetError",
            "TimeoutError",
            "asyncio.CancelledError",
            "KeyboardInterrupt",
            "SystemExit",
        ],
    )

    sentry_sdk.set_tag("service", "coview")
    return True


# Initialize Sentry at module load time
_sentry_enabled = _init_sentry()

# Configure structlog
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer(colors=True),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def _apply_overrides(config: CoViewConfig, room: str | None, server: str | None) -> CoViewConfig:
    if room:
        config = config.model_copy(update={"room_code": room})
    if server:
        config = config.model_copy(update={"server_url": server})
    return config


def _require_room(config: CoViewConfig, command: str) -> str:
    if config.room_code:
        return config.room_code
    click.echo(
        click.style("Error: ", fg="red", bold=True) + "A room code is required.\n\n"
        "Run:\n"
        f"  coview {command} --room <code>\n\n"
        "Or set the COVIEW_ROOM_CODE environment variable.",
        err=True,
    )
    sys.exit(1)


def _run(
    session: Callable[[asyncio.Event], Coroutine[Any, Any, None]],
    cleanup: Callable[[], Coroutine[Any, Any, None]],
) -> None:
    """Run a session until SIGINT/SIGTERM, then clean up."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    # Handle shutdown signals gracefully
    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        loop.run_until_complete(session(shutdown_event))
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(cleanup())
        # Flush Sentry events before shutdown
        if _sentry_enabled:
            sentry_sdk.flush(timeout=2.0)
        loop.close()


@click.group()
@click.version_option(version=__version__, prog_name="coview")
def cli() -> None:
    """CoView - Mirror a live web page to remote viewers.

    A leader shares a browser tab into a room; viewers in the same room
    see its content, scroll position, cursor and clicks in real time.
    """
    pass


@cli.command()
@click.argument("url")
@click.option("--room", envvar="COVIEW_ROOM_CODE", default=None, help="Room code to share into")
@click.option(
    "--server",
    envvar="COVIEW_SERVER_URL",
    default=None,
    help="CoView server URL (overrides config file)",
)
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, path_type=Path),
    help="Path to config file",
)
def share(url: str, room: str | None, server: str | None, config_file: Path | None) -> None:
    """Open URL in a leader browser and share it into a room.

    Sharing stops when the tab is closed or on Ctrl+C.
    """
    config = _apply_overrides(load_config(config_file), room, server)
    room_code = _require_room(config, "share URL")

    click.echo(click.style("CoView ", fg="cyan", bold=True) + click.style(f"v{__version__}", fg="cyan"))
    click.echo(f"  Room: {room_code}")
    click.echo(f"  Server: {config.server_url}")
    click.echo(f"  Page: {url}")
    click.echo()

    host = BrowserHost(config.browser, config.capture)
    relay: Relay | None = None

    async def run(shutdown_event: asyncio.Event) -> None:
        nonlocal relay
        if not await host.start():
            click.echo(
                click.style("Error: ", fg="red", bold=True)
                + "Could not start the leader browser.\n"
                "Install it with: pip install 'coview[browser]' && playwright install chromium",
                err=True,
            )
            return

        await host.open(url)
        relay = Relay(host, config)

        def on_status(kind: str, data: dict[str, object]) -> None:
            if kind == "VIEWER_COUNT_UPDATE":
                click.echo(f"  Viewers: {data.get('count')}")
            elif data.get("status") == "disconnected" and relay is not None and relay.state == RelayState.IDLE:
                shutdown_event.set()

        relay.on_status(on_status)
        try:
            await relay.start(room_code, config.server_url)
        except RelayError as e:
            click.echo(click.style("Error: ", fg="red", bold=True) + str(e), err=True)
            return

        click.echo(click.style("Sharing. ", fg="green", bold=True) + "Press Ctrl+C to stop.")
        await shutdown_event.wait()

    async def cleanup() -> None:
        if relay is not None:
            await relay.stop()
        await host.stop()

    _run(run, cleanup)
    click.echo("Sharing stopped.")


@cli.command()
@click.option("--room", envvar="COVIEW_ROOM_CODE", default=None, help="Room code to view")
@click.option(
    "--server",
    envvar="COVIEW_SERVER_URL",
    default=None,
    help="CoView server URL (overrides config file)",
)
@click.option(
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the mirrored page to this file on exit",
)
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, path_type=Path),
    help="Path to config file",
)
def view(room: str | None, server: str | None, output: Path | None, config_file: Path | None) -> None:
    """Join a room as a viewer and mirror the shared page locally."""
    config = _apply_overrides(load_config(config_file), room, server)
    room_code = _require_room(config, "view")
    client = ViewerClient(config)

    async def run(shutdown_event: asyncio.Event) -> None:
        try:
            await client.join(room_code, config.server_url)
        except ViewerError as e:
            click.echo(click.style("Error: ", fg="red", bold=True) + str(e), err=True)
            return
        click.echo(click.style("Viewing ", fg="green", bold=True) + f"room {room_code}. Press Ctrl+C to stop.")
        await shutdown_event.wait()

    async def cleanup() -> None:
        if output is not None:
            try:
                client.write_snapshot(output)
                click.echo(f"Mirrored page written to {output}")
            except OSError as e:
                click.echo(click.style("Error: ", fg="red") + f"Could not write {output}: {e}", err=True)
        await client.leave()

    _run(run, cleanup)


@cli.command()
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, path_type=Path),
    help="Path to config file",
)
def status(config_file: Path | None) -> None:
    """Show the last remembered sharing session."""
    config = load_config(config_file)
    state = SessionStateStore(config.state_file).load()

    click.echo(click.style("Session", fg="cyan", bold=True))
    click.echo(f"  File: {config.state_file}")
    sharing = click.style("yes", fg="green") if state.is_sharing else click.style("no", fg="yellow")
    click.echo(f"  Sharing: {sharing}")
    click.echo(f"  Room: {state.room_code or '(none)'}")
    click.echo(f"  Server: {state.server_url or '(none)'}")


@cli.command()
def version() -> None:
    """Show version information."""
    click.echo(f"coview v{__version__}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
