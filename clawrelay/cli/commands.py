"""
ClawRelay CLI

Commands:
- onboard   write a starter config
- relay     run an ingestor (poll or web push)
- webhook   run the local webhook endpoint only
- up        full webhook bring-up (tunnel + provider callback)
- send      send a one-off message
- status    show configuration and session state
"""

from __future__ import annotations

import asyncio
import signal
from typing import Awaitable, Callable, Final, Optional

import typer
from rich.console import Console
from rich.table import Table

from clawrelay import __logo__, __version__
from clawrelay.errors import PortInUseError, RelayError


# ============================================================================
# CLI App
# ============================================================================

APP_NAME: Final[str] = "clawrelay"

app = typer.Typer(
    name=APP_NAME,
    help=f"{__logo__} ClawRelay - messaging auto-reply relay",
    no_args_is_help=True,
)

console = Console()


# ============================================================================
# Helpers
# ============================================================================

def _fail(context: str, err: Exception) -> None:
    """Print an actionable fatal message and exit 1."""
    console.print(f"[red]{context} failed: {err}[/red]")

    if isinstance(err, PortInUseError) and err.details:
        console.print("[cyan]Port listener details:[/cyan]")
        console.print(err.details)
        if "clawrelay" in err.details:
            console.print(
                "[yellow]It looks like another clawrelay instance is already running. "
                "Stop it or pick a different port.[/yellow]"
            )

    hint = getattr(err, "hint", None)
    if hint:
        console.print(f"[cyan]{hint}[/cyan]")

    raise typer.Exit(1)


def _load(verbose: bool):
    from clawrelay.config.loader import load_config
    from clawrelay.utils.logging import setup_logging

    config = load_config()
    setup_logging(config.logging.level, config.logging.file, verbose)
    return config


def _validate_port(port: int) -> None:
    if port <= 0 or port >= 65536:
        raise typer.BadParameter("Port must be between 1 and 65535")


def _build_dispatcher(config):
    from clawrelay.bus.queue import SingleFlightQueue
    from clawrelay.channels.base import ReplyDispatcher
    from clawrelay.config.loader import load_config
    from clawrelay.media.store import DEFAULT_MAX_MEDIA_BYTES
    from clawrelay.reply.resolver import ReplyResolver

    if config.reply is None:
        console.print("[yellow]No inbound.reply configured; messages will be logged only.[/yellow]")

    max_bytes = config.reply.max_media_bytes if config.reply else DEFAULT_MAX_MEDIA_BYTES
    return ReplyDispatcher(SingleFlightQueue(), ReplyResolver(load_config), max_bytes)


def _run_until_signal(main: Callable[[asyncio.Event], Awaitable[None]]) -> None:
    """Run ``main`` with a stop event wired to SIGINT/SIGTERM."""

    async def runner() -> None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                pass
        await main(stop)

    asyncio.run(runner())


# ============================================================================
# Version
# ============================================================================

def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} clawrelay v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-V", callback=version_callback, is_eager=True
    ),
):
    """ClawRelay - messaging auto-reply relay."""
    pass


# ============================================================================
# Onboard
# ============================================================================

@app.command()
def onboard():
    """Write a starter configuration."""
    from clawrelay.config.loader import get_config_path, save_config
    from clawrelay.config.schema import Config, InboundConfig, ReplyConfig

    config_path = get_config_path()

    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    config = Config(
        inbound=InboundConfig(reply=ReplyConfig(mode="text", text="Got it: {{Body}}")),
    )
    save_config(config, config_path)

    console.print(f"[green]✓[/green] Created config at {config_path}")
    console.print("\nNext steps:")
    console.print("  1. Set [cyan]inbound.allowFrom[/cyan] and [cyan]inbound.reply[/cyan]")
    console.print("  2. Relay: [cyan]clawrelay relay --provider web[/cyan]")


# ============================================================================
# Relay
# ============================================================================

@app.command()
def relay(
    provider: str = typer.Option("web", "--provider", "-p", help="poll | web"),
    interval: Optional[float] = typer.Option(None, "--interval", "-i", help="Poll interval (s)"),
    lookback: Optional[int] = typer.Option(None, "--lookback", "-l", help="Initial lookback (min)"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Relay inbound messages to the auto-reply engine."""
    from clawrelay.channels.poll import PollIngestor
    from clawrelay.channels.push import PushIngestor
    from clawrelay.channels.twilio import TwilioClient
    from clawrelay.channels.whatsapp import BridgeTransport

    if provider not in ("poll", "web"):
        raise typer.BadParameter("provider must be 'poll' or 'web'")

    try:
        config = _load(verbose)
        dispatcher = _build_dispatcher(config)

        if provider == "poll":
            client = TwilioClient(config.twilio)
            ingestor = PollIngestor(
                client,
                dispatcher,
                interval_seconds=interval or config.poll.interval_seconds,
                lookback_minutes=lookback or config.poll.lookback_minutes,
                dedup_window=config.poll.dedup_window,
            )
            console.print(f"{__logo__} Provider: poll | from {config.twilio.whatsapp_from}")
        else:
            client = None
            ingestor = PushIngestor(
                BridgeTransport(config.web.bridge_url),
                dispatcher,
                reconnect_delay=config.web.reconnect_delay_seconds,
                dedup_window=config.poll.dedup_window,
            )
            console.print(f"{__logo__} Provider: web | bridge {config.web.bridge_url}")

        console.print("Leave this running; Ctrl+C to stop.")

        async def run(stop: asyncio.Event) -> None:
            try:
                await ingestor.run(stop)
                await dispatcher.wait_idle()
            finally:
                if client is not None:
                    await client.aclose()

        _run_until_signal(run)
    except RelayError as e:
        _fail("Relay", e)

    console.print("\n👋 Relay stopped")


# ============================================================================
# Webhook
# ============================================================================

@app.command()
def webhook(
    port: Optional[int] = typer.Option(None, "--port"),
    path: Optional[str] = typer.Option(None, "--path"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run the local webhook endpoint (no tunnel or provider changes)."""
    from clawrelay.channels.twilio import TwilioClient
    from clawrelay.utils.helpers import retry_async
    from clawrelay.webhook.bringup import ensure_port_available
    from clawrelay.webhook.server import create_app, start_webhook_server, wait_forever

    try:
        config = _load(verbose)
        port = port or config.webhook.port
        path = path or config.webhook.path
        _validate_port(port)

        async def run(stop: asyncio.Event) -> None:
            await ensure_port_available(port, config.webhook.host)
            if dry_run:
                console.print(f"[dry-run] would start webhook on port {port} path {path}")
                return

            client = TwilioClient(config.twilio)
            dispatcher = _build_dispatcher(config)
            runner = await retry_async(
                lambda: start_webhook_server(
                    create_app(dispatcher, client, path, config.poll.dedup_window),
                    config.webhook.host,
                    port,
                ),
                attempts=config.webhook.retries,
                delay_s=config.webhook.retry_delay_seconds,
            )
            console.print(f"{__logo__} Webhook on http://{config.webhook.host}:{port}{path}. Ctrl+C to stop.")
            try:
                await wait_forever(stop)
            finally:
                await dispatcher.wait_idle()
                await runner.cleanup()
                await client.aclose()

        _run_until_signal(run)
    except RelayError as e:
        _fail("Webhook", e)
    except OSError as e:
        _fail("Webhook", e)


# ============================================================================
# Up
# ============================================================================

@app.command()
def up(
    port: Optional[int] = typer.Option(None, "--port"),
    path: Optional[str] = typer.Option(None, "--path"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Expose the webhook via Tailscale Funnel and point the provider at it."""
    from clawrelay.channels.twilio import TwilioClient
    from clawrelay.webhook.bringup import WebhookBringup, twilio_callback_strategies
    from clawrelay.webhook.server import create_app, start_webhook_server, wait_forever
    from clawrelay.webhook.tunnel import TailscaleTunnel

    try:
        config = _load(verbose)
        webhook_cfg = config.webhook.model_copy(
            update={"port": port or config.webhook.port, "path": path or config.webhook.path}
        )
        _validate_port(webhook_cfg.port)

        tunnel = TailscaleTunnel()
        tunnel.ensure_available()

        async def run(stop: asyncio.Event) -> None:
            client = TwilioClient(config.twilio)
            dispatcher = _build_dispatcher(config)

            # aiohttp apps are single-use, so every attempt gets a fresh one
            def start_endpoint():
                app_ = create_app(dispatcher, client, webhook_cfg.path, config.poll.dedup_window)
                return start_webhook_server(app_, webhook_cfg.host, webhook_cfg.port)

            try:
                await tunnel.enable_funnel(webhook_cfg.port)
                bringup = WebhookBringup(
                    webhook_cfg,
                    start_endpoint,
                    tunnel,
                    twilio_callback_strategies(client),
                )
                result = await bringup.run()
                console.print(f"🌐 Public webhook URL: {result.public_url} (via {result.strategy})")
                console.print(
                    "\nSetup complete. Leave this process running to keep the webhook online. Ctrl+C to stop."
                )
                try:
                    await wait_forever(stop)
                finally:
                    await dispatcher.wait_idle()
                    await result.runner.cleanup()
            finally:
                await client.aclose()

        _run_until_signal(run)
    except RelayError as e:
        _fail("Webhook bring-up", e)


# ============================================================================
# Send
# ============================================================================

@app.command()
def send(
    to: str = typer.Option(..., "--to", "-t", help="Recipient E.164 number"),
    message: str = typer.Option(..., "--message", "-m"),
    media: Optional[str] = typer.Option(None, "--media", help="Public media URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Send a one-off message through the REST provider."""
    from clawrelay.channels.twilio import TwilioClient

    try:
        config = _load(verbose)

        async def run() -> str:
            client = TwilioClient(config.twilio)
            try:
                return await client.send(to, message, media_url=media)
            finally:
                await client.aclose()

        sid = asyncio.run(run())
    except RelayError as e:
        _fail("Send", e)

    console.print(f"[green]✓[/green] Sent to {to} (sid {sid})")


# ============================================================================
# Status
# ============================================================================

@app.command()
def status():
    """Show configuration and session state."""
    from clawrelay.config.loader import get_config_path
    from clawrelay.session.store import load_store

    config_path = get_config_path()
    try:
        config = _load(False)
    except RelayError as e:
        _fail("Status", e)

    console.print(f"{__logo__} ClawRelay Status\n")
    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")

    reply = config.reply
    console.print(f"Reply mode: {reply.mode if reply else '[dim]not set[/dim]'}")
    console.print(f"Allow from: {', '.join(config.allow_from) or '[dim]everyone[/dim]'}")
    console.print(f"Twilio: {'[green]✓[/green]' if not config.twilio.missing() else '[dim]not set[/dim]'}")

    if reply and reply.session:
        store = load_store(reply.session.store_path)
        table = Table(title=f"Sessions ({reply.session.store_path})")
        table.add_column("Key")
        table.add_column("Session")
        table.add_column("Updated (ms)")
        for key, entry in sorted(store.items(), key=lambda kv: -kv[1].updated_at):
            table.add_row(key, entry.session_id, str(entry.updated_at))
        console.print(table)


if __name__ == "__main__":
    app()
