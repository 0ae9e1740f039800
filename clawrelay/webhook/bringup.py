"""
One-shot webhook bring-up.

Sequence (whole sequence retried on transient failure):
    1. port preflight (bind + release)
    2. start local endpoint
    3. resolve public hostname via tunnel
    4. callback strategies in order, each write → read-back verify
"""

from __future__ import annotations

import errno
import socket
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

from aiohttp import web
from loguru import logger

from clawrelay.channels.twilio import TwilioClient
from clawrelay.config.schema import WebhookConfig
from clawrelay.errors import (
    ConfigError,
    PortBindError,
    PortInUseError,
    ProviderError,
    WebhookVerificationError,
)
from clawrelay.utils.helpers import retry_async
from clawrelay.webhook.tunnel import TunnelProvider, run_exec


# ============================================================
# Port preflight
# ============================================================

async def describe_port_owner(port: int) -> Optional[str]:
    """Best-effort listener details for ``port`` (lsof, macOS/Linux)."""
    try:
        out = await run_exec(["lsof", "-i", f"tcp:{port}", "-sTCP:LISTEN", "-nP"])
    except (OSError, ProviderError) as e:
        logger.debug("lsof unavailable: {}", e)
        return None
    return out.strip() or None


def try_bind(port: int, host: str = "0.0.0.0") -> None:
    """
    Bind and immediately release ``host:port``.

    Raises:
        OSError: the bind failed.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        # No SO_REUSEADDR: on BSD it lets a wildcard bind shadow a specific listener
        sock.bind((host, port))
        sock.listen(1)
    finally:
        sock.close()


async def ensure_port_available(port: int, host: str = "0.0.0.0") -> None:
    """
    Detect port conflicts before starting the endpoint.

    Raises:
        PortInUseError: another listener holds the port.
        PortBindError: any other bind failure.
    """
    try:
        try_bind(port, host)
    except OSError as e:
        if e.errno == errno.EADDRINUSE:
            raise PortInUseError(port, await describe_port_owner(port)) from e
        raise PortBindError(port, e.strerror or str(e)) from e


# ============================================================
# Callback strategies
# ============================================================

@dataclass(slots=True)
class CallbackStrategy:
    """One way of pointing the provider's inbound callback at a URL."""

    name: str
    write: Callable[[str, str], Awaitable[None]]
    read: Callable[[], Awaitable[Optional[str]]]


async def apply_callback_strategies(
    strategies: Sequence[CallbackStrategy],
    url: str,
    method: str = "POST",
) -> str:
    """
    Try each strategy until one verifies by read-back.

    Returns:
        Name of the verified strategy.

    Raises:
        WebhookVerificationError: every strategy failed or mismatched.
    """
    failures: list[tuple[str, str]] = []

    for strategy in strategies:
        try:
            await strategy.write(url, method)
            actual = await strategy.read()
        except Exception as e:
            logger.warning("Callback strategy {} failed: {}", strategy.name, e)
            failures.append((strategy.name, str(e)))
            continue

        if actual == url:
            logger.success("Inbound callback set via {} → {}", strategy.name, url)
            return strategy.name

        logger.warning(
            "Callback strategy {} read-back mismatch | expected={} got={}",
            strategy.name,
            url,
            actual,
        )
        failures.append((strategy.name, f"read-back mismatch (got {actual!r})"))

    raise WebhookVerificationError(url, failures)


def twilio_callback_strategies(client: TwilioClient) -> list[CallbackStrategy]:
    """
    Twilio fallback chain: WhatsApp sender → messaging service → incoming number.

    Resource sids are discovered on first write and reused for read-back.
    """
    sids: dict[str, str] = {}

    def strategy(
        name: str,
        find: Callable[[], Awaitable[str]],
        write: Callable[[str, str, str], Awaitable[None]],
        read: Callable[[str], Awaitable[Optional[str]]],
    ) -> CallbackStrategy:
        async def _write(url: str, method: str) -> None:
            sids[name] = await find()
            await write(sids[name], url, method)

        async def _read() -> Optional[str]:
            return await read(sids[name])

        return CallbackStrategy(name=name, write=_write, read=_read)

    return [
        strategy(
            "sender",
            client.find_whatsapp_sender_sid,
            client.set_sender_webhook,
            client.fetch_sender_webhook,
        ),
        strategy(
            "messaging-service",
            client.find_messaging_service_sid,
            client.set_messaging_service_webhook,
            client.fetch_messaging_service_webhook,
        ),
        strategy(
            "incoming-number",
            client.find_incoming_number_sid,
            client.set_incoming_number_webhook,
            client.fetch_incoming_number_webhook,
        ),
    ]


# ============================================================
# Bring-up
# ============================================================

@dataclass(slots=True)
class BringupResult:
    runner: web.AppRunner
    public_url: str
    strategy: str


def _is_retryable(exc: Exception) -> bool:
    return not isinstance(exc, (PortBindError, ConfigError))


class WebhookBringup:
    """
    Makes the local endpoint reachable and registers it with the provider.

    Not a loop: ``run`` completes once the callback is verified, or raises.
    """

    def __init__(
        self,
        config: WebhookConfig,
        start_endpoint: Callable[[], Awaitable[web.AppRunner]],
        tunnel: TunnelProvider,
        strategies: Sequence[CallbackStrategy],
        method: str = "POST",
    ):
        self.config = config
        self.start_endpoint = start_endpoint
        self.tunnel = tunnel
        self.strategies = strategies
        self.method = method
        self.attempts = 0

    async def run(self) -> BringupResult:
        return await retry_async(
            self._attempt,
            attempts=max(self.config.retries, 1),
            delay_s=self.config.retry_delay_seconds,
            retry_if=_is_retryable,
        )

    async def _attempt(self) -> BringupResult:
        self.attempts += 1
        port = self.config.port

        await ensure_port_available(port, self.config.host)
        runner = await self.start_endpoint()

        try:
            hostname = await self.tunnel.resolve_public_hostname()
            public_url = f"https://{hostname}{self.config.path}"
            logger.info("Public webhook URL (via {}): {}", self.tunnel.name, public_url)

            strategy = await apply_callback_strategies(self.strategies, public_url, self.method)
        except BaseException:
            await runner.cleanup()
            raise

        return BringupResult(runner=runner, public_url=public_url, strategy=strategy)
