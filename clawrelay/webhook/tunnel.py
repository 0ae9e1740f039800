"""
Tunnel / ingress collaborators used by webhook bring-up.
"""

from __future__ import annotations

import asyncio
import json
import shutil
from typing import Protocol, Sequence, runtime_checkable

from loguru import logger

from clawrelay.errors import ConfigError, ProviderError

DEFAULT_EXEC_TIMEOUT = 15.0


@runtime_checkable
class TunnelProvider(Protocol):
    """Tunnel provider contract: resolve the public hostname."""

    name: str

    async def resolve_public_hostname(self) -> str: ...


async def run_exec(argv: Sequence[str], timeout: float = DEFAULT_EXEC_TIMEOUT) -> str:
    """
    Run a short helper command and return stdout.

    Raises:
        ProviderError: non-zero exit or timeout.
    """
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise ProviderError(f"{argv[0]} timed out after {timeout}s") from None

    if process.returncode != 0:
        raise ProviderError(
            f"{' '.join(argv)} exited with {process.returncode}: "
            f"{stderr.decode('utf-8', errors='replace').strip()}"
        )
    return stdout.decode("utf-8", errors="replace")


class TailscaleTunnel:
    """Tailscale Funnel ingress: hostname from ``tailscale status --json``."""

    name = "tailscale"

    def __init__(self, binary: str = "tailscale"):
        self.binary = binary

    def ensure_available(self) -> None:
        if shutil.which(self.binary) is None:
            raise ConfigError(f"Missing required binary: {self.binary}. Please install it.")

    async def enable_funnel(self, port: int) -> None:
        logger.info("Enabling Tailscale Funnel on port {}", port)
        out = await run_exec([self.binary, "funnel", "--yes", "--bg", str(port)])
        if out.strip():
            logger.info(out.strip())

    async def resolve_public_hostname(self) -> str:
        out = await run_exec([self.binary, "status", "--json"])
        return parse_tailscale_status(out)


def parse_tailscale_status(raw: str) -> str:
    """
    Derive the tailnet hostname (or first IP) from status JSON.

    Raises:
        ProviderError: neither DNS name nor IP present.
    """
    try:
        parsed = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError as e:
        raise ProviderError(f"Invalid tailscale status JSON: {e}") from e

    me = parsed.get("Self") if isinstance(parsed, dict) else None
    me = me if isinstance(me, dict) else {}

    dns = me.get("DNSName")
    if isinstance(dns, str) and dns:
        return dns.rstrip(".")

    ips = me.get("TailscaleIPs")
    if isinstance(ips, list) and ips:
        return str(ips[0])

    raise ProviderError("Could not determine Tailscale DNS or IP")
