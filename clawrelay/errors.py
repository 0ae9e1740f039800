"""
Error taxonomy for ClawRelay.

Fatal:
    - ConfigError, PortInUseError, PortBindError, WebhookVerificationError
    - SessionLoggedOutError (fatal to the push ingestor only)

Degraded (logged, item skipped):
    - ProviderError, MediaTooLargeError
"""

from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    """Base class for all relay errors."""

    #: Operator-facing remedy printed by the CLI before exit
    hint: Optional[str] = None


# =============================
# Startup / configuration
# =============================

class ConfigError(RelayError):
    """Missing credentials or malformed reply configuration."""

    hint = "Edit ~/.clawrelay/config.json or set CLAWRELAY_* environment variables."


# =============================
# Resource conflicts
# =============================

class PortBindError(RelayError):
    """Local port could not be bound for a reason other than a conflict."""

    def __init__(self, port: int, reason: str):
        super().__init__(f"Failed to bind port {port}: {reason}")
        self.port = port
        self.reason = reason


class PortInUseError(PortBindError):
    """Another listener already holds the local port."""

    hint = "Stop the process using the port or pass --port <free-port>."

    def __init__(self, port: int, details: Optional[str] = None):
        RelayError.__init__(self, f"Port {port} is already in use.")
        self.port = port
        self.reason = "address in use"
        self.details = details


# =============================
# Remote provider
# =============================

class ProviderError(RelayError):
    """Transient failure talking to the remote messaging provider."""


class WebhookVerificationError(RelayError):
    """No callback strategy could be verified by read-back."""

    hint = "Check the provider console; you can fall back to polling with `clawrelay relay --provider poll`."

    def __init__(self, url: str, failures: list[tuple[str, str]]):
        summary = "; ".join(f"{name}: {reason}" for name, reason in failures)
        super().__init__(f"Could not set inbound callback to {url} ({summary})")
        self.url = url
        self.failures = failures


# =============================
# Push transport
# =============================

class SessionLoggedOutError(RelayError):
    """Remote push session was invalidated; requires re-authentication."""

    hint = "Re-link the bridge session (scan the QR code again), then restart the relay."


# =============================
# Media
# =============================

class MediaTooLargeError(RelayError):
    """Media payload exceeds the configured maximum size."""

    def __init__(self, size: int, max_bytes: int):
        super().__init__(f"Media exceeds {max_bytes // (1024 * 1024)}MB limit ({size} bytes)")
        self.size = size
        self.max_bytes = max_bytes
