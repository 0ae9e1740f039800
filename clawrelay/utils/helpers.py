"""
Runtime utility helpers.

Design principles:
- Centralized path management
- Pure functional utilities
- Predictable IO boundaries
"""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Final, Optional, TypeVar

from loguru import logger

T = TypeVar("T")


# ===========================
# Path System
# ===========================

@dataclass(frozen=True, slots=True)
class RuntimePaths:
    """
    Centralized runtime path manager.

    Directories are created lazily by the components that write into them.
    """

    root: Path

    @classmethod
    def default(cls) -> "RuntimePaths":
        return cls(root=Path.home() / ".clawrelay")

    @property
    def config_file(self) -> Path:
        return self.root / "config.json"

    @property
    def sessions_file(self) -> Path:
        return self.root / "sessions.json"

    @property
    def logs(self) -> Path:
        return self.root / "logs"


RUNTIME_PATHS: Final[RuntimePaths] = RuntimePaths.default()


# ===========================
# Clock Utilities
# ===========================

def now_ms() -> int:
    """Return current unix time in milliseconds."""
    return int(time.time() * 1000)


def format_duration(ms: float) -> str:
    return f"{ms / 1000:.2f}s" if ms >= 1000 else f"{int(ms)}ms"


# ===========================
# String Utilities
# ===========================

_NON_E164 = re.compile(r"[^\d+]")


def truncate(s: str, max_len: int = 120, suffix: str = "...") -> str:
    """Truncate a string with suffix."""
    if len(s) <= max_len:
        return s
    return s[: max_len - len(suffix)] + suffix


def normalize_e164(number: str) -> str:
    """
    Normalize a phone address to E.164.

    Example:
        whatsapp:+1 (555) 010-0000 → +15550100000
    """
    without_prefix = number.strip()
    if without_prefix.startswith("whatsapp:"):
        without_prefix = without_prefix[len("whatsapp:"):]
    digits = _NON_E164.sub("", without_prefix.strip())
    if not digits:
        return ""
    if digits.startswith("+"):
        return "+" + digits[1:].replace("+", "")
    return "+" + digits.replace("+", "")


def jid_to_e164(jid: str) -> str:
    """Convert a WhatsApp JID (<phone>@s.whatsapp.net) to E.164."""
    local = jid.split("@", 1)[0].split(":", 1)[0]
    return normalize_e164(local)


def e164_to_jid(number: str) -> str:
    """Convert an E.164 number to a WhatsApp user JID."""
    if "@" in number:
        return number
    return f"{normalize_e164(number).lstrip('+')}@s.whatsapp.net"


def with_whatsapp_prefix(number: str) -> str:
    return number if number.startswith("whatsapp:") else f"whatsapp:{number}"


# ===========================
# Async Helpers
# ===========================

async def retry_async(
    fn: Callable[[], Awaitable[T]],
    attempts: int = 3,
    delay_s: float = 0.3,
    retry_if: Optional[Callable[[Exception], bool]] = None,
) -> T:
    """
    Run an async callable, retrying the whole call on failure.

    Raises the last error once attempts are exhausted, or immediately when
    ``retry_if`` rejects the error.
    """
    last_exc: Optional[Exception] = None

    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except Exception as e:
            last_exc = e
            if retry_if is not None and not retry_if(e):
                raise
            if attempt < attempts:
                logger.warning(
                    "Attempt {}/{} failed: {} | retrying in {}s",
                    attempt,
                    attempts,
                    e,
                    delay_s,
                )
                await asyncio.sleep(delay_s)

    assert last_exc is not None
    raise last_exc


async def sleep_or_stop(seconds: float, stop_event: Optional[asyncio.Event]) -> bool:
    """
    Sleep for ``seconds`` unless the stop event fires first.

    Returns True if stopped.
    """
    if stop_event is None:
        await asyncio.sleep(seconds)
        return False

    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        return True
    except asyncio.TimeoutError:
        return False

