"""
Timeout-bound external command execution.

The child inherits the controlling terminal's stdin so interactive
sub-tools that expect a live input stream do not hang; stdout and stderr
are captured in memory.
"""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass
from typing import Optional, Sequence

from loguru import logger


@dataclass(slots=True)
class CommandResult:
    """Outcome of one command invocation."""

    stdout: str
    stderr: str
    exit_code: Optional[int]
    signal: Optional[str]
    killed: bool

    @property
    def ok(self) -> bool:
        return not self.killed and self.exit_code == 0

    @property
    def timed_out(self) -> bool:
        return self.killed and self.signal is None


def _signal_name(returncode: int) -> str:
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return f"SIG{-returncode}"


async def run_command(argv: Sequence[str], timeout_ms: int) -> CommandResult:
    """
    Run ``argv`` and collect its output.

    On timeout the process is force-killed (SIGKILL); the result then has
    ``killed=True`` and no exit code or signal. If the caller is cancelled
    the process is killed before the cancellation propagates.
    """
    if not argv:
        raise ValueError("argv must not be empty")

    process = await asyncio.create_subprocess_exec(
        *argv,
        stdin=None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    try:
        stdout, stderr = await asyncio.wait_for(
            process.communicate(),
            timeout=timeout_ms / 1000,
        )
    except asyncio.TimeoutError:
        logger.warning("Command timed out after {}ms, killing | {}", timeout_ms, argv[0])
        process.kill()
        await process.wait()
        return CommandResult(stdout="", stderr="", exit_code=None, signal=None, killed=True)
    except BaseException:
        # Cancelled (or failed) while waiting: the child must not outlive us
        if process.returncode is None:
            logger.warning("Command interrupted, killing | {}", argv[0])
            process.kill()
            await process.wait()
        raise

    returncode = process.returncode
    exit_code: Optional[int] = returncode
    sig: Optional[str] = None
    if returncode is not None and returncode < 0:
        exit_code = None
        sig = _signal_name(returncode)

    return CommandResult(
        stdout=(stdout or b"").decode("utf-8", errors="replace"),
        stderr=(stderr or b"").decode("utf-8", errors="replace"),
        exit_code=exit_code,
        signal=sig,
        killed=False,
    )
