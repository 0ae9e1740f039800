"""Tests for timeout-bound command execution."""

from __future__ import annotations

import asyncio
import os
import sys

import pytest

from clawrelay.reply.command import CommandResult, run_command


async def test_captures_stdout():
    result = await run_command([sys.executable, "-c", "print('hello')"], timeout_ms=10_000)

    assert result.ok
    assert result.stdout.strip() == "hello"
    assert result.exit_code == 0
    assert result.signal is None
    assert result.killed is False


async def test_non_zero_exit_code_and_stderr():
    result = await run_command(
        [sys.executable, "-c", "import sys; sys.stderr.write('boom'); sys.exit(3)"],
        timeout_ms=10_000,
    )

    assert not result.ok
    assert result.exit_code == 3
    assert result.stderr == "boom"


async def test_timeout_kills_process():
    result = await run_command(
        [sys.executable, "-c", "import time; time.sleep(30)"],
        timeout_ms=200,
    )

    assert result.killed is True
    assert result.timed_out is True
    assert result.exit_code is None
    assert result.signal is None


async def test_signal_termination_reports_signal_name():
    result = await run_command(
        [sys.executable, "-c", "import os, signal; os.kill(os.getpid(), signal.SIGTERM)"],
        timeout_ms=10_000,
    )

    assert result.exit_code is None
    assert result.signal == "SIGTERM"
    assert result.killed is False
    assert not result.timed_out


async def test_empty_argv_rejected():
    with pytest.raises(ValueError):
        await run_command([], timeout_ms=1000)


def test_result_ok_requires_zero_exit():
    assert CommandResult("", "", 0, None, False).ok
    assert not CommandResult("", "", 1, None, False).ok
    assert not CommandResult("", "", None, None, True).ok


async def test_cancellation_kills_child(tmp_path):
    pid_file = tmp_path / "pid"
    script = (
        "import os, pathlib, sys, time; "
        "pathlib.Path(sys.argv[1]).write_text(str(os.getpid())); "
        "time.sleep(30)"
    )
    task = asyncio.create_task(
        run_command([sys.executable, "-c", script, str(pid_file)], timeout_ms=60_000)
    )

    for _ in range(500):
        if pid_file.exists() and pid_file.read_text():
            break
        await asyncio.sleep(0.01)
    pid = int(pid_file.read_text())

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)
