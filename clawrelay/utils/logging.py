"""
Logging setup.

Console sink on stderr plus a rotating file sink. Verbose mode forces DEBUG.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from clawrelay.utils.helpers import RUNTIME_PATHS

ALLOWED_LEVELS = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")

DEFAULT_LOG_FILE = RUNTIME_PATHS.logs / "clawrelay.log"


def normalize_level(level: Optional[str], verbose: bool = False) -> str:
    if verbose:
        return "DEBUG"
    candidate = (level or "INFO").upper()
    if candidate == "WARN":
        candidate = "WARNING"
    return candidate if candidate in ALLOWED_LEVELS else "INFO"


def setup_logging(
    level: Optional[str] = None,
    file: Optional[str] = None,
    verbose: bool = False,
) -> Path:
    """
    Reconfigure loguru sinks.

    Returns:
        Path of the file sink.
    """
    resolved = normalize_level(level, verbose)
    log_file = Path(file).expanduser() if file else DEFAULT_LOG_FILE
    log_file.parent.mkdir(parents=True, exist_ok=True)

    logger.remove()
    logger.add(sys.stderr, level=resolved, colorize=True)
    logger.add(
        log_file,
        level=resolved,
        rotation="10 MB",
        retention=5,
        enqueue=True,
        encoding="utf-8",
    )

    logger.debug("Logging configured | level={} file={}", resolved, log_file)
    return log_file
