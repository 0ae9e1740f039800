"""
Configuration loading and persistence utilities.

Design goals:
    - Deterministic loading & fallback
    - Strict schema validation
    - Stable persistence format (camelCase on disk, snake_case in memory)
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from clawrelay.config.schema import Config
from clawrelay.errors import ConfigError
from clawrelay.utils.helpers import RUNTIME_PATHS


# =============================
# Paths
# =============================

def get_config_path() -> Path:
    """
    Return default configuration file path.

    Default:
        ~/.clawrelay/config.json
    """
    return RUNTIME_PATHS.config_file


# =============================
# Load & Save
# =============================

def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from disk or fallback to defaults.

    Flow:
        1. Read raw JSON
        2. camelCase → snake_case
        3. Pydantic validation

    Raises:
        ConfigError: file exists but is not valid JSON or fails validation.
    """
    path = config_path or get_config_path()

    if not path.exists():
        logger.debug("Config file not found, using defaults | path={}", path)
        return Config()

    try:
        with path.open("r", encoding="utf-8") as f:
            raw = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in config {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid config {path}: top level must be an object")

    normalized = convert_keys(raw)

    try:
        config = Config(**normalized)
    except ValidationError as e:
        raise ConfigError(f"Invalid config {path}: {e}") from e

    logger.debug("Config loaded | path={}", path)
    return config


def save_config(config: Config, config_path: Path | None = None) -> Path:
    """
    Persist configuration to disk.

    Behavior:
        - snake_case → camelCase
        - Pretty JSON formatting
        - Atomic overwrite
    """
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = convert_to_camel(config.model_dump())
    tmp = path.with_suffix(".tmp")

    with tmp.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    tmp.replace(path)

    logger.success("Config saved | path={}", path)
    return path


# =============================
# Key Conversion
# =============================

def convert_keys(data: Any) -> Any:
    """
    Convert camelCase → snake_case recursively.
    """
    if isinstance(data, dict):
        return {camel_to_snake(k): convert_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_keys(x) for x in data]
    return data


def convert_to_camel(data: Any) -> Any:
    """
    Convert snake_case → camelCase recursively.
    """
    if isinstance(data, dict):
        return {snake_to_camel(k): convert_to_camel(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_to_camel(x) for x in data]
    return data


# =============================
# Naming helpers
# =============================

def camel_to_snake(name: str) -> str:
    """
    Convert camelCase → snake_case.

    Example:
        allowFrom → allow_from
    """
    buf = []
    for i, ch in enumerate(name):
        if ch.isupper() and i > 0:
            buf.append("_")
        buf.append(ch.lower())
    return "".join(buf)


def snake_to_camel(name: str) -> str:
    """
    Convert snake_case → camelCase.

    Example:
        allow_from → allowFrom
    """
    head, *tail = name.split("_")
    return head + "".join(w.capitalize() for w in tail)
