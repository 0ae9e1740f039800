"""
Conversation session store.

Design principles:
- SessionEntry = pure data object
- SessionStore = IO + resolution
- Single JSON mapping file, atomic persistence
- Write on every message so the idle clock stays accurate
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger

from clawrelay.config.schema import SessionConfig, SessionScope
from clawrelay.utils.helpers import normalize_e164, now_ms


# ===========================
# Data objects
# ===========================

@dataclass(slots=True)
class SessionEntry:
    """Stored identity of one conversation."""

    session_id: str
    updated_at: int

    def to_json(self) -> dict:
        return {"sessionId": self.session_id, "updatedAt": self.updated_at}

    @classmethod
    def from_json(cls, data: dict) -> "SessionEntry":
        return cls(session_id=str(data["sessionId"]), updated_at=int(data["updatedAt"]))


@dataclass(slots=True)
class SessionResolution:
    """Outcome of resolving the session for one inbound message."""

    key: str
    session_id: str
    is_new_session: bool
    body_stripped: str


# ===========================
# File IO
# ===========================

def load_store(path: Path) -> dict[str, SessionEntry]:
    """
    Load the session mapping.

    A missing or corrupt file is treated as an empty mapping.
    """
    if not path.exists():
        return {}

    try:
        with path.open("r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Session store unreadable, starting fresh | path={} err={}", path, e)
        return {}

    if not isinstance(raw, dict):
        logger.warning("Session store is not a mapping, starting fresh | path={}", path)
        return {}

    store: dict[str, SessionEntry] = {}
    for key, value in raw.items():
        try:
            store[key] = SessionEntry.from_json(value)
        except (KeyError, TypeError, ValueError):
            logger.debug("Skipping malformed session entry | key={}", key)
    return store


def save_store(path: Path, store: dict[str, SessionEntry]) -> None:
    """Persist the session mapping atomically, creating parent dirs."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")

    with tmp.open("w", encoding="utf-8") as f:
        json.dump({k: v.to_json() for k, v in store.items()}, f, indent=2)

    tmp.replace(path)


def derive_key(scope: SessionScope, sender: Optional[str]) -> str:
    """
    Session key for a message.

    Global scope shares one session; otherwise one per normalized sender.
    """
    if scope == "global":
        return "global"
    normalized = normalize_e164(sender) if sender else ""
    return normalized or "unknown"


def match_reset_trigger(body: str, triggers: list[str]) -> Optional[str]:
    """
    Return the post-trigger remainder if ``body`` starts a new session.

    Exact match yields ``""``; no match yields ``None``.
    """
    for trigger in triggers:
        if not trigger:
            continue
        if body == trigger:
            return ""
        if body.startswith(trigger + " "):
            return body[len(trigger) + 1:]
    return None


# ===========================
# Session Store
# ===========================

class SessionStore:
    """
    Session resolution over a persisted key → entry mapping.

    The file is re-read on every resolution; callers serialize access
    through the single-flight queue.
    """

    def __init__(self, config: SessionConfig):
        self.config = config

    @property
    def path(self) -> Path:
        return self.config.store_path

    def resolve(
        self,
        body: str,
        sender: Optional[str],
        now: Optional[int] = None,
    ) -> SessionResolution:
        now = now_ms() if now is None else now

        remainder = match_reset_trigger(body, self.config.reset_triggers)
        reset = remainder is not None
        body_stripped = remainder if reset else body

        key = derive_key(self.config.scope, sender)
        store = load_store(self.path)
        entry = store.get(key)

        idle_ms = self.config.idle_minutes * 60_000
        fresh = entry is not None and now - entry.updated_at <= idle_ms

        if not reset and fresh:
            session_id = entry.session_id
            is_new = False
        else:
            session_id = str(uuid.uuid4())
            is_new = True

        store[key] = SessionEntry(session_id=session_id, updated_at=now)
        save_store(self.path, store)

        logger.debug(
            "Session resolved | key={} id={} new={} reset={}",
            key,
            session_id,
            is_new,
            reset,
        )

        return SessionResolution(
            key=key,
            session_id=session_id,
            is_new_session=is_new,
            body_stripped=body_stripped,
        )
