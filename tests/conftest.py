"""Shared test fixtures for ClawRelay."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from clawrelay.bus.events import InboundMessage
from clawrelay.config.schema import Config, InboundConfig, ReplyConfig, SessionConfig
from clawrelay.media.store import MediaPayload

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, importable by test files)
# ---------------------------------------------------------------------------

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_message(
    id: str = "SM1",
    body: str = "hi",
    from_: str = "+1555",
    to: str = "+1999",
    offset_s: float = 0,
) -> InboundMessage:
    return InboundMessage(
        id=id,
        from_=from_,
        to=to,
        body=body,
        created_at=BASE_TIME + timedelta(seconds=offset_s),
    )


def make_config(
    allow_from: Optional[list[str]] = None,
    **reply_fields,
) -> Config:
    reply = ReplyConfig(**reply_fields) if reply_fields else None
    return Config(inbound=InboundConfig(allow_from=allow_from or [], reply=reply))


class FakeSender:
    """Records outbound calls instead of talking to a transport."""

    def __init__(self, fail_media: bool = False):
        self.texts: list[tuple[str, str]] = []
        self.media: list[tuple[str, str, Optional[str]]] = []
        self.typing: list[str] = []
        self.fail_media = fail_media

    async def send_text(self, to: str, text: str) -> None:
        self.texts.append((to, text))

    async def send_media(
        self,
        to: str,
        media: MediaPayload,
        source: str,
        caption: Optional[str] = None,
    ) -> None:
        if self.fail_media:
            raise RuntimeError("media rejected")
        self.media.append((to, source, caption))

    async def send_typing(self, to: str) -> None:
        self.typing.append(to)


@pytest.fixture
def sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def session_config(tmp_path) -> SessionConfig:
    return SessionConfig(store=str(tmp_path / "sessions.json"), reset_triggers=["/new"], idle_minutes=60)
