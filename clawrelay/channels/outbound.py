"""
Outbound delivery of resolved replies.

Media items are loaded through the media store and sent one by one, with
the reply text as caption on the first. If the first media item fails,
the text is still delivered on its own.
"""

from __future__ import annotations

import time
from typing import Optional, Protocol, runtime_checkable

from loguru import logger

from clawrelay.bus.events import InboundMessage, ReplyResult
from clawrelay.media.store import MediaPayload, load_media
from clawrelay.utils.helpers import format_duration


@runtime_checkable
class ReplySender(Protocol):
    """Transport-side delivery surface."""

    async def send_text(self, to: str, text: str) -> None: ...

    async def send_media(
        self,
        to: str,
        media: MediaPayload,
        source: str,
        caption: Optional[str] = None,
    ) -> None: ...


async def deliver_reply(
    sender: ReplySender,
    message: InboundMessage,
    reply: ReplyResult,
    max_media_bytes: int,
) -> None:
    """
    Send ``reply`` back to the author of ``message``.

    Text-only send failures propagate to the caller.
    """
    started = time.monotonic()
    to = message.from_

    if not reply.media_urls:
        if reply.text:
            await sender.send_text(to, reply.text)
        _log_sent(to, reply, False, started)
        return

    logger.debug("Auto-reply media detected: {}", ", ".join(reply.media_urls))

    for index, source in enumerate(reply.media_urls):
        caption = reply.text if index == 0 else None
        try:
            media = await load_media(source, max_media_bytes)
            await sender.send_media(to, media, source, caption)
            logger.info(
                "Sent media reply to {} ({:.2f}MB, {})",
                to,
                len(media.buffer) / (1024 * 1024),
                media.kind,
            )
        except Exception as e:
            logger.error("Failed sending media to {}: {}", to, e)
            if index == 0 and reply.text:
                logger.warning("Media skipped; sending text-only to {}", to)
                await sender.send_text(to, reply.text)

    _log_sent(to, reply, True, started)


def _log_sent(to: str, reply: ReplyResult, has_media: bool, started: float) -> None:
    logger.success(
        "Auto-replied to {} ({} chars{}, {})",
        to,
        len(reply.text or ""),
        ", media" if has_media else "",
        format_duration((time.monotonic() - started) * 1000),
    )
