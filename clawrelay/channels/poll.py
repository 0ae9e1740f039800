"""
Polling ingestor for REST messaging providers.

Loop:
    fetch(created_after=since) → sort by created_at → dedup → dispatch

Dispatch is fire-and-forget relative to the loop but serialized by the
shared single-flight queue, so creation order is preserved.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

from loguru import logger

from clawrelay.bus.dedup import DEFAULT_DEDUP_WINDOW, DedupWindow
from clawrelay.bus.events import InboundMessage
from clawrelay.channels.base import BaseIngestor, MessagingProvider, ReplyDispatcher
from clawrelay.utils.helpers import sleep_or_stop


class IngestionWatermark:
    """
    Fetch boundary plus a bounded window of already-seen message ids.

    ``since`` only moves forward. The id window evicts oldest-first once
    ``capacity`` is reached; it does not survive restarts.
    """

    def __init__(self, since: datetime, capacity: int = DEFAULT_DEDUP_WINDOW):
        self.since = since
        self.seen_ids = DedupWindow(capacity)

    def observe(self, message: InboundMessage) -> bool:
        """
        Record ``message``; return False if it was already seen.
        """
        if not self.seen_ids.add(message.id):
            return False

        if message.created_at > self.since:
            self.since = message.created_at
        return True


class PollIngestor(BaseIngestor):
    """
    Periodically lists inbound messages from a REST provider.

    Responsibilities:
        - Watermark-bounded fetches
        - Creation-order dispatch
        - Duplicate suppression across overlapping fetch windows
        - Fetch error isolation
    """

    name = "poll"

    def __init__(
        self,
        provider: MessagingProvider,
        dispatcher: ReplyDispatcher,
        interval_seconds: float = 5.0,
        lookback_minutes: float = 5,
        dedup_window: int = DEFAULT_DEDUP_WINDOW,
    ):
        super().__init__(dispatcher)
        self.provider = provider
        self.interval_seconds = interval_seconds
        self.watermark = IngestionWatermark(
            since=datetime.now(timezone.utc) - timedelta(minutes=lookback_minutes),
            capacity=dedup_window,
        )

    # =============================
    # Lifecycle
    # =============================

    async def run(
        self,
        stop_event: Optional[asyncio.Event] = None,
        max_iterations: Optional[int] = None,
    ) -> None:
        stop = self._bind_stop_event(stop_event)
        self._running = True
        iterations = 0

        logger.info(
            "Polling inbound every {}s | since={}",
            self.interval_seconds,
            self.watermark.since.isoformat(),
        )

        try:
            while self._running and not stop.is_set():
                await self.poll_once()
                iterations += 1

                if max_iterations is not None and iterations >= max_iterations:
                    break

                if await sleep_or_stop(self.interval_seconds, stop):
                    break
        finally:
            self._running = False
            logger.info("Poll ingestor stopped after {} iteration(s)", iterations)

    async def poll_once(self) -> list[InboundMessage]:
        """
        Run one fetch/dedup/dispatch iteration.

        Returns:
            Newly dispatched messages, in dispatch order.
        """
        try:
            batch = await self.provider.list_inbound(self.watermark.since)
        except Exception as e:
            logger.error("Error fetching inbound messages: {}", e)
            return []

        fresh: list[InboundMessage] = []
        for message in sorted(batch, key=lambda m: m.created_at):
            if not self.watermark.observe(message):
                continue

            self.log_inbound(message)
            self.dispatcher.spawn(message, self.provider, self._typing_callback(message))
            fresh.append(message)

        return fresh

    def _typing_callback(self, message: InboundMessage):
        send_typing = getattr(self.provider, "send_typing", None)
        if send_typing is None:
            return None
        return lambda: send_typing(message.id)
