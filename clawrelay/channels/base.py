"""Base abstractions shared by every ingestor."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

from loguru import logger

from clawrelay.bus.events import InboundMessage
from clawrelay.bus.queue import SingleFlightQueue
from clawrelay.channels.outbound import ReplySender, deliver_reply
from clawrelay.media.store import DEFAULT_MAX_MEDIA_BYTES
from clawrelay.reply.resolver import ReplyResolver, ReplyStartCallback


# =============================
# Collaborator contracts
# =============================

@runtime_checkable
class MessagingProvider(ReplySender, Protocol):
    """Remote REST provider used by the poll ingestor."""

    async def list_inbound(self, created_after: datetime) -> list[InboundMessage]: ...


# =============================
# Dispatcher
# =============================

class ReplyDispatcher:
    """
    Routes one inbound message through resolution and delivery.

    Flow:
        ingestor -> dispatch -> SingleFlightQueue -> resolver -> deliver_reply

    Responsibilities:
        - Serialization through the shared queue
        - Fault isolation: failures are logged, never raised to ingestors
        - Tracking of fire-and-forget dispatches
    """

    def __init__(
        self,
        queue: SingleFlightQueue,
        resolver: ReplyResolver,
        max_media_bytes: int = DEFAULT_MAX_MEDIA_BYTES,
    ):
        self.queue = queue
        self.resolver = resolver
        self.max_media_bytes = max_media_bytes
        self._tasks: set[asyncio.Task] = set()

    async def dispatch(
        self,
        message: InboundMessage,
        sender: ReplySender,
        on_reply_start: Optional[ReplyStartCallback] = None,
    ) -> None:
        async def job() -> None:
            reply = await self.resolver.resolve(message, on_reply_start)
            if reply is None or reply.is_empty:
                logger.debug("Skipping auto-reply: no text/media for {}", message.id)
                return
            await deliver_reply(sender, message, reply, self.max_media_bytes)

        try:
            await self.queue.enqueue(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Failed sending auto-reply to {}: {}", message.from_, e)

    def spawn(
        self,
        message: InboundMessage,
        sender: ReplySender,
        on_reply_start: Optional[ReplyStartCallback] = None,
    ) -> asyncio.Task:
        """Fire-and-forget ``dispatch``; ordering is kept by the queue."""
        task = asyncio.create_task(
            self.dispatch(message, sender, on_reply_start),
            name=f"dispatch-{message.id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait until every spawned dispatch has completed."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)


# =============================
# Ingestor base
# =============================

class BaseIngestor(ABC):
    """
    Base abstraction for inbound message sources.

    Design goals:
        - Unified lifecycle control (run until stop signal)
        - Consistent dispatch contract through ReplyDispatcher
    """

    #: Ingestor unique identifier
    name: str = "base"

    def __init__(self, dispatcher: ReplyDispatcher):
        self.dispatcher = dispatcher
        self._running: bool = False
        self._stop_event: Optional[asyncio.Event] = None

    # =============================
    # Lifecycle
    # =============================

    @abstractmethod
    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """
        Consume inbound messages until ``stop_event`` is set.
        """
        ...

    async def stop(self) -> None:
        """Request the run loop to exit."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()

    def _bind_stop_event(self, stop_event: Optional[asyncio.Event]) -> asyncio.Event:
        self._stop_event = stop_event or asyncio.Event()
        return self._stop_event

    # =============================
    # Runtime state
    # =============================

    @property
    def is_running(self) -> bool:
        return self._running

    @staticmethod
    def log_inbound(message: InboundMessage) -> None:
        logger.info(
            "[{}] {} -> {}: {}",
            message.created_at.isoformat(),
            message.from_,
            message.to,
            message.body,
        )
