"""
Push ingestor for persistent connections (WhatsApp Web bridge).

State machine:
    CONNECTING → ACTIVE → CLOSED → RECONNECTING → CONNECTING ...
                        ↘ LOGGED_OUT (terminal)
    any non-terminal state + STOP → STOPPED (terminal)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol, Union

from loguru import logger

from clawrelay.bus.dedup import DEFAULT_DEDUP_WINDOW, DedupWindow
from clawrelay.bus.events import InboundMessage
from clawrelay.channels.base import BaseIngestor, ReplyDispatcher
from clawrelay.channels.outbound import ReplySender
from clawrelay.errors import SessionLoggedOutError
from clawrelay.utils.helpers import sleep_or_stop

DEFAULT_RECONNECT_DELAY_S = 2.0


# ============================================================
# Transport contract
# ============================================================

@dataclass(frozen=True, slots=True)
class CloseReason:
    """Why a push connection ended."""

    status: Union[int, str, None] = None
    invalidated: bool = False


class PushHandle(ReplySender, Protocol):
    """Live connection; also the reply surface for messages it delivered."""

    async def close(self) -> None: ...

    async def send_typing(self, to: str) -> None: ...


OnMessage = Callable[[InboundMessage, PushHandle], Awaitable[None]]
OnClose = Callable[[CloseReason], None]


class PushTransport(Protocol):
    async def connect(self, on_message: OnMessage, on_close: OnClose) -> PushHandle: ...


# ============================================================
# State machine
# ============================================================

class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSED = "closed"
    RECONNECTING = "reconnecting"
    LOGGED_OUT = "logged_out"
    STOPPED = "stopped"


class ConnectionEvent(str, Enum):
    CONNECTED = "connected"
    CONNECT_FAILED = "connect_failed"
    CLOSED = "closed"
    INVALIDATED = "invalidated"
    RETRY = "retry"
    STOP = "stop"


TERMINAL_STATES = frozenset({ConnectionState.LOGGED_OUT, ConnectionState.STOPPED})

_TRANSITIONS: dict[tuple[ConnectionState, ConnectionEvent], ConnectionState] = {
    (ConnectionState.CONNECTING, ConnectionEvent.CONNECTED): ConnectionState.ACTIVE,
    (ConnectionState.CONNECTING, ConnectionEvent.CONNECT_FAILED): ConnectionState.CLOSED,
    (ConnectionState.ACTIVE, ConnectionEvent.CLOSED): ConnectionState.CLOSED,
    (ConnectionState.ACTIVE, ConnectionEvent.INVALIDATED): ConnectionState.LOGGED_OUT,
    (ConnectionState.CLOSED, ConnectionEvent.RETRY): ConnectionState.RECONNECTING,
    (ConnectionState.RECONNECTING, ConnectionEvent.RETRY): ConnectionState.CONNECTING,
}


def next_state(state: ConnectionState, event: ConnectionEvent) -> ConnectionState:
    """
    Pure transition function.

    Raises:
        ValueError: event is not valid in ``state``.
    """
    if state in TERMINAL_STATES:
        return state
    if event is ConnectionEvent.STOP:
        return ConnectionState.STOPPED

    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise ValueError(f"Invalid transition: {state.value} + {event.value}") from None


# ============================================================
# Ingestor
# ============================================================

class PushIngestor(BaseIngestor):
    """
    Maintains a push connection and dispatches every message it delivers.

    Responsibilities:
        - Connection lifecycle via ``next_state``
        - Fixed-delay reconnect after ordinary closes
        - Terminal stop on session invalidation
        - Prompt exit on stop signal, closing the live connection
    """

    name = "push"

    def __init__(
        self,
        transport: PushTransport,
        dispatcher: ReplyDispatcher,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY_S,
        dedup_window: int = DEFAULT_DEDUP_WINDOW,
    ):
        super().__init__(dispatcher)
        self.transport = transport
        self.reconnect_delay = reconnect_delay
        self.state = ConnectionState.CONNECTING
        self.history: list[ConnectionState] = [self.state]
        self._seen = DedupWindow(dedup_window)
        self._handle: Optional[PushHandle] = None
        self._early: list[tuple[InboundMessage, PushHandle]] = []

    # ------------------------------------------------------------

    def _transition(self, event: ConnectionEvent) -> ConnectionState:
        previous = self.state
        self.state = next_state(previous, event)
        self.history.append(self.state)
        logger.debug("Push connection {} --{}--> {}", previous.value, event.value, self.state.value)
        return self.state

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """
        Run until stopped.

        Raises:
            SessionLoggedOutError: remote session was invalidated.
        """
        stop = self._bind_stop_event(stop_event)
        self._running = True
        self.state = ConnectionState.CONNECTING
        self.history = [self.state]

        try:
            while self.state not in TERMINAL_STATES:
                if stop.is_set():
                    self._transition(ConnectionEvent.STOP)
                elif self.state is ConnectionState.CONNECTING:
                    await self._connect_and_wait(stop)
                elif self.state is ConnectionState.CLOSED:
                    self._transition(ConnectionEvent.RETRY)
                elif self.state is ConnectionState.RECONNECTING:
                    logger.warning("Reconnecting in {}s...", self.reconnect_delay)
                    stopped = await sleep_or_stop(self.reconnect_delay, stop)
                    self._transition(ConnectionEvent.STOP if stopped else ConnectionEvent.RETRY)
        finally:
            self._running = False
            await self._close_handle()

        if self.state is ConnectionState.LOGGED_OUT:
            raise SessionLoggedOutError("Push session logged out by the remote side")

        logger.info("Push ingestor stopped")

    async def _connect_and_wait(self, stop: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        closed: asyncio.Future[CloseReason] = loop.create_future()
        self._early = []

        def on_close(reason: CloseReason) -> None:
            if not closed.done():
                closed.set_result(reason)

        try:
            self._handle = await self.transport.connect(self._on_message, on_close)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Push connection failed: {}", e)
            self._early = []
            self._transition(ConnectionEvent.CONNECT_FAILED)
            return

        self._transition(ConnectionEvent.CONNECTED)
        self._flush_early()
        logger.success("Listening for inbound push messages")

        stop_waiter = asyncio.ensure_future(stop.wait())
        try:
            await asyncio.wait({closed, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_waiter.cancel()

        if stop.is_set():
            await self._close_handle()
            self._transition(ConnectionEvent.STOP)
            return

        reason = closed.result()
        await self._close_handle()

        if reason.invalidated:
            logger.error("Push session logged out (status {})", reason.status)
            self._transition(ConnectionEvent.INVALIDATED)
        else:
            logger.error("Push connection closed (status {})", reason.status or "unknown")
            self._transition(ConnectionEvent.CLOSED)

    async def _close_handle(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            await handle.close()
        except Exception as e:
            logger.warning("Error closing push connection: {}", e)

    # ------------------------------------------------------------

    async def _on_message(self, message: InboundMessage, handle: PushHandle) -> None:
        if self.state is ConnectionState.CONNECTING:
            # Transport delivered before connect() returned; held until ACTIVE
            self._early.append((message, handle))
            return

        if self.state is not ConnectionState.ACTIVE:
            logger.debug("Dropping message received while {}", self.state.value)
            return

        self._accept(message, handle)

    def _flush_early(self) -> None:
        early, self._early = self._early, []
        for message, handle in early:
            self._accept(message, handle)

    def _accept(self, message: InboundMessage, handle: PushHandle) -> None:
        if not self._seen.add(message.id):
            logger.debug("Duplicate push message ignored | id={}", message.id)
            return

        self.log_inbound(message)
        self.dispatcher.spawn(message, handle, lambda: handle.send_typing(message.from_))
