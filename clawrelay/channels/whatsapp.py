"""
WhatsApp Web push transport via a Node.js bridge.

Architecture:
    WhatsApp Web
          ↓
    Node.js Bridge (WebSocket, JSON frames)
          ↓
    BridgeTransport / BridgeHandle (Python)
          ↓
    PushIngestor

Bridge frames:
    in:  {"type": "message", "id", "sender", "to", "content", "timestamp", "mediaUrl", "mediaPath", "mediaType"}
         {"type": "status", "status": "connected" | "disconnected" | "logged_out"}
         {"type": "qr"} / {"type": "error", "error"}
    out: {"type": "send", "to", "text", ["media", "mimetype", "kind", "fileName"]}
         {"type": "presence", "to", "state": "composing"}
"""

from __future__ import annotations

import asyncio
import base64
import json
from datetime import datetime, timezone
from typing import Any, Optional

import websockets
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from clawrelay.bus.events import InboundMessage, MediaRef
from clawrelay.channels.push import CloseReason, OnClose, OnMessage
from clawrelay.media.store import MediaPayload
from clawrelay.utils.helpers import e164_to_jid, jid_to_e164

#: Close codes the bridge uses when the linked device was logged out
LOGGED_OUT_CLOSE_CODES = frozenset({401, 4401})


# =============================
# Boundary payload
# =============================

class BridgeMessagePayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    sender: str
    to: str = ""
    content: str = ""
    timestamp: Optional[float] = None
    media_url: Optional[str] = Field(default=None, alias="mediaUrl")
    media_path: Optional[str] = Field(default=None, alias="mediaPath")
    media_type: Optional[str] = Field(default=None, alias="mediaType")

    def to_inbound(self) -> InboundMessage:
        if self.timestamp:
            # Bridge sends seconds; tolerate milliseconds
            seconds = self.timestamp / 1000 if self.timestamp > 1e11 else self.timestamp
            created = datetime.fromtimestamp(seconds, tz=timezone.utc)
        else:
            created = datetime.now(timezone.utc)

        media: tuple[MediaRef, ...] = ()
        if self.media_url or self.media_path:
            media = (MediaRef(url=self.media_url, path=self.media_path, content_type=self.media_type),)

        return InboundMessage(
            id=self.id,
            from_=jid_to_e164(self.sender),
            to=jid_to_e164(self.to) if self.to else "",
            body=self.content,
            created_at=created,
            media=media,
        )


# =============================
# Handle
# =============================

class BridgeHandle:
    """
    One live bridge connection.

    Responsibilities:
        - Translate bridge frames into InboundMessage events
        - Deliver outbound text/media/presence frames
        - Report close reason exactly once
    """

    def __init__(self, ws: Any, on_message: OnMessage, on_close: OnClose):
        self._ws = ws
        self._on_message = on_message
        self._on_close = on_close
        self._logged_out = False
        self._reader: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._reader = asyncio.create_task(self._read_loop(), name="bridge-reader")

    async def close(self) -> None:
        try:
            await self._ws.close()
        finally:
            if self._reader and not self._reader.done():
                self._reader.cancel()
                try:
                    await self._reader
                except asyncio.CancelledError:
                    pass

    # =============================
    # Outbound
    # =============================

    async def send_text(self, to: str, text: str) -> None:
        await self._send({"type": "send", "to": e164_to_jid(to), "text": text})
        logger.debug("Bridge outbound sent | to={} len={}", to, len(text))

    async def send_media(
        self,
        to: str,
        media: MediaPayload,
        source: str,
        caption: Optional[str] = None,
    ) -> None:
        await self._send({
            "type": "send",
            "to": e164_to_jid(to),
            "text": caption or "",
            "media": base64.b64encode(media.buffer).decode("ascii"),
            "mimetype": media.content_type or "application/octet-stream",
            "kind": media.kind,
            "fileName": media.file_name,
        })

    async def send_typing(self, to: str) -> None:
        await self._send({"type": "presence", "to": e164_to_jid(to), "state": "composing"})

    async def _send(self, payload: dict[str, Any]) -> None:
        await self._ws.send(json.dumps(payload))

    # =============================
    # Inbound
    # =============================

    async def _read_loop(self) -> None:
        status: Any = None
        try:
            async for raw in self._ws:
                await self._handle_frame(raw)
                if self._logged_out:
                    break
        except websockets.ConnectionClosed as e:
            status = e.rcvd.code if e.rcvd else None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Bridge reader error: {}", e)
            status = str(e)

        if status is None:
            status = getattr(self._ws, "close_code", None)

        self._on_close(CloseReason(
            status=status,
            invalidated=self._logged_out or status in LOGGED_OUT_CLOSE_CODES,
        ))

    async def _handle_frame(self, raw: Any) -> None:
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Invalid JSON from bridge: {}", str(raw)[:200])
            return

        msg_type = data.get("type")

        if msg_type == "message":
            try:
                payload = BridgeMessagePayload.model_validate(data)
            except ValidationError as e:
                logger.warning("Ignoring invalid bridge message: {}", e)
                return
            try:
                await self._on_message(payload.to_inbound(), self)
            except Exception:
                logger.exception("Inbound handler failed")

        elif msg_type == "status":
            status = data.get("status")
            logger.info("Bridge status | {}", status)
            if status == "logged_out":
                self._logged_out = True

        elif msg_type == "qr":
            logger.info("Bridge QR received – scan it in the bridge terminal")

        elif msg_type == "error":
            logger.error("Bridge error | {}", data.get("error"))

        else:
            logger.debug("Unknown bridge event: {}", data)


# =============================
# Transport
# =============================

class BridgeTransport:
    """Connects to the bridge WebSocket and yields a BridgeHandle."""

    def __init__(self, bridge_url: str):
        self.bridge_url = bridge_url

    async def connect(self, on_message: OnMessage, on_close: OnClose) -> BridgeHandle:
        logger.info("Connecting to bridge | url={}", self.bridge_url)
        ws = await websockets.connect(self.bridge_url)
        handle = BridgeHandle(ws, on_message, on_close)
        handle.start()
        logger.success("Bridge connected")
        return handle
