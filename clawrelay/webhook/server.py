"""
Local webhook endpoint for provider callbacks (aiohttp).

Routes:
    POST <path>   form-encoded inbound message → empty TwiML, reply in background
    GET  /health  liveness check
"""

from __future__ import annotations

import asyncio
from typing import Optional

from aiohttp import web
from loguru import logger
from pydantic import ValidationError

from clawrelay.bus.dedup import DedupWindow
from clawrelay.channels.base import ReplyDispatcher
from clawrelay.channels.outbound import ReplySender
from clawrelay.channels.twilio import TwilioCallbackForm

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'

dispatcher_key = web.AppKey("dispatcher", ReplyDispatcher)
sender_key = web.AppKey("sender", object)
seen_key = web.AppKey("seen", DedupWindow)


# ------------------------------------------------------------------
# Handlers
# ------------------------------------------------------------------


async def _handle_health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


async def _handle_inbound(request: web.Request) -> web.Response:
    form = await request.post()

    try:
        payload = TwilioCallbackForm.model_validate(dict(form))
    except ValidationError as e:
        logger.warning("Rejected invalid webhook payload: {}", e)
        return web.json_response({"error": "invalid payload"}, status=400)

    message = payload.to_inbound()
    seen = request.app[seen_key]

    if not seen.add(message.id):
        logger.debug("Duplicate webhook delivery ignored | id={}", message.id)
    else:
        logger.info("[webhook] {} -> {}: {}", message.from_, message.to, message.body)
        sender: ReplySender = request.app[sender_key]  # type: ignore[assignment]
        typing = getattr(sender, "send_typing", None)
        request.app[dispatcher_key].spawn(
            message,
            sender,
            (lambda: typing(message.id)) if typing else None,
        )

    return web.Response(text=EMPTY_TWIML, content_type="text/xml")


# ------------------------------------------------------------------
# App / server
# ------------------------------------------------------------------


def create_app(
    dispatcher: ReplyDispatcher,
    sender: ReplySender,
    path: str = "/webhook/whatsapp",
    dedup_window: int = 5000,
) -> web.Application:
    app = web.Application()
    app[dispatcher_key] = dispatcher
    app[sender_key] = sender
    app[seen_key] = DedupWindow(dedup_window)
    app.router.add_post(path, _handle_inbound)
    app.router.add_get("/health", _handle_health)
    return app


async def start_webhook_server(
    app: web.Application,
    host: str,
    port: int,
) -> web.AppRunner:
    """Create, start, and return the HTTP server runner."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    try:
        await site.start()
    except BaseException:
        await runner.cleanup()
        raise
    logger.info("Webhook listening | http://{}:{}", host, port)
    return runner


async def wait_forever(stop_event: Optional[asyncio.Event] = None) -> None:
    """Keep the process alive until the stop signal fires."""
    await (stop_event or asyncio.Event()).wait()
