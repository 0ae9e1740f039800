"""
Reply resolution: inbound message + config → optional reply.

Flow:
    allow-list → reply config → session → context → text | command → ReplyResult

Resolution never raises; every failure degrades to "no reply".
"""

from __future__ import annotations

import inspect
import re
import time
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from loguru import logger

from clawrelay.bus.events import InboundMessage, ReplyResult
from clawrelay.config.loader import load_config
from clawrelay.config.schema import Config, ReplyConfig
from clawrelay.reply.command import CommandResult, run_command
from clawrelay.reply.templating import render
from clawrelay.session.store import SessionStore
from clawrelay.utils.helpers import format_duration, normalize_e164, truncate

ConfigSource = Callable[[], Config]
CommandRunner = Callable[[Sequence[str], int], Awaitable[CommandResult]]
ReplyStartCallback = Callable[[], Union[Awaitable[None], None]]

_MEDIA_LINE_RE = re.compile(r"^\s*MEDIA:\s*(\S+)\s*$")


# ============================================================
# Helpers
# ============================================================

def is_sender_allowed(sender: str, allow_from: list[str]) -> bool:
    """Empty allow-list means everyone is allowed."""
    if not allow_from:
        return True
    normalized = normalize_e164(sender)
    allowed = {normalize_e164(a) or a for a in allow_from}
    return sender in allowed or (bool(normalized) and normalized in allowed)


def split_media_lines(output: str) -> tuple[str, list[str]]:
    """
    Pull ``MEDIA: <url>`` lines out of command output.

    Returns:
        (remaining text, media urls)
    """
    text_lines: list[str] = []
    media: list[str] = []
    for line in output.splitlines():
        match = _MEDIA_LINE_RE.match(line)
        if match:
            media.append(match.group(1))
        else:
            text_lines.append(line)
    return "\n".join(text_lines).strip(), media


def build_argv(
    reply: ReplyConfig,
    context: dict[str, Any],
    is_new_session: bool,
) -> list[str]:
    """Render the command argument vector with prompt and session args spliced in."""
    argv = [render(part, context) for part in reply.command]

    if reply.template:
        argv = [argv[0], render(reply.template, context), *argv[1:]]

    session = reply.session
    if session is not None:
        templates = session.session_arg_new if is_new_session else session.session_arg_resume
        session_args = [render(part, context) for part in templates]
        if session_args:
            if session.session_arg_before_body and len(argv) > 1:
                insert_at = len(argv) - 1
            else:
                insert_at = len(argv)
            argv[insert_at:insert_at] = session_args

    return argv


# ============================================================
# Resolver
# ============================================================

class ReplyResolver:
    """
    Turns an inbound message into an optional ReplyResult.

    Config is re-read from ``config_source`` on every call.
    """

    def __init__(
        self,
        config_source: ConfigSource = load_config,
        command_runner: CommandRunner = run_command,
    ):
        self.config_source = config_source
        self.command_runner = command_runner

    async def resolve(
        self,
        message: InboundMessage,
        on_reply_start: Optional[ReplyStartCallback] = None,
    ) -> Optional[ReplyResult]:
        try:
            return await self._resolve(message, on_reply_start)
        except Exception as e:
            logger.exception("Reply resolution failed | from={} err={}", message.from_, e)
            return None

    # ------------------------------------------------------------

    async def _resolve(
        self,
        message: InboundMessage,
        on_reply_start: Optional[ReplyStartCallback],
    ) -> Optional[ReplyResult]:
        config = self.config_source()

        if not is_sender_allowed(message.from_, config.allow_from):
            logger.info("Skipping auto-reply: {} not in allowFrom", message.from_)
            return None

        reply = config.reply
        if reply is None:
            logger.debug("No reply configured, skipping")
            return None

        context = message.to_context()
        context.update(BodyStripped=message.body, SessionId=None, IsNewSession=False)

        if reply.session is not None:
            resolution = SessionStore(reply.session).resolve(message.body, message.from_)
            context.update(
                BodyStripped=resolution.body_stripped,
                SessionId=resolution.session_id,
                IsNewSession=resolution.is_new_session,
            )

        if reply.body_prefix:
            prefixed = render(reply.body_prefix, context) + context["BodyStripped"]
            context.update(Body=prefixed, BodyStripped=prefixed)

        if reply.mode == "text":
            await self._fire_reply_start(on_reply_start)
            return self._resolve_text(reply, context)

        await self._fire_reply_start(on_reply_start)
        return await self._resolve_command(reply, context)

    # ------------------------------------------------------------

    def _resolve_text(self, reply: ReplyConfig, context: dict[str, Any]) -> Optional[ReplyResult]:
        text = render(reply.text, context) if reply.text else None
        media_url = render(reply.media_url, context).strip() if reply.media_url else ""

        result = ReplyResult(text=text or None, media_urls=[media_url] if media_url else [])
        return None if result.is_empty else result

    async def _resolve_command(
        self,
        reply: ReplyConfig,
        context: dict[str, Any],
    ) -> Optional[ReplyResult]:
        argv = build_argv(reply, context, bool(context.get("IsNewSession")))
        logger.debug("Running reply command | argv={}", argv)

        started = time.monotonic()
        result = await self.command_runner(argv, reply.timeout_seconds * 1000)
        elapsed = format_duration((time.monotonic() - started) * 1000)

        if result.timed_out:
            logger.error(
                "Reply command timed out after {}s | {}",
                reply.timeout_seconds,
                argv[0],
            )
            return None

        if result.signal:
            logger.error("Reply command terminated by {} | {}", result.signal, argv[0])
            return None

        if result.exit_code != 0:
            logger.error(
                "Reply command exited with code {} | stderr={}",
                result.exit_code,
                truncate(result.stderr.strip(), 500),
            )
            return None

        text, media_urls = split_media_lines(result.stdout.strip())
        if not text and not media_urls:
            logger.info("Reply command produced no output ({})", elapsed)
            return None

        logger.info("Reply command finished in {} | {} chars", elapsed, len(text))
        return ReplyResult(text=text or None, media_urls=media_urls)

    @staticmethod
    async def _fire_reply_start(callback: Optional[ReplyStartCallback]) -> None:
        if callback is None:
            return
        try:
            outcome = callback()
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning("onReplyStart callback failed: {}", e)
