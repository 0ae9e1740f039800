"""Tests for reply delivery and the dispatcher."""

from __future__ import annotations

from conftest import FakeSender, make_config, make_message

from clawrelay.bus.events import ReplyResult
from clawrelay.bus.queue import SingleFlightQueue
from clawrelay.channels.base import ReplyDispatcher
from clawrelay.channels.outbound import deliver_reply
from clawrelay.reply.resolver import ReplyResolver

MAX = 5 * 1024 * 1024


class TestDeliverReply:
    async def test_text_only(self, sender: FakeSender):
        await deliver_reply(sender, make_message(from_="+1555"), ReplyResult(text="hi"), MAX)
        assert sender.texts == [("+1555", "hi")]

    async def test_caption_on_first_media_only(self, sender: FakeSender, tmp_path):
        a, b = tmp_path / "a.png", tmp_path / "b.png"
        a.write_bytes(b"a")
        b.write_bytes(b"b")

        await deliver_reply(
            sender,
            make_message(),
            ReplyResult(text="look", media_urls=[str(a), str(b)]),
            MAX,
        )

        assert sender.media == [("+1555", str(a), "look"), ("+1555", str(b), None)]
        assert sender.texts == []

    async def test_media_failure_falls_back_to_text(self, tmp_path):
        sender = FakeSender(fail_media=True)
        path = tmp_path / "a.png"
        path.write_bytes(b"a")

        await deliver_reply(sender, make_message(), ReplyResult(text="caption", media_urls=[str(path)]), MAX)

        assert sender.texts == [("+1555", "caption")]

    async def test_oversized_media_falls_back_to_text(self, sender: FakeSender, tmp_path):
        path = tmp_path / "big.png"
        path.write_bytes(b"x" * 64)

        await deliver_reply(sender, make_message(), ReplyResult(text="t", media_urls=[str(path)]), 10)

        assert sender.media == []
        assert sender.texts == [("+1555", "t")]

    async def test_media_failure_without_text_sends_nothing(self, tmp_path):
        sender = FakeSender(fail_media=True)
        path = tmp_path / "a.png"
        path.write_bytes(b"a")

        await deliver_reply(sender, make_message(), ReplyResult(media_urls=[str(path)]), MAX)

        assert sender.texts == []


class TestReplyDispatcher:
    async def test_send_failure_is_contained(self):
        class BrokenSender(FakeSender):
            async def send_text(self, to: str, text: str) -> None:
                raise RuntimeError("provider down")

        config = make_config(mode="text", text="hi")
        dispatcher = ReplyDispatcher(SingleFlightQueue(), ReplyResolver(lambda: config))

        await dispatcher.dispatch(make_message(), BrokenSender())

    async def test_spawn_tracks_in_flight(self, sender: FakeSender):
        config = make_config(mode="text", text="hi")
        dispatcher = ReplyDispatcher(SingleFlightQueue(), ReplyResolver(lambda: config))

        dispatcher.spawn(make_message("SM1"), sender)
        dispatcher.spawn(make_message("SM2"), sender)
        assert dispatcher.in_flight == 2

        await dispatcher.wait_idle()

        assert dispatcher.in_flight == 0
        assert len(sender.texts) == 2

    async def test_no_reply_sends_nothing(self, sender: FakeSender):
        config = make_config(allow_from=["+1000"], mode="text", text="hi")
        dispatcher = ReplyDispatcher(SingleFlightQueue(), ReplyResolver(lambda: config))

        await dispatcher.dispatch(make_message(from_="+1555"), sender)

        assert sender.texts == []
