"""Tests for reply resolution.

Covers the allow-list, text and command modes, session argument splicing,
``MEDIA:`` extraction and the no-raise guarantee.
"""

from __future__ import annotations

from typing import Sequence

from conftest import make_config, make_message

from clawrelay.config.schema import Config, ReplyConfig, SessionConfig
from clawrelay.reply.command import CommandResult
from clawrelay.reply.resolver import (
    ReplyResolver,
    build_argv,
    is_sender_allowed,
    split_media_lines,
)


class FakeRunner:
    """Command runner that records argv and returns a canned result."""

    def __init__(self, result: CommandResult):
        self.result = result
        self.calls: list[tuple[list[str], int]] = []

    async def __call__(self, argv: Sequence[str], timeout_ms: int) -> CommandResult:
        self.calls.append((list(argv), timeout_ms))
        return self.result


def _ok(stdout: str) -> CommandResult:
    return CommandResult(stdout=stdout, stderr="", exit_code=0, signal=None, killed=False)


def _resolver(config: Config, runner=None) -> ReplyResolver:
    if runner is None:
        return ReplyResolver(config_source=lambda: config)
    return ReplyResolver(config_source=lambda: config, command_runner=runner)


# ---------------------------------------------------------------------------
# Allow-list
# ---------------------------------------------------------------------------


class TestAllowList:
    def test_empty_list_allows_everyone(self):
        assert is_sender_allowed("+1999", [])

    def test_normalized_comparison(self):
        assert is_sender_allowed("whatsapp:+1555", ["+1 555"])

    def test_rejects_other_senders(self):
        assert not is_sender_allowed("+1999", ["+1555"])

    async def test_disallowed_sender_gets_no_reply(self):
        config = make_config(allow_from=["+1555"], mode="text", text="hi")
        assert await _resolver(config).resolve(make_message(from_="+1999")) is None


# ---------------------------------------------------------------------------
# Text mode
# ---------------------------------------------------------------------------


class TestTextMode:
    async def test_end_to_end_echo(self):
        config = make_config(allow_from=["+1555"], mode="text", text="echo {{Body}}")
        reply = await _resolver(config).resolve(make_message(body="hi", from_="+1555"))

        assert reply is not None
        assert reply.text == "echo hi"
        assert reply.media_urls == []

    async def test_media_url_templated(self):
        config = make_config(mode="text", text="pic", media_url="https://x.test/{{MessageSid}}.png")
        reply = await _resolver(config).resolve(make_message(id="SM9"))

        assert reply.media_urls == ["https://x.test/SM9.png"]

    async def test_empty_render_is_no_reply(self):
        config = make_config(mode="text", text="{{Missing}}")
        assert await _resolver(config).resolve(make_message()) is None

    async def test_no_reply_configured(self):
        assert await _resolver(Config()).resolve(make_message()) is None

    async def test_body_prefix_applied(self):
        config = make_config(mode="text", text="{{Body}}", body_prefix="[{{From}}] ")
        reply = await _resolver(config).resolve(make_message(body="yo"))
        assert reply.text == "[+1555] yo"

    async def test_reply_start_fired_once(self):
        calls = []
        config = make_config(mode="text", text="ok")
        await _resolver(config).resolve(make_message(), lambda: calls.append(1))
        assert calls == [1]

    async def test_failing_reply_start_does_not_block_reply(self):
        async def boom():
            raise RuntimeError("typing failed")

        config = make_config(mode="text", text="still here")
        reply = await _resolver(config).resolve(make_message(), boom)
        assert reply.text == "still here"


# ---------------------------------------------------------------------------
# Command mode
# ---------------------------------------------------------------------------


class TestCommandMode:
    async def test_stdout_becomes_reply(self):
        runner = FakeRunner(_ok("  answer \n"))
        config = make_config(mode="command", command=["bot", "{{Body}}"], timeout_seconds=7)

        reply = await _resolver(config, runner).resolve(make_message(body="q"))

        assert reply.text == "answer"
        assert runner.calls == [(["bot", "q"], 7000)]

    async def test_non_zero_exit_is_no_reply(self):
        runner = FakeRunner(CommandResult("out", "err", 1, None, False))
        config = make_config(mode="command", command=["bot"])
        assert await _resolver(config, runner).resolve(make_message()) is None

    async def test_timeout_is_no_reply(self):
        runner = FakeRunner(CommandResult("", "", None, None, True))
        config = make_config(mode="command", command=["bot"])
        assert await _resolver(config, runner).resolve(make_message()) is None

    async def test_signal_is_no_reply(self):
        runner = FakeRunner(CommandResult("", "", None, "SIGTERM", False))
        config = make_config(mode="command", command=["bot"])
        assert await _resolver(config, runner).resolve(make_message()) is None

    async def test_empty_output_is_no_reply(self):
        runner = FakeRunner(_ok("   \n"))
        config = make_config(mode="command", command=["bot"])
        assert await _resolver(config, runner).resolve(make_message()) is None

    async def test_media_lines_extracted(self):
        runner = FakeRunner(_ok("here you go\nMEDIA: https://x.test/a.png\n"))
        config = make_config(mode="command", command=["bot"])

        reply = await _resolver(config, runner).resolve(make_message())

        assert reply.text == "here you go"
        assert reply.media_urls == ["https://x.test/a.png"]

    async def test_runner_exception_is_no_reply(self):
        async def broken(argv, timeout_ms):
            raise OSError("no such file")

        config = make_config(mode="command", command=["missing-binary"])
        assert await _resolver(config, broken).resolve(make_message()) is None

    async def test_session_args_spliced_before_body(self, tmp_path):
        runner = FakeRunner(_ok("ok"))
        session = SessionConfig(
            store=str(tmp_path / "s.json"),
            session_arg_new=["--session-id", "{{SessionId}}"],
            session_arg_resume=["--resume", "{{SessionId}}"],
        )
        config = make_config(mode="command", command=["bot", "{{BodyStripped}}"], session=session)
        resolver = _resolver(config, runner)

        await resolver.resolve(make_message(body="/new hello"))
        await resolver.resolve(make_message(id="SM2", body="again"))

        first, _ = runner.calls[0]
        second, _ = runner.calls[1]
        assert first[:2] == ["bot", "--session-id"]
        assert first[-1] == "hello"
        assert second[1] == "--resume"
        assert second[2] == first[2]
        assert second[-1] == "again"


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def test_split_media_lines_keeps_text_order():
    text, media = split_media_lines("a\nMEDIA: u1\nb\n  MEDIA:u2  ")
    assert text == "a\nb"
    assert media == ["u1", "u2"]


def test_build_argv_template_is_second_argument():
    reply = ReplyConfig(mode="command", command=["bot", "--json"], template="Q: {{Body}}")
    assert build_argv(reply, {"Body": "x"}, False) == ["bot", "Q: x", "--json"]


def test_build_argv_session_args_appended_when_not_before_body():
    reply = ReplyConfig(
        mode="command",
        command=["bot", "{{Body}}"],
        session=SessionConfig(session_arg_new=["--new"], session_arg_before_body=False),
    )
    assert build_argv(reply, {"Body": "x"}, True) == ["bot", "x", "--new"]
