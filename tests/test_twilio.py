"""Tests for the Twilio REST client (httpx mock transport)."""

from __future__ import annotations

from datetime import datetime, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from clawrelay.config.schema import TwilioConfig
from clawrelay.channels.poll import PollIngestor
from clawrelay.channels.twilio import TwilioCallbackForm, TwilioClient
from clawrelay.errors import ConfigError, ProviderError
from clawrelay.media.store import MediaPayload
from clawrelay.webhook.bringup import apply_callback_strategies, twilio_callback_strategies

ACCOUNT = "/2010-04-01/Accounts/AC1"


def _config(**overrides) -> TwilioConfig:
    fields = {"account_sid": "AC1", "auth_token": "tok", "whatsapp_from": "+15559990000"}
    fields.update(overrides)
    return TwilioConfig(**fields)


def _form(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


class FakeTwilio:
    """In-memory stand-in for the handful of Twilio endpoints the client calls."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.sent: list[dict[str, str]] = []
        self.service_url: str | None = None
        self.fail_status: int | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_status:
            return httpx.Response(self.fail_status, text="upstream error")

        path, method = request.url.path, request.method

        if path == f"{ACCOUNT}/Messages.json" and method == "GET":
            return httpx.Response(200, json={"messages": [
                {
                    "sid": "SM_old", "from": "whatsapp:+1555", "to": "whatsapp:+15559990000",
                    "body": "old", "direction": "inbound", "num_media": "0",
                    "date_created": "Mon, 01 Jan 2024 00:00:01 +0000",
                },
                {
                    "sid": "SM_new", "from": "whatsapp:+1555", "to": "whatsapp:+15559990000",
                    "body": None, "direction": "inbound", "num_media": "1",
                    "date_created": "Mon, 01 Jan 2024 00:00:10 +0000",
                },
                {
                    "sid": "SM_out", "from": "whatsapp:+15559990000", "to": "whatsapp:+1555",
                    "body": "reply", "direction": "outbound-api", "num_media": "0",
                    "date_created": "Mon, 01 Jan 2024 00:00:20 +0000",
                },
            ]})

        if path == f"{ACCOUNT}/Messages/SM_new/Media.json":
            return httpx.Response(200, json={"media_list": [
                {"sid": "ME1", "content_type": "image/jpeg", "uri": f"{ACCOUNT}/Messages/SM_new/Media/ME1.json"},
            ]})

        if path == f"{ACCOUNT}/Messages.json" and method == "POST":
            self.sent.append(_form(request))
            return httpx.Response(201, json={"sid": "SM_sent"})

        if path == "/v2/Channels/Senders":
            return httpx.Response(200, json={"senders": []})

        if path == "/v1/Services":
            return httpx.Response(200, json={"services": [{"sid": "MG1"}]})

        if path == "/v1/Services/MG1":
            if method == "POST":
                self.service_url = _form(request)["InboundRequestUrl"]
                return httpx.Response(200, json={})
            return httpx.Response(200, json={"inbound_request_url": self.service_url})

        return httpx.Response(404, json={"message": "not found"})


@pytest.fixture
def twilio() -> FakeTwilio:
    return FakeTwilio()


@pytest.fixture
async def client(twilio: FakeTwilio):
    http = httpx.AsyncClient(transport=httpx.MockTransport(twilio.handler))
    c = TwilioClient(_config(), http=http)
    yield c
    await c.aclose()


def test_missing_credentials_rejected():
    with pytest.raises(ConfigError, match="Missing Twilio config"):
        TwilioClient(TwilioConfig())


class TestInbound:
    async def test_filters_direction_and_watermark(self, client: TwilioClient):
        after = datetime(2024, 1, 1, 0, 0, 5, tzinfo=timezone.utc)

        messages = await client.list_inbound(after)

        assert [m.id for m in messages] == ["SM_new"]
        message = messages[0]
        assert message.from_ == "+1555"
        assert message.body == ""
        assert message.created_at == datetime(2024, 1, 1, 0, 0, 10, tzinfo=timezone.utc)

    async def test_media_refs_attached(self, client: TwilioClient):
        messages = await client.list_inbound(datetime(2024, 1, 1, tzinfo=timezone.utc))

        media = next(m for m in messages if m.id == "SM_new").first_media
        assert media.url == f"https://api.twilio.com{ACCOUNT}/Messages/SM_new/Media/ME1"
        assert media.content_type == "image/jpeg"

    async def test_query_targets_our_number(self, client: TwilioClient, twilio: FakeTwilio):
        await client.list_inbound(datetime(2024, 1, 1, tzinfo=timezone.utc))
        assert twilio.requests[0].url.params["To"] == "whatsapp:+15559990000"

    async def test_http_error_becomes_provider_error(self, client: TwilioClient, twilio: FakeTwilio):
        twilio.fail_status = 500
        with pytest.raises(ProviderError):
            await client.list_inbound(datetime(2024, 1, 1, tzinfo=timezone.utc))


class TestOutbound:
    async def test_send_text(self, client: TwilioClient, twilio: FakeTwilio):
        await client.send_text("+1555", "hello")

        assert twilio.sent == [{
            "From": "whatsapp:+15559990000",
            "To": "whatsapp:+1555",
            "Body": "hello",
        }]

    async def test_send_returns_sid(self, client: TwilioClient):
        assert await client.send("+1555", "hi", media_url="https://x.test/a.png") == "SM_sent"

    async def test_send_media_requires_public_url(self, client: TwilioClient):
        with pytest.raises(ProviderError):
            await client.send_media("+1555", None, "/tmp/local.png", "caption")

    async def test_send_media_uses_caption_as_body(self, client: TwilioClient, twilio: FakeTwilio):
        await client.send_media("+1555", None, "https://x.test/a.png", "look")

        assert twilio.sent[0]["Body"] == "look"
        assert twilio.sent[0]["MediaUrl"] == "https://x.test/a.png"

    async def test_send_media_passes_url_not_loaded_bytes(self, client: TwilioClient, twilio: FakeTwilio):
        media = MediaPayload(buffer=b"\x89PNG", content_type="image/png", kind="image", file_name="a.png")

        await client.send_media("+1555", media, "https://x.test/a.png")

        assert len(twilio.sent) == 1
        assert twilio.sent[0]["To"] == "whatsapp:+1555"
        assert twilio.sent[0]["MediaUrl"] == "https://x.test/a.png"
        assert all(b"PNG" not in r.content for r in twilio.requests)


async def test_callback_strategies_fall_back_to_messaging_service(client: TwilioClient):
    url = "https://relay.tail.ts.net/webhook/whatsapp"

    used = await apply_callback_strategies(twilio_callback_strategies(client), url)

    assert used == "messaging-service"


def test_callback_form_parses_media():
    form = TwilioCallbackForm.model_validate({
        "MessageSid": "SM1",
        "From": "whatsapp:+1555",
        "To": "whatsapp:+1999",
        "NumMedia": "1",
        "MediaUrl0": "https://x.test/m",
    })

    message = form.to_inbound()
    assert message.body == ""
    assert message.first_media.url == "https://x.test/m"


# ---------------------------------------------------------------------------
# Same-second arrivals
# ---------------------------------------------------------------------------


def _inbound(sid: str, date_created: str) -> dict:
    return {
        "sid": sid, "from": "whatsapp:+1555", "to": "whatsapp:+15559990000",
        "body": sid, "direction": "inbound", "num_media": "0",
        "date_created": date_created,
    }


async def test_message_at_watermark_second_is_listed(client: TwilioClient):
    after = datetime(2024, 1, 1, 0, 0, 10, tzinfo=timezone.utc)

    messages = await client.list_inbound(after)

    assert [m.id for m in messages] == ["SM_new"]


async def test_poll_picks_up_message_created_in_same_second_as_watermark():
    same_second = "Mon, 01 Jan 2024 00:00:05 +0000"
    pages = [
        [_inbound("SM_A", same_second)],
        [_inbound("SM_B", same_second), _inbound("SM_A", same_second)],
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"messages": pages.pop(0) if pages else []})

    class RecordingDispatcher:
        def __init__(self):
            self.spawned: list[str] = []

        def spawn(self, message, sender, on_reply_start=None):
            self.spawned.append(message.id)

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    twilio_client = TwilioClient(_config(), http=http)
    dispatcher = RecordingDispatcher()
    ingestor = PollIngestor(twilio_client, dispatcher, interval_seconds=0.001)
    ingestor.watermark.since = datetime(2024, 1, 1, tzinfo=timezone.utc)

    try:
        first = await ingestor.poll_once()
        second = await ingestor.poll_once()
    finally:
        await twilio_client.aclose()

    assert [m.id for m in first] == ["SM_A"]
    assert [m.id for m in second] == ["SM_B"]
    assert dispatcher.spawned == ["SM_A", "SM_B"]
    assert ingestor.watermark.since == datetime(2024, 1, 1, 0, 0, 5, tzinfo=timezone.utc)
