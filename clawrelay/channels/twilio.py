"""
Twilio REST provider (WhatsApp sender) over httpx.

Architecture:
    Twilio REST API
          ↓  (JSON payloads validated with pydantic)
    TwilioClient
          ↓
    PollIngestor / WebhookBringup / deliver_reply
"""

from __future__ import annotations

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import httpx
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from clawrelay.bus.events import InboundMessage, MediaRef
from clawrelay.config.schema import TwilioConfig
from clawrelay.errors import ConfigError, ProviderError
from clawrelay.media.store import MediaPayload
from clawrelay.utils.helpers import normalize_e164, with_whatsapp_prefix

DEFAULT_TIMEOUT = 30.0
PAGE_SIZE = 50


# =============================
# Boundary payloads
# =============================

class TwilioMediaPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sid: str
    content_type: Optional[str] = None
    uri: str


class TwilioMessagePayload(BaseModel):
    """One entry of the Messages list response."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    sid: str
    from_: str = Field(alias="from")
    to: str
    body: str = ""
    direction: str = "inbound"
    num_media: int = 0
    date_created: datetime

    @field_validator("body", mode="before")
    @classmethod
    def _none_body(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("num_media", mode="before")
    @classmethod
    def _num_media(cls, v: Any) -> Any:
        return int(v) if v not in (None, "") else 0

    @field_validator("date_created", mode="before")
    @classmethod
    def _rfc2822(cls, v: Any) -> Any:
        if isinstance(v, str) and not v[:4].isdigit():
            return parsedate_to_datetime(v)
        return v

    def to_inbound(self, media: tuple[MediaRef, ...] = ()) -> InboundMessage:
        created = self.date_created
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return InboundMessage(
            id=self.sid,
            from_=normalize_e164(self.from_),
            to=normalize_e164(self.to),
            body=self.body,
            created_at=created,
            media=media,
        )


class TwilioCallbackForm(BaseModel):
    """Form fields posted to the inbound webhook."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    message_sid: str = Field(alias="MessageSid")
    from_: str = Field(alias="From")
    to: str = Field(alias="To")
    body: str = Field(default="", alias="Body")
    num_media: int = Field(default=0, alias="NumMedia")
    media_url0: Optional[str] = Field(default=None, alias="MediaUrl0")
    media_content_type0: Optional[str] = Field(default=None, alias="MediaContentType0")

    def to_inbound(self) -> InboundMessage:
        media: tuple[MediaRef, ...] = ()
        if self.num_media > 0 and self.media_url0:
            media = (MediaRef(url=self.media_url0, content_type=self.media_content_type0),)
        return InboundMessage(
            id=self.message_sid,
            from_=normalize_e164(self.from_),
            to=normalize_e164(self.to),
            body=self.body,
            media=media,
        )


# =============================
# Client
# =============================

class TwilioClient:
    """
    Minimal Twilio REST client covering the relay's needs.

    Responsibilities:
        - List inbound WhatsApp messages
        - Send text / media replies and typing indicators
        - Read and write inbound callback URLs (sender, service, number)
    """

    def __init__(self, config: TwilioConfig, http: Optional[httpx.AsyncClient] = None):
        missing = config.missing()
        if missing:
            raise ConfigError(f"Missing Twilio config: {', '.join(missing)}")

        self.config = config
        if config.auth_token:
            auth = httpx.BasicAuth(config.account_sid, config.auth_token)
        else:
            auth = httpx.BasicAuth(config.api_key, config.api_secret)

        self._http = http or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT, auth=auth)

    async def aclose(self) -> None:
        await self._http.aclose()

    # =============================
    # Plumbing
    # =============================

    @property
    def _account_url(self) -> str:
        return f"{self.config.api_base}/2010-04-01/Accounts/{self.config.account_sid}"

    @property
    def whatsapp_from(self) -> str:
        return with_whatsapp_prefix(normalize_e164(self.config.whatsapp_from))

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            resp = await self._http.request(method, url, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                f"Twilio {method} {url} failed: {e.response.status_code} {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Twilio {method} {url} failed: {e}") from e

        if not resp.content:
            return {}
        return resp.json()

    # =============================
    # Inbound
    # =============================

    async def list_inbound(self, created_after: datetime) -> list[InboundMessage]:
        data = await self._request(
            "GET",
            f"{self._account_url}/Messages.json",
            params={
                "To": self.whatsapp_from,
                "DateSent>": created_after.strftime("%Y-%m-%d"),
                "PageSize": PAGE_SIZE,
            },
        )

        messages: list[InboundMessage] = []
        for raw in data.get("messages") or []:
            try:
                payload = TwilioMessagePayload.model_validate(raw)
            except ValidationError as e:
                logger.warning("Ignoring invalid Twilio message payload: {}", e)
                continue

            if not payload.direction.startswith("inbound"):
                continue

            media = await self._list_media(payload) if payload.num_media else ()
            message = payload.to_inbound(media)
            # Timestamps have one-second resolution; same-second ids are deduped upstream
            if message.created_at >= created_after:
                messages.append(message)

        return messages

    async def _list_media(self, payload: TwilioMessagePayload) -> tuple[MediaRef, ...]:
        try:
            data = await self._request(
                "GET", f"{self._account_url}/Messages/{payload.sid}/Media.json"
            )
        except ProviderError as e:
            logger.warning("Media listing failed for {}: {}", payload.sid, e)
            return ()

        refs: list[MediaRef] = []
        for raw in data.get("media_list") or []:
            try:
                item = TwilioMediaPayload.model_validate(raw)
            except ValidationError:
                continue
            uri = item.uri[:-5] if item.uri.endswith(".json") else item.uri
            refs.append(MediaRef(url=f"{self.config.api_base}{uri}", content_type=item.content_type))
        return tuple(refs)

    # =============================
    # Outbound
    # =============================

    async def send(self, to: str, body: str, media_url: Optional[str] = None) -> str:
        form: dict[str, str] = {
            "From": self.whatsapp_from,
            "To": with_whatsapp_prefix(normalize_e164(to)),
            "Body": body,
        }
        if media_url:
            form["MediaUrl"] = media_url

        data = await self._request("POST", f"{self._account_url}/Messages.json", data=form)
        sid = str(data.get("sid", ""))
        logger.info("Sent via Twilio | to={} sid={}", to, sid)
        return sid

    async def send_text(self, to: str, text: str) -> None:
        await self.send(to, text)

    async def send_media(
        self,
        to: str,
        media: MediaPayload,
        source: str,
        caption: Optional[str] = None,
    ) -> None:
        """
        Send ``source`` by URL; Twilio fetches the media itself.

        ``media`` is unused here. Delivery still loads it first so the
        configured size cap is enforced before Twilio is asked to fetch it.
        """
        if not source.startswith(("http://", "https://")):
            raise ProviderError(f"Twilio needs a public media URL, got {source}")
        await self.send(to, caption or "", media_url=source)

    async def send_typing(self, message_sid: str) -> None:
        await self._request(
            "POST",
            f"{self.config.messaging_api_base}/v2/Indicators/Typing.json",
            data={"messageId": message_sid, "channel": "whatsapp"},
        )

    # =============================
    # Callback discovery
    # =============================

    async def find_whatsapp_sender_sid(self) -> str:
        if self.config.sender_sid:
            return self.config.sender_sid

        data = await self._request(
            "GET",
            f"{self.config.messaging_api_base}/v2/Channels/Senders",
            params={"Channel": "whatsapp", "PageSize": PAGE_SIZE},
        )
        wanted = self.whatsapp_from
        for sender in data.get("senders") or []:
            if sender.get("sender_id") == wanted and sender.get("sid"):
                return str(sender["sid"])
        raise ProviderError(f"Could not find sender {wanted} in Twilio account")

    async def find_messaging_service_sid(self) -> str:
        if self.config.messaging_service_sid:
            return self.config.messaging_service_sid

        data = await self._request(
            "GET",
            f"{self.config.messaging_api_base}/v1/Services",
            params={"PageSize": PAGE_SIZE},
        )
        services = data.get("services") or []
        if not services:
            raise ProviderError("No messaging services found in Twilio account")
        return str(services[0]["sid"])

    async def find_incoming_number_sid(self) -> str:
        data = await self._request(
            "GET",
            f"{self._account_url}/IncomingPhoneNumbers.json",
            params={"PhoneNumber": normalize_e164(self.config.whatsapp_from)},
        )
        numbers = data.get("incoming_phone_numbers") or []
        if not numbers:
            raise ProviderError(f"No incoming number matches {self.config.whatsapp_from}")
        return str(numbers[0]["sid"])

    # =============================
    # Callback read / write
    # =============================

    async def set_sender_webhook(self, sender_sid: str, url: str, method: str) -> None:
        await self._request(
            "POST",
            f"{self.config.messaging_api_base}/v2/Channels/Senders/{sender_sid}",
            json={"webhook": {"callback_url": url, "callback_method": method}},
        )

    async def fetch_sender_webhook(self, sender_sid: str) -> Optional[str]:
        data = await self._request(
            "GET", f"{self.config.messaging_api_base}/v2/Channels/Senders/{sender_sid}"
        )
        return (data.get("webhook") or {}).get("callback_url")

    async def set_messaging_service_webhook(self, service_sid: str, url: str, method: str) -> None:
        await self._request(
            "POST",
            f"{self.config.messaging_api_base}/v1/Services/{service_sid}",
            data={"InboundRequestUrl": url, "InboundMethod": method},
        )

    async def fetch_messaging_service_webhook(self, service_sid: str) -> Optional[str]:
        data = await self._request(
            "GET", f"{self.config.messaging_api_base}/v1/Services/{service_sid}"
        )
        return data.get("inbound_request_url")

    async def set_incoming_number_webhook(self, number_sid: str, url: str, method: str) -> None:
        await self._request(
            "POST",
            f"{self._account_url}/IncomingPhoneNumbers/{number_sid}.json",
            data={"SmsUrl": url, "SmsMethod": method},
        )

    async def fetch_incoming_number_webhook(self, number_sid: str) -> Optional[str]:
        data = await self._request(
            "GET", f"{self._account_url}/IncomingPhoneNumbers/{number_sid}.json"
        )
        return data.get("sms_url")
