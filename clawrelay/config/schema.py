"""
Configuration schema definitions.

Design principles:
    - Explicit structure
    - Predictable defaults
    - Environment override support
    - Strong typing + validation
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from clawrelay.utils.helpers import RUNTIME_PATHS

SessionScope = Literal["per-sender", "global"]
ReplyMode = Literal["text", "command"]


# =============================
# Auto-reply
# =============================

class SessionConfig(BaseModel):
    """Conversation session settings for command replies."""
    scope: SessionScope = "per-sender"
    reset_triggers: list[str] = Field(default_factory=lambda: ["/new"])
    idle_minutes: int = 60
    store: str = str(RUNTIME_PATHS.sessions_file)
    session_arg_new: list[str] = Field(default_factory=list)
    session_arg_resume: list[str] = Field(default_factory=list)
    session_arg_before_body: bool = True

    @property
    def store_path(self) -> Path:
        return Path(self.store).expanduser()


class ReplyConfig(BaseModel):
    """How replies are produced: static template or external command."""
    mode: ReplyMode = "text"
    text: Optional[str] = None
    media_url: Optional[str] = None
    command: list[str] = Field(default_factory=list)
    template: Optional[str] = None
    body_prefix: Optional[str] = None
    timeout_seconds: int = 600
    media_max_mb: int = 5
    session: Optional[SessionConfig] = None

    @model_validator(mode="after")
    def _check_mode(self) -> "ReplyConfig":
        if self.mode == "text" and self.text is None and self.media_url is None:
            raise ValueError("reply.mode='text' requires reply.text or reply.mediaUrl")
        if self.mode == "command" and not self.command:
            raise ValueError("reply.mode='command' requires a non-empty reply.command")
        return self

    @property
    def max_media_bytes(self) -> int:
        return max(self.media_max_mb, 1) * 1024 * 1024


class InboundConfig(BaseModel):
    """Inbound routing: who may trigger replies and how."""
    allow_from: list[str] = Field(default_factory=list)
    reply: Optional[ReplyConfig] = None


# =============================
# Transports
# =============================

class TwilioConfig(BaseModel):
    """REST provider credentials (auth token or API key/secret)."""
    account_sid: str = ""
    auth_token: str = ""
    api_key: str = ""
    api_secret: str = ""
    whatsapp_from: str = ""
    sender_sid: str = ""
    messaging_service_sid: str = ""
    api_base: str = "https://api.twilio.com"
    messaging_api_base: str = "https://messaging.twilio.com"

    def missing(self) -> list[str]:
        missing = [
            name
            for name, value in (
                ("accountSid", self.account_sid),
                ("whatsappFrom", self.whatsapp_from),
            )
            if not value
        ]
        if not self.auth_token and not (self.api_key and self.api_secret):
            missing.append("authToken or apiKey/apiSecret")
        return missing


class PollConfig(BaseModel):
    """Polling ingestion cadence."""
    interval_seconds: float = 5.0
    lookback_minutes: int = 5
    dedup_window: int = 5000


class WebConfig(BaseModel):
    """Push transport: WhatsApp Web bridge over WebSocket."""
    bridge_url: str = "ws://localhost:3001"
    reconnect_delay_seconds: float = 2.0


class WebhookConfig(BaseModel):
    """Local webhook endpoint and bring-up retry policy."""
    host: str = "0.0.0.0"
    port: int = 42873
    path: str = "/webhook/whatsapp"
    retries: int = 3
    retry_delay_seconds: float = 0.3


# =============================
# Logging
# =============================

class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[str] = None


# =============================
# Root Config
# =============================

class Config(BaseSettings):
    """
    Root configuration schema.

    Priority:
        init kwargs (config.json) > env > defaults
    """

    model_config = SettingsConfigDict(
        env_prefix="CLAWRELAY_",
        env_nested_delimiter="__",
    )

    inbound: InboundConfig = Field(default_factory=InboundConfig)
    twilio: TwilioConfig = Field(default_factory=TwilioConfig)
    poll: PollConfig = Field(default_factory=PollConfig)
    web: WebConfig = Field(default_factory=WebConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # -------------------------
    # Runtime helpers
    # -------------------------

    @property
    def reply(self) -> Optional[ReplyConfig]:
        return self.inbound.reply

    @property
    def allow_from(self) -> list[str]:
        return self.inbound.allow_from
