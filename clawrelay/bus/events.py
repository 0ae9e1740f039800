"""
Event types flowing through the relay.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


# ---------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class MediaRef:
    """Attachment reference: remote URL or local path plus content type."""

    url: Optional[str] = None
    path: Optional[str] = None
    content_type: Optional[str] = None


@dataclass(frozen=True, slots=True)
class InboundMessage:
    """
    Message received from a transport.

    Identity is ``id``; instances are immutable once observed.
    """

    id: str
    from_: str
    to: str
    body: str

    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    media: tuple[MediaRef, ...] = ()

    # -----------------------------------------------------------------

    @property
    def first_media(self) -> Optional[MediaRef]:
        return self.media[0] if self.media else None

    def to_context(self) -> dict[str, Any]:
        """
        Base templating context (provider-style key names).
        """
        media = self.first_media
        return {
            "Body": self.body,
            "From": self.from_,
            "To": self.to,
            "MessageSid": self.id,
            "MediaUrl": media.url if media else None,
            "MediaPath": media.path if media else None,
            "MediaType": media.content_type if media else None,
        }


# ---------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------

@dataclass(slots=True)
class ReplyResult:
    """
    Terminal output of reply resolution, consumed once by delivery.
    """

    text: Optional[str] = None
    media_urls: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.text and not self.media_urls
