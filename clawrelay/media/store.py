"""
Media loading for outbound replies.

Sources:
    - http(s) URLs (fetched with httpx)
    - local paths (``file://`` or plain)
"""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional
from urllib.parse import urlparse

import httpx
from loguru import logger

from clawrelay.errors import MediaTooLargeError

MediaKind = Literal["image", "audio", "video", "document"]

DEFAULT_MAX_MEDIA_BYTES = 5 * 1024 * 1024
DEFAULT_TIMEOUT = 30.0


@dataclass(slots=True)
class MediaPayload:
    buffer: bytes
    content_type: Optional[str]
    kind: MediaKind
    file_name: str


def media_kind(content_type: Optional[str]) -> MediaKind:
    if not content_type:
        return "document"
    major = content_type.split("/", 1)[0].lower()
    if major in ("image", "audio", "video"):
        return major  # type: ignore[return-value]
    return "document"


def _guess_type(name: str) -> Optional[str]:
    guessed, _ = mimetypes.guess_type(name)
    return guessed


async def load_media(
    source: str,
    max_bytes: int = DEFAULT_MAX_MEDIA_BYTES,
    client: Optional[httpx.AsyncClient] = None,
) -> MediaPayload:
    """
    Load raw media bytes + content type.

    Raises:
        MediaTooLargeError: payload above ``max_bytes``.
        httpx.HTTPError / OSError: fetch failures.
    """
    parsed = urlparse(source)

    if parsed.scheme in ("http", "https"):
        return await _load_remote(source, max_bytes, client)

    path = Path(parsed.path if parsed.scheme == "file" else source).expanduser()
    return _load_local(path, max_bytes)


async def _load_remote(
    url: str,
    max_bytes: int,
    client: Optional[httpx.AsyncClient],
) -> MediaPayload:
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT, follow_redirects=True)

    try:
        async with http.stream("GET", url) as resp:
            resp.raise_for_status()

            declared = resp.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > max_bytes:
                raise MediaTooLargeError(int(declared), max_bytes)

            chunks: list[bytes] = []
            total = 0
            async for chunk in resp.aiter_bytes():
                total += len(chunk)
                if total > max_bytes:
                    raise MediaTooLargeError(total, max_bytes)
                chunks.append(chunk)

            header_type = resp.headers.get("content-type")
    finally:
        if owns_client:
            await http.aclose()

    file_name = urlparse(url).path.rsplit("/", 1)[-1] or "file"
    content_type = (header_type.split(";", 1)[0].strip() if header_type else None) or _guess_type(file_name)

    logger.debug("Media fetched | url={} bytes={} type={}", url, total, content_type)
    return MediaPayload(
        buffer=b"".join(chunks),
        content_type=content_type,
        kind=media_kind(content_type),
        file_name=file_name,
    )


def _load_local(path: Path, max_bytes: int) -> MediaPayload:
    size = path.stat().st_size
    if size > max_bytes:
        raise MediaTooLargeError(size, max_bytes)

    content_type = _guess_type(path.name)
    return MediaPayload(
        buffer=path.read_bytes(),
        content_type=content_type,
        kind=media_kind(content_type),
        file_name=path.name,
    )
