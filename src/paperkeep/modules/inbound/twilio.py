from __future__ import annotations

import time
from dataclasses import dataclass

import httpx

from paperkeep.core.config import settings
from paperkeep.core.logging import get_logger, log_event, monotonic_ms

logger = get_logger(__name__)

DEFAULT_MEDIA_CONTENT_TYPE = "image/jpeg"


class MediaFetchError(RuntimeError):
    pass


@dataclass(frozen=True)
class FetchedMedia:
    body: bytes
    content_type: str


def fetch_twilio_media(url: str, *, http: httpx.Client | None = None) -> FetchedMedia:
    """Download a message attachment; Twilio media URLs need account basic auth."""
    sid = (settings.twilio_account_sid or "").strip()
    token = (settings.twilio_auth_token or "").strip()
    if not sid or not token:
        raise MediaFetchError("TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN not set")

    start = time.monotonic()
    client = http or httpx.Client(timeout=30.0, follow_redirects=True)
    try:
        resp = client.get(url, auth=(sid, token))
    finally:
        if http is None:
            client.close()
    if resp.status_code >= 400:
        raise MediaFetchError(f"Twilio media fetch failed: {resp.status_code}")

    content_type = (resp.headers.get("content-type") or "").split(";")[0].strip()
    log_event(
        logger,
        "inbound.media.fetched",
        byte_size=len(resp.content),
        content_type=content_type or None,
        duration_ms=monotonic_ms(start),
    )
    return FetchedMedia(body=resp.content, content_type=content_type or DEFAULT_MEDIA_CONTENT_TYPE)
