from __future__ import annotations

import re

from paperkeep.core.config import settings

_NON_DIGITS_RE = re.compile(r"\D")

# Subscriber numbers (without trunk prefix or country code) are 9 digits long.
_SUBSCRIBER_DIGITS = 9


def normalize_phone(
    raw: str | None,
    *,
    country_code: str | None = None,
    channel_prefix: str | None = None,
) -> str:
    """Canonicalize a free-form phone number to a bare digit string with country code.

    ``whatsapp:+972501234567`` -> ``972501234567``
    ``050-1234567`` -> ``972501234567``
    ``501234567`` -> ``972501234567``
    """
    cc = country_code or settings.phone_country_code
    prefix = (channel_prefix or settings.phone_channel_prefix).lower()

    cleaned = (raw or "").strip()
    if prefix and cleaned.lower().startswith(prefix):
        cleaned = cleaned[len(prefix) :]
    digits = _NON_DIGITS_RE.sub("", cleaned)

    if digits.startswith(cc) and len(digits) >= len(cc) + _SUBSCRIBER_DIGITS:
        return digits
    if digits.startswith("0") and len(digits) >= _SUBSCRIBER_DIGITS:
        return cc + digits[1:]
    if len(digits) >= _SUBSCRIBER_DIGITS:
        return cc + digits[-_SUBSCRIBER_DIGITS:]
    return digits


def phone_lookup_variants(normalized: str) -> list[str]:
    if not normalized:
        return []
    return [normalized, f"+{normalized}"]
