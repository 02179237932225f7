from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal

ILS = "ILS"
USD = "USD"
EUR = "EUR"

SUPPORTED_CURRENCIES: tuple[str, ...] = (ILS, USD, EUR)

# Gershayim variants OCR produces for ש"ח (shekel) and friends.
QUOTE_CHARS = "\"״׳'"

_ALIASES: dict[str, str] = {
    "₪": ILS,
    "ils": ILS,
    "nis": ILS,
    "שח": ILS,
    "שקל": ILS,
    "שקלים": ILS,
    "$": USD,
    "us$": USD,
    "usd": USD,
    "dollar": USD,
    "dollars": USD,
    "דולר": USD,
    "€": EUR,
    "eur": EUR,
    "euro": EUR,
    "euros": EUR,
    "יורו": EUR,
}

_QUOTES_RE = re.compile(f"[{QUOTE_CHARS}]")


def normalize_currency(raw: str | None) -> str | None:
    if not raw:
        return None
    key = _QUOTES_RE.sub("", str(raw).strip().lower())
    if not key:
        return None
    if key.upper() in SUPPORTED_CURRENCIES:
        return key.upper()
    return _ALIASES.get(key)


def quantize_amount(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
