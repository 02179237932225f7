from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import httpx

from paperkeep.core.config import settings
from paperkeep.core.currencies import quantize_amount
from paperkeep.core.logging import get_logger, log_event, monotonic_ms

logger = get_logger(__name__)

DEFAULT_FALLBACK_RATE = Decimal("3.7")


@dataclass(frozen=True)
class RateQuote:
    rate: Decimal
    fetched_at: float
    source: str


def fallback_rate() -> Decimal:
    raw = settings.fx_fallback_rate
    if raw is not None:
        rate = Decimal(str(raw))
        if _is_plausible_rate(rate):
            return rate
    return DEFAULT_FALLBACK_RATE


def _is_plausible_rate(rate: Decimal) -> bool:
    return Decimal(str(settings.fx_rate_min)) < rate < Decimal(str(settings.fx_rate_max))


def fetch_foreign_to_local_rate(*, timeout_s: float | None = None) -> Decimal:
    """Keyless lookup; response shape is ``{"rates": {"ILS": 3.65, ...}}``."""
    resp = httpx.get(
        settings.fx_rate_url,
        timeout=timeout_s if timeout_s is not None else settings.fx_rate_timeout_seconds,
        follow_redirects=True,
    )
    resp.raise_for_status()
    data = resp.json()
    raw_rate = (data.get("rates") or {}).get(settings.local_currency.upper())
    if raw_rate is None or isinstance(raw_rate, bool):
        raise ValueError("Unexpected FX response shape")
    try:
        rate = Decimal(str(raw_rate))
    except InvalidOperation as e:
        raise ValueError(f"Unexpected FX rate value: {raw_rate!r}") from e
    if not rate.is_finite() or not _is_plausible_rate(rate):
        raise ValueError(f"Implausible FX rate: {rate}")
    return rate


class RateCache:
    """
    Single-slot foreign->local rate cache.

    Refreshes at most once per TTL. A failed refresh caches the fallback rate for the
    whole TTL window so a flaky rate source is not hammered.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float | None = None,
        fetch: Callable[[], Decimal] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl = ttl_seconds if ttl_seconds is not None else settings.fx_rate_ttl_seconds
        self._fetch = fetch or fetch_foreign_to_local_rate
        self._clock = clock
        self._lock = threading.Lock()
        self._quote: RateQuote | None = None

    @property
    def quote(self) -> RateQuote | None:
        return self._quote

    def get_quote(self) -> RateQuote:
        with self._lock:
            now = self._clock()
            if self._quote is not None and now - self._quote.fetched_at < self._ttl:
                return self._quote
            self._quote = self._refresh(now)
            return self._quote

    def get_rate(self) -> Decimal:
        return self.get_quote().rate

    def clear(self) -> None:
        with self._lock:
            self._quote = None

    def _refresh(self, now: float) -> RateQuote:
        start = time.monotonic()
        try:
            rate = self._fetch()
        except Exception as e:  # noqa: BLE001
            rate = fallback_rate()
            log_event(
                logger,
                "fx.rate.fallback",
                rate=str(rate),
                error_type=type(e).__name__,
                error=str(e)[:300],
                duration_ms=monotonic_ms(start),
            )
            return RateQuote(rate=rate, fetched_at=now, source="fallback")
        log_event(
            logger,
            "fx.rate.refreshed",
            rate=str(rate),
            duration_ms=monotonic_ms(start),
        )
        return RateQuote(rate=rate, fetched_at=now, source="remote")


def has_local_rate(currency: str | None) -> bool:
    """Only the configured foreign currency has a cached rate to the local one."""
    return (currency or "").upper() == settings.foreign_currency.upper()


def convert_to_local(amount: Decimal, *, rate: Decimal) -> Decimal:
    return quantize_amount(amount * rate)


_rate_cache: RateCache | None = None
_rate_cache_lock = threading.Lock()


def get_rate_cache() -> RateCache:
    global _rate_cache  # noqa: PLW0603
    with _rate_cache_lock:
        if _rate_cache is None:
            _rate_cache = RateCache()
        return _rate_cache
