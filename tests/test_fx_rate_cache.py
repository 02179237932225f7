from __future__ import annotations

from decimal import Decimal

import httpx
import pytest

from paperkeep.modules.fx import service as fx_service
from paperkeep.modules.fx.service import RateCache, convert_to_local


class _Clock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def test_rate_cache_fetches_once_per_ttl():
    calls: list[int] = []
    clock = _Clock()

    def _fetch() -> Decimal:
        calls.append(1)
        return Decimal("3.65")

    cache = RateCache(ttl_seconds=60, fetch=_fetch, clock=clock)
    assert cache.get_rate() == Decimal("3.65")
    clock.now += 30
    assert cache.get_rate() == Decimal("3.65")
    assert len(calls) == 1

    clock.now += 31
    assert cache.get_rate() == Decimal("3.65")
    assert len(calls) == 2
    assert cache.quote is not None
    assert cache.quote.source == "remote"


def test_failed_refresh_caches_fallback_for_whole_ttl(monkeypatch):
    monkeypatch.setattr(fx_service.settings, "fx_fallback_rate", None)
    calls: list[int] = []
    clock = _Clock()

    def _fetch() -> Decimal:
        calls.append(1)
        raise httpx.ConnectError("rate source down")

    cache = RateCache(ttl_seconds=60, fetch=_fetch, clock=clock)
    assert cache.get_rate() == Decimal("3.7")
    clock.now += 59
    assert cache.get_rate() == Decimal("3.7")
    assert len(calls) == 1
    assert cache.get_quote().source == "fallback"


def test_fallback_rate_uses_configured_value_when_plausible(monkeypatch):
    monkeypatch.setattr(fx_service.settings, "fx_fallback_rate", 4.1)
    assert fx_service.fallback_rate() == Decimal("4.1")

    monkeypatch.setattr(fx_service.settings, "fx_fallback_rate", 50.0)
    assert fx_service.fallback_rate() == Decimal("3.7")


def test_fetch_rate_reads_local_currency_from_response(monkeypatch):
    seen: dict[str, object] = {}

    def _get(url, **kwargs):
        seen["url"] = url
        seen["timeout"] = kwargs.get("timeout")
        return httpx.Response(
            200,
            json={"result": "success", "rates": {"ILS": 3.62, "EUR": 0.92}},
            request=httpx.Request("GET", url),
        )

    monkeypatch.setattr(fx_service.httpx, "get", _get)
    assert fx_service.fetch_foreign_to_local_rate() == Decimal("3.62")
    assert seen["url"] == fx_service.settings.fx_rate_url
    assert seen["timeout"] == fx_service.settings.fx_rate_timeout_seconds


@pytest.mark.parametrize(
    "payload",
    [
        {"rates": {"ILS": 100}},
        {"rates": {"EUR": 0.9}},
        {"rates": {"ILS": "abc"}},
        {},
    ],
)
def test_fetch_rate_rejects_bad_payloads(monkeypatch, payload):
    monkeypatch.setattr(
        fx_service.httpx,
        "get",
        lambda url, **_: httpx.Response(200, json=payload, request=httpx.Request("GET", url)),
    )
    with pytest.raises(ValueError):
        fx_service.fetch_foreign_to_local_rate()


def test_convert_to_local_rounds_half_up():
    assert convert_to_local(Decimal("10.00"), rate=Decimal("3.655")) == Decimal("36.55")
    assert convert_to_local(Decimal("0.01"), rate=Decimal("3.5")) == Decimal("0.04")
