from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

from paperkeep.modules.documents.models import Document, OcrStatus
from paperkeep.modules.extraction.backfill import (
    apply_backfill,
    is_date_default,
    is_vendor_placeholder,
    plan_backfill,
    should_overwrite_amount,
)
from paperkeep.modules.extraction.parser import ParsedFields
from paperkeep.modules.fx.service import RateCache

CREATED = datetime(2026, 5, 1, 9, 30, tzinfo=UTC)


def _document(**overrides) -> Document:
    values = {
        "vendor": "—",
        "amount": Decimal("0"),
        "currency": "ILS",
        "date": CREATED.date(),
        "doc_number": None,
        "ocr_amount_guess": None,
        "created_at": CREATED,
    }
    values.update(overrides)
    return Document(**values)


def _rates(rate: str = "3.50") -> RateCache:
    return RateCache(fetch=lambda: Decimal(rate))


def test_user_vendor_is_never_overwritten():
    doc = _document(vendor="Acme Corp")
    plan = plan_backfill(doc, ParsedFields(vendor="Other Co"), rate_cache=_rates())
    assert "vendor" not in plan.updates

    apply_backfill(doc, text="Other Co", parsed=ParsedFields(vendor="Other Co"), rate_cache=_rates())
    assert doc.vendor == "Acme Corp"
    assert doc.ocr_status == OcrStatus.SUCCESS
    assert doc.ocr_text == "Other Co"


def test_placeholder_fields_are_filled():
    doc = _document(vendor="Unknown")
    parsed = ParsedFields(
        vendor="Cafe Nimrod",
        date=date(2026, 4, 28),
        doc_number="A-1002",
        amount=Decimal("48.00"),
        currency="ILS",
    )
    plan = plan_backfill(doc, parsed, rate_cache=_rates())
    assert plan.updates == {
        "vendor": "Cafe Nimrod",
        "date": date(2026, 4, 28),
        "doc_number": "A-1002",
        "currency": "ILS",
        "amount": Decimal("48.00"),
        "ocr_amount_guess": Decimal("48.00"),
    }
    assert plan.converted_from is None


def test_user_date_and_doc_number_are_kept():
    doc = _document(date=date(2026, 1, 15), doc_number="USER-1")
    parsed = ParsedFields(date=date(2026, 4, 28), doc_number="A-1002")
    plan = plan_backfill(doc, parsed, rate_cache=_rates())
    assert plan.updates == {}


def test_foreign_amount_is_converted_to_local():
    doc = _document()
    parsed = ParsedFields(amount=Decimal("10.00"), currency="USD")
    plan = apply_backfill(doc, text="Total $10.00", parsed=parsed, rate_cache=_rates("3.50"))
    assert doc.amount == Decimal("35.00")
    assert doc.currency == "ILS"
    assert doc.ocr_amount_guess == Decimal("35.00")
    assert plan.converted_from == (Decimal("10.00"), "USD")
    assert plan.fx_rate == Decimal("3.50")


def test_user_amount_is_kept_but_detected_currency_applies():
    doc = _document(amount=Decimal("99.00"))
    parsed = ParsedFields(amount=Decimal("10.00"), currency="USD")
    plan = plan_backfill(doc, parsed, rate_cache=_rates())
    assert "amount" not in plan.updates
    assert plan.updates["currency"] == "USD"


def test_previous_guess_can_be_refined():
    doc = _document(amount=Decimal("35.00"), ocr_amount_guess=Decimal("35.00"))
    parsed = ParsedFields(amount=Decimal("42.00"), currency="ILS")
    plan = plan_backfill(doc, parsed, rate_cache=_rates())
    assert plan.updates["amount"] == Decimal("42.00")


def test_predicates():
    assert is_vendor_placeholder(None)
    assert is_vendor_placeholder(" - ")
    assert is_vendor_placeholder("UNKNOWN")
    assert is_vendor_placeholder("לא ידוע")
    assert not is_vendor_placeholder("Acme")

    assert should_overwrite_amount(Decimal("0"), None)
    assert should_overwrite_amount(Decimal("10.00"), Decimal("10.01"))
    assert not should_overwrite_amount(Decimal("10.00"), Decimal("10.05"))
    assert not should_overwrite_amount(Decimal("10.00"), None)

    assert is_date_default(CREATED.date(), CREATED)
    assert is_date_default(CREATED.date(), CREATED.replace(tzinfo=None))
    assert not is_date_default(date(2020, 1, 1), CREATED)


def test_currency_without_cached_rate_keeps_its_amount():
    fetches: list[int] = []

    def fetch() -> Decimal:
        fetches.append(1)
        return Decimal("3.50")

    doc = _document()
    parsed = ParsedFields(amount=Decimal("100.00"), currency="EUR")
    plan = apply_backfill(
        doc, text="Total: 100.00 €", parsed=parsed, rate_cache=RateCache(fetch=fetch)
    )
    assert doc.amount == Decimal("100.00")
    assert doc.currency == "EUR"
    assert doc.ocr_amount_guess == Decimal("100.00")
    assert plan.converted_from is None
    assert plan.fx_rate is None
    assert fetches == []
