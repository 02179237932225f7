from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from paperkeep.core.config import settings
from paperkeep.core.models import as_utc
from paperkeep.modules.documents.models import Document, OcrStatus
from paperkeep.modules.extraction.parser import ParsedFields
from paperkeep.modules.fx.service import RateCache, convert_to_local, has_local_rate

VENDOR_PLACEHOLDERS = {"", "-", "—", "–", "unknown", "לא ידוע"}
AMOUNT_REFINE_TOLERANCE = Decimal("0.01")


@dataclass
class BackfillPlan:
    updates: dict[str, Any] = field(default_factory=dict)
    converted_from: tuple[Decimal, str] | None = None
    fx_rate: Decimal | None = None

    @property
    def fields(self) -> list[str]:
        return sorted(self.updates)


def is_vendor_placeholder(vendor: str | None) -> bool:
    return (vendor or "").strip().lower() in VENDOR_PLACEHOLDERS


def should_overwrite_amount(current: Decimal | None, previous_guess: Decimal | None) -> bool:
    """Zero, or still equal to what a previous extraction wrote."""
    if current is None or current == 0:
        return True
    if previous_guess is None:
        return False
    return abs(Decimal(current) - Decimal(previous_guess)) <= AMOUNT_REFINE_TOLERANCE


def is_doc_number_empty(doc_number: str | None) -> bool:
    return not (doc_number or "").strip()


def is_date_default(current: date | None, created_at: datetime | None) -> bool:
    if current is None:
        return True
    created = as_utc(created_at)
    if created is None:
        return False
    return current == created.date()


def plan_backfill(
    document: Document,
    parsed: ParsedFields,
    *,
    rate_cache: RateCache,
    local_currency: str | None = None,
) -> BackfillPlan:
    local = (local_currency or settings.local_currency).upper()
    plan = BackfillPlan()

    if parsed.date and is_date_default(document.date, document.created_at):
        plan.updates["date"] = parsed.date

    if parsed.vendor and is_vendor_placeholder(document.vendor):
        plan.updates["vendor"] = parsed.vendor

    if parsed.doc_number and is_doc_number_empty(document.doc_number):
        plan.updates["doc_number"] = parsed.doc_number

    if parsed.currency:
        plan.updates["currency"] = parsed.currency

    if parsed.amount and should_overwrite_amount(document.amount, document.ocr_amount_guess):
        amount = parsed.amount
        if has_local_rate(parsed.currency) and parsed.currency != local:
            rate = rate_cache.get_rate()
            plan.converted_from = (amount, parsed.currency)
            plan.fx_rate = rate
            amount = convert_to_local(amount, rate=rate)
            plan.updates["currency"] = local
        plan.updates["amount"] = amount
        plan.updates["ocr_amount_guess"] = amount

    return plan


def apply_backfill(
    document: Document,
    *,
    text: str,
    parsed: ParsedFields,
    rate_cache: RateCache,
) -> BackfillPlan:
    plan = plan_backfill(document, parsed, rate_cache=rate_cache)
    document.ocr_text = text[: settings.ocr_text_max_chars]
    document.ocr_status = OcrStatus.SUCCESS
    for name, value in plan.updates.items():
        setattr(document, name, value)
    return plan
