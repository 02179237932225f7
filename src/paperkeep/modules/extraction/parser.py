"""
Heuristic receipt/invoice field extraction.

Every rule is a pure function of the raw OCR text and can be tested on its own.
``parse_receipt_text`` runs them in ``FIELD_RULES`` order; a rule that finds nothing
returns ``None`` and the remaining rules still run.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

from paperkeep.core.currencies import EUR, ILS, QUOTE_CHARS, USD

MAX_AMOUNT = Decimal("1000000")
VENDOR_SCAN_LINES = 15
VENDOR_MAX_CHARS = 80
DOC_NUMBER_MAX_CHARS = 64

_Q = f"[{QUOTE_CHARS}]?"

_ISO_DATE_RE = re.compile(r"\b((?:19|20)\d{2})[-/.](\d{1,2})[-/.](\d{1,2})\b")
_DMY_DATE_RE = re.compile(r"\b(\d{1,2})[-/.](\d{1,2})[-/.]((?:19|20)\d{2})\b")

_TOTAL_HINT_RE = re.compile(
    rf"(סה{_Q}כ|סך\s*הכל|לתשלום|grand\s*total|total|amount\s+due|balance\s+due)", re.I
)
_VAT_HINT_RE = re.compile(rf"(מע{_Q}מ|\bvat\b|\btax\b)", re.I)

CURRENCY_TOKEN_PATTERN = rf"(?:₪|ש{_Q}ח|\bils\b|\bnis\b|\busd\b|\beur\b|us\$|\$|€)"
NUMBER_PATTERN = r"\d{1,3}(?:[,\u00a0\u202f]\d{3})+(?:[.,]\d{2})?|\d+(?:[.,]\d{2})?"

# Numbers glued to other digits or to date/phone separators are not amounts.
_AMOUNT_RE = re.compile(
    rf"(?P<pre>{CURRENCY_TOKEN_PATTERN})?\s*"
    rf"(?<![\d.,/-])(?P<num>{NUMBER_PATTERN})(?![\d]|[.,/-]\d)"
    rf"\s*(?P<post>{CURRENCY_TOKEN_PATTERN})?",
    re.I,
)
_BARE_NUMBER_RE = re.compile(rf"(?<![\d.,/-])({NUMBER_PATTERN})(?![\d]|[.,/-]\d)")

_VENDOR_SKIP_WORDS: tuple[str, ...] = (
    "חשבונית",
    "קבלה",
    "מס",
    "תאריך",
    'סה"כ',
    "סה״כ",
    "invoice",
    "receipt",
    "total",
    "tax",
    "vat",
    "date",
)

# The token must contain a digit, so words after the keyword ("Invoice Date") are skipped.
_DOC_NUMBER_RE = re.compile(
    r"(?:חשבונית\s*מס|חשבונית|קבלה|מסמך|document|invoice|receipt)"
    rf"[ \t]*(?:מספר|מס{_Q}|number|no\.?|#)?[ \t]*[:\-]?[ \t]*#?[ \t]*"
    r"((?=[A-Za-z0-9\-/]*\d)[A-Za-z0-9\-/]{4,})",
    re.I,
)

_ILS_MARKER_RE = re.compile(rf"₪|ש{_Q}ח|\bnis\b|\bils\b|שקל", re.I)
_USD_MARKER_RE = re.compile(r"\$|\busd\b|דולר", re.I)
_EUR_MARKER_RE = re.compile(r"€|\beur\b|\beuro\b|יורו", re.I)
_HEBREW_RE = re.compile(r"[\u0590-\u05FF]")
_LATIN_RE = re.compile(r"[A-Za-z]")


@dataclass(frozen=True)
class AmountCandidate:
    value: Decimal
    score: int
    line: str


@dataclass(frozen=True)
class ParsedFields:
    date: date | None = None
    amount: Decimal | None = None
    vendor: str | None = None
    doc_number: str | None = None
    currency: str | None = None
    amount_score: int | None = None

    def is_empty(self) -> bool:
        return not any((self.date, self.amount, self.vendor, self.doc_number, self.currency))


def normalize_number(raw: str | None) -> Decimal | None:
    """
    ``1,234.56`` -> 1234.56, ``123,45`` -> 123.45, ``12,345`` -> 12345.

    A single comma followed by exactly two digits (and no dot) is a decimal point;
    every other comma is a thousands separator.
    """
    s = re.sub(r"\s", "", raw or "")
    if not s:
        return None
    if "," in s and "." not in s:
        parts = s.split(",")
        if len(parts) == 2 and parts[0].isdigit() and len(parts[1]) == 2 and parts[1].isdigit():
            s = f"{parts[0]}.{parts[1]}"
    s = s.replace(",", "")
    if not re.fullmatch(r"\d+(\.\d{1,2})?", s):
        return None
    try:
        return Decimal(s).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None


def _is_plausible_amount(value: Decimal | None) -> bool:
    return value is not None and Decimal("0") < value <= MAX_AMOUNT


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_date(text: str) -> date | None:
    for m in _ISO_DATE_RE.finditer(text):
        d = _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        if d:
            return d
    for m in _DMY_DATE_RE.finditer(text):
        d = _safe_date(int(m.group(3)), int(m.group(2)), int(m.group(1)))
        if d:
            return d
    return None


def amount_candidates(text: str) -> list[AmountCandidate]:
    candidates: list[AmountCandidate] = []
    for line in text.splitlines():
        trimmed = line.strip()
        if not trimmed:
            continue
        has_total = bool(_TOTAL_HINT_RE.search(trimmed))
        has_vat = bool(_VAT_HINT_RE.search(trimmed))
        for m in _AMOUNT_RE.finditer(trimmed):
            value = normalize_number(m.group("num"))
            if not _is_plausible_amount(value):
                continue
            score = 0
            if has_total:
                score += 5
            if has_vat:
                score -= 3
            if m.group("pre") or m.group("post"):
                score += 1
            candidates.append(AmountCandidate(value=value, score=score, line=trimmed))
    return candidates


def best_amount(text: str) -> AmountCandidate | None:
    candidates = amount_candidates(text)
    if candidates:
        return max(candidates, key=lambda c: (c.score, c.value))

    # Fallback: largest plausible number anywhere in the document.
    values = [normalize_number(m.group(1)) for m in _BARE_NUMBER_RE.finditer(text)]
    plausible = [v for v in values if _is_plausible_amount(v)]
    if not plausible:
        return None
    return AmountCandidate(value=max(plausible), score=0, line="")


def parse_amount(text: str) -> Decimal | None:
    best = best_amount(text)
    return best.value if best else None


def parse_vendor(text: str) -> str | None:
    lines = [ln.strip() for ln in text.splitlines() if ln.strip()][:VENDOR_SCAN_LINES]
    for line in lines:
        if len(line) < 3 or len(line) > 120:
            continue
        lower = line.lower()
        if any(word in lower for word in _VENDOR_SKIP_WORDS):
            continue
        if not any(ch.isalpha() for ch in line):
            continue
        if sum(ch.isdigit() for ch in line) > 10:
            continue
        return line[:VENDOR_MAX_CHARS]
    return None


def parse_doc_number(text: str) -> str | None:
    m = _DOC_NUMBER_RE.search(text)
    return m.group(1)[:DOC_NUMBER_MAX_CHARS] if m else None


def looks_foreign(text: str) -> bool:
    """Mostly non-Hebrew text that still has Latin letters."""
    hebrew = len(_HEBREW_RE.findall(text))
    latin = len(_LATIN_RE.findall(text))
    if not latin:
        return False
    return hebrew / (hebrew + latin) < 0.2


def parse_currency(text: str) -> str | None:
    if not text.strip():
        return None
    if _ILS_MARKER_RE.search(text):
        return ILS
    if _USD_MARKER_RE.search(text):
        return USD
    if _EUR_MARKER_RE.search(text):
        return EUR
    return USD if looks_foreign(text) else ILS


FIELD_RULES: tuple[tuple[str, Callable[[str], Any]], ...] = (
    ("date", parse_date),
    ("amount", parse_amount),
    ("vendor", parse_vendor),
    ("doc_number", parse_doc_number),
    ("currency", parse_currency),
)


def parse_receipt_text(text: str | None) -> ParsedFields:
    text = (text or "").replace("\u202f", " ").replace("\xa0", " ")
    if not text.strip():
        return ParsedFields()
    values: dict[str, Any] = {name: rule(text) for name, rule in FIELD_RULES}
    best = best_amount(text)
    values["amount_score"] = best.score if best else None
    return ParsedFields(**values)
