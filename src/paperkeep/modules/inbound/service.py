"""
Inbound message routing for the messaging channel (WhatsApp via Twilio).

A message is either an attachment (becomes a Document and an extraction job), a short
classification reply for the attachment just sent, or a one-line quick transaction.
Every branch answers with a single reply text; nothing raises to the webhook.
"""

from __future__ import annotations

import re
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from paperkeep.core.config import settings
from paperkeep.core.currencies import QUOTE_CHARS, normalize_currency
from paperkeep.core.logging import get_logger, log_event, log_exception
from paperkeep.core.models import utcnow
from paperkeep.core.phone import normalize_phone
from paperkeep.modules.documents.models import Document, DocumentSource, DocumentType
from paperkeep.modules.documents.schemas import DocumentMeta
from paperkeep.modules.documents.service import (
    DuplicateDocumentError,
    UploadedFile,
    store_document,
)
from paperkeep.modules.extraction.parser import (
    CURRENCY_TOKEN_PATTERN,
    NUMBER_PATTERN,
    normalize_number,
)
from paperkeep.modules.fx.service import (
    RateCache,
    convert_to_local,
    get_rate_cache,
    has_local_rate,
)
from paperkeep.modules.identity.models import User
from paperkeep.modules.identity.service import (
    find_user_by_inbound_number,
    find_user_by_personal_number,
)
from paperkeep.modules.inbound.twilio import FetchedMedia, fetch_twilio_media
from paperkeep.modules.ledger.models import TransactionSource
from paperkeep.modules.ledger.service import create_transaction, get_or_create_default_category

logger = get_logger(__name__)

INBOUND_VENDOR_PLACEHOLDER = "Unknown"
MAX_QUICK_AMOUNT = Decimal("1000000")

MSG_UNKNOWN_ACCOUNT = (
    "No account found for this number. If you are a user, add the number you send from "
    "in your settings. If you are a customer, send to the business number you were given."
)
MSG_HELP = (
    "Send a photo or file of a receipt or invoice.\n"
    "After it arrives you can reply:\n"
    "1 = receipt (expense)\n"
    "2 = invoice (income)\n"
    "Or log a quick expense as text, e.g. 'Coffee 12.50'."
)
MSG_NO_RECENT_DOCUMENT = (
    "I could not find a document you just sent. Send a photo or file first, then reply "
    "1 = receipt, 2 = invoice."
)
MSG_MARKED_RECEIPT = "Done, marked as a receipt (expense)."
MSG_MARKED_INVOICE = "Done, marked as an invoice (income)."
MSG_DUPLICATE = "This document is already saved."
MSG_DOCUMENT_RECEIVED = (
    "Got it, the document is queued for OCR.\n"
    "What is it?\n"
    "1 = receipt (expense)\n"
    "2 = invoice (income)\n\n"
    "(You can also change this later in the app.)"
)
MSG_MEDIA_ERROR = "Something went wrong processing the file. Try again or upload it in the app."

_RECEIPT_REPLY_RE = re.compile(r"^\s*(?:1|receipt|expense|קבלה|הוצאה)\s*[.!]?\s*$", re.I)
_INVOICE_REPLY_RE = re.compile(r"^\s*(?:2|invoice|income|חשבונית|הכנסה)\s*[.!]?\s*$", re.I)

_Q = f"[{QUOTE_CHARS}]?"
_AMOUNT_KEYWORDS = rf"amount|sum|paid|total|סכום|שילמתי|סה{_Q}כ"
_CURRENCY_WORDS = r"dollars?|euros?|דולר|יורו|שקלים|שקל"
_QUICK_RE = re.compile(
    rf"^(?P<vendor>.*?[^\W\d_].*?)\s+"
    rf"(?:(?:{_AMOUNT_KEYWORDS})\s*:?\s*)?"
    rf"(?P<pre>{CURRENCY_TOKEN_PATTERN})?\s*"
    rf"(?P<num>{NUMBER_PATTERN})"
    rf"\s*(?P<post>{CURRENCY_TOKEN_PATTERN}|{_CURRENCY_WORDS})?\s*$",
    re.I,
)

MediaFetcher = Callable[[str], FetchedMedia]


@dataclass(frozen=True)
class InboundMessage:
    sender: str
    recipient: str
    body: str = ""
    media_url: str | None = None
    media_content_type: str | None = None

    @property
    def has_media(self) -> bool:
        return bool(self.media_url)


@dataclass(frozen=True)
class InboundReply:
    text: str
    kind: str
    document_id: uuid.UUID | None = None
    transaction_id: uuid.UUID | None = None


@dataclass(frozen=True)
class QuickTransaction:
    vendor: str
    amount: Decimal
    currency: str


def parse_quick_transaction(text: str | None) -> QuickTransaction | None:
    """``"<vendor> [amount keyword] <amount> [currency]"``, e.g. ``Uber paid 45 $``."""
    line = (text or "").replace("\u00a0", " ").replace("\u202f", " ").strip()
    if not line or "\n" in line:
        return None
    m = _QUICK_RE.match(line)
    if not m:
        return None

    amount = normalize_number(m.group("num"))
    if amount is None or not (0 < amount < MAX_QUICK_AMOUNT):
        return None
    vendor = m.group("vendor").strip(" \t:-")
    if not vendor:
        return None
    currency = (
        normalize_currency(m.group("pre") or m.group("post")) or settings.local_currency.upper()
    )
    return QuickTransaction(vendor=vendor[:120], amount=amount, currency=currency)


def classification_reply(text: str | None) -> DocumentType | None:
    t = text or ""
    if _INVOICE_REPLY_RE.match(t):
        return DocumentType.INCOME
    if _RECEIPT_REPLY_RE.match(t):
        return DocumentType.EXPENSE
    return None


def resolve_account(session: Session, message: InboundMessage) -> User | None:
    """Sender's personal number first, then the business inbound number it was sent to."""
    sender = normalize_phone(message.sender)
    user = find_user_by_personal_number(session, normalized=sender)
    if user:
        return user
    recipient = normalize_phone(message.recipient)
    return find_user_by_inbound_number(session, normalized=recipient)


def latest_inbound_document(
    session: Session, *, user: User, now: datetime | None = None
) -> Document | None:
    since = (now or utcnow()) - timedelta(minutes=settings.inbound_reclassify_window_minutes)
    return session.scalar(
        select(Document)
        .where(
            Document.user_id == user.id,
            Document.source == DocumentSource.INBOUND,
            Document.created_at >= since,
        )
        .order_by(Document.created_at.desc())
        .limit(1)
    )


def _reclassify(
    session: Session, *, user: User, doc_type: DocumentType, now: datetime | None
) -> InboundReply:
    document = latest_inbound_document(session, user=user, now=now)
    if document is None:
        return InboundReply(text=MSG_NO_RECENT_DOCUMENT, kind="no_recent_document")
    document.type = doc_type
    session.add(document)
    session.commit()
    log_event(
        logger,
        "inbound.document.reclassified",
        document_id=str(document.id),
        doc_type=doc_type.value,
    )
    text = MSG_MARKED_INVOICE if doc_type == DocumentType.INCOME else MSG_MARKED_RECEIPT
    return InboundReply(text=text, kind="reclassified", document_id=document.id)


def _record_quick_transaction(
    session: Session, *, user: User, quick: QuickTransaction, rate_cache: RateCache
) -> InboundReply:
    local = settings.local_currency.upper()
    amount = quick.amount
    currency = quick.currency
    description = None
    if has_local_rate(quick.currency) and quick.currency != local:
        rate = rate_cache.get_rate()
        amount = convert_to_local(quick.amount, rate=rate)
        currency = local
        description = f"Converted from {quick.amount} {quick.currency} at {rate}"

    category = get_or_create_default_category(session, user_id=user.id)
    tx = create_transaction(
        session,
        user_id=user.id,
        date=utcnow().date(),
        amount=amount,
        currency=currency,
        vendor=quick.vendor,
        description=description,
        category_id=category.id,
        source=TransactionSource.INBOUND,
    )
    return InboundReply(
        text=f"Saved: {quick.vendor} {amount} {currency}.",
        kind="quick_transaction",
        transaction_id=tx.id,
    )


def _media_extension(content_type: str) -> str:
    ct = content_type.lower()
    if "pdf" in ct:
        return "pdf"
    if "png" in ct:
        return "png"
    return "jpg"


def _store_media(
    session: Session, *, user: User, message: InboundMessage, fetch_media: MediaFetcher
) -> InboundReply:
    media = fetch_media(message.media_url or "")
    content_type = media.content_type or message.media_content_type or "image/jpeg"
    filename = f"webhook-{time.time_ns() // 1_000_000}.{_media_extension(content_type)}"
    try:
        document = store_document(
            session,
            user=user,
            upload=UploadedFile(filename=filename, content_type=content_type, body=media.body),
            meta=DocumentMeta(type=DocumentType.EXPENSE, vendor=INBOUND_VENDOR_PLACEHOLDER),
            source=DocumentSource.INBOUND,
        )
    except DuplicateDocumentError as e:
        return InboundReply(text=MSG_DUPLICATE, kind="duplicate", document_id=e.existing_id)
    return InboundReply(text=MSG_DOCUMENT_RECEIVED, kind="document_created", document_id=document.id)


def route_inbound_message(
    session: Session,
    message: InboundMessage,
    *,
    fetch_media: MediaFetcher | None = None,
    rate_cache: RateCache | None = None,
    now: datetime | None = None,
) -> InboundReply:
    user = resolve_account(session, message)
    if user is None:
        log_event(
            logger,
            "inbound.account.unknown",
            sender_suffix=normalize_phone(message.sender)[-4:] or None,
            has_media=message.has_media,
        )
        return InboundReply(text=MSG_UNKNOWN_ACCOUNT, kind="unknown_account")

    if not message.has_media:
        doc_type = classification_reply(message.body)
        if doc_type is not None:
            return _reclassify(session, user=user, doc_type=doc_type, now=now)
        quick = parse_quick_transaction(message.body)
        if quick is not None:
            return _record_quick_transaction(
                session, user=user, quick=quick, rate_cache=rate_cache or get_rate_cache()
            )
        return InboundReply(text=MSG_HELP, kind="help")

    try:
        reply = _store_media(
            session, user=user, message=message, fetch_media=fetch_media or fetch_twilio_media
        )
    except Exception:  # noqa: BLE001
        session.rollback()
        log_exception(logger, "inbound.media.error", user_id=str(user.id))
        return InboundReply(text=MSG_MEDIA_ERROR, kind="media_error")

    log_event(
        logger,
        "inbound.media.routed",
        user_id=str(user.id),
        outcome=reply.kind,
        document_id=str(reply.document_id) if reply.document_id else None,
    )
    return reply
