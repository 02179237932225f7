from __future__ import annotations

import hashlib
import mimetypes
import uuid
from dataclasses import dataclass
from decimal import Decimal

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from paperkeep.core.config import settings
from paperkeep.core.currencies import normalize_currency, quantize_amount
from paperkeep.core.logging import get_logger, log_event, log_exception
from paperkeep.core.models import utcnow
from paperkeep.core.storage import get_storage
from paperkeep.modules.documents.models import Document, DocumentSource, OcrStatus
from paperkeep.modules.documents.schemas import DocumentMeta
from paperkeep.modules.extraction.queue import enqueue_extraction_job
from paperkeep.modules.identity.models import User
from paperkeep.modules.ledger.models import Category

logger = get_logger(__name__)

PLACEHOLDER_VENDOR = "—"
MAX_AMOUNT = Decimal("1000000")

_EXTENSIONS = {
    "application/pdf": "pdf",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/heic": "heic",
    "image/gif": "gif",
}


class DuplicateDocumentError(Exception):
    def __init__(self, existing_id: uuid.UUID) -> None:
        super().__init__(f"Document already exists: {existing_id}")
        self.existing_id = existing_id


@dataclass(frozen=True)
class UploadedFile:
    filename: str
    content_type: str | None
    body: bytes


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def file_extension(*, filename: str | None, content_type: str | None) -> str:
    name = (filename or "").strip()
    if "." in name:
        ext = name.rsplit(".", 1)[1].lower()
        if ext.isalnum() and len(ext) <= 5:
            return ext
    ct = (content_type or "").lower().split(";")[0].strip()
    if ct in _EXTENSIONS:
        return _EXTENSIONS[ct]
    guessed = mimetypes.guess_extension(ct) if ct else None
    return guessed.lstrip(".") if guessed else "bin"


def build_storage_key(*, user_id: uuid.UUID, document_id: uuid.UUID, ext: str) -> str:
    now = utcnow()
    return f"receipts/{user_id}/{now:%Y}/{now:%m}/{document_id}.{ext}"


def find_duplicate(session: Session, *, user_id: uuid.UUID, sha256: str) -> Document | None:
    return session.scalar(
        select(Document).where(Document.user_id == user_id, Document.sha256 == sha256)
    )


def _validated_amount(amount: Decimal | None) -> Decimal:
    if amount is None:
        return Decimal("0")
    if not (0 < amount < MAX_AMOUNT):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Amount must be greater than 0 and less than 1,000,000",
        )
    return quantize_amount(amount)


def _validated_category(
    session: Session, *, user: User, category_id: uuid.UUID | None
) -> uuid.UUID | None:
    if category_id is None:
        return None
    category = session.scalar(
        select(Category).where(Category.id == category_id, Category.user_id == user.id)
    )
    if not category:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown category")
    return category.id


def store_document(
    session: Session,
    *,
    user: User,
    upload: UploadedFile,
    meta: DocumentMeta,
    source: DocumentSource,
) -> Document:
    """
    Persist bytes and the Document row, then enqueue extraction.

    Raises ``DuplicateDocumentError`` when the same bytes already exist for this user.
    """
    if not upload.body:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file")

    digest = sha256_hex(upload.body)
    existing = find_duplicate(session, user_id=user.id, sha256=digest)
    if existing:
        log_event(
            logger,
            "document.duplicate",
            existing_id=str(existing.id),
            sha256=digest,
            source=source.value,
        )
        raise DuplicateDocumentError(existing.id)

    amount = _validated_amount(meta.amount)
    category_id = _validated_category(session, user=user, category_id=meta.category_id)

    document_id = uuid.uuid4()
    ext = file_extension(filename=upload.filename, content_type=upload.content_type)
    key = build_storage_key(user_id=user.id, document_id=document_id, ext=ext)
    storage = get_storage()
    stored = storage.put(key=key, body=upload.body, content_type=upload.content_type)

    document = Document(
        id=document_id,
        user_id=user.id,
        type=meta.type,
        date=meta.date or utcnow().date(),
        amount=amount,
        currency=normalize_currency(meta.currency) or settings.local_currency,
        vendor=(meta.vendor or "").strip()[:120] or PLACEHOLDER_VENDOR,
        category_id=category_id,
        description=meta.description,
        doc_number=(meta.doc_number or "").strip() or None,
        storage_key=stored.key,
        filename=upload.filename,
        content_type=upload.content_type,
        byte_size=stored.byte_size,
        sha256=digest,
        source=source,
        ocr_status=OcrStatus.PENDING,
    )
    session.add(document)
    try:
        session.commit()
    except IntegrityError as e:
        session.rollback()
        try:
            storage.delete(key=stored.key)
        except Exception:  # noqa: BLE001
            log_exception(logger, "document.orphan_cleanup_failed", storage_key=stored.key)
        existing = find_duplicate(session, user_id=user.id, sha256=digest)
        if existing:
            raise DuplicateDocumentError(existing.id) from e
        raise
    session.refresh(document)

    enqueue_extraction_job(session, document=document)
    log_event(
        logger,
        "document.created",
        document_id=str(document.id),
        source=source.value,
        byte_size=document.byte_size,
        content_type=document.content_type,
    )
    return document


def create_document_from_upload(
    session: Session,
    *,
    user: User,
    filename: str,
    content_type: str | None,
    body: bytes,
    meta: DocumentMeta | None = None,
) -> Document:
    return store_document(
        session,
        user=user,
        upload=UploadedFile(filename=filename, content_type=content_type, body=body),
        meta=meta or DocumentMeta(),
        source=DocumentSource.UPLOAD,
    )


def list_documents(session: Session, *, user: User, limit: int = 100) -> list[Document]:
    return list(
        session.scalars(
            select(Document)
            .where(Document.user_id == user.id)
            .order_by(Document.created_at.desc())
            .limit(limit)
        )
    )


def get_document_for_user(session: Session, *, document_id: uuid.UUID, user: User) -> Document:
    document = session.scalar(
        select(Document).where(Document.id == document_id, Document.user_id == user.id)
    )
    if not document:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
    return document
