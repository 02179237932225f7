from __future__ import annotations

import datetime as dt
import uuid
from decimal import Decimal

from pydantic import BaseModel

from paperkeep.modules.documents.models import DocumentSource, DocumentType, OcrStatus
from paperkeep.modules.extraction.models import JobStatus


class DocumentMeta(BaseModel):
    type: DocumentType = DocumentType.EXPENSE
    vendor: str | None = None
    date: dt.date | None = None
    amount: Decimal | None = None
    currency: str | None = None
    doc_number: str | None = None
    description: str | None = None
    category_id: uuid.UUID | None = None


class DocumentOut(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    type: DocumentType
    date: dt.date
    amount: Decimal
    currency: str
    vendor: str
    category_id: uuid.UUID | None
    description: str | None
    doc_number: str | None
    filename: str
    content_type: str | None
    byte_size: int
    sha256: str
    source: DocumentSource
    ocr_status: OcrStatus
    ocr_text: str | None
    created_at: dt.datetime
    updated_at: dt.datetime


class RetryOcrOut(BaseModel):
    document_id: uuid.UUID
    ocr_status: OcrStatus
    job_status: JobStatus
