from __future__ import annotations

import datetime as dt
import uuid
from decimal import Decimal

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from paperkeep.api.deps import get_current_user
from paperkeep.core.db import db_session
from paperkeep.core.logging import get_logger, log_event
from paperkeep.modules.documents.models import DocumentType
from paperkeep.modules.documents.schemas import DocumentMeta, DocumentOut, RetryOcrOut
from paperkeep.modules.documents.service import (
    DuplicateDocumentError,
    create_document_from_upload,
    get_document_for_user,
    list_documents,
)
from paperkeep.modules.extraction.queue import retry_document_ocr
from paperkeep.modules.identity.models import User
from paperkeep.worker.tasks import poke_extraction_worker

router = APIRouter(tags=["documents"])
logger = get_logger(__name__)


@router.post("/documents/upload", response_model=DocumentOut)
async def upload_document(
    upload: UploadFile = File(...),
    doc_type: DocumentType = Form(DocumentType.EXPENSE, alias="type"),
    vendor: str | None = Form(None),
    date: dt.date | None = Form(None),
    amount: Decimal | None = Form(None),
    currency: str | None = Form(None),
    doc_number: str | None = Form(None),
    description: str | None = Form(None),
    category_id: uuid.UUID | None = Form(None),
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
):
    body = await upload.read()
    filename = upload.filename or "upload.bin"
    log_event(
        logger,
        "upload.received",
        filename=filename,
        content_type=upload.content_type,
        byte_size=len(body),
    )
    meta = DocumentMeta(
        type=doc_type,
        vendor=vendor,
        date=date,
        amount=amount,
        currency=currency,
        doc_number=doc_number,
        description=description,
        category_id=category_id,
    )
    try:
        document = create_document_from_upload(
            session,
            user=user,
            filename=filename,
            content_type=upload.content_type,
            body=body,
            meta=meta,
        )
    except DuplicateDocumentError as e:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": "Document already uploaded", "existing_id": str(e.existing_id)},
        )
    poke_extraction_worker(reason="upload")
    return DocumentOut.model_validate(document, from_attributes=True)


@router.get("/documents", response_model=list[DocumentOut])
def get_documents(
    limit: int = 100,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[DocumentOut]:
    if not 0 < limit <= 500:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid limit")
    docs = list_documents(session, user=user, limit=limit)
    return [DocumentOut.model_validate(d, from_attributes=True) for d in docs]


@router.get("/documents/{document_id}", response_model=DocumentOut)
def get_document(
    document_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> DocumentOut:
    document = get_document_for_user(session, document_id=document_id, user=user)
    return DocumentOut.model_validate(document, from_attributes=True)


@router.post("/documents/{document_id}/retry-ocr", response_model=RetryOcrOut)
def retry_ocr(
    document_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> RetryOcrOut:
    document = get_document_for_user(session, document_id=document_id, user=user)
    job = retry_document_ocr(session, document=document)
    log_event(logger, "document.retry_ocr", document_id=str(document.id), job_id=str(job.id))
    poke_extraction_worker(reason="retry")
    return RetryOcrOut(document_id=document.id, ocr_status=document.ocr_status, job_status=job.status)
