from __future__ import annotations

from datetime import date
from decimal import Decimal

from sqlalchemy import select

from paperkeep.core.db import SessionLocal
from paperkeep.modules.documents.models import Document, OcrStatus
from paperkeep.modules.documents.service import create_document_from_upload
from paperkeep.modules.extraction import dispatcher
from paperkeep.modules.extraction import vision as vision_module
from paperkeep.modules.extraction.models import ExtractionJob, JobStatus
from paperkeep.modules.extraction.queue import process_one_job
from paperkeep.modules.fx.service import RateCache
from paperkeep.modules.identity.service import create_user

SCANNED_TEXT = "ACME Corp\nInvoice No. 1001\nDate: 2024-03-15\nTotal: $100.00"


class _BlankPage:
    def extract_text(self) -> str:
        return ""


class _ScannedPdfReader:
    def __init__(self, _stream) -> None:
        self.pages = [_BlankPage()]


class _FakeVision:
    def __init__(self) -> None:
        self.pdf_docs: list[str] = []

    def ocr_pdf(self, body: bytes, *, doc_id: str = "doc") -> str:
        self.pdf_docs.append(doc_id)
        return SCANNED_TEXT

    def annotate_image(self, body: bytes) -> str:
        raise AssertionError("PDFs must not go to image OCR")


def test_scanned_pdf_goes_through_cloud_ocr_and_backfills(monkeypatch):
    vision = _FakeVision()
    monkeypatch.setattr(dispatcher, "PdfReader", _ScannedPdfReader)
    monkeypatch.setattr(vision_module, "_client", vision)

    with SessionLocal() as session:
        user = create_user(session, email="owner@example.com")
        doc = create_document_from_upload(
            session,
            user=user,
            filename="scan.pdf",
            content_type="application/pdf",
            body=b"%PDF-1.4 scanned",
        )
        doc_id = doc.id

    outcome = process_one_job(rate_cache=RateCache(fetch=lambda: Decimal("3.70")))
    assert outcome.processed
    assert outcome.status == "success"
    assert vision.pdf_docs == [str(doc_id)]

    with SessionLocal() as session:
        doc = session.get(Document, doc_id)
        assert doc.ocr_status == OcrStatus.SUCCESS
        assert doc.ocr_text == SCANNED_TEXT
        assert doc.vendor == "ACME Corp"
        assert doc.doc_number == "1001"
        assert doc.date == date(2024, 3, 15)
        assert doc.amount == Decimal("370.00")
        assert doc.currency == "ILS"
        assert doc.ocr_amount_guess == Decimal("370.00")

        job = session.scalar(select(ExtractionJob).where(ExtractionJob.document_id == doc_id))
        assert job.status == JobStatus.SUCCESS
        assert job.attempts == 1
        assert job.last_error is None
