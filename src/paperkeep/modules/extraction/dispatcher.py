from __future__ import annotations

import time
from io import BytesIO

from pypdf import PdfReader

from paperkeep.core.logging import get_logger, log_event, monotonic_ms
from paperkeep.modules.extraction.vision import VisionClient, get_vision_client

logger = get_logger(__name__)


def is_pdf(*, content_type: str | None, filename: str | None, body: bytes = b"") -> bool:
    if (content_type or "").lower().split(";")[0].strip() == "application/pdf":
        return True
    if (filename or "").lower().endswith(".pdf"):
        return True
    b = body[:1024].lstrip()
    if b.startswith(b"\xef\xbb\xbf"):
        b = b[3:].lstrip()
    return b.startswith(b"%PDF")


def extract_pdf_text_layer(body: bytes) -> str:
    reader = PdfReader(BytesIO(body))
    pages = [(page.extract_text() or "") for page in reader.pages]
    return "\n\n".join(pages).replace("\u202f", " ").replace("\xa0", " ")


def extract_text(
    body: bytes,
    *,
    content_type: str | None,
    filename: str | None,
    doc_id: str = "doc",
    vision: VisionClient | None = None,
) -> str:
    """
    Best-effort plain text for an uploaded file.

    PDFs try the embedded text layer first and fall back to Vision async PDF OCR when
    it is unreadable or blank. Everything else goes to Vision image OCR. Transport and
    service errors propagate; an empty string means the OCR service found no text.
    """
    start = time.monotonic()
    vision = vision or get_vision_client()

    if is_pdf(content_type=content_type, filename=filename, body=body):
        text = ""
        try:
            text = extract_pdf_text_layer(body)
        except Exception as e:  # noqa: BLE001
            log_event(
                logger,
                "extraction.pdf.text_layer_error",
                doc_id=doc_id,
                error_type=type(e).__name__,
                error=str(e)[:500],
            )
        if text.strip():
            log_event(
                logger,
                "extraction.dispatch",
                doc_id=doc_id,
                strategy="pdf_text_layer",
                text_chars=len(text),
                duration_ms=monotonic_ms(start),
            )
            return text

        text = vision.ocr_pdf(body, doc_id=doc_id)
        log_event(
            logger,
            "extraction.dispatch",
            doc_id=doc_id,
            strategy="vision_pdf",
            text_chars=len(text),
            duration_ms=monotonic_ms(start),
        )
        return text

    text = vision.annotate_image(body)
    log_event(
        logger,
        "extraction.dispatch",
        doc_id=doc_id,
        strategy="vision_image",
        content_type=content_type,
        text_chars=len(text),
        duration_ms=monotonic_ms(start),
    )
    return text
