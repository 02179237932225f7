"""
Durable extraction job queue.

One ``ExtractionJob`` row per document. Workers never hold a lock: a job is claimed
with a conditional ``UPDATE ... WHERE id = ? AND status = 'pending'`` and whoever
sees ``rowcount == 1`` owns it. Losing that race simply means "nothing to do".

Lifecycle: pending -> running -> success | pending (retry with backoff) | failed.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import httpx
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from paperkeep.core.config import settings
from paperkeep.core.db import SessionLocal
from paperkeep.core.logging import (
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    reset_job_context,
    set_job_context,
)
from paperkeep.core.models import as_utc, utcnow
from paperkeep.core.storage import get_storage
from paperkeep.modules.documents.models import Document, OcrStatus
from paperkeep.modules.extraction.backfill import apply_backfill
from paperkeep.modules.extraction.dispatcher import extract_text
from paperkeep.modules.extraction.models import ExtractionJob, JobStatus
from paperkeep.modules.extraction.parser import parse_receipt_text
from paperkeep.modules.extraction.vision import ExtractionError
from paperkeep.modules.fx.service import RateCache, get_rate_cache

logger = get_logger(__name__)

NO_TEXT_ERROR = "No text extracted"
NO_TEXT_MESSAGE = "OCR finished but found no readable text in this file."
CONNECTION_ERROR_MESSAGE = (
    "The OCR service connection dropped while reading this file. "
    "Use 'retry OCR' to try again."
)
_CONNECTION_HINTS = ("stream", "connection", "socket hang up", "econnreset", "broken pipe")


@dataclass(frozen=True)
class JobOutcome:
    processed: bool
    status: str | None = None
    job_id: str | None = None
    document_id: str | None = None
    error: str | None = None
    will_retry: bool = False

    @property
    def ok(self) -> bool:
        return self.status in (None, "success", "soft_failed")


@dataclass(frozen=True)
class BatchResult:
    processed: int
    ok: bool
    reclaimed: int = 0
    error: str | None = None


def max_attempts() -> int:
    return settings.extraction_max_attempts


def backoff_seconds(attempts: int) -> int:
    """10s, 30s, 120s, then clamped at the last entry."""
    table = settings.extraction_backoff_seconds
    return table[min(len(table) - 1, max(0, attempts - 1))]


def is_connection_error(error: BaseException) -> bool:
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return True
    message = str(error).lower()
    return any(hint in message for hint in _CONNECTION_HINTS)


def friendly_error_message(error: BaseException) -> str:
    if is_connection_error(error):
        return CONNECTION_ERROR_MESSAGE
    message = str(error) or type(error).__name__
    return message[: settings.ocr_error_max_chars]


def enqueue_extraction_job(
    session: Session, *, document: Document, reset_attempts: bool = False
) -> ExtractionJob:
    """
    Upsert the document's job back to ``pending`` with a clean schedule.

    Upload and user-triggered retry both go through here, so a document never gets a
    second job row. A job that is running right now is left alone; its worker is
    already about to write fresh results.
    """
    job = session.scalar(select(ExtractionJob).where(ExtractionJob.document_id == document.id))
    if job is None:
        job = ExtractionJob(
            document_id=document.id,
            user_id=document.user_id,
            status=JobStatus.PENDING,
            attempts=0,
        )
        session.add(job)
        try:
            session.commit()
        except IntegrityError:
            # Lost an enqueue race on the unique document_id; reset the winner's row.
            session.rollback()
            return enqueue_extraction_job(
                session, document=document, reset_attempts=reset_attempts
            )
        session.refresh(job)
        log_event(
            logger,
            "extraction.job.enqueued",
            job_id=str(job.id),
            document_id=str(document.id),
            action="created",
        )
        return job

    if job.status == JobStatus.RUNNING:
        log_event(
            logger,
            "extraction.job.enqueue_skipped",
            job_id=str(job.id),
            document_id=str(document.id),
            reason="running",
        )
        return job

    # A finished or exhausted job would never be claimed again without a fresh budget.
    exhausted = job.status == JobStatus.FAILED or job.attempts >= max_attempts()
    job.status = JobStatus.PENDING
    job.next_run_at = None
    job.last_error = None
    if reset_attempts or exhausted:
        job.attempts = 0
        job.started_at = None
        job.finished_at = None
    session.add(job)
    session.commit()
    session.refresh(job)
    log_event(
        logger,
        "extraction.job.enqueued",
        job_id=str(job.id),
        document_id=str(document.id),
        action="reset",
    )
    return job


def retry_document_ocr(session: Session, *, document: Document) -> ExtractionJob:
    document.ocr_status = OcrStatus.PENDING
    document.ocr_text = None
    session.add(document)
    session.commit()
    return enqueue_extraction_job(session, document=document, reset_attempts=True)


def claim_next_job(session: Session, *, now: datetime | None = None) -> ExtractionJob | None:
    now = now or utcnow()
    candidate = session.scalar(
        select(ExtractionJob)
        .where(
            ExtractionJob.status == JobStatus.PENDING,
            or_(ExtractionJob.next_run_at.is_(None), ExtractionJob.next_run_at <= now),
            ExtractionJob.attempts < max_attempts(),
        )
        .order_by(ExtractionJob.next_run_at.asc().nulls_first(), ExtractionJob.created_at.asc())
        .limit(1)
    )
    if candidate is None:
        return None

    result = session.execute(
        update(ExtractionJob)
        .where(ExtractionJob.id == candidate.id, ExtractionJob.status == JobStatus.PENDING)
        .values(
            status=JobStatus.RUNNING,
            started_at=now,
            finished_at=None,
            attempts=ExtractionJob.attempts + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        session.rollback()
        log_event(logger, "extraction.job.claim_lost", job_id=str(candidate.id))
        return None
    session.commit()
    session.refresh(candidate)
    return candidate


def process_one_job(
    *,
    now: datetime | None = None,
    session_factory: Callable[[], Session] = SessionLocal,
    rate_cache: RateCache | None = None,
) -> JobOutcome:
    """Claim and run at most one eligible job. Safe to call from any number of workers."""
    now = now or utcnow()
    with session_factory() as session:
        job = claim_next_job(session, now=now)
        if job is None:
            return JobOutcome(processed=False)
        token = set_job_context(str(job.id))
        try:
            return _run_claimed_job(
                session, job=job, now=now, rate_cache=rate_cache or get_rate_cache()
            )
        finally:
            reset_job_context(token)


def _run_claimed_job(
    session: Session, *, job: ExtractionJob, now: datetime, rate_cache: RateCache
) -> JobOutcome:
    start = time.monotonic()
    job_id = job.id
    document_id = job.document_id
    log_event(
        logger,
        "extraction.job.start",
        job_id=str(job_id),
        document_id=str(document_id),
        attempt=job.attempts,
    )
    try:
        document = session.scalar(
            select(Document).where(Document.id == document_id, Document.user_id == job.user_id)
        )
        if document is None:
            raise ExtractionError("Document not found")

        body = get_storage().get(key=document.storage_key)
        text = extract_text(
            body,
            content_type=document.content_type,
            filename=document.filename,
            doc_id=str(document.id),
        )

        if not text.strip():
            return _finish_soft_failure(session, job=job, document=document, start=start)

        parsed = parse_receipt_text(text)
        plan = apply_backfill(document, text=text, parsed=parsed, rate_cache=rate_cache)
        job.status = JobStatus.SUCCESS
        job.finished_at = utcnow()
        job.next_run_at = None
        job.last_error = None
        session.add_all([document, job])
        session.commit()
    except Exception as e:  # noqa: BLE001
        session.rollback()
        return _record_failure(
            session, job_id=job_id, document_id=document_id, error=e, now=now, start=start
        )

    log_event(
        logger,
        "extraction.job.finish",
        job_id=str(job_id),
        document_id=str(document_id),
        status="success",
        fields_updated=plan.fields,
        amount_score=parsed.amount_score,
        converted_from_currency=plan.converted_from[1] if plan.converted_from else None,
        fx_rate=str(plan.fx_rate) if plan.fx_rate is not None else None,
        duration_ms=monotonic_ms(start),
    )
    return JobOutcome(
        processed=True, status="success", job_id=str(job_id), document_id=str(document_id)
    )


def _finish_soft_failure(
    session: Session, *, job: ExtractionJob, document: Document, start: float
) -> JobOutcome:
    # The service answered; asking again would return the same nothing.
    document.ocr_status = OcrStatus.FAILED
    document.ocr_text = NO_TEXT_MESSAGE
    job.status = JobStatus.FAILED
    job.last_error = NO_TEXT_ERROR
    job.finished_at = utcnow()
    job.next_run_at = None
    session.add_all([document, job])
    session.commit()
    log_event(
        logger,
        "extraction.job.finish",
        job_id=str(job.id),
        document_id=str(document.id),
        status="soft_failed",
        duration_ms=monotonic_ms(start),
    )
    return JobOutcome(
        processed=True,
        status="soft_failed",
        job_id=str(job.id),
        document_id=str(document.id),
        error=NO_TEXT_ERROR,
    )


def _record_failure(
    session: Session,
    *,
    job_id: uuid.UUID,
    document_id: uuid.UUID,
    error: Exception,
    now: datetime,
    start: float,
) -> JobOutcome:
    raw_error = (str(error) or type(error).__name__)[: settings.ocr_error_max_chars]
    job = session.get(ExtractionJob, job_id)
    attempts = job.attempts if job else max_attempts()
    will_retry = attempts < max_attempts()

    if job is not None:
        job.last_error = raw_error
        if will_retry:
            job.status = JobStatus.PENDING
            job.next_run_at = now + timedelta(seconds=backoff_seconds(attempts))
            job.finished_at = None
        else:
            job.status = JobStatus.FAILED
            job.next_run_at = None
            job.finished_at = utcnow()
        session.add(job)

    if not will_retry:
        _mark_document_failed(session, document_id=document_id, error=error)
    session.commit()

    log_exception(
        logger,
        "extraction.job.error",
        job_id=str(job_id),
        document_id=str(document_id),
        attempt=attempts,
        will_retry=will_retry,
        next_run_at=job.next_run_at.isoformat() if job and job.next_run_at else None,
        duration_ms=monotonic_ms(start),
    )
    return JobOutcome(
        processed=True,
        status="retry" if will_retry else "failed",
        job_id=str(job_id),
        document_id=str(document_id),
        error=raw_error,
        will_retry=will_retry,
    )


def _mark_document_failed(
    session: Session, *, document_id: uuid.UUID, error: BaseException
) -> None:
    document = session.get(Document, document_id)
    if document is None:
        return
    document.ocr_status = OcrStatus.FAILED
    document.ocr_text = f"OCR job failed: {friendly_error_message(error)}"[
        : settings.ocr_text_max_chars
    ]
    session.add(document)


class StaleJobError(ExtractionError):
    pass


def reclaim_stale_jobs(session: Session, *, now: datetime | None = None) -> int:
    """
    Return jobs stuck in ``running`` (crashed worker, host time limit) to the queue.

    Uses the same conditional-update pattern as claiming, so a worker that finishes
    at the same moment wins and the reclaim becomes a no-op for that row.
    """
    now = now or utcnow()
    cutoff = now - timedelta(minutes=settings.extraction_stale_running_minutes)
    stale = list(
        session.scalars(
            select(ExtractionJob).where(
                ExtractionJob.status == JobStatus.RUNNING,
                ExtractionJob.started_at < cutoff,
            )
        )
    )
    reclaimed = 0
    for job in stale:
        exhausted = job.attempts >= max_attempts()
        message = (
            f"Worker did not finish within {settings.extraction_stale_running_minutes} minutes"
        )
        values: dict[str, Any] = {"last_error": message, "updated_at": now}
        if exhausted:
            values.update(status=JobStatus.FAILED, finished_at=now, next_run_at=None)
        else:
            values.update(status=JobStatus.PENDING, next_run_at=None)
        result = session.execute(
            update(ExtractionJob)
            .where(
                ExtractionJob.id == job.id,
                ExtractionJob.status == JobStatus.RUNNING,
                ExtractionJob.started_at < cutoff,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            continue
        if exhausted:
            _mark_document_failed(
                session, document_id=job.document_id, error=StaleJobError(message)
            )
        reclaimed += 1
        log_event(
            logger,
            "extraction.job.reclaimed",
            job_id=str(job.id),
            document_id=str(job.document_id),
            attempts=job.attempts,
            to_status="failed" if exhausted else "pending",
            started_at=as_utc(job.started_at).isoformat() if job.started_at else None,
        )
    session.commit()
    return reclaimed


def run_extraction_batch(
    *,
    max_jobs: int | None = None,
    max_seconds: float | None = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> BatchResult:
    """Scheduler tick: reclaim stale jobs, then drain the queue within a count/time budget."""
    max_jobs = max_jobs if max_jobs is not None else settings.extraction_batch_max_jobs
    max_seconds = (
        max_seconds if max_seconds is not None else settings.extraction_batch_max_seconds
    )
    start = time.monotonic()
    with session_factory() as session:
        reclaimed = reclaim_stale_jobs(session)

    processed = 0
    while processed < max_jobs and time.monotonic() - start < max_seconds:
        outcome = process_one_job(session_factory=session_factory)
        if not outcome.processed:
            break
        if not outcome.ok:
            log_event(
                logger,
                "extraction.batch.stopped",
                processed=processed,
                reclaimed=reclaimed,
                error=outcome.error,
                duration_ms=monotonic_ms(start),
            )
            return BatchResult(
                processed=processed, ok=False, reclaimed=reclaimed, error=outcome.error
            )
        processed += 1

    log_event(
        logger,
        "extraction.batch.finish",
        processed=processed,
        reclaimed=reclaimed,
        duration_ms=monotonic_ms(start),
    )
    return BatchResult(processed=processed, ok=True, reclaimed=reclaimed)


def queue_status(session: Session) -> dict[str, Any]:
    pending_count = session.scalar(
        select(func.count())
        .select_from(ExtractionJob)
        .where(ExtractionJob.status == JobStatus.PENDING)
    )
    running_count = session.scalar(
        select(func.count())
        .select_from(ExtractionJob)
        .where(ExtractionJob.status == JobStatus.RUNNING)
    )
    pending = list(
        session.scalars(
            select(ExtractionJob)
            .where(ExtractionJob.status == JobStatus.PENDING)
            .order_by(ExtractionJob.created_at.asc())
            .limit(10)
        )
    )
    last_failed = session.scalar(
        select(ExtractionJob)
        .where(ExtractionJob.status == JobStatus.FAILED)
        .order_by(ExtractionJob.updated_at.desc())
        .limit(1)
    )
    return {
        "pending_count": pending_count or 0,
        "running_count": running_count or 0,
        "pending_sample": [
            {"document_id": str(j.document_id), "created_at": as_utc(j.created_at).isoformat()}
            for j in pending
        ],
        "last_failed": (
            {
                "document_id": str(last_failed.document_id),
                "last_error": last_failed.last_error,
                "attempts": last_failed.attempts,
                "updated_at": as_utc(last_failed.updated_at).isoformat(),
            }
            if last_failed
            else None
        ),
    }
