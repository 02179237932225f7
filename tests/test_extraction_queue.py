from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import httpx
from sqlalchemy import func, select

from paperkeep.core.db import SessionLocal
from paperkeep.core.models import as_utc
from paperkeep.modules.documents.models import Document, OcrStatus
from paperkeep.modules.documents.service import create_document_from_upload
from paperkeep.modules.extraction import queue as queue_module
from paperkeep.modules.extraction.models import ExtractionJob, JobStatus
from paperkeep.modules.extraction.queue import (
    CONNECTION_ERROR_MESSAGE,
    NO_TEXT_ERROR,
    backoff_seconds,
    claim_next_job,
    enqueue_extraction_job,
    process_one_job,
    queue_status,
    reclaim_stale_jobs,
    retry_document_ocr,
    run_extraction_batch,
)
from paperkeep.modules.extraction.vision import ExtractionError
from paperkeep.modules.fx.service import RateCache
from paperkeep.modules.identity.service import create_user

T0 = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


def _upload(session, *, email: str = "owner@example.com", body: bytes = b"receipt-bytes"):
    user = create_user(session, email=email, full_name="Owner")
    doc = create_document_from_upload(
        session,
        user=user,
        filename="receipt.jpg",
        content_type="image/jpeg",
        body=body,
    )
    return user, doc


def _job(session, document_id) -> ExtractionJob:
    session.expire_all()
    return session.scalar(select(ExtractionJob).where(ExtractionJob.document_id == document_id))


def _rates() -> RateCache:
    return RateCache(fetch=lambda: Decimal("3.50"))


def test_upload_enqueues_one_pending_job():
    with SessionLocal() as session:
        _, doc = _upload(session)
        job = _job(session, doc.id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 0
        assert job.next_run_at is None


def test_reenqueue_is_idempotent():
    with SessionLocal() as session:
        _, doc = _upload(session)
        job = _job(session, doc.id)
        job.status = JobStatus.FAILED
        job.last_error = "boom"
        job.next_run_at = T0
        session.commit()

        enqueue_extraction_job(session, document=doc)
        enqueue_extraction_job(session, document=doc)

        count = session.scalar(
            select(func.count()).select_from(ExtractionJob).where(ExtractionJob.document_id == doc.id)
        )
        assert count == 1
        job = _job(session, doc.id)
        assert job.status == JobStatus.PENDING
        assert job.last_error is None
        assert job.next_run_at is None


def test_running_job_is_not_reset_by_enqueue():
    with SessionLocal() as session:
        _, doc = _upload(session)
        claimed = claim_next_job(session, now=T0)
        assert claimed is not None

        enqueue_extraction_job(session, document=doc)
        assert _job(session, doc.id).status == JobStatus.RUNNING


def test_claim_sets_running_and_counts_attempt():
    with SessionLocal() as session:
        _, doc = _upload(session)
        job = claim_next_job(session, now=T0)
        assert job is not None
        assert job.document_id == doc.id
        assert job.status == JobStatus.RUNNING
        assert job.attempts == 1
        assert as_utc(job.started_at) == T0

        assert claim_next_job(session, now=T0) is None


def test_claim_exclusivity_under_concurrent_workers(monkeypatch):
    monkeypatch.setattr(queue_module, "extract_text", lambda body, **_: "Total 20.00 ₪")
    with SessionLocal() as session:
        _upload(session)

    workers = 6
    barrier = threading.Barrier(workers)
    outcomes = []
    lock = threading.Lock()

    def _worker() -> None:
        barrier.wait()
        outcome = process_one_job(now=T0, rate_cache=_rates())
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=_worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(outcomes) == workers
    assert sum(1 for o in outcomes if o.processed) == 1


def test_success_backfills_document(monkeypatch):
    monkeypatch.setattr(
        queue_module,
        "extract_text",
        lambda body, **_: "Cafe Nimrod\nReceipt No. 5521\n15/10/2026\nTotal 48.00 ₪",
    )
    with SessionLocal() as session:
        _, doc = _upload(session)

    outcome = process_one_job(now=T0, rate_cache=_rates())
    assert outcome.processed
    assert outcome.ok
    assert outcome.status == "success"

    with SessionLocal() as session:
        doc = session.get(Document, doc.id)
        assert doc.ocr_status == OcrStatus.SUCCESS
        assert doc.vendor == "Cafe Nimrod"
        assert doc.amount == Decimal("48.00")
        assert doc.currency == "ILS"
        assert doc.doc_number == "5521"
        assert "Cafe Nimrod" in doc.ocr_text
        job = _job(session, doc.id)
        assert job.status == JobStatus.SUCCESS
        assert job.finished_at is not None


def test_backoff_schedule_then_terminal_failure(monkeypatch):
    def _boom(body, **_):
        raise ExtractionError("Vision image OCR failed 503: backend busy")

    monkeypatch.setattr(queue_module, "extract_text", _boom)
    with SessionLocal() as session:
        _, doc = _upload(session)

    now = T0
    for attempt, delay in ((1, 10), (2, 30)):
        outcome = process_one_job(now=now, rate_cache=_rates())
        assert outcome.processed
        assert outcome.will_retry
        assert outcome.status == "retry"
        with SessionLocal() as session:
            job = _job(session, doc.id)
            assert job.status == JobStatus.PENDING
            assert job.attempts == attempt
            assert as_utc(job.next_run_at) - now == timedelta(seconds=delay)
            assert "backend busy" in job.last_error

        # Not eligible before its backoff elapses.
        assert not process_one_job(now=now + timedelta(seconds=delay - 1)).processed
        now = now + timedelta(seconds=delay)

    outcome = process_one_job(now=now, rate_cache=_rates())
    assert outcome.processed
    assert not outcome.ok
    assert not outcome.will_retry
    assert outcome.status == "failed"

    with SessionLocal() as session:
        job = _job(session, doc.id)
        assert job.status == JobStatus.FAILED
        assert job.attempts == 3
        document = session.get(Document, doc.id)
        assert document.ocr_status == OcrStatus.FAILED
        assert document.ocr_text == "OCR job failed: Vision image OCR failed 503: backend busy"

    assert not process_one_job(now=now + timedelta(hours=1)).processed


def test_backoff_seconds_is_clamped():
    assert [backoff_seconds(n) for n in (1, 2, 3, 4, 9)] == [10, 30, 120, 120, 120]
    assert backoff_seconds(0) == 10


def test_connection_errors_get_friendly_message(monkeypatch):
    monkeypatch.setattr(queue_module.settings, "extraction_max_attempts", 1)

    def _drop(body, **_):
        raise httpx.ReadError("stream closed unexpectedly")

    monkeypatch.setattr(queue_module, "extract_text", _drop)
    with SessionLocal() as session:
        _, doc = _upload(session)

    outcome = process_one_job(now=T0, rate_cache=_rates())
    assert outcome.status == "failed"

    with SessionLocal() as session:
        document = session.get(Document, doc.id)
        assert document.ocr_text == f"OCR job failed: {CONNECTION_ERROR_MESSAGE}"
        assert "stream closed" in _job(session, doc.id).last_error


def test_empty_text_is_a_soft_failure_without_retry(monkeypatch):
    monkeypatch.setattr(queue_module, "extract_text", lambda body, **_: "  \n ")
    with SessionLocal() as session:
        _, doc = _upload(session)

    outcome = process_one_job(now=T0, rate_cache=_rates())
    assert outcome.processed
    assert outcome.ok
    assert outcome.status == "soft_failed"

    with SessionLocal() as session:
        job = _job(session, doc.id)
        assert job.status == JobStatus.FAILED
        assert job.last_error == NO_TEXT_ERROR
        assert job.attempts == 1
        assert session.get(Document, doc.id).ocr_status == OcrStatus.FAILED

    assert not process_one_job(now=T0 + timedelta(hours=1)).processed


def test_retry_document_ocr_resets_attempts(monkeypatch):
    monkeypatch.setattr(queue_module.settings, "extraction_max_attempts", 1)
    monkeypatch.setattr(queue_module, "extract_text", lambda body, **_: "")
    with SessionLocal() as session:
        _, doc = _upload(session)
    process_one_job(now=T0, rate_cache=_rates())

    with SessionLocal() as session:
        document = session.get(Document, doc.id)
        job = retry_document_ocr(session, document=document)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 0
        assert job.finished_at is None
        assert document.ocr_status == OcrStatus.PENDING
        assert document.ocr_text is None

    monkeypatch.setattr(queue_module, "extract_text", lambda body, **_: "Total 12.00 ₪")
    assert process_one_job(now=T0, rate_cache=_rates()).status == "success"


def test_stale_running_jobs_are_reclaimed():
    with SessionLocal() as session:
        _, doc_retry = _upload(session, body=b"first")
        user_id = doc_retry.user_id
        _, doc_dead = _upload(session, email="other@example.com", body=b"second")

        started = T0 - timedelta(minutes=30)
        retry_job = _job(session, doc_retry.id)
        retry_job.status = JobStatus.RUNNING
        retry_job.attempts = 1
        retry_job.started_at = started
        dead_job = _job(session, doc_dead.id)
        dead_job.status = JobStatus.RUNNING
        dead_job.attempts = 3
        dead_job.started_at = started
        session.commit()

        assert reclaim_stale_jobs(session, now=T0) == 2

        retry_job = _job(session, doc_retry.id)
        assert retry_job.status == JobStatus.PENDING
        assert retry_job.user_id == user_id
        dead_job = _job(session, doc_dead.id)
        assert dead_job.status == JobStatus.FAILED
        document = session.get(Document, doc_dead.id)
        assert document.ocr_status == OcrStatus.FAILED
        assert document.ocr_text.startswith("OCR job failed: Worker did not finish")


def test_recently_started_jobs_are_not_reclaimed():
    with SessionLocal() as session:
        _, doc = _upload(session)
        assert claim_next_job(session, now=T0) is not None
        assert reclaim_stale_jobs(session, now=T0 + timedelta(minutes=5)) == 0
        assert _job(session, doc.id).status == JobStatus.RUNNING


def test_batch_drains_queue(monkeypatch):
    monkeypatch.setattr(queue_module, "extract_text", lambda body, **_: "Total 12.00 ₪")
    with SessionLocal() as session:
        _upload(session, body=b"one")
        _upload(session, email="two@example.com", body=b"two")

    result = run_extraction_batch(max_jobs=10, max_seconds=30)
    assert result.ok
    assert result.processed == 2

    result = run_extraction_batch(max_jobs=10, max_seconds=30)
    assert result.ok
    assert result.processed == 0


def test_batch_stops_at_first_error(monkeypatch):
    def _boom(body, **_):
        raise ExtractionError("quota exceeded")

    monkeypatch.setattr(queue_module, "extract_text", _boom)
    with SessionLocal() as session:
        _upload(session, body=b"one")

    result = run_extraction_batch(max_jobs=10, max_seconds=30)
    assert not result.ok
    assert result.processed == 0
    assert result.error == "quota exceeded"


def test_queue_status_reports_pending_and_last_failure(monkeypatch):
    monkeypatch.setattr(queue_module, "extract_text", lambda body, **_: "")
    with SessionLocal() as session:
        _, failed_doc = _upload(session, body=b"one")
    process_one_job(now=T0, rate_cache=_rates())
    with SessionLocal() as session:
        _upload(session, email="two@example.com", body=b"two")
        status = queue_status(session)

    assert status["pending_count"] == 1
    assert len(status["pending_sample"]) == 1
    assert status["last_failed"]["document_id"] == str(failed_doc.id)
    assert status["last_failed"]["last_error"] == NO_TEXT_ERROR


def test_reenqueue_of_exhausted_job_is_claimable_again():
    with SessionLocal() as session:
        _, doc = _upload(session)
        job = _job(session, doc.id)
        job.status = JobStatus.FAILED
        job.attempts = 3
        job.finished_at = T0
        session.commit()

        enqueue_extraction_job(session, document=doc)
        job = _job(session, doc.id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 0
        assert job.finished_at is None

        claimed = claim_next_job(session, now=T0)
        assert claimed is not None
        assert claimed.document_id == doc.id


def test_euro_receipt_is_stored_in_euros(monkeypatch):
    text = "Cafe Paris\nTotal: 100.00 €"
    monkeypatch.setattr(queue_module, "extract_text", lambda body, **_: text)
    with SessionLocal() as session:
        _, doc = _upload(session)

    outcome = process_one_job(now=T0, rate_cache=_rates())
    assert outcome.status == "success"

    with SessionLocal() as session:
        doc = session.get(Document, doc.id)
        assert doc.amount == Decimal("100.00")
        assert doc.currency == "EUR"
        assert doc.vendor == "Cafe Paris"
