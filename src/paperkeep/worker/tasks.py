from __future__ import annotations

# Ensure all models are registered before any task runs
# isort: off
import paperkeep.models  # noqa: F401
# isort: on

import time
from typing import Any

from paperkeep.core.config import settings
from paperkeep.core.logging import (
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    reset_task_context,
    set_task_context,
)
from paperkeep.worker.celery_app import celery_app

logger = get_logger(__name__)


@celery_app.task(name="process_extraction_queue", bind=True)
def process_extraction_queue_task(self) -> dict[str, Any]:
    from paperkeep.modules.extraction.queue import run_extraction_batch

    task_id = getattr(self.request, "id", None)
    token = set_task_context(task_id)
    start = time.monotonic()
    log_event(
        logger,
        "celery.task.start",
        task_name="process_extraction_queue",
        celery_task_id=task_id,
    )
    try:
        result = run_extraction_batch()
        log_event(
            logger,
            "celery.task.finish",
            task_name="process_extraction_queue",
            celery_task_id=task_id,
            processed=result.processed,
            ok=result.ok,
            duration_ms=monotonic_ms(start),
        )
        return {"processed": result.processed, "ok": result.ok, "error": result.error}
    except Exception:
        log_exception(
            logger,
            "celery.task.error",
            task_name="process_extraction_queue",
            celery_task_id=task_id,
            duration_ms=monotonic_ms(start),
        )
        raise
    finally:
        reset_task_context(token)


@celery_app.task(name="process_one_extraction_job", bind=True)
def process_one_extraction_job_task(self) -> dict[str, Any]:
    from paperkeep.modules.extraction.queue import process_one_job

    task_id = getattr(self.request, "id", None)
    token = set_task_context(task_id)
    start = time.monotonic()
    log_event(
        logger,
        "celery.task.start",
        task_name="process_one_extraction_job",
        celery_task_id=task_id,
    )
    try:
        outcome = process_one_job()
        log_event(
            logger,
            "celery.task.finish",
            task_name="process_one_extraction_job",
            celery_task_id=task_id,
            processed=outcome.processed,
            job_status=outcome.status,
            duration_ms=monotonic_ms(start),
        )
        return {"processed": outcome.processed, "ok": outcome.ok, "job_id": outcome.job_id}
    except Exception:
        log_exception(
            logger,
            "celery.task.error",
            task_name="process_one_extraction_job",
            celery_task_id=task_id,
            duration_ms=monotonic_ms(start),
        )
        raise
    finally:
        reset_task_context(token)


def poke_extraction_worker(*, reason: str) -> None:
    """Ask a worker to look at the queue now instead of waiting for the next beat tick.

    The job row is already durable; a failed poke only delays processing.
    """
    if not settings.extraction_poke_on_enqueue:
        return
    try:
        async_result = process_one_extraction_job_task.delay()
    except Exception:  # noqa: BLE001
        log_exception(logger, "celery.task.enqueue_failed", task_name="process_one_extraction_job")
        return
    log_event(
        logger,
        "celery.task.enqueued",
        task_name="process_one_extraction_job",
        celery_task_id=async_result.id,
        reason=reason,
    )
