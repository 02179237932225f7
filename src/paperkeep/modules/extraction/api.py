from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from paperkeep.api.deps import get_current_user, require_admin
from paperkeep.core.config import settings
from paperkeep.core.db import db_session
from paperkeep.core.logging import get_logger, log_event
from paperkeep.core.security import secrets_match
from paperkeep.modules.extraction.queue import process_one_job, queue_status, run_extraction_batch
from paperkeep.modules.identity.models import User

router = APIRouter(tags=["extraction"])
logger = get_logger(__name__)


def _bearer_token(request: Request) -> str | None:
    auth = request.headers.get("authorization") or ""
    scheme, _, token = auth.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


@router.post("/worker/ocr")
def poke_worker(_: User = Depends(get_current_user)) -> dict[str, Any]:
    """Run at most one queued extraction job. Safe to call frequently."""
    outcome = process_one_job()
    return {
        "processed": outcome.processed,
        "ok": outcome.ok,
        "job_id": outcome.job_id,
        "document_id": outcome.document_id,
        "error": outcome.error,
        "will_retry": outcome.will_retry,
    }


@router.get("/cron/ocr")
def cron_ocr(request: Request, secret: str | None = Query(None)) -> JSONResponse:
    expected = (settings.cron_secret or "").strip()
    if not expected:
        return JSONResponse(status_code=500, content={"error": "CRON_SECRET is not set"})
    if not (
        secrets_match(_bearer_token(request), expected) or secrets_match(secret, expected)
    ):
        log_event(logger, "cron.ocr.unauthorized")
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})

    result = run_extraction_batch()
    # Always 200 so external schedulers do not disable the job; errors go in the body.
    return JSONResponse(
        status_code=200,
        content={
            "ok": result.ok,
            "processed": result.processed,
            "reclaimed": result.reclaimed,
            "error": result.error,
        },
    )


@router.get("/admin/ocr-status")
def ocr_status(
    session: Session = Depends(db_session),
    _: User = Depends(require_admin),
) -> dict[str, Any]:
    status = queue_status(session)
    status["hint"] = (
        "Jobs are pending. If the scheduler runs every minute and CRON_SECRET is set, "
        "they should drain; check the logs for cron.ocr and extraction.batch events."
        if status["pending_count"]
        else "Nothing pending."
    )
    return status
