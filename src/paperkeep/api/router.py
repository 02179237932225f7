from __future__ import annotations

from fastapi import APIRouter

from paperkeep.modules.documents.api import router as documents_router
from paperkeep.modules.extraction.api import router as extraction_router
from paperkeep.modules.fx.api import router as fx_router
from paperkeep.modules.inbound.api import router as inbound_router

router = APIRouter()

router.include_router(documents_router, prefix="/api")
router.include_router(extraction_router, prefix="/api")
router.include_router(fx_router, prefix="/api")
router.include_router(inbound_router, prefix="/api")


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}
