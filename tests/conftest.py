from __future__ import annotations

import os
import shutil
from decimal import Decimal
from pathlib import Path

import pytest

# Set env before any paperkeep imports (settings/engine are created at import time).
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///./.paperkeep_test.db")
os.environ.setdefault("STORAGE_BACKEND", "local")
os.environ.setdefault("LOCAL_STORAGE_PATH", ".tmp_storage_test")
os.environ.setdefault("EXTRACTION_POKE_ON_ENQUEUE", "false")

TEST_FX_RATE = Decimal("3.50")


@pytest.fixture(autouse=True)
def _reset_db_and_storage() -> None:
    import paperkeep.models  # noqa: F401
    from paperkeep.core.db import engine
    from paperkeep.core.models import Base

    # Reset module-level singletons
    import paperkeep.core.storage as storage_mod
    import paperkeep.modules.extraction.vision as vision_mod
    import paperkeep.modules.fx.service as fx_mod

    storage_mod._storage = None
    vision_mod._client = None
    fx_mod._rate_cache = fx_mod.RateCache(fetch=lambda: TEST_FX_RATE)

    storage_path = Path(os.environ["LOCAL_STORAGE_PATH"])
    if storage_path.exists():
        shutil.rmtree(storage_path)

    # Reset DB schema
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)

    yield
