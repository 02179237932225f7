from __future__ import annotations

from datetime import UTC, datetime

from fastapi import APIRouter, Depends

from paperkeep.api.deps import get_current_user
from paperkeep.core.config import settings
from paperkeep.modules.fx.schemas import FxRateOut
from paperkeep.modules.fx.service import get_rate_cache
from paperkeep.modules.identity.models import User

router = APIRouter(tags=["fx"])


@router.get("/fx/rate", response_model=FxRateOut)
def get_fx_rate(_: User = Depends(get_current_user)) -> FxRateOut:
    quote = get_rate_cache().get_quote()
    return FxRateOut(
        from_currency=settings.foreign_currency.upper(),
        to_currency=settings.local_currency.upper(),
        rate=quote.rate,
        source=quote.source,
        fetched_at=datetime.fromtimestamp(quote.fetched_at, tz=UTC),
    )
