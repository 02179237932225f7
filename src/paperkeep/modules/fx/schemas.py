from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class FxRateOut(BaseModel):
    from_currency: str
    to_currency: str
    rate: Decimal
    source: str
    fetched_at: datetime
