from __future__ import annotations

import datetime as dt
import uuid
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from paperkeep.core.logging import get_logger, log_event
from paperkeep.modules.ledger.models import Category, Transaction, TransactionSource

logger = get_logger(__name__)

DEFAULT_CATEGORY_NAME = "General"


def get_or_create_default_category(session: Session, *, user_id: uuid.UUID) -> Category:
    category = session.scalar(
        select(Category).where(Category.user_id == user_id, Category.name == DEFAULT_CATEGORY_NAME)
    )
    if category:
        return category

    category = Category(user_id=user_id, name=DEFAULT_CATEGORY_NAME)
    session.add(category)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        category = session.scalar(
            select(Category).where(
                Category.user_id == user_id, Category.name == DEFAULT_CATEGORY_NAME
            )
        )
        if category is None:
            raise
        return category
    session.refresh(category)
    log_event(logger, "ledger.category.created", category_id=str(category.id), default=True)
    return category


def create_transaction(
    session: Session,
    *,
    user_id: uuid.UUID,
    date: dt.date,
    amount: Decimal,
    currency: str,
    vendor: str,
    description: str | None = None,
    category_id: uuid.UUID | None = None,
    source: TransactionSource = TransactionSource.MANUAL,
) -> Transaction:
    tx = Transaction(
        user_id=user_id,
        date=date,
        amount=amount,
        currency=currency,
        vendor=vendor[:120],
        description=description,
        category_id=category_id,
        source=source,
    )
    session.add(tx)
    session.commit()
    session.refresh(tx)
    log_event(
        logger,
        "ledger.transaction.created",
        transaction_id=str(tx.id),
        source=source.value,
        currency=currency,
    )
    return tx
