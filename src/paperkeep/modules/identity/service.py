from __future__ import annotations

from fastapi import HTTPException, status
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from paperkeep.core.phone import normalize_phone, phone_lookup_variants
from paperkeep.modules.identity.models import User


def get_user_by_email(session: Session, *, email: str) -> User | None:
    return session.scalar(select(User).where(User.email == email))


def _normalized_or_none(raw: str | None) -> str | None:
    if not raw:
        return None
    return normalize_phone(raw) or None


def create_user(
    session: Session,
    *,
    email: str,
    full_name: str | None = None,
    phone_number: str | None = None,
    inbound_number: str | None = None,
    is_admin: bool = False,
) -> User:
    existing = get_user_by_email(session, email=email)
    if existing:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already exists")

    user = User(
        email=email,
        full_name=full_name,
        phone_number=_normalized_or_none(phone_number),
        inbound_number=_normalized_or_none(inbound_number),
        is_admin=is_admin,
        is_active=True,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def find_user_by_personal_number(session: Session, *, normalized: str) -> User | None:
    if not normalized:
        return None
    return session.scalar(
        select(User)
        .where(
            User.is_active.is_(True),
            or_(*(User.phone_number == v for v in phone_lookup_variants(normalized))),
        )
        .order_by(User.created_at.asc())
        .limit(1)
    )


def find_user_by_inbound_number(session: Session, *, normalized: str) -> User | None:
    if not normalized:
        return None
    return session.scalar(
        select(User)
        .where(
            User.is_active.is_(True),
            or_(*(User.inbound_number == v for v in phone_lookup_variants(normalized))),
        )
        .order_by(User.created_at.asc())
        .limit(1)
    )
