from __future__ import annotations

from sqlalchemy import select

# isort: off
import paperkeep.models  # noqa: F401
# isort: on

from paperkeep.core.config import settings
from paperkeep.core.db import SessionLocal, engine
from paperkeep.core.models import Base
from paperkeep.core.phone import normalize_phone
from paperkeep.modules.identity.models import User


def bootstrap() -> None:
    if settings.environment == "dev" and str(settings.database_url).startswith("sqlite"):
        Base.metadata.create_all(engine)

    if not settings.init_admin_email:
        return

    # Comma-separated list of admin emails
    admin_emails = [e.strip() for e in settings.init_admin_email.split(",") if e.strip()]
    if not admin_emails:
        return

    phone = normalize_phone(settings.init_admin_phone_number) or None
    with SessionLocal() as session:
        for email in admin_emails:
            existing = session.scalar(select(User).where(User.email == email))
            if existing:
                if not existing.is_admin:
                    existing.is_admin = True
                    session.add(existing)
                continue
            session.add(
                User(
                    email=email,
                    full_name="Admin",
                    phone_number=phone if email == admin_emails[0] else None,
                    is_admin=True,
                    is_active=True,
                )
            )
        session.commit()
