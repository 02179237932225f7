"""
Alembic model import hook.

Importing this module ensures all SQLAlchemy models are registered on Base.metadata.
"""

from __future__ import annotations

# Import User first - other models have foreign keys to identity_user
from paperkeep.modules.identity.models import User  # noqa: F401

from paperkeep.modules.ledger.models import Category, Transaction  # noqa: F401
from paperkeep.modules.documents.models import Document  # noqa: F401
from paperkeep.modules.extraction.models import ExtractionJob  # noqa: F401
