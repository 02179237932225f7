"""initial schema

Revision ID: 3c1e7b9a4d20
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "3c1e7b9a4d20"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "identity_user",
        *_timestamps(),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("full_name", sa.String(length=200), nullable=True),
        sa.Column("phone_number", sa.String(length=32), nullable=True),
        sa.Column("inbound_number", sa.String(length=32), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_admin", sa.Boolean(), nullable=False),
    )
    op.create_index("ix_identity_user_email", "identity_user", ["email"], unique=True)
    op.create_index("ix_identity_user_phone_number", "identity_user", ["phone_number"])
    op.create_index("ix_identity_user_inbound_number", "identity_user", ["inbound_number"])

    op.create_table(
        "ledger_category",
        *_timestamps(),
        sa.Column("user_id", sa.Uuid(as_uuid=True), sa.ForeignKey("identity_user.id"), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.UniqueConstraint("user_id", "name", name="uq_category_user_name"),
    )
    op.create_index("ix_ledger_category_user_id", "ledger_category", ["user_id"])

    op.create_table(
        "ledger_transaction",
        *_timestamps(),
        sa.Column("user_id", sa.Uuid(as_uuid=True), sa.ForeignKey("identity_user.id"), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("vendor", sa.String(length=120), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "category_id", sa.Uuid(as_uuid=True), sa.ForeignKey("ledger_category.id"), nullable=True
        ),
        sa.Column("source", sa.String(length=7), nullable=False),
    )
    op.create_index("ix_ledger_transaction_user_id", "ledger_transaction", ["user_id"])
    op.create_index("ix_ledger_transaction_date", "ledger_transaction", ["date"])

    op.create_table(
        "documents_document",
        *_timestamps(),
        sa.Column("user_id", sa.Uuid(as_uuid=True), sa.ForeignKey("identity_user.id"), nullable=False),
        sa.Column("type", sa.String(length=15), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("vendor", sa.String(length=120), nullable=False),
        sa.Column(
            "category_id", sa.Uuid(as_uuid=True), sa.ForeignKey("ledger_category.id"), nullable=True
        ),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("doc_number", sa.String(length=100), nullable=True),
        sa.Column("storage_key", sa.String(length=1024), nullable=False),
        sa.Column("filename", sa.String(length=512), nullable=False),
        sa.Column("content_type", sa.String(length=200), nullable=True),
        sa.Column("byte_size", sa.Integer(), nullable=False),
        sa.Column("sha256", sa.String(length=64), nullable=False),
        sa.Column("source", sa.String(length=7), nullable=False),
        sa.Column("ocr_status", sa.String(length=7), nullable=False),
        sa.Column("ocr_text", sa.Text(), nullable=True),
        sa.Column("ocr_amount_guess", sa.Numeric(12, 2), nullable=True),
        sa.UniqueConstraint("storage_key", name="uq_documents_document_storage_key"),
        sa.UniqueConstraint("user_id", "sha256", name="uq_document_user_sha256"),
    )
    op.create_index("ix_documents_document_user_id", "documents_document", ["user_id"])
    op.create_index("ix_documents_document_sha256", "documents_document", ["sha256"])
    op.create_index("ix_documents_document_source", "documents_document", ["source"])
    op.create_index("ix_documents_document_ocr_status", "documents_document", ["ocr_status"])

    op.create_table(
        "extraction_job",
        *_timestamps(),
        sa.Column(
            "document_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("documents_document.id"),
            nullable=False,
        ),
        sa.Column("user_id", sa.Uuid(as_uuid=True), sa.ForeignKey("identity_user.id"), nullable=False),
        sa.Column("status", sa.String(length=7), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("document_id", name="uq_extraction_job_document_id"),
    )
    op.create_index("ix_extraction_job_user_id", "extraction_job", ["user_id"])
    op.create_index("ix_extraction_job_status", "extraction_job", ["status"])
    op.create_index("ix_extraction_job_next_run_at", "extraction_job", ["next_run_at"])


def downgrade() -> None:
    op.drop_index("ix_extraction_job_next_run_at", table_name="extraction_job")
    op.drop_index("ix_extraction_job_status", table_name="extraction_job")
    op.drop_index("ix_extraction_job_user_id", table_name="extraction_job")
    op.drop_table("extraction_job")

    op.drop_index("ix_documents_document_ocr_status", table_name="documents_document")
    op.drop_index("ix_documents_document_source", table_name="documents_document")
    op.drop_index("ix_documents_document_sha256", table_name="documents_document")
    op.drop_index("ix_documents_document_user_id", table_name="documents_document")
    op.drop_table("documents_document")

    op.drop_index("ix_ledger_transaction_date", table_name="ledger_transaction")
    op.drop_index("ix_ledger_transaction_user_id", table_name="ledger_transaction")
    op.drop_table("ledger_transaction")

    op.drop_index("ix_ledger_category_user_id", table_name="ledger_category")
    op.drop_table("ledger_category")

    op.drop_index("ix_identity_user_inbound_number", table_name="identity_user")
    op.drop_index("ix_identity_user_phone_number", table_name="identity_user")
    op.drop_index("ix_identity_user_email", table_name="identity_user")
    op.drop_table("identity_user")
