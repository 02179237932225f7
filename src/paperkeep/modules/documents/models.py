from __future__ import annotations

import datetime as dt
import enum
import uuid
from decimal import Decimal

from sqlalchemy import (
    Date,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from paperkeep.core.models import Base, Timestamped, UUIDPrimaryKey


class DocumentType(str, enum.Enum):
    EXPENSE = "expense"
    INCOME = "income"
    PAYMENT_RECEIPT = "payment_receipt"


class DocumentSource(str, enum.Enum):
    UPLOAD = "upload"
    INBOUND = "inbound"


class OcrStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class Document(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "documents_document"
    __table_args__ = (UniqueConstraint("user_id", "sha256", name="uq_document_user_sha256"),)

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), index=True
    )

    type: Mapped[DocumentType] = mapped_column(
        Enum(DocumentType, native_enum=False), default=DocumentType.EXPENSE
    )
    date: Mapped[dt.date] = mapped_column(Date)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3))
    vendor: Mapped[str] = mapped_column(String(120))
    category_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("ledger_category.id"), nullable=True
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    doc_number: Mapped[str | None] = mapped_column(String(100), nullable=True)

    storage_key: Mapped[str] = mapped_column(String(1024), unique=True)
    filename: Mapped[str] = mapped_column(String(512))
    content_type: Mapped[str | None] = mapped_column(String(200), nullable=True)
    byte_size: Mapped[int] = mapped_column(Integer)
    sha256: Mapped[str] = mapped_column(String(64), index=True)
    source: Mapped[DocumentSource] = mapped_column(
        Enum(DocumentSource, native_enum=False), default=DocumentSource.UPLOAD, index=True
    )

    ocr_status: Mapped[OcrStatus] = mapped_column(
        Enum(OcrStatus, native_enum=False), default=OcrStatus.PENDING, index=True
    )
    ocr_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    ocr_amount_guess: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    user = relationship("User")
    category = relationship("Category")
