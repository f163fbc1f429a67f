"""Final ledger rows written by the commit engine."""

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import Date, DateTime, Float, ForeignKey, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from statement_ingest.database import Base
from statement_ingest.models.base import JSONType, UUIDMixin
from statement_ingest.models.staging import TransactionDirection, TransactionSource

DEFAULT_CATEGORY = "Uncategorized"


class LedgerTransaction(UUIDMixin, Base):
    """Immutable, de-duplicated transaction consumed by the rest of the application."""

    __tablename__ = "ledger_transactions"
    __table_args__ = (UniqueConstraint("source_key", name="uq_ledger_transactions_source_key"),)

    session_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    bank_statement_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("bank_statements.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    # Staged id, or "<id>|<id>" (sorted) for a merged pair: one row per match group
    source_key: Mapped[str] = mapped_column(String(80), nullable=False)

    txn_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    direction: Mapped[TransactionDirection] = mapped_column(
        SQLEnum(TransactionDirection, name="transaction_direction_enum"),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    merchant: Mapped[str | None] = mapped_column(String(255), nullable=True)
    category: Mapped[str] = mapped_column(String(100), nullable=False, default=DEFAULT_CATEGORY)
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    source: Mapped[TransactionSource] = mapped_column(
        SQLEnum(TransactionSource, name="transaction_source_enum"),
        nullable=False,
    )
    # Provenance for audit ("metadata" is reserved on declarative classes)
    provenance: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
