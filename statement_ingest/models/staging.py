"""Staged transaction models: the intermediate pool between ingestion and the ledger."""

from datetime import date
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import Date, Float, ForeignKey, Index, Integer, Numeric, String, Text, Uuid
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from statement_ingest.database import Base
from statement_ingest.models.base import TimestampMixin, UUIDMixin


class TransactionDirection(str, Enum):
    """Money flow of a transaction; amounts themselves are never negative."""

    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    TRANSFER = "TRANSFER"


class TransactionSource(str, Enum):
    """Where a transaction came from. HYBRID only appears on merged ledger rows."""

    PDF = "PDF"
    MANUAL = "MANUAL"
    CSV = "CSV"
    HYBRID = "HYBRID"


class StagedTransactionStatus(str, Enum):
    """Staging lifecycle status."""

    PENDING = "PENDING"  # Staged, or linked to a partner awaiting review
    MATCHED = "MATCHED"  # Auto-merge pair
    UNIQUE = "UNIQUE"  # No counterpart in the other source
    COMMITTED = "COMMITTED"
    DISCARDED = "DISCARDED"


class UserDecision(str, Enum):
    """Reviewer verdict on a staged transaction."""

    KEEP = "KEEP"
    DISCARD = "DISCARD"


ACTIVE_STATUSES = frozenset(
    {
        StagedTransactionStatus.PENDING,
        StagedTransactionStatus.MATCHED,
        StagedTransactionStatus.UNIQUE,
    }
)
TERMINAL_STATUSES = frozenset({StagedTransactionStatus.COMMITTED, StagedTransactionStatus.DISCARDED})

# PENDING -> PENDING is the needs-review re-score; terminal states have no exits.
ALLOWED_TRANSITIONS: dict[StagedTransactionStatus, frozenset[StagedTransactionStatus]] = {
    StagedTransactionStatus.PENDING: frozenset(
        {
            StagedTransactionStatus.PENDING,
            StagedTransactionStatus.MATCHED,
            StagedTransactionStatus.UNIQUE,
            StagedTransactionStatus.COMMITTED,
            StagedTransactionStatus.DISCARDED,
        }
    ),
    StagedTransactionStatus.MATCHED: frozenset(
        {StagedTransactionStatus.COMMITTED, StagedTransactionStatus.DISCARDED}
    ),
    StagedTransactionStatus.UNIQUE: frozenset(
        {StagedTransactionStatus.COMMITTED, StagedTransactionStatus.DISCARDED}
    ),
    StagedTransactionStatus.COMMITTED: frozenset(),
    StagedTransactionStatus.DISCARDED: frozenset(),
}


class InvalidTransitionError(Exception):
    """Raised when a staged transaction is moved against the lifecycle."""

    def __init__(self, current: StagedTransactionStatus, target: StagedTransactionStatus) -> None:
        super().__init__(f"Cannot move staged transaction from {current.value} to {target.value}")
        self.current = current
        self.target = target


class StagedTransaction(UUIDMixin, TimestampMixin, Base):
    """Transaction held in staging until it is committed to the ledger or discarded."""

    __tablename__ = "staged_transactions"
    __table_args__ = (
        Index("ix_staged_transactions_session_status", "session_id", "status"),
    )

    session_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    bank_statement_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("bank_statements.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    # Index within the staging call; keeps input order stable for tie-breaks
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Transaction details
    txn_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    direction: Mapped[TransactionDirection] = mapped_column(
        SQLEnum(TransactionDirection, name="transaction_direction_enum"),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    merchant: Mapped[str | None] = mapped_column(String(255), nullable=True)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    # Heuristic scalar, compared ordinally only
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.9)
    source: Mapped[TransactionSource] = mapped_column(
        SQLEnum(TransactionSource, name="transaction_source_enum"),
        nullable=False,
    )
    raw_text: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Deduplication / reconciliation
    dedup_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[StagedTransactionStatus] = mapped_column(
        SQLEnum(StagedTransactionStatus, name="staged_transaction_status_enum"),
        nullable=False,
        default=StagedTransactionStatus.PENDING,
    )
    match_group_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    # Scores are non-monetary; floats are acceptable
    match_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    matched_with_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    user_decision: Mapped[UserDecision | None] = mapped_column(
        SQLEnum(UserDecision, name="user_decision_enum"),
        nullable=True,
    )

    # Optimistic concurrency: a stale commit claim fails instead of double-committing
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    @property
    def needs_review(self) -> bool:
        """PENDING and linked to a partner: waiting on a user decision."""
        return self.status == StagedTransactionStatus.PENDING and self.match_group_id is not None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition_to(self, target: StagedTransactionStatus) -> None:
        """Move to ``target`` if the lifecycle allows it."""
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status, target)
        self.status = target

    def link_partner(self, partner_id: UUID, *, group_id: str, score: float) -> None:
        self.match_group_id = group_id
        self.matched_with_id = partner_id
        self.match_score = score

    def clear_link(self) -> None:
        self.match_group_id = None
        self.matched_with_id = None
        self.match_score = None
