"""Bank statement parent record for staged imports."""

from datetime import date
from decimal import Decimal

from sqlalchemy import Date, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from statement_ingest.database import Base
from statement_ingest.models.base import TimestampMixin, UUIDMixin


class BankStatement(UUIDMixin, TimestampMixin, Base):
    """Uploaded statement that staged transactions may hang off."""

    __tablename__ = "bank_statements"

    institution: Mapped[str | None] = mapped_column(String(100), nullable=True)
    account_last4: Mapped[str | None] = mapped_column(String(4), nullable=True)
    period_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    period_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    opening_balance: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    closing_balance: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)

    # Ledger rows committed from this statement, accumulated across commit runs
    transaction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
