"""Candidate transaction shape shared by every producer feeding the staging pool."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from statement_ingest.models import TransactionDirection, TransactionSource

CENT = Decimal("0.01")


def quantize_amount(value: Decimal) -> Decimal:
    """Round to currency precision."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def split_signed_amount(
    value: Decimal,
    direction: TransactionDirection | None = None,
) -> tuple[Decimal, TransactionDirection]:
    """Turn a signed amount into (non-negative amount, direction).

    An explicit direction wins; otherwise negative means EXPENSE.
    """
    resolved = direction
    if resolved is None:
        resolved = TransactionDirection.EXPENSE if value < 0 else TransactionDirection.INCOME
    return quantize_amount(abs(value)), resolved


@dataclass(frozen=True)
class CandidateTransaction:
    """Parser output, ready to be staged."""

    txn_date: date
    amount: Decimal
    direction: TransactionDirection
    description: str
    source: TransactionSource
    merchant: str | None = None
    category: str | None = None
    reference: str | None = None
    confidence: float = 1.0
    raw_text: str | None = None

    def __post_init__(self) -> None:
        if self.amount < 0:
            raise ValueError("Candidate amount must be non-negative; carry the sign in direction")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence out of range: {self.confidence}")
