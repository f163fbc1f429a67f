"""SQLAlchemy models package."""

from statement_ingest.models.ledger import DEFAULT_CATEGORY, LedgerTransaction
from statement_ingest.models.staging import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    InvalidTransitionError,
    StagedTransaction,
    StagedTransactionStatus,
    TransactionDirection,
    TransactionSource,
    UserDecision,
)
from statement_ingest.models.statement import BankStatement

__all__ = [
    "ACTIVE_STATUSES",
    "BankStatement",
    "DEFAULT_CATEGORY",
    "InvalidTransitionError",
    "LedgerTransaction",
    "StagedTransaction",
    "StagedTransactionStatus",
    "TERMINAL_STATUSES",
    "TransactionDirection",
    "TransactionSource",
    "UserDecision",
]
