"""Pydantic schemas package."""

from statement_ingest.schemas.base import BaseResponse, ListResponse
from statement_ingest.schemas.commit import (
    CommitRequest,
    CommitResponse,
    DecisionInput,
    LedgerTransactionListResponse,
    LedgerTransactionResponse,
)
from statement_ingest.schemas.reconciliation import (
    MatchPairResponse,
    ReconcileRequest,
    ReconcileResponse,
    ScopeRequest,
)
from statement_ingest.schemas.staging import (
    ClearStagingResponse,
    StagedTransactionListResponse,
    StagedTransactionResponse,
    StageRequest,
    StageResponse,
    StageTransactionInput,
)

__all__ = [
    "BaseResponse",
    "ListResponse",
    "CommitRequest",
    "CommitResponse",
    "DecisionInput",
    "LedgerTransactionListResponse",
    "LedgerTransactionResponse",
    "MatchPairResponse",
    "ReconcileRequest",
    "ReconcileResponse",
    "ScopeRequest",
    "ClearStagingResponse",
    "StagedTransactionListResponse",
    "StagedTransactionResponse",
    "StageRequest",
    "StageResponse",
    "StageTransactionInput",
]
