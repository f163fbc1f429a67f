"""Pydantic schemas for ledger commit API."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from statement_ingest.models import TransactionDirection, TransactionSource, UserDecision
from statement_ingest.schemas.base import BaseResponse, ListResponse
from statement_ingest.schemas.reconciliation import ScopeRequest


class DecisionInput(BaseModel):
    """Reviewer verdict for one staged transaction."""

    id: UUID
    decision: UserDecision

    @field_validator("decision", mode="before")
    @classmethod
    def uppercase_decision(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v


class CommitRequest(ScopeRequest):
    """Request body to commit a scope to the ledger."""

    decisions: list[DecisionInput] = Field(default_factory=list)


class CommitResponse(BaseModel):
    """Response for a commit run."""

    committed_count: int
    discarded_count: int
    pending_review_count: int
    errors: list[str] = Field(default_factory=list)
    ledger_ids: list[UUID] = Field(default_factory=list)


class LedgerTransactionResponse(BaseResponse):
    """Ledger row response. ``metadata`` carries the merge provenance."""

    id: UUID
    session_id: str
    bank_statement_id: UUID | None
    source_key: str
    txn_date: date
    amount: Decimal
    direction: TransactionDirection
    description: str
    merchant: str | None
    category: str
    reference: str | None
    confidence: float
    source: TransactionSource
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="provenance")
    created_at: datetime


LedgerTransactionListResponse = ListResponse[LedgerTransactionResponse]
