"""Pydantic schemas for reconciliation API."""

from uuid import UUID

from pydantic import BaseModel, Field

from statement_ingest.schemas.staging import SessionId, StagedTransactionResponse


class ScopeRequest(BaseModel):
    """Session and/or statement the operation is limited to."""

    session_id: SessionId | None = None
    bank_statement_id: UUID | None = None


class ReconcileRequest(ScopeRequest):
    """Request body to reconcile the PENDING rows of a scope."""


class MatchPairResponse(BaseModel):
    """A statement row and a manual row describing the same movement."""

    match_group_id: str
    score: float
    breakdown: dict[str, float] = Field(default_factory=dict)
    reasons: list[str] = Field(default_factory=list)
    pdf: StagedTransactionResponse
    manual: StagedTransactionResponse


class ReconcileResponse(BaseModel):
    """Response for a reconciliation run."""

    auto_merged_count: int
    needs_review_count: int
    pdf_only_count: int
    manual_only_count: int
    auto_merged: list[MatchPairResponse]
    needs_review: list[MatchPairResponse]
    pdf_only: list[StagedTransactionResponse]
    manual_only: list[StagedTransactionResponse]
