"""Pydantic schemas for staging API."""

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field, field_validator

from statement_ingest.models import (
    StagedTransactionStatus,
    TransactionDirection,
    TransactionSource,
    UserDecision,
)
from statement_ingest.schemas.base import BaseResponse, ListResponse
from statement_ingest.services.candidates import CandidateTransaction, split_signed_amount
from statement_ingest.services.manual_input import CLEAN_CONFIDENCE, parse_amount, parse_date
from statement_ingest.utils.text import derive_merchant

DIRECTION_ALIASES: dict[str, TransactionDirection] = {
    "credit": TransactionDirection.INCOME,
    "income": TransactionDirection.INCOME,
    "in": TransactionDirection.INCOME,
    "deposit": TransactionDirection.INCOME,
    "debit": TransactionDirection.EXPENSE,
    "expense": TransactionDirection.EXPENSE,
    "out": TransactionDirection.EXPENSE,
    "withdrawal": TransactionDirection.EXPENSE,
    "transfer": TransactionDirection.TRANSFER,
}

SessionId = Annotated[str, Field(min_length=1, max_length=64)]


class StageTransactionInput(BaseModel):
    """One transaction as the extraction service (or a client) hands it over.

    ``amount`` may be signed; ``type`` accepts credit/debit as well as
    income/expense/transfer and wins over the sign when given.
    """

    txn_date: date = Field(validation_alias=AliasChoices("date", "txn_date"))
    amount: Decimal
    direction: TransactionDirection | None = Field(
        default=None, validation_alias=AliasChoices("type", "direction")
    )
    description: str = Field(default="", max_length=500)
    merchant: str | None = Field(default=None, max_length=255)
    category: str | None = Field(default=None, max_length=100)
    reference: str | None = Field(
        default=None,
        max_length=100,
        validation_alias=AliasChoices("reference", "reference_number", "referenceNumber"),
    )
    confidence: float | None = Field(default=None, ge=0, le=1)
    raw_text: str | None = Field(default=None, validation_alias=AliasChoices("raw_text", "rawText"))

    @field_validator("txn_date", mode="before")
    @classmethod
    def parse_text_date(cls, v: Any) -> Any:
        if isinstance(v, str):
            parsed = parse_date(v)
            if parsed is None:
                raise ValueError(f"Invalid date: {v}")
            return parsed
        return v

    @field_validator("amount", mode="before")
    @classmethod
    def parse_text_amount(cls, v: Any) -> Any:
        if isinstance(v, str):
            parsed = parse_amount(v)
            if parsed is None:
                raise ValueError(f"Invalid amount: {v}")
            return parsed
        if isinstance(v, float):
            return Decimal(str(v))
        return v

    @field_validator("direction", mode="before")
    @classmethod
    def normalize_direction(cls, v: Any) -> Any:
        if v is None or isinstance(v, TransactionDirection):
            return v
        if isinstance(v, str):
            direction = DIRECTION_ALIASES.get(v.strip().lower())
            if direction is None:
                raise ValueError(f"Unknown transaction type: {v}")
            return direction
        return v

    @field_validator("confidence", mode="before")
    @classmethod
    def scale_percentage(cls, v: Any) -> Any:
        # Extraction reports 0-100 in some payloads
        if isinstance(v, int | float) and 1 < v <= 100:
            return v / 100
        return v

    def to_candidate(self, source: TransactionSource) -> CandidateTransaction:
        amount, direction = split_signed_amount(self.amount, self.direction)
        description = self.description.strip()
        if self.confidence is not None:
            confidence = self.confidence
        else:
            confidence = 1.0 if source is TransactionSource.PDF else CLEAN_CONFIDENCE
        return CandidateTransaction(
            txn_date=self.txn_date,
            amount=amount,
            direction=direction,
            description=description,
            source=source,
            merchant=self.merchant or derive_merchant(description),
            category=self.category,
            reference=self.reference,
            confidence=confidence,
            raw_text=self.raw_text,
        )


class StageRequest(BaseModel):
    """Request body to stage transactions, either structured or as raw text."""

    session_id: SessionId | None = None
    bank_statement_id: UUID | None = None
    source: TransactionSource = TransactionSource.MANUAL
    transactions: list[StageTransactionInput] | None = None
    raw_text: str | None = None

    @field_validator("source")
    @classmethod
    def reject_hybrid(cls, v: TransactionSource) -> TransactionSource:
        if v is TransactionSource.HYBRID:
            raise ValueError("HYBRID is reserved for merged ledger rows")
        return v


class StagedTransactionResponse(BaseResponse):
    """Staged transaction response."""

    id: UUID
    session_id: str
    bank_statement_id: UUID | None
    position: int
    txn_date: date
    amount: Decimal
    direction: TransactionDirection
    description: str
    merchant: str | None
    category: str | None
    reference: str | None
    confidence: float
    source: TransactionSource
    raw_text: str | None
    dedup_hash: str
    status: StagedTransactionStatus
    match_group_id: str | None
    match_score: float | None
    matched_with_id: UUID | None
    user_decision: UserDecision | None
    needs_review: bool
    created_at: datetime
    updated_at: datetime


class StageResponse(BaseModel):
    """Response for a staging call."""

    session_id: str
    bank_statement_id: UUID | None = None
    staged_count: int
    skipped_lines: int
    total_lines: int
    transactions: list[StagedTransactionResponse]


class StagedTransactionListResponse(ListResponse[StagedTransactionResponse]):
    """Staged rows of a scope with per-status and per-source counts."""

    needs_review: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_source: dict[str, int] = Field(default_factory=dict)


class ClearStagingResponse(BaseModel):
    session_id: str
    deleted_count: int
