"""Transaction ingestion API router: stage, reconcile, commit."""

from uuid import UUID

from fastapi import APIRouter, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from statement_ingest.deps import DbSession
from statement_ingest.logger import async_log_timing, get_logger
from statement_ingest.models import BankStatement, LedgerTransaction, StagedTransactionStatus
from statement_ingest.schemas import (
    ClearStagingResponse,
    CommitRequest,
    CommitResponse,
    LedgerTransactionListResponse,
    LedgerTransactionResponse,
    MatchPairResponse,
    ReconcileRequest,
    ReconcileResponse,
    StagedTransactionListResponse,
    StagedTransactionResponse,
    StageRequest,
    StageResponse,
)
from statement_ingest.services import (
    Decision,
    ParseError,
    ScopeError,
    StagingScope,
    StatementNotFoundError,
    default_commit_engine,
    default_reconciler,
    default_staging_store,
)
from statement_ingest.services.reconciliation import ReconciledPair
from statement_ingest.services.staging import StageResult, summarize_records
from statement_ingest.utils import raise_bad_request, raise_not_found, raise_unprocessable

router = APIRouter(prefix="/transactions", tags=["transactions"])
logger = get_logger(__name__)


async def _resolve_scope(db: AsyncSession, session_id: str | None, bank_statement_id: UUID | None) -> StagingScope:
    try:
        scope = StagingScope(session_id=session_id, bank_statement_id=bank_statement_id)
    except ScopeError as exc:
        raise_bad_request(str(exc), cause=exc)
    if bank_statement_id is not None and await db.get(BankStatement, bank_statement_id) is None:
        raise_not_found("Bank statement")
    return scope


def _pair_response(pair: ReconciledPair) -> MatchPairResponse:
    return MatchPairResponse(
        match_group_id=pair.match_group_id,
        score=pair.score,
        breakdown=pair.breakdown,
        reasons=list(pair.reasons),
        pdf=StagedTransactionResponse.model_validate(pair.pdf),
        manual=StagedTransactionResponse.model_validate(pair.manual),
    )


@router.post("/stage", response_model=StageResponse, status_code=status.HTTP_201_CREATED)
async def stage_transactions(payload: StageRequest, db: DbSession) -> StageResponse:
    """Stage structured rows or raw statement/manual text as PENDING transactions."""
    result: StageResult | None = None
    try:
        if payload.raw_text and payload.raw_text.strip():
            result = await default_staging_store.stage_raw_text(
                db,
                payload.raw_text,
                source=payload.source,
                session_id=payload.session_id,
                bank_statement_id=payload.bank_statement_id,
            )
        elif payload.transactions:
            candidates = [item.to_candidate(payload.source) for item in payload.transactions]
            result = await default_staging_store.stage(
                db,
                candidates,
                session_id=payload.session_id,
                bank_statement_id=payload.bank_statement_id,
            )
    except ParseError as exc:
        await db.rollback()
        raise_unprocessable(
            {
                "message": str(exc),
                "hint": exc.hint,
                "layout": exc.layout,
                "parsed_rows": exc.parsed_rows,
            },
            cause=exc,
        )
    except StatementNotFoundError as exc:
        raise_not_found("Bank statement", cause=exc)

    if result is None or not result.staged:
        await db.rollback()
        raise_bad_request("No transactions to stage")

    await db.commit()
    return StageResponse(
        session_id=result.session_id,
        bank_statement_id=result.bank_statement_id,
        staged_count=result.staged_count,
        skipped_lines=result.skipped_lines,
        total_lines=result.total_lines,
        transactions=[StagedTransactionResponse.model_validate(record) for record in result.staged],
    )


@router.get("/stage", response_model=StagedTransactionListResponse)
async def list_staged_transactions(
    db: DbSession,
    session_id: str | None = Query(default=None),
    bank_statement_id: UUID | None = Query(default=None),
    status_filter: StagedTransactionStatus | None = Query(default=None, alias="status"),
) -> StagedTransactionListResponse:
    scope = await _resolve_scope(db, session_id, bank_statement_id)
    records = await default_staging_store.list_transactions(
        db, scope, statuses=[status_filter] if status_filter else None
    )
    summary = summarize_records(records)
    return StagedTransactionListResponse(
        items=[StagedTransactionResponse.model_validate(record) for record in records],
        total=summary.total,
        needs_review=summary.needs_review,
        by_status=summary.by_status,
        by_source=summary.by_source,
    )


@router.delete("/stage", response_model=ClearStagingResponse)
async def clear_staging_session(
    db: DbSession,
    session_id: str | None = Query(default=None),
) -> ClearStagingResponse:
    """Delete the staged rows of a session. Ledger rows stay."""
    if not session_id:
        raise_bad_request("session_id is required")
    deleted = await default_staging_store.clear_session(db, session_id)
    await db.commit()
    return ClearStagingResponse(session_id=session_id, deleted_count=deleted)


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile_transactions(payload: ReconcileRequest, db: DbSession) -> ReconcileResponse:
    scope = await _resolve_scope(db, payload.session_id, payload.bank_statement_id)
    async with async_log_timing("reconcile", logger=logger, **scope.as_log_fields()):
        result = await default_reconciler.reconcile(db, scope)
    await db.commit()

    counts = result.counts
    return ReconcileResponse(
        auto_merged_count=counts["auto_merged"],
        needs_review_count=counts["needs_review"],
        pdf_only_count=counts["pdf_only"],
        manual_only_count=counts["manual_only"],
        auto_merged=[_pair_response(pair) for pair in result.auto_merged],
        needs_review=[_pair_response(pair) for pair in result.needs_review],
        pdf_only=[StagedTransactionResponse.model_validate(record) for record in result.pdf_only],
        manual_only=[StagedTransactionResponse.model_validate(record) for record in result.manual_only],
    )


@router.post("/commit", response_model=CommitResponse)
async def commit_transactions(payload: CommitRequest, db: DbSession) -> CommitResponse:
    """Write the reconciled rows of a scope to the ledger, applying user decisions."""
    scope = await _resolve_scope(db, payload.session_id, payload.bank_statement_id)
    decisions = [Decision(id=item.id, decision=item.decision) for item in payload.decisions]
    async with async_log_timing("commit", logger=logger, **scope.as_log_fields()):
        result = await default_commit_engine.commit(db, scope, decisions)
    await db.commit()

    return CommitResponse(
        committed_count=result.committed_count,
        discarded_count=result.discarded_count,
        pending_review_count=result.pending_review_count,
        errors=result.errors,
        ledger_ids=result.ledger_ids,
    )


@router.get("/ledger", response_model=LedgerTransactionListResponse)
async def list_ledger_transactions(
    db: DbSession,
    session_id: str | None = Query(default=None),
    bank_statement_id: UUID | None = Query(default=None),
) -> LedgerTransactionListResponse:
    scope = await _resolve_scope(db, session_id, bank_statement_id)
    result = await db.execute(
        select(LedgerTransaction)
        .where(*scope.clauses(LedgerTransaction))
        .order_by(LedgerTransaction.txn_date, LedgerTransaction.created_at, LedgerTransaction.id)
    )
    rows = result.scalars().all()
    return LedgerTransactionListResponse(
        items=[LedgerTransactionResponse.model_validate(row) for row in rows],
        total=len(rows),
    )
