"""Commit staged transactions to the ledger.

Every ledger write runs in its own SAVEPOINT together with the status change of
the staged rows it consumes, so one failing row never takes the batch down and
a retry picks up exactly what is left.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import text, update
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from statement_ingest.logger import get_logger, log_exception
from statement_ingest.models import (
    ACTIVE_STATUSES,
    DEFAULT_CATEGORY,
    BankStatement,
    LedgerTransaction,
    StagedTransaction,
    StagedTransactionStatus,
    TransactionSource,
    UserDecision,
)
from statement_ingest.services.staging import StagingScope, StagingStore, default_staging_store

logger = get_logger(__name__)

ERROR_LABEL_LENGTH = 30


@dataclass(frozen=True)
class Decision:
    id: UUID
    decision: UserDecision


@dataclass
class CommitResult:
    committed_count: int = 0
    discarded_count: int = 0
    pending_review_count: int = 0
    errors: list[str] = field(default_factory=list)
    ledger_ids: list[UUID] = field(default_factory=list)
    ignored_decisions: list[UUID] = field(default_factory=list)


def pair_source_key(a: UUID, b: UUID) -> str:
    """One key per match group, whichever member is seen first."""
    return "|".join(sorted((str(a), str(b))))


def _failure_reason(exc: SQLAlchemyError) -> str:
    if isinstance(exc, StaleDataError):
        return "modified by a concurrent commit"
    detail = exc.orig if isinstance(exc, DBAPIError) and exc.orig is not None else exc
    return str(detail).splitlines()[0] if str(detail) else type(exc).__name__


def single_payload(
    record: StagedTransaction,
    *,
    ledger_id: UUID,
    decision: UserDecision | None = None,
) -> dict[str, Any]:
    """Ledger fields for a record committed on its own, under its own source."""
    decision = decision or record.user_decision
    return {
        "id": ledger_id,
        "session_id": record.session_id,
        "bank_statement_id": record.bank_statement_id,
        "source_key": str(record.id),
        "txn_date": record.txn_date,
        "amount": record.amount,
        "direction": record.direction,
        "description": record.description,
        "merchant": record.merchant,
        "category": record.category or DEFAULT_CATEGORY,
        "reference": record.reference,
        "confidence": record.confidence,
        "source": record.source,
        "provenance": {
            "staged_ids": [str(record.id)],
            "user_decision": decision.value if decision else None,
        },
    }


def merge_payload(
    primary: StagedTransaction,
    secondary: StagedTransaction,
    *,
    ledger_id: UUID,
) -> dict[str, Any]:
    """Merge a matched pair field by field.

    The statement side wins date, amount and direction; the longer description
    wins; merchant/category come from the statement side when present.
    """
    description = primary.description
    if len(secondary.description or "") > len(primary.description or ""):
        description = secondary.description
    return {
        "id": ledger_id,
        "session_id": primary.session_id,
        "bank_statement_id": primary.bank_statement_id or secondary.bank_statement_id,
        "source_key": pair_source_key(primary.id, secondary.id),
        "txn_date": primary.txn_date,
        "amount": primary.amount,
        "direction": primary.direction,
        "description": description,
        "merchant": primary.merchant or secondary.merchant,
        "category": primary.category or secondary.category or DEFAULT_CATEGORY,
        "reference": primary.reference or secondary.reference,
        "confidence": max(primary.confidence, secondary.confidence),
        "source": TransactionSource.HYBRID,
        "provenance": {
            "merged_from": f"{primary.source.value}+{secondary.source.value}",
            "staged_ids": [str(primary.id), str(secondary.id)],
            "match_score": primary.match_score,
            "match_group_id": primary.match_group_id,
        },
    }


@dataclass
class _Step:
    """One unit of work: a discard, or one ledger row and the staged rows it consumes."""

    records: list[StagedTransaction]
    label: str
    target: StagedTransactionStatus
    payload: dict[str, Any] | None = None
    # Ids whose discard must succeed before this step runs
    after_discard_of: tuple[UUID, ...] = ()


def _merge_step(record: StagedTransaction, partner: StagedTransaction) -> _Step:
    primary, secondary = (
        (partner, record)
        if partner.source is TransactionSource.PDF and record.source is not TransactionSource.PDF
        else (record, partner)
    )
    payload = merge_payload(primary, secondary, ledger_id=uuid4())
    return _Step(
        records=[primary, secondary],
        label=payload["description"],
        target=StagedTransactionStatus.COMMITTED,
        payload=payload,
    )


class CommitEngine:
    """Apply user decisions and write ledger rows exactly once per staged record."""

    def __init__(self, store: StagingStore = default_staging_store) -> None:
        self.store = store

    async def commit(
        self,
        db: AsyncSession,
        scope: StagingScope,
        decisions: Sequence[Decision] | None = None,
    ) -> CommitResult:
        result = CommitResult()
        await self._lock_scope(db, scope)

        records = await self.store.list_transactions(db, scope, statuses=ACTIVE_STATUSES)
        by_id = {record.id: record for record in records}

        decided: dict[UUID, UserDecision] = {}
        for item in decisions or ():
            if item.id not in by_id:
                # Terminal or unknown: committing twice is a no-op
                logger.info(
                    "Ignoring decision for inactive staged transaction",
                    staged_id=str(item.id),
                    decision=item.decision.value,
                )
                result.ignored_decisions.append(item.id)
                continue
            decided[item.id] = item.decision

        steps = await self._plan(db, records, by_id, decided, result)
        committed_by_statement = await self._execute(db, steps, decided, result)

        for statement_id, count in committed_by_statement.items():
            await db.execute(
                update(BankStatement)
                .where(BankStatement.id == statement_id)
                .values(transaction_count=BankStatement.transaction_count + count)
            )
        await db.flush()

        logger.info(
            "Commit complete",
            **scope.as_log_fields(),
            committed_count=result.committed_count,
            discarded_count=result.discarded_count,
            pending_review_count=result.pending_review_count,
            error_count=len(result.errors),
        )
        return result

    async def _lock_scope(self, db: AsyncSession, scope: StagingScope) -> None:
        if db.get_bind().dialect.name == "postgresql":
            await db.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": scope.lock_key})

    async def _plan(
        self,
        db: AsyncSession,
        records: list[StagedTransaction],
        by_id: dict[UUID, StagedTransaction],
        decided: dict[UUID, UserDecision],
        result: CommitResult,
    ) -> list[_Step]:
        """Snapshot every write before the first SAVEPOINT opens."""
        discards: list[_Step] = []
        writes: list[_Step] = []
        discarded_ids = {record_id for record_id, value in decided.items() if value is UserDecision.DISCARD}
        processed_pairs: set[str] = set()

        for record in records:
            decision = decided.get(record.id)
            if decision is UserDecision.DISCARD:
                discards.append(
                    _Step(
                        records=[record],
                        label=record.description,
                        target=StagedTransactionStatus.DISCARDED,
                    )
                )
                continue

            if record.status is StagedTransactionStatus.MATCHED and record.matched_with_id is not None:
                pair_key = pair_source_key(record.id, record.matched_with_id)
                if pair_key in processed_pairs:
                    continue
                processed_pairs.add(pair_key)

                partner = by_id.get(record.matched_with_id)
                if partner is None:
                    partner = await db.get(StagedTransaction, record.matched_with_id)

                if partner is None or partner.id in discarded_ids or (
                    partner.status is StagedTransactionStatus.DISCARDED
                ):
                    # Survivor of a discarded pair keeps its own source
                    writes.append(
                        _Step(
                            records=[record],
                            label=record.description,
                            target=StagedTransactionStatus.COMMITTED,
                            payload=single_payload(record, ledger_id=uuid4(), decision=decision),
                            after_discard_of=(partner.id,) if partner is not None and partner.id in discarded_ids else (),
                        )
                    )
                elif partner.status not in ACTIVE_STATUSES:
                    result.errors.append(
                        f"Failed: {record.description[:ERROR_LABEL_LENGTH]} - matched partner already committed"
                    )
                else:
                    writes.append(_merge_step(record, partner))
                continue

            partner = by_id.get(record.matched_with_id) if record.matched_with_id is not None else None
            if (
                record.status is StagedTransactionStatus.PENDING
                and decision is UserDecision.KEEP
                and partner is not None
                and partner.status is StagedTransactionStatus.PENDING
                and partner.matched_with_id == record.id
                and decided.get(partner.id) is UserDecision.KEEP
            ):
                # Keeping both halves of a review pair confirms the match
                pair_key = pair_source_key(record.id, partner.id)
                if pair_key not in processed_pairs:
                    processed_pairs.add(pair_key)
                    writes.append(_merge_step(record, partner))
                continue

            if record.status is StagedTransactionStatus.PENDING and decision is not UserDecision.KEEP:
                result.pending_review_count += 1
                continue

            # UNIQUE, kept PENDING, or MATCHED without a partner id
            writes.append(
                _Step(
                    records=[record],
                    label=record.description,
                    target=StagedTransactionStatus.COMMITTED,
                    payload=single_payload(record, ledger_id=uuid4(), decision=decision),
                )
            )
        return [*discards, *writes]

    async def _execute(
        self,
        db: AsyncSession,
        steps: list[_Step],
        decided: dict[UUID, UserDecision],
        result: CommitResult,
    ) -> Counter[UUID]:
        committed_by_statement: Counter[UUID] = Counter()
        failed_discards: set[UUID] = set()
        dirty = False

        for step in steps:
            if any(record_id in failed_discards for record_id in step.after_discard_of):
                # Partner is still MATCHED; committing alone now could duplicate it later
                continue
            if dirty:
                # A rolled-back SAVEPOINT expires what it touched; reload before reading
                try:
                    for record in step.records:
                        await db.refresh(record)
                except SQLAlchemyError as e:
                    result.errors.append(f"Failed: {step.label[:ERROR_LABEL_LENGTH]} - {_failure_reason(e)}")
                    continue
                if any(record.is_terminal for record in step.records):
                    logger.info("Skipping staged transaction finished by another commit", label=step.label[:ERROR_LABEL_LENGTH])
                    continue

            record_ids = [record.id for record in step.records]
            try:
                async with db.begin_nested():
                    for record in step.records:
                        if record.id in decided:
                            record.user_decision = decided[record.id]
                        record.transition_to(step.target)
                    if step.payload is not None:
                        db.add(LedgerTransaction(**step.payload))
            except SQLAlchemyError as e:
                dirty = True
                if step.target is StagedTransactionStatus.DISCARDED:
                    failed_discards.update(record_ids)
                result.errors.append(f"Failed: {step.label[:ERROR_LABEL_LENGTH]} - {_failure_reason(e)}")
                log_exception(
                    logger,
                    e,
                    "Staged transaction commit failed",
                    level="warning",
                    include_traceback=False,
                    staged_ids=[str(record_id) for record_id in record_ids],
                )
                continue

            if step.payload is None:
                result.discarded_count += 1
                continue
            result.committed_count += 1
            result.ledger_ids.append(step.payload["id"])
            if step.payload["bank_statement_id"] is not None:
                committed_by_statement[step.payload["bank_statement_id"]] += 1

        return committed_by_statement


default_commit_engine = CommitEngine()
