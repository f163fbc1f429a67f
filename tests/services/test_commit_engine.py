"""Tests for committing staged transactions to the ledger."""

from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from statement_ingest.models import (
    LedgerTransaction,
    StagedTransactionStatus,
    TransactionSource,
    UserDecision,
)
from statement_ingest.services.commit import Decision, default_commit_engine, pair_source_key
from statement_ingest.services.reconciliation import default_reconciler
from statement_ingest.services.staging import StagingScope, default_staging_store
from tests.factories import BankStatementFactory, CandidateTransactionFactory

SESSION = "stg_commit"
SCOPE = StagingScope(session_id=SESSION)
DAY = date(2024, 1, 15)


def _row(description, source=TransactionSource.PDF, amount="45.99", txn_date=DAY):
    return CandidateTransactionFactory.build(
        description=description,
        amount=Decimal(amount),
        txn_date=txn_date,
        source=source,
        confidence=1.0 if source is TransactionSource.PDF else 0.9,
    )


async def _stage_and_reconcile(db, pdf_rows, manual_rows, **kwargs):
    kwargs.setdefault("session_id", SESSION)
    pdf = (await default_staging_store.stage(db, pdf_rows, **kwargs)).staged
    manual = (await default_staging_store.stage(db, manual_rows, **kwargs)).staged
    await default_reconciler.reconcile(db, StagingScope(session_id=kwargs["session_id"]))
    return pdf, manual


async def _ledger_rows(db):
    result = await db.execute(select(LedgerTransaction).order_by(LedgerTransaction.txn_date))
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_matched_pair_becomes_one_hybrid_row(db):
    """GIVEN: A statement row "AMAZON MKTPLACE PMTS" auto-merged with a manual "Amazon"
    WHEN: Committing the session
    THEN: One HYBRID ledger row carries the statement facts and the longer description"""
    pdf, manual = await _stage_and_reconcile(
        db,
        [_row("AMAZON MKTPLACE PMTS")],
        [_row("Amazon", source=TransactionSource.MANUAL)],
    )

    result = await default_commit_engine.commit(db, SCOPE)

    assert result.committed_count == 1
    assert result.errors == []
    (ledger,) = await _ledger_rows(db)
    assert ledger.id == result.ledger_ids[0]
    assert ledger.source is TransactionSource.HYBRID
    assert ledger.description == "AMAZON MKTPLACE PMTS"
    assert ledger.amount == Decimal("45.99")
    assert ledger.txn_date == DAY
    assert ledger.confidence == 1.0
    assert ledger.category == "Uncategorized"
    assert ledger.source_key == pair_source_key(pdf[0].id, manual[0].id)
    assert ledger.provenance["merged_from"] == "PDF+MANUAL"
    assert ledger.provenance["staged_ids"] == [str(pdf[0].id), str(manual[0].id)]
    assert ledger.provenance["match_group_id"] == pdf[0].match_group_id
    assert pdf[0].status is manual[0].status is StagedTransactionStatus.COMMITTED


@pytest.mark.asyncio
async def test_commit_is_idempotent(db):
    await _stage_and_reconcile(db, [_row("Coffee Shop"), _row("Bookstore", amount="12.00")], [])
    first = await default_commit_engine.commit(db, SCOPE)

    second = await default_commit_engine.commit(db, SCOPE)

    assert first.committed_count == 2
    assert second.committed_count == 0
    assert second.errors == []
    assert len(await _ledger_rows(db)) == 2


@pytest.mark.asyncio
async def test_needs_review_waits_for_a_decision(db):
    pdf, manual = await _stage_and_reconcile(
        db,
        [_row("Electric Company", amount="120.00")],
        [_row("Electric bill", source=TransactionSource.MANUAL, amount="120.00", txn_date=DAY + timedelta(days=2))],
    )

    result = await default_commit_engine.commit(db, SCOPE)

    assert result.committed_count == 0
    assert result.pending_review_count == 2
    assert pdf[0].status is StagedTransactionStatus.PENDING
    assert await _ledger_rows(db) == []


@pytest.mark.asyncio
async def test_review_decisions_discard_one_keep_other(db):
    """GIVEN: A needs-review pair
    WHEN: The manual side is discarded and the statement side kept
    THEN: Only the statement row reaches the ledger, under its own source"""
    pdf, manual = await _stage_and_reconcile(
        db,
        [_row("Electric Company", amount="120.00")],
        [_row("Electric bill", source=TransactionSource.MANUAL, amount="120.00", txn_date=DAY + timedelta(days=2))],
    )

    result = await default_commit_engine.commit(
        db,
        SCOPE,
        [Decision(id=manual[0].id, decision=UserDecision.DISCARD), Decision(id=pdf[0].id, decision=UserDecision.KEEP)],
    )

    assert result.discarded_count == 1
    assert result.committed_count == 1
    assert manual[0].status is StagedTransactionStatus.DISCARDED
    assert manual[0].user_decision is UserDecision.DISCARD
    assert pdf[0].status is StagedTransactionStatus.COMMITTED
    assert pdf[0].user_decision is UserDecision.KEEP
    (ledger,) = await _ledger_rows(db)
    assert ledger.source is TransactionSource.PDF
    assert ledger.source_key == str(pdf[0].id)
    assert ledger.provenance == {"staged_ids": [str(pdf[0].id)], "user_decision": "KEEP"}


@pytest.mark.asyncio
async def test_undecided_partner_of_kept_row_keeps_waiting(db):
    """GIVEN: A needs-review pair where only the statement side was kept
    WHEN: Reconciling and committing the session again
    THEN: The manual side still waits for a decision instead of becoming a second ledger row"""
    pdf, manual = await _stage_and_reconcile(
        db,
        [_row("Electric Company", amount="120.00")],
        [_row("Electric bill", source=TransactionSource.MANUAL, amount="120.00", txn_date=DAY + timedelta(days=2))],
    )
    first = await default_commit_engine.commit(db, SCOPE, [Decision(id=pdf[0].id, decision=UserDecision.KEEP)])
    assert first.committed_count == 1
    assert first.pending_review_count == 1

    rerun = await default_reconciler.reconcile(db, SCOPE)
    second = await default_commit_engine.commit(db, SCOPE)

    assert rerun.counts == {"auto_merged": 0, "needs_review": 0, "pdf_only": 0, "manual_only": 0}
    assert [record.id for record in rerun.awaiting_decision] == [manual[0].id]
    assert manual[0].status is StagedTransactionStatus.PENDING
    assert manual[0].matched_with_id == pdf[0].id
    assert manual[0].needs_review
    assert second.committed_count == 0
    assert second.pending_review_count == 1
    assert len(await _ledger_rows(db)) == 1

    final = await default_commit_engine.commit(db, SCOPE, [Decision(id=manual[0].id, decision=UserDecision.DISCARD)])

    assert final.discarded_count == 1
    assert len(await _ledger_rows(db)) == 1


@pytest.mark.asyncio
async def test_keeping_both_halves_of_review_pair_merges_them(db):
    pdf, manual = await _stage_and_reconcile(
        db,
        [_row("Electric Company", amount="120.00")],
        [_row("Electric bill", source=TransactionSource.MANUAL, amount="120.00", txn_date=DAY + timedelta(days=2))],
    )

    result = await default_commit_engine.commit(
        db,
        SCOPE,
        [Decision(id=pdf[0].id, decision=UserDecision.KEEP), Decision(id=manual[0].id, decision=UserDecision.KEEP)],
    )

    assert result.committed_count == 1
    assert result.pending_review_count == 0
    (ledger,) = await _ledger_rows(db)
    assert ledger.source is TransactionSource.HYBRID
    assert ledger.source_key == pair_source_key(pdf[0].id, manual[0].id)
    assert ledger.description == "Electric Company"
    assert ledger.amount == Decimal("120.00")
    assert ledger.txn_date == DAY
    assert ledger.provenance["match_group_id"] == pdf[0].match_group_id
    assert pdf[0].status is manual[0].status is StagedTransactionStatus.COMMITTED
    assert pdf[0].user_decision is manual[0].user_decision is UserDecision.KEEP


@pytest.mark.asyncio
async def test_card_descriptor_and_manual_note_merge(db):
    """GIVEN: Statement row "AMAZON.COM*AB12" and manual "Amazon purchase", same day, 45.99
    WHEN: Reconciling and committing
    THEN: They auto-merge into one HYBRID ledger row"""
    pdf, manual = await _stage_and_reconcile(
        db,
        [_row("AMAZON.COM*AB12")],
        [_row("Amazon purchase", source=TransactionSource.MANUAL)],
    )
    assert pdf[0].status is manual[0].status is StagedTransactionStatus.MATCHED
    assert pdf[0].match_score == 1.0

    result = await default_commit_engine.commit(db, SCOPE)

    assert result.committed_count == 1
    (ledger,) = await _ledger_rows(db)
    assert ledger.source is TransactionSource.HYBRID
    assert ledger.amount == Decimal("45.99")
    assert ledger.txn_date == DAY
    assert ledger.description == "AMAZON.COM*AB12"


@pytest.mark.asyncio
async def test_discarded_half_of_matched_pair_leaves_a_single_row(db):
    pdf, manual = await _stage_and_reconcile(
        db, [_row("Coffee Shop")], [_row("Coffee Shop", source=TransactionSource.MANUAL)]
    )
    assert pdf[0].status is StagedTransactionStatus.MATCHED

    result = await default_commit_engine.commit(db, SCOPE, [Decision(id=pdf[0].id, decision=UserDecision.DISCARD)])

    assert result.discarded_count == 1
    assert result.committed_count == 1
    (ledger,) = await _ledger_rows(db)
    assert ledger.source is TransactionSource.MANUAL
    assert ledger.confidence == 0.9
    assert pdf[0].status is StagedTransactionStatus.DISCARDED
    assert manual[0].status is StagedTransactionStatus.COMMITTED


@pytest.mark.asyncio
async def test_unique_rows_update_statement_count(db):
    statement = await BankStatementFactory.create_async(db)
    await _stage_and_reconcile(
        db,
        [_row("Coffee Shop"), _row("Bookstore", amount="12.00")],
        [_row("Gym", source=TransactionSource.MANUAL, amount="30.00")],
        bank_statement_id=statement.id,
    )

    result = await default_commit_engine.commit(db, StagingScope(bank_statement_id=statement.id))

    assert result.committed_count == 3
    await db.refresh(statement)
    assert statement.transaction_count == 3
    sources = sorted(row.source.value for row in await _ledger_rows(db))
    assert sources == ["MANUAL", "PDF", "PDF"]


@pytest.mark.asyncio
async def test_failed_row_does_not_block_the_batch(db):
    """GIVEN: Two UNIQUE rows, one of which already has a ledger row with its key
    WHEN: Committing
    THEN: The other row commits, the failing one stays UNIQUE and is reported"""
    pdf, _ = await _stage_and_reconcile(db, [_row("Coffee Shop"), _row("Bookstore", amount="12.00")], [])
    blocked = pdf[0]
    db.add(
        LedgerTransaction(
            session_id=SESSION,
            source_key=str(blocked.id),
            txn_date=DAY,
            amount=Decimal("1.00"),
            direction=blocked.direction,
            description="Existing",
            source=TransactionSource.PDF,
        )
    )
    await db.flush()

    result = await default_commit_engine.commit(db, SCOPE)

    assert result.committed_count == 1
    assert len(result.errors) == 1
    assert result.errors[0].startswith(f"Failed: {blocked.description[:30]} - ")
    await db.refresh(blocked)
    assert blocked.status is StagedTransactionStatus.UNIQUE
    assert pdf[1].status is StagedTransactionStatus.COMMITTED
    count = await db.scalar(select(func.count()).select_from(LedgerTransaction))
    assert count == 2


@pytest.mark.asyncio
async def test_decisions_for_inactive_rows_are_ignored(db):
    pdf, _ = await _stage_and_reconcile(db, [_row("Coffee Shop")], [])
    await default_commit_engine.commit(db, SCOPE)
    unknown = uuid4()

    result = await default_commit_engine.commit(
        db,
        SCOPE,
        [Decision(id=pdf[0].id, decision=UserDecision.DISCARD), Decision(id=unknown, decision=UserDecision.KEEP)],
    )

    assert result.ignored_decisions == [pdf[0].id, unknown]
    assert result.discarded_count == 0
    assert pdf[0].status is StagedTransactionStatus.COMMITTED


def test_pair_source_key_is_order_independent():
    a, b = uuid4(), uuid4()

    assert pair_source_key(a, b) == pair_source_key(b, a)
