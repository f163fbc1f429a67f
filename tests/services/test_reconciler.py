"""Tests for reconciliation of staged rows across sources."""

from dataclasses import replace
from datetime import date, timedelta
from decimal import Decimal
from uuid import UUID

import pytest

from statement_ingest.models import StagedTransactionStatus, TransactionSource
from statement_ingest.services.reconciliation import (
    DEFAULT_CONFIG,
    MatchScorer,
    Reconciler,
    default_reconciler,
    match_group_id,
)
from statement_ingest.services.staging import StagingScope, default_staging_store
from tests.factories import BankStatementFactory, CandidateTransactionFactory

SESSION = "stg_reconcile"
DAY = date(2024, 1, 15)


def _pdf(description, amount="45.99", txn_date=DAY):
    return CandidateTransactionFactory.build(
        description=description, amount=Decimal(amount), txn_date=txn_date, source=TransactionSource.PDF
    )


def _manual(description, amount="45.99", txn_date=DAY):
    return CandidateTransactionFactory.build(
        description=description,
        amount=Decimal(amount),
        txn_date=txn_date,
        source=TransactionSource.MANUAL,
        confidence=0.9,
    )


async def _stage(db, pdf_rows, manual_rows, **kwargs):
    kwargs.setdefault("session_id", SESSION)
    pdf = await default_staging_store.stage(db, pdf_rows, **kwargs)
    manual = await default_staging_store.stage(db, manual_rows, **kwargs)
    return pdf.staged, manual.staged


@pytest.mark.asyncio
async def test_auto_merge_review_and_unique(db):
    """GIVEN: A statement row with an exact manual twin, one two days off, and unrelated rows
    WHEN: Reconciling the session
    THEN: The twin is MATCHED, the near pair waits for review and the rest is UNIQUE"""
    pdf, manual = await _stage(
        db,
        [_pdf("AMAZON MKTPLACE PMTS"), _pdf("Electric Company", amount="120.00"), _pdf("Bookstore", amount="12.00")],
        [
            _manual("Amazon"),
            _manual("Electric bill", amount="120.00", txn_date=DAY + timedelta(days=2)),
            _manual("Gym", amount="30.00"),
        ],
    )

    result = await default_reconciler.reconcile(db, StagingScope(session_id=SESSION))

    assert result.counts == {"auto_merged": 1, "needs_review": 1, "pdf_only": 1, "manual_only": 1}

    merged = result.auto_merged[0]
    assert (merged.pdf.id, merged.manual.id) == (pdf[0].id, manual[0].id)
    assert merged.match_group_id == match_group_id(pdf[0].id, manual[0].id)
    assert merged.score == 1.0
    assert pdf[0].status is manual[0].status is StagedTransactionStatus.MATCHED
    assert pdf[0].matched_with_id == manual[0].id
    assert manual[0].matched_with_id == pdf[0].id
    assert pdf[0].match_group_id == manual[0].match_group_id == merged.match_group_id

    review = result.needs_review[0]
    assert (review.pdf.id, review.manual.id) == (pdf[1].id, manual[1].id)
    assert pdf[1].status is StagedTransactionStatus.PENDING
    assert pdf[1].needs_review and manual[1].needs_review
    assert 0.5 <= review.score < 0.85

    assert [record.id for record in result.pdf_only] == [pdf[2].id]
    assert [record.id for record in result.manual_only] == [manual[2].id]
    assert pdf[2].status is manual[2].status is StagedTransactionStatus.UNIQUE
    assert pdf[2].match_group_id is None


@pytest.mark.asyncio
async def test_rerun_rescores_only_pending_rows(db):
    pdf, manual = await _stage(
        db,
        [_pdf("Coffee Shop"), _pdf("Electric Company", amount="120.00")],
        [_manual("Coffee Shop"), _manual("Electric bill", amount="120.00", txn_date=DAY + timedelta(days=2))],
    )
    scope = StagingScope(session_id=SESSION)
    first = await default_reconciler.reconcile(db, scope)

    second = await default_reconciler.reconcile(db, scope)

    # The MATCHED pair is settled; the review pair comes back with the same group id
    assert second.counts == {"auto_merged": 0, "needs_review": 1, "pdf_only": 0, "manual_only": 0}
    assert second.needs_review[0].match_group_id == first.needs_review[0].match_group_id
    assert pdf[0].status is StagedTransactionStatus.MATCHED
    assert manual[1].matched_with_id == pdf[1].id


@pytest.mark.asyncio
async def test_review_partner_lost_to_new_row_becomes_unique(db):
    pdf, manual = await _stage(
        db,
        [_pdf("Electric Company", amount="120.00")],
        [_manual("Electric bill", amount="120.00", txn_date=DAY + timedelta(days=2))],
    )
    scope = StagingScope(session_id=SESSION)
    await default_reconciler.reconcile(db, scope)

    # A better statement-side candidate arrives later in the same session
    late_row = _pdf("Electric bill", amount="120.00", txn_date=DAY + timedelta(days=2))
    (late,) = (await default_staging_store.stage(db, [late_row], session_id=SESSION)).staged
    result = await default_reconciler.reconcile(db, scope)

    assert [pair.pdf.id for pair in result.auto_merged] == [late.id]
    assert [record.id for record in result.pdf_only] == [pdf[0].id]
    assert pdf[0].status is StagedTransactionStatus.UNIQUE
    assert pdf[0].match_group_id is None
    assert manual[0].matched_with_id == late.id


@pytest.mark.asyncio
async def test_scope_by_bank_statement(db):
    statement = await BankStatementFactory.create_async(db)
    await _stage(db, [_pdf("Coffee Shop")], [_manual("Coffee Shop")], bank_statement_id=statement.id)
    others = await default_staging_store.stage(db, [_manual("Coffee Shop")], session_id="stg_other")

    result = await default_reconciler.reconcile(db, StagingScope(bank_statement_id=statement.id))

    assert result.counts["auto_merged"] == 1
    assert others.staged[0].status is StagedTransactionStatus.PENDING


@pytest.mark.asyncio
async def test_custom_thresholds(db):
    await _stage(db, [_pdf("Coffee Shop")], [_manual("Coffee Shop", txn_date=DAY + timedelta(days=1))])
    reconciler = Reconciler(MatchScorer(replace(DEFAULT_CONFIG, auto_merge=Decimal("0.95"))))

    result = await reconciler.reconcile(db, StagingScope(session_id=SESSION))

    assert result.counts["auto_merged"] == 0
    assert result.needs_review[0].score == pytest.approx(0.93)


@pytest.mark.asyncio
async def test_empty_scope(db):
    result = await default_reconciler.reconcile(db, StagingScope(session_id="stg_empty"))

    assert result.counts == {"auto_merged": 0, "needs_review": 0, "pdf_only": 0, "manual_only": 0}


def test_match_group_id_is_deterministic():
    a = UUID("00000000-0000-0000-0000-000000000001")
    b = UUID("00000000-0000-0000-0000-000000000002")

    assert match_group_id(a, b) == match_group_id(a, b)
    assert match_group_id(a, b) != match_group_id(b, a)
    assert match_group_id(a, b).startswith("mg_")
    assert len(match_group_id(a, b)) == 19
