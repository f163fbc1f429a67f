"""Tests for the staged transaction lifecycle."""

from uuid import uuid4

import pytest

from statement_ingest.models import InvalidTransitionError, StagedTransactionStatus
from tests.factories import StagedTransactionFactory


@pytest.mark.parametrize(
    "target",
    [
        StagedTransactionStatus.PENDING,
        StagedTransactionStatus.MATCHED,
        StagedTransactionStatus.UNIQUE,
        StagedTransactionStatus.COMMITTED,
        StagedTransactionStatus.DISCARDED,
    ],
)
def test_pending_can_move_anywhere(target):
    txn = StagedTransactionFactory.build()

    txn.transition_to(target)

    assert txn.status is target


@pytest.mark.parametrize("start", [StagedTransactionStatus.MATCHED, StagedTransactionStatus.UNIQUE])
def test_reconciled_rows_only_move_forward(start):
    txn = StagedTransactionFactory.build(status=start)

    with pytest.raises(InvalidTransitionError):
        txn.transition_to(StagedTransactionStatus.PENDING)

    txn.transition_to(StagedTransactionStatus.COMMITTED)
    assert txn.is_terminal


@pytest.mark.parametrize("terminal", [StagedTransactionStatus.COMMITTED, StagedTransactionStatus.DISCARDED])
def test_terminal_states_have_no_exits(terminal):
    txn = StagedTransactionFactory.build(status=terminal)

    with pytest.raises(InvalidTransitionError) as exc_info:
        txn.transition_to(StagedTransactionStatus.COMMITTED)

    assert exc_info.value.current is terminal
    assert txn.status is terminal


def test_needs_review_requires_pending_link():
    txn = StagedTransactionFactory.build()
    assert not txn.needs_review

    txn.link_partner(uuid4(), group_id="mg_0123456789abcdef", score=0.6)
    assert txn.needs_review

    txn.transition_to(StagedTransactionStatus.MATCHED)
    assert not txn.needs_review


def test_clear_link():
    txn = StagedTransactionFactory.build()
    txn.link_partner(uuid4(), group_id="mg_1", score=0.7)

    txn.clear_link()

    assert txn.match_group_id is None
    assert txn.matched_with_id is None
    assert txn.match_score is None
