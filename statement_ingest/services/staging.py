"""Staging pool: parsed transactions waiting for reconciliation and commit."""

from __future__ import annotations

import secrets
import zlib
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from uuid import UUID

from sqlalchemy import ColumnElement, delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from statement_ingest.logger import get_logger, log_timing
from statement_ingest.models import (
    BankStatement,
    StagedTransaction,
    StagedTransactionStatus,
    TransactionSource,
)
from statement_ingest.services.candidates import CandidateTransaction
from statement_ingest.services.deduplication import DedupKeyGenerator, default_key_generator
from statement_ingest.services.manual_input import ManualInputParser, default_manual_parser
from statement_ingest.services.statement_parser import (
    ParsedStatement,
    StatementTextParser,
    default_statement_parser,
)

logger = get_logger(__name__)

STAGEABLE_SOURCES = frozenset({TransactionSource.PDF, TransactionSource.MANUAL, TransactionSource.CSV})


class ScopeError(ValueError):
    """Raised when neither a session nor a bank statement identifies the records."""

    pass


class StatementNotFoundError(LookupError):
    """Raised when a referenced bank statement does not exist."""

    def __init__(self, statement_id: UUID) -> None:
        super().__init__(f"Bank statement {statement_id} not found")
        self.statement_id = statement_id


def new_session_id() -> str:
    return f"stg_{secrets.token_hex(12)}"


@dataclass(frozen=True)
class StagingScope:
    """The staged records one operation may touch: a session, a statement, or both."""

    session_id: str | None = None
    bank_statement_id: UUID | None = None

    def __post_init__(self) -> None:
        if not self.session_id and self.bank_statement_id is None:
            raise ScopeError("Either session_id or bank_statement_id is required")

    def clauses(self, model: type = StagedTransaction) -> list[ColumnElement[bool]]:
        clauses = []
        if self.session_id:
            clauses.append(model.session_id == self.session_id)
        if self.bank_statement_id is not None:
            clauses.append(model.bank_statement_id == self.bank_statement_id)
        return clauses

    @property
    def lock_key(self) -> int:
        """Signed 32-bit key for a transaction-scoped advisory lock."""
        raw = f"{self.session_id or ''}|{self.bank_statement_id or ''}".encode()
        return zlib.crc32(raw) - 2**31

    def as_log_fields(self) -> dict[str, str | None]:
        return {
            "session_id": self.session_id,
            "bank_statement_id": str(self.bank_statement_id) if self.bank_statement_id else None,
        }


@dataclass
class StageResult:
    session_id: str
    bank_statement_id: UUID | None
    staged: list[StagedTransaction]
    skipped_lines: int = 0
    total_lines: int = 0

    @property
    def staged_count(self) -> int:
        return len(self.staged)


@dataclass
class StagingSummary:
    total: int = 0
    needs_review: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    by_source: dict[str, int] = field(default_factory=dict)


def summarize_records(records: Iterable[StagedTransaction]) -> StagingSummary:
    records = list(records)
    return StagingSummary(
        total=len(records),
        needs_review=sum(1 for record in records if record.needs_review),
        by_status=dict(Counter(record.status.value for record in records)),
        by_source=dict(Counter(record.source.value for record in records)),
    )


class StagingStore:
    """Create, list and clear staged transactions.

    Parsing always happens before the first write, so a rejected text leaves
    the pool untouched; the rows of one call are inserted in a single flush.
    """

    def __init__(
        self,
        *,
        statement_parser: StatementTextParser = default_statement_parser,
        manual_parser: ManualInputParser = default_manual_parser,
        key_generator: DedupKeyGenerator = default_key_generator,
    ) -> None:
        self.statement_parser = statement_parser
        self.manual_parser = manual_parser
        self.key_generator = key_generator

    async def stage(
        self,
        db: AsyncSession,
        candidates: Sequence[CandidateTransaction],
        *,
        session_id: str | None = None,
        bank_statement_id: UUID | None = None,
        skipped_lines: int = 0,
        total_lines: int | None = None,
    ) -> StageResult:
        """Insert candidates as PENDING staged transactions."""
        for candidate in candidates:
            if candidate.source not in STAGEABLE_SOURCES:
                raise ValueError(f"Cannot stage a {candidate.source.value} transaction")
        if bank_statement_id is not None:
            await self._get_statement(db, bank_statement_id)

        session_id = session_id or new_session_id()
        staged_at = datetime.now(UTC)
        records = [
            StagedTransaction(
                session_id=session_id,
                bank_statement_id=bank_statement_id,
                position=position,
                txn_date=candidate.txn_date,
                amount=candidate.amount,
                direction=candidate.direction,
                description=candidate.description,
                merchant=candidate.merchant,
                category=candidate.category,
                reference=candidate.reference,
                confidence=candidate.confidence,
                source=candidate.source,
                raw_text=candidate.raw_text,
                dedup_hash=self.key_generator.generate(candidate),
                status=StagedTransactionStatus.PENDING,
                created_at=staged_at,
                updated_at=staged_at,
            )
            for position, candidate in enumerate(candidates)
        ]
        if records:
            db.add_all(records)
            await db.flush()

        logger.info(
            "Transactions staged",
            session_id=session_id,
            bank_statement_id=str(bank_statement_id) if bank_statement_id else None,
            staged_count=len(records),
            skipped_lines=skipped_lines,
        )
        return StageResult(
            session_id=session_id,
            bank_statement_id=bank_statement_id,
            staged=records,
            skipped_lines=skipped_lines,
            total_lines=len(records) + skipped_lines if total_lines is None else total_lines,
        )

    async def stage_raw_text(
        self,
        db: AsyncSession,
        text: str,
        *,
        source: TransactionSource,
        session_id: str | None = None,
        bank_statement_id: UUID | None = None,
        today: date | None = None,
    ) -> StageResult:
        """Parse text for ``source`` and stage the result.

        PDF text must fit a statement layout (``ParseError`` otherwise); manual
        and CSV text goes through the manual parser.
        """
        statement = None
        if bank_statement_id is not None:
            statement = await self._get_statement(db, bank_statement_id)

        if source is TransactionSource.PDF:
            with log_timing("parse_statement", logger=logger, chars=len(text or "")) as ctx:
                parsed = self.statement_parser.parse(text, source=source, today=today)
                ctx["layout"] = parsed.layout
                ctx["rows"] = len(parsed.transactions)
            if statement is not None:
                _apply_statement_facts(statement, parsed)
            candidates = parsed.transactions
            skipped = parsed.skipped_rows
            total = len(candidates) + skipped
        else:
            result = self.manual_parser.parse(text, source=source, today=today)
            candidates = result.transactions
            skipped = result.skipped_lines
            total = result.total_lines

        return await self.stage(
            db,
            candidates,
            session_id=session_id,
            bank_statement_id=bank_statement_id,
            skipped_lines=skipped,
            total_lines=total,
        )

    async def list_transactions(
        self,
        db: AsyncSession,
        scope: StagingScope,
        *,
        statuses: Iterable[StagedTransactionStatus] | None = None,
    ) -> list[StagedTransaction]:
        """Staged rows of a scope in input order."""
        query = select(StagedTransaction).where(*scope.clauses())
        if statuses is not None:
            query = query.where(StagedTransaction.status.in_(list(statuses)))
        query = query.order_by(
            StagedTransaction.created_at,
            StagedTransaction.position,
            StagedTransaction.id,
        )
        result = await db.execute(query)
        return list(result.scalars().all())

    async def summarize(self, db: AsyncSession, scope: StagingScope) -> StagingSummary:
        return summarize_records(await self.list_transactions(db, scope))

    async def clear_session(self, db: AsyncSession, session_id: str) -> int:
        """Delete every staged row of a session. Ledger rows are untouched."""
        if not session_id:
            raise ScopeError("session_id is required to clear staging")
        result = await db.execute(
            delete(StagedTransaction)
            .where(StagedTransaction.session_id == session_id)
            .execution_options(synchronize_session=False)
        )
        deleted = result.rowcount or 0
        logger.info("Staging session cleared", session_id=session_id, deleted=deleted)
        return deleted

    async def _get_statement(self, db: AsyncSession, statement_id: UUID) -> BankStatement:
        statement = await db.get(BankStatement, statement_id)
        if statement is None:
            raise StatementNotFoundError(statement_id)
        return statement


def _apply_statement_facts(statement: BankStatement, parsed: ParsedStatement) -> None:
    """Fill statement fields the caller left empty with what the parser found."""
    if statement.institution is None and parsed.institution:
        statement.institution = parsed.institution
    if parsed.period is not None:
        if statement.period_start is None:
            statement.period_start = parsed.period.start
        if statement.period_end is None:
            statement.period_end = parsed.period.end
    if statement.opening_balance is None and parsed.opening_balance is not None:
        statement.opening_balance = parsed.opening_balance
    if statement.closing_balance is None and parsed.closing_balance is not None:
        statement.closing_balance = parsed.closing_balance


default_staging_store = StagingStore()
