"""Services package."""

from statement_ingest.services.candidates import CandidateTransaction, split_signed_amount
from statement_ingest.services.commit import CommitEngine, CommitResult, Decision, default_commit_engine
from statement_ingest.services.deduplication import DedupKeyGenerator, default_key_generator
from statement_ingest.services.manual_input import (
    ManualInputParser,
    ManualParseResult,
    default_manual_parser,
)
from statement_ingest.services.reconciliation import (
    MatchScorer,
    Reconciler,
    ReconciliationResult,
    default_reconciler,
    load_reconciliation_config,
    match_transactions,
)
from statement_ingest.services.staging import (
    ScopeError,
    StagingScope,
    StagingStore,
    StatementNotFoundError,
    default_staging_store,
)
from statement_ingest.services.statement_parser import (
    ParsedStatement,
    ParseError,
    StatementTextParser,
    default_statement_parser,
)

__all__ = [
    "CandidateTransaction",
    "split_signed_amount",
    "CommitEngine",
    "CommitResult",
    "Decision",
    "default_commit_engine",
    "DedupKeyGenerator",
    "default_key_generator",
    "ManualInputParser",
    "ManualParseResult",
    "default_manual_parser",
    "MatchScorer",
    "Reconciler",
    "ReconciliationResult",
    "default_reconciler",
    "load_reconciliation_config",
    "match_transactions",
    "ScopeError",
    "StagingScope",
    "StagingStore",
    "StatementNotFoundError",
    "default_staging_store",
    "ParsedStatement",
    "ParseError",
    "StatementTextParser",
    "default_statement_parser",
]
