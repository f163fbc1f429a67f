"""Bank statement ingestion: parsing, staging, reconciliation and ledger commit."""

__version__ = "0.1.0"
