"""API routers package."""

from statement_ingest.routers import transactions

__all__ = ["transactions"]
