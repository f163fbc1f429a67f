"""Test fixtures and configuration."""

import logging
import os
import sys
from pathlib import Path

# Settings are read at import time; point them at SQLite before the package loads.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["ENVIRONMENT"] = "testing"

import pytest
import pytest_asyncio
import structlog
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from statement_ingest import database
from statement_ingest.database import Base
from statement_ingest.services import reconciliation

FIXTURES_DIR = Path(__file__).parent / "fixtures"


def _enable_savepoints(engine: AsyncEngine) -> None:
    """Let pysqlite emit BEGIN itself so SAVEPOINT works inside transactions."""

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


# --- Structlog Configuration for Tests ---
@pytest.fixture(autouse=True, scope="session")
def configure_structlog_for_tests():
    """Configure structlog for proper capsys capture in tests."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.dev.ConsoleRenderer(),
        foreign_pre_chain=processors[:-1],
    )

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG)

    yield

    structlog.reset_defaults()


@pytest.fixture(autouse=True)
def reset_reconciliation_config(monkeypatch):
    """Every test starts from the YAML defaults, without threshold overrides."""
    monkeypatch.delenv("RECONCILIATION_AUTO_MERGE_THRESHOLD", raising=False)
    monkeypatch.delenv("RECONCILIATION_REVIEW_THRESHOLD", raising=False)
    reconciliation._config_cache = None
    yield
    reconciliation._config_cache = None


@pytest.fixture
def fixture_text():
    """Read a text fixture from tests/fixtures."""

    def _read(name: str) -> str:
        return (FIXTURES_DIR / name).read_text()

    return _read


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """SQLite database file per test with the full schema."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        poolclass=NullPool,
    )
    _enable_savepoints(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(db_engine):
    """Override the global session maker so API handlers use the test database."""
    maker = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    previous = database.set_test_session_maker(maker)
    yield maker
    database.set_test_session_maker(previous)


@pytest_asyncio.fixture
async def db(session_maker):
    """Session on the test database. Tests commit or flush as the code under test does."""
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def client(session_maker):
    """HTTP client bound to the app through ASGITransport."""
    from statement_ingest.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
