"""
Pytest configuration and fixtures for the bulk import tests.

Tests never touch a real bucket or PostgreSQL: object storage is an in-memory
fake and records go to an in-memory SQLite database shared across threads, so
the runner's worker-thread writes and the test's reads see the same data.
"""

import os

# Skip database bootstrap in the app lifespan; fixtures create tables themselves.
os.environ["SKIP_DB_INIT"] = "1"
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy.pool import StaticPool

from app.api.dependencies import build_runtime
from app.db.models import SqlRecordRepository, ensure_record_tables
from app.db.session import create_db_engine
from app.domain.imports.jobs import JobStore
from tests.utils.fakes import InMemoryObjectStorage


@pytest.fixture
def engine():
    """Fresh in-memory SQLite database with the record tables created."""
    test_engine = create_db_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    ensure_record_tables(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def repository(engine):
    return SqlRecordRepository(engine)


@pytest.fixture
def storage():
    return InMemoryObjectStorage()


@pytest.fixture
def job_store():
    return JobStore(retention_seconds=3600)


@pytest.fixture
def runtime(storage, repository):
    """Import runtime wired to the fakes with small batches so tests cross batch boundaries."""
    return build_runtime(storage=storage, repository=repository, batch_size=2, read_chunk_rows=2)
