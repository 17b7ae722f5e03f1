"""
Shared pytest fixtures.

Provides:
- SQLite in-memory database (JSONB compiled to JSON)
- Transactional session; controller commits become savepoint releases
- Fake embedding provider built on SimpleNamespace responses
- FastAPI TestClient with get_db / embedder overrides
"""

from types import SimpleNamespace
from typing import Generator
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from sampledesk.config import Settings
from sampledesk.db.models import Base
from sampledesk.search.embeddings import EmbeddingClient
from tests.fakes import DIMENSIONS, FakeEmbeddingsAPI

# ---------------------------------------------------------------------------
# SQLite type-compilation workaround for Postgres-specific column types.
# ---------------------------------------------------------------------------


@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(element, compiler, **kw):
    return "JSON"


TEST_DATABASE_URL = "sqlite:///:memory:"


# =============================================================================
# SQLite in-memory engine & session
# =============================================================================
@pytest.fixture(scope="session")
def test_engine():
    """Single in-memory SQLite engine shared by the whole session."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        # Let SQLAlchemy emit BEGIN / SAVEPOINT itself
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


@pytest.fixture(scope="session")
def create_tables(test_engine):
    Base.metadata.create_all(bind=test_engine)
    yield
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture()
def db_session(test_engine, create_tables) -> Generator[Session, None, None]:
    """Transactional session rolled back after each test."""
    connection = test_engine.connect()
    transaction = connection.begin()
    session = Session(
        bind=connection,
        join_transaction_mode="create_savepoint",
        expire_on_commit=False,
    )

    yield session

    session.close()
    transaction.rollback()
    connection.close()


# =============================================================================
# Settings & embeddings
# =============================================================================
@pytest.fixture()
def test_settings(tmp_path) -> Settings:
    """Settings with no delays and small vectors."""
    return Settings(
        DATABASE_URL=TEST_DATABASE_URL,
        OPENAI_API_KEY="test-key",
        EMBEDDING_DIMENSIONS=DIMENSIONS,
        EMBEDDING_BATCH_SIZE=10,
        EMBEDDING_BATCH_DELAY_SECONDS=0,
        EMBEDDING_MAX_RETRIES=2,
        UPLOAD_DIR=str(tmp_path / "uploads"),
        SENTRY_DSN=None,
    )


@pytest.fixture()
def fake_api() -> FakeEmbeddingsAPI:
    return FakeEmbeddingsAPI()


@pytest.fixture()
def embedder(fake_api, test_settings) -> EmbeddingClient:
    client = SimpleNamespace(embeddings=fake_api)
    return EmbeddingClient(client, test_settings, sleep=lambda _: None)


# =============================================================================
# FastAPI TestClient with DB & embedder overrides
# =============================================================================
@pytest.fixture()
def client(db_session, embedder, test_settings) -> Generator[TestClient, None, None]:
    from sampledesk.api.v1.samples import get_embedder
    from sampledesk.db.session import get_db
    from sampledesk.main import app

    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_embedder] = lambda: embedder

    with patch("sampledesk.main.init_db"), \
            patch("sampledesk.api.v1.datasets.get_settings", return_value=test_settings):
        with TestClient(app) as c:
            yield c

    app.dependency_overrides.clear()
