"""
SampleDesk Database Session Management

SQLAlchemy engine and session configuration with connection pooling.

Dependencies:
    - get_db(): Yields a read-write session (API requests)
    - SessionLocal: Session factory used by Celery tasks
    - init_db(): Create all tables for the configured engine
"""

from collections.abc import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from sampledesk.config import get_settings
from sampledesk.db.models import Base

settings = get_settings()

engine = create_engine(
    settings.DATABASE_URL,
    pool_size=settings.DB_POOL_SIZE,
    max_overflow=settings.DB_MAX_OVERFLOW,
    pool_recycle=settings.DB_POOL_RECYCLE,
    pool_pre_ping=True,
    echo=False,
)

SessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
)


def init_db(bind=None) -> None:
    """Create the dataset_files and training_samples tables if missing."""
    Base.metadata.create_all(bind=bind or engine)


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency that provides a read-write database session.

    The session is automatically closed after the request completes.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
