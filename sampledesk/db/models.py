"""
SampleDesk Database Models

SQLAlchemy 2.x ORM models for the training-data ingestion core.
Tables are defined in FK-dependency order.

Tables:
    1. dataset_files - One row per uploaded training-data file
    2. training_samples - One row per canonical question/answer record
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    BigInteger,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func

FILE_TYPES = ("csv", "json", "markdown", "text", "excel", "pdf")
DATASET_STATUSES = ("uploaded", "processing", "completed", "failed")
SAMPLE_TYPES = ("qa", "snippet", "doc", "faq", "other")
SOURCE_TYPES = ("manual", "dataset")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _in_list(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


# =============================================================================
# Table 1: dataset_files
# =============================================================================
class DatasetFile(Base):
    """
    One record per uploaded training-data file.

    Status transitions: uploaded → processing → completed/failed,
    and failed → processing on a restart. Only the lifecycle controller
    mutates these rows.
    """
    __tablename__ = "dataset_files"

    dataset_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    original_name: Mapped[str] = mapped_column(String(500), nullable=False)
    stored_path: Mapped[str] = mapped_column(String(1000), nullable=False)
    mime_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    size_bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    file_type: Mapped[str] = mapped_column(
        String(20),
        CheckConstraint(_in_list("file_type", FILE_TYPES)),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        CheckConstraint(_in_list("status", DATASET_STATUSES)),
        default="uploaded",
        nullable=False,
    )
    error_summary: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)
    total_samples_generated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # set by each start; writes from a run must carry the current token
    run_token: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("total_samples_generated >= 0", name="ck_dataset_files_total_non_negative"),
        Index("ix_dataset_files_status_created", "status", "created_at"),
    )

    # Relationships
    samples: Mapped[list["TrainingSample"]] = relationship(
        "TrainingSample", back_populates="dataset"
    )


# =============================================================================
# Table 2: training_samples
# =============================================================================
class TrainingSample(Base):
    """
    One canonical question/answer record with its embedding.

    ``answer`` holds {greeting?, answer, sections[], suggestions[]}.
    ``dataset_id`` is set if and only if ``source_type`` is 'dataset'.
    Rows are soft-deleted via ``is_active``; the ingestion path never
    removes them.
    """
    __tablename__ = "training_samples"

    sample_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    answer: Mapped[dict] = mapped_column(JSONB, nullable=False)
    sample_type: Mapped[str] = mapped_column(
        "type",
        String(20),
        CheckConstraint(_in_list("type", SAMPLE_TYPES)),
        default="qa",
        nullable=False,
    )
    code_snippet: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    embedding: Mapped[list] = mapped_column(JSONB, nullable=False)
    embedding_model: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    tags: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)
    language: Mapped[str] = mapped_column(String(20), default="en", nullable=False)
    source_type: Mapped[str] = mapped_column(
        String(20),
        CheckConstraint(_in_list("source_type", SOURCE_TYPES)),
        default="manual",
        nullable=False,
    )
    dataset_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("dataset_files.dataset_id"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint(
            "(source_type = 'dataset' AND dataset_id IS NOT NULL) "
            "OR (source_type = 'manual' AND dataset_id IS NULL)",
            name="ck_training_samples_dataset_link",
        ),
        CheckConstraint("length(question) > 0", name="ck_training_samples_question_not_empty"),
        Index("ix_training_samples_type_active", "type", "is_active"),
        Index("ix_training_samples_source_active", "source_type", "is_active"),
        Index("ix_training_samples_dataset_active", "dataset_id", "is_active"),
    )

    # Relationships
    dataset: Mapped[Optional["DatasetFile"]] = relationship(
        "DatasetFile", back_populates="samples"
    )
