"""
SampleDesk Sample Store

Persistence boundary for training samples. Wraps a SQLAlchemy ``Session``;
like the dataset DAL it returns plain dicts, logs elapsed time and never
commits (the caller owns the transaction).

Soft deletion only: samples are deactivated via ``is_active`` and never
removed by ingestion.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sampledesk.db.models import SAMPLE_TYPES, SOURCE_TYPES, TrainingSample
from sampledesk.errors import PersistenceError, ValidationError
from sampledesk.ingestion.normalizer import CanonicalRecord

logger = structlog.get_logger(__name__)


@dataclass
class SampleFilters:
    """Conjunctive filters for candidate selection. Empty fields do not filter."""

    types: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    source_type: Optional[str] = None
    language: Optional[str] = None
    dataset_id: Optional[int] = None
    is_active: Optional[bool] = True


def sample_to_dict(row: TrainingSample, include_embedding: bool = False) -> dict[str, Any]:
    """Convert a TrainingSample ORM instance to a plain dict."""
    data = {
        "sample_id": row.sample_id,
        "question": row.question,
        "answer": dict(row.answer or {}),
        "type": row.sample_type,
        "code_snippet": row.code_snippet,
        "tags": list(row.tags or []),
        "language": row.language,
        "source_type": row.source_type,
        "dataset_id": row.dataset_id,
        "embedding_model": row.embedding_model,
        "is_active": row.is_active,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }
    if include_embedding:
        data["embedding"] = list(row.embedding or [])
    return data


def _timed(fn_name: str, start: float) -> None:
    elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
    logger.debug("sample_store_query", function=fn_name, elapsed_ms=elapsed_ms)


class SampleStore:
    """Reads and writes ``training_samples`` through one session."""

    def __init__(self, db: Session):
        self.db = db

    def save(
        self,
        record: CanonicalRecord,
        embedding: list[float],
        *,
        source_type: str = "manual",
        dataset_id: Optional[int] = None,
        embedding_model: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Insert one sample and flush it.

        Raises:
            ValidationError: the record breaks a sample rule (empty text, bad source link).
            PersistenceError: the database rejected the insert.
        """
        if not record.question.strip() or not record.answer.strip():
            raise ValidationError("question and answer must be non-empty")
        if not embedding:
            raise ValidationError("embedding must be a non-empty vector")
        if source_type not in SOURCE_TYPES:
            raise ValidationError(f"unknown source_type '{source_type}'")
        if (source_type == "dataset") != (dataset_id is not None):
            raise ValidationError("dataset_id must be set exactly when source_type is 'dataset'")

        start = time.perf_counter()
        try:
            row = TrainingSample(
                question=record.question,
                answer=record.answer_template(),
                sample_type=record.type if record.type in SAMPLE_TYPES else "qa",
                code_snippet=record.code_snippet,
                embedding=list(embedding),
                embedding_model=embedding_model,
                tags=list(record.tags),
                language=record.language,
                source_type=source_type,
                dataset_id=dataset_id,
                is_active=True,
            )
            self.db.add(row)
            self.db.flush()
            return sample_to_dict(row)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"save failed: {exc}") from exc
        finally:
            _timed("save", start)

    def get(self, sample_id: int) -> Optional[dict[str, Any]]:
        start = time.perf_counter()
        try:
            row = self.db.get(TrainingSample, sample_id, populate_existing=True)
            return sample_to_dict(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise RuntimeError(f"get failed: {exc}") from exc
        finally:
            _timed("get", start)

    def find_many(
        self,
        filters: Optional[SampleFilters] = None,
        *,
        include_embedding: bool = False,
        newest_first: bool = False,
    ) -> list[dict[str, Any]]:
        """
        Return samples matching every non-empty filter, ordered by
        sample_id, or by created_at descending with *newest_first*.

        ``tags`` matches when the sample shares at least one tag; it is
        applied after the SQL filters since tags are stored as a JSON list.
        """
        filters = filters or SampleFilters()
        start = time.perf_counter()
        try:
            stmt = select(TrainingSample)
            if filters.is_active is not None:
                stmt = stmt.where(TrainingSample.is_active.is_(filters.is_active))
            if filters.types:
                stmt = stmt.where(TrainingSample.sample_type.in_(filters.types))
            if filters.source_type:
                stmt = stmt.where(TrainingSample.source_type == filters.source_type)
            if filters.language:
                stmt = stmt.where(TrainingSample.language == filters.language)
            if filters.dataset_id is not None:
                stmt = stmt.where(TrainingSample.dataset_id == filters.dataset_id)
            if newest_first:
                stmt = stmt.order_by(TrainingSample.created_at.desc(), TrainingSample.sample_id.desc())
            else:
                stmt = stmt.order_by(TrainingSample.sample_id)

            rows = self.db.execute(stmt).scalars().all()
            if filters.tags:
                wanted = set(filters.tags)
                rows = [r for r in rows if wanted.intersection(r.tags or [])]

            return [sample_to_dict(r, include_embedding=include_embedding) for r in rows]
        except SQLAlchemyError as exc:
            raise RuntimeError(f"find_many failed: {exc}") from exc
        finally:
            _timed("find_many", start)

    def update_content(self, sample_id: int, **fields: Any) -> Optional[dict[str, Any]]:
        """
        Overwrite the given columns on one sample. Returns None when the id
        is unknown.
        """
        start = time.perf_counter()
        try:
            row = self.db.get(TrainingSample, sample_id)
            if row is None:
                return None
            for name, value in fields.items():
                setattr(row, name, value)
            self.db.flush()
            return sample_to_dict(row)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"update_content failed: {exc}") from exc
        finally:
            _timed("update_content", start)

    def soft_delete(self, sample_id: int) -> bool:
        """Deactivate one sample. Returns False when the id is unknown."""
        if self.db.get(TrainingSample, sample_id) is None:
            return False
        self._deactivate(TrainingSample.sample_id == sample_id, "soft_delete")
        return True

    def deactivate_for_dataset(self, dataset_id: int) -> int:
        """Deactivate every active sample of a dataset; returns the count."""
        return self._deactivate(TrainingSample.dataset_id == dataset_id, "deactivate_for_dataset")

    def count_active_samples(self, dataset_id: int) -> int:
        start = time.perf_counter()
        try:
            stmt = (
                select(func.count())
                .select_from(TrainingSample)
                .where(TrainingSample.dataset_id == dataset_id)
                .where(TrainingSample.is_active.is_(True))
            )
            return int(self.db.execute(stmt).scalar_one())
        except SQLAlchemyError as exc:
            raise RuntimeError(f"count_active_samples failed: {exc}") from exc
        finally:
            _timed("count_active_samples", start)

    def _deactivate(self, condition, fn_name: str) -> int:
        start = time.perf_counter()
        try:
            result = self.db.execute(
                update(TrainingSample)
                .where(condition)
                .where(TrainingSample.is_active.is_(True))
                .values(is_active=False)
                .execution_options(synchronize_session="fetch")
            )
            return result.rowcount or 0
        except SQLAlchemyError as exc:
            raise RuntimeError(f"{fn_name} failed: {exc}") from exc
        finally:
            _timed(fn_name, start)
