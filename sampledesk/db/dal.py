"""
SampleDesk Data Access Layer (DAL) for dataset files.

Every public function:
    - Accepts a SQLAlchemy ``Session`` as the keyword argument ``db``.
    - Logs the function name and wall-clock execution time (ms) via structlog.
    - Returns plain Python dicts (never SQLAlchemy model instances).
    - Raises ``RuntimeError`` for unexpected database errors.
    - Never commits; the caller owns the transaction.

Training samples live behind ``sampledesk.samples.store.SampleStore``.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Iterable, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sampledesk.db.models import DatasetFile

logger = structlog.get_logger(__name__)


# ── Helpers ────────────────────────────────────────────────────────────────


def dataset_to_dict(row: DatasetFile) -> dict[str, Any]:
    """Convert a DatasetFile ORM instance to a plain dict."""
    return {
        "dataset_id": row.dataset_id,
        "original_name": row.original_name,
        "stored_path": row.stored_path,
        "mime_type": row.mime_type,
        "size_bytes": row.size_bytes,
        "file_type": row.file_type,
        "status": row.status,
        "error_summary": list(row.error_summary or []),
        "total_samples_generated": row.total_samples_generated,
        "started_at": row.started_at.isoformat() if row.started_at else None,
        "run_token": row.run_token,
        "processed_at": row.processed_at.isoformat() if row.processed_at else None,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


def _timed(fn_name: str, start: float) -> None:
    """Log elapsed time in milliseconds."""
    elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
    logger.debug("dal_query", function=fn_name, elapsed_ms=elapsed_ms)


# ── Public API ─────────────────────────────────────────────────────────────


def create_dataset_file(
    *,
    db: Session,
    original_name: str,
    stored_path: str,
    mime_type: Optional[str],
    size_bytes: int,
    file_type: str,
) -> dict[str, Any]:
    """Insert a new dataset file in state ``uploaded`` and return it."""
    start = time.perf_counter()
    try:
        row = DatasetFile(
            original_name=original_name,
            stored_path=stored_path,
            mime_type=mime_type,
            size_bytes=size_bytes,
            file_type=file_type,
            status="uploaded",
            error_summary=[],
            total_samples_generated=0,
        )
        db.add(row)
        db.flush()
        return dataset_to_dict(row)
    except SQLAlchemyError as exc:
        raise RuntimeError(f"create_dataset_file failed: {exc}") from exc
    finally:
        _timed("create_dataset_file", start)


def get_dataset_file(dataset_id: int, *, db: Session) -> Optional[dict[str, Any]]:
    """Return one dataset file, or None if the id is unknown."""
    start = time.perf_counter()
    try:
        row = db.get(DatasetFile, dataset_id, populate_existing=True)
        return dataset_to_dict(row) if row is not None else None
    except SQLAlchemyError as exc:
        raise RuntimeError(f"get_dataset_file failed: {exc}") from exc
    finally:
        _timed("get_dataset_file", start)


def list_dataset_files(
    status: Optional[str] = None,
    *,
    db: Session,
) -> list[dict[str, Any]]:
    """Return dataset files newest first, optionally filtered by status."""
    start = time.perf_counter()
    try:
        stmt = select(DatasetFile)
        if status:
            stmt = stmt.where(DatasetFile.status == status)
        stmt = stmt.order_by(DatasetFile.created_at.desc(), DatasetFile.dataset_id.desc())
        rows = db.execute(stmt).scalars().all()
        return [dataset_to_dict(r) for r in rows]
    except SQLAlchemyError as exc:
        raise RuntimeError(f"list_dataset_files failed: {exc}") from exc
    finally:
        _timed("list_dataset_files", start)


def compare_and_set_status(
    dataset_id: int,
    *,
    db: Session,
    expected: Iterable[str],
    new_status: str,
    expected_token: Optional[str] = None,
    **fields: Any,
) -> bool:
    """
    Atomically move a dataset to *new_status* if its current status is one
    of *expected* and, when *expected_token* is given, the row still belongs to
    the run holding that token.

    Issues a single conditional ``UPDATE ... WHERE status IN (...)`` so two
    concurrent callers can never both win. Returns True when exactly one
    row was updated.
    """
    start = time.perf_counter()
    try:
        stmt = (
            update(DatasetFile)
            .where(DatasetFile.dataset_id == dataset_id)
            .where(DatasetFile.status.in_(list(expected)))
        )
        if expected_token is not None:
            stmt = stmt.where(DatasetFile.run_token == expected_token)
        stmt = stmt.values(status=new_status, **fields).execution_options(
            synchronize_session=False
        )
        result = db.execute(stmt)
        return result.rowcount == 1
    except SQLAlchemyError as exc:
        raise RuntimeError(f"compare_and_set_status failed: {exc}") from exc
    finally:
        _timed("compare_and_set_status", start)


def update_dataset_status(
    dataset_id: int,
    status: str,
    *,
    db: Session,
    **fields: Any,
) -> None:
    """
    Set the status of a dataset together with any extra columns
    (``error_summary``, ``total_samples_generated``, ``processed_at``...).
    """
    start = time.perf_counter()
    try:
        stmt = (
            update(DatasetFile)
            .where(DatasetFile.dataset_id == dataset_id)
            .values(status=status, **fields)
            .execution_options(synchronize_session=False)
        )
        db.execute(stmt)
    except SQLAlchemyError as exc:
        raise RuntimeError(f"update_dataset_status failed: {exc}") from exc
    finally:
        _timed("update_dataset_status", start)


def set_total_samples(
    dataset_id: int,
    total: int,
    *,
    db: Session,
    expected_token: Optional[str] = None,
) -> bool:
    """
    Overwrite ``total_samples_generated`` without touching the status.

    With *expected_token* the write only applies while that run still owns the
    row in ``processing``. Returns True when the row was updated.
    """
    start = time.perf_counter()
    try:
        stmt = update(DatasetFile).where(DatasetFile.dataset_id == dataset_id)
        if expected_token is not None:
            stmt = (
                stmt.where(DatasetFile.status == "processing")
                .where(DatasetFile.run_token == expected_token)
            )
        result = db.execute(
            stmt.values(total_samples_generated=total).execution_options(
                synchronize_session=False
            )
        )
        return result.rowcount == 1
    except SQLAlchemyError as exc:
        raise RuntimeError(f"set_total_samples failed: {exc}") from exc
    finally:
        _timed("set_total_samples", start)


def find_stale_processing(started_before: datetime, *, db: Session) -> list[int]:
    """Return ids of datasets stuck in ``processing`` since before *started_before*."""
    start = time.perf_counter()
    try:
        stmt = (
            select(DatasetFile.dataset_id)
            .where(DatasetFile.status == "processing")
            .where(DatasetFile.started_at.isnot(None))
            .where(DatasetFile.started_at < started_before)
        )
        return list(db.execute(stmt).scalars().all())
    except SQLAlchemyError as exc:
        raise RuntimeError(f"find_stale_processing failed: {exc}") from exc
    finally:
        _timed("find_stale_processing", start)
