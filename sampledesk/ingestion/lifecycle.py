"""
SampleDesk Dataset Lifecycle Controller

Drives one dataset file through its state machine and the
parse → normalize → embed → persist pipeline.

States:
    uploaded → processing → completed | failed
    failed   → processing            (restart; counters reset)

Operations:
    register_upload    — Create the ``uploaded`` record for a stored file
    start              — Atomic compare-and-set into ``processing``
    run                — Pipeline body; ends in a terminal state unless superseded, never raises
    process            — start + run, synchronously
    preview            — Parse + normalize only, nothing persisted
    deactivate_dataset — Soft-delete every sample of a dataset
    fail_stale_runs    — Mark runs stuck in ``processing`` as failed
    fail_run           — Fail one run by token when its worker cannot begin
    resync_sample_count — Reset the counter to the active count after a manual delete

Rules:
    - Record-level failures are counted and skipped; only format-level
      errors or zero successes fail a dataset
    - Each sample is written under its own savepoint; each batch is committed
    - total_samples_generated always equals the dataset's active sample count
    - Each start stamps a fresh run_token; counter and terminal writes are
      compare-and-set on (processing, token), and a run that loses its token
      stops without touching the row
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import structlog
from sqlalchemy.orm import Session

from sampledesk.config import Settings, get_settings
from sampledesk.db import dal
from sampledesk.errors import (
    ConcurrentProcessingConflict,
    DatasetNotFound,
    FatalParseError,
    InvalidStatusTransition,
    PersistenceError,
    UnsupportedFormat,
    ValidationError,
)
from sampledesk.ingestion.normalizer import CanonicalRecord, normalize_with_reason
from sampledesk.ingestion.parser import detect_file_type, parse_file, resolve_file_type
from sampledesk.samples.store import SampleStore
from sampledesk.search.embeddings import EmbeddingClient, build_sample_embedding_text

logger = structlog.get_logger(__name__)

RESTARTABLE_STATUSES = ("uploaded", "failed")
SUPERSEDED = "superseded"
NO_SAMPLES_MESSAGE = "No valid samples were generated from this file"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProcessingReport:
    """Outcome of one ``run``."""

    dataset_id: int
    status: str
    success_count: int = 0
    failure_count: int = 0
    rows_read: int = 0
    error_summary: list[str] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "dataset_id": self.dataset_id,
            "status": self.status,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "rows_read": self.rows_read,
            "error_summary": list(self.error_summary),
            "elapsed_seconds": self.elapsed_seconds,
        }


class _RunSuperseded(Exception):
    """The run no longer owns its dataset row (swept as stale or restarted)."""


class _ErrorSummary:
    """Keeps the first *limit* failure reasons."""

    def __init__(self, limit: int):
        self.limit = max(0, limit)
        self.entries: list[str] = []

    def add(self, reason: str) -> None:
        if len(self.entries) < self.limit:
            self.entries.append(reason)


def _record_label(record: CanonicalRecord) -> str:
    question = record.question
    return f'"{question[:40]}…"' if len(question) > 40 else f'"{question}"'


class DatasetLifecycleController:
    """
    Owns every status change of ``dataset_files`` rows.

    Args:
        db: Session used for all reads and writes; the controller commits.
        embedder: EmbeddingClient used for batch embedding.
        settings: Settings instance; defaults to ``get_settings()``.
        sleep: Injected for tests; used for the delay between batches.
    """

    def __init__(
        self,
        db: Session,
        embedder: EmbeddingClient,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.embedder = embedder
        self.settings = settings or get_settings()
        self.store = SampleStore(db)
        self._sleep = sleep

    # =========================================================================
    # Upload
    # =========================================================================

    def register_upload(
        self,
        *,
        original_name: str,
        stored_path: str,
        size_bytes: int,
        mime_type: Optional[str] = None,
        declared_type: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Create the ``uploaded`` record for a file already written to disk.

        The file type comes from *declared_type* when given, otherwise from
        the file name and MIME type. Raises UnsupportedFormat for anything
        the parser cannot read.
        """
        if declared_type:
            file_type = resolve_file_type(declared_type)
        else:
            file_type = detect_file_type(original_name, mime_type)

        try:
            dataset = dal.create_dataset_file(
                db=self.db,
                original_name=original_name,
                stored_path=stored_path,
                mime_type=mime_type,
                size_bytes=size_bytes,
                file_type=file_type,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "dataset_registered",
            dataset_id=dataset["dataset_id"],
            file_type=file_type,
            size_bytes=size_bytes,
        )
        return dataset

    # =========================================================================
    # State transitions
    # =========================================================================

    def start(self, dataset_id: int) -> dict[str, Any]:
        """
        Move a dataset into ``processing`` and return it, including the
        fresh ``run_token`` the background job must carry.

        A single conditional UPDATE decides the winner, so two concurrent
        triggers can never both proceed.

        Raises:
            DatasetNotFound: unknown id.
            ConcurrentProcessingConflict: the dataset is already processing.
            InvalidStatusTransition: the dataset is already completed.
        """
        acquired = dal.compare_and_set_status(
            dataset_id,
            db=self.db,
            expected=RESTARTABLE_STATUSES,
            new_status="processing",
            run_token=uuid.uuid4().hex,
            started_at=_utcnow(),
            processed_at=None,
            total_samples_generated=0,
            error_summary=[],
        )
        if not acquired:
            self.db.rollback()
            current = dal.get_dataset_file(dataset_id, db=self.db)
            if current is None:
                raise DatasetNotFound(dataset_id)
            if current["status"] == "processing":
                logger.warning("processing_conflict", dataset_id=dataset_id)
                raise ConcurrentProcessingConflict(dataset_id)
            raise InvalidStatusTransition(dataset_id, current["status"], "processing")

        # Samples left behind by an earlier failed attempt
        cleared = self.store.deactivate_for_dataset(dataset_id)
        self.db.commit()

        logger.info("dataset_processing_started", dataset_id=dataset_id, cleared_samples=cleared)
        return dal.get_dataset_file(dataset_id, db=self.db)

    def process(self, dataset_id: int) -> ProcessingReport:
        """Synchronous ``start`` followed by ``run``."""
        dataset = self.start(dataset_id)
        return self.run(dataset_id, run_token=dataset["run_token"])

    # =========================================================================
    # Pipeline
    # =========================================================================

    def run(self, dataset_id: int, run_token: Optional[str] = None) -> ProcessingReport:
        """
        Process a dataset that ``start`` moved into ``processing``.

        *run_token* is the token ``start`` returned; when omitted the run
        adopts the row's current token. If the token stops matching (the
        run was swept as stale or restarted) the run stops, rolls back its
        open batch and reports ``superseded`` without touching the row.

        Never raises: every outcome is recorded on the dataset row and
        returned as a ProcessingReport.
        """
        log = logger.bind(dataset_id=dataset_id)
        start_time = time.time()

        dataset = dal.get_dataset_file(dataset_id, db=self.db)
        if dataset is None:
            log.error("run_dataset_missing")
            return ProcessingReport(
                dataset_id=dataset_id,
                status="failed",
                error_summary=[str(DatasetNotFound(dataset_id))],
            )
        if dataset["status"] != "processing":
            log.warning("run_skipped_not_processing", status=dataset["status"])
            return ProcessingReport(
                dataset_id=dataset_id,
                status=dataset["status"],
                success_count=dataset["total_samples_generated"],
                error_summary=dataset["error_summary"],
            )
        if run_token is not None and run_token != dataset["run_token"]:
            log.warning("run_skipped_superseded")
            return ProcessingReport(dataset_id=dataset_id, status=SUPERSEDED)

        token = dataset["run_token"]
        log.info("run_started", file_type=dataset["file_type"], path=dataset["stored_path"])

        errors = _ErrorSummary(self.settings.ERROR_SUMMARY_LIMIT)
        report = ProcessingReport(dataset_id=dataset_id, status="processing")

        def on_warning(warning) -> None:
            report.failure_count += 1
            errors.add(str(warning))

        stream = None
        try:
            stream = parse_file(
                dataset["stored_path"],
                dataset["file_type"],
                on_warning=on_warning,
                pdf_split_mode=self.settings.PDF_SPLIT_MODE,
                pdf_min_chars=self.settings.PDF_MIN_PAGE_CHARS,
            )

            batch: list[CanonicalRecord] = []
            batches_done = 0
            for raw in stream:
                record, reason = normalize_with_reason(raw)
                if record is None:
                    report.failure_count += 1
                    errors.add(f"Record {stream.rows_read}: {reason}")
                    continue

                batch.append(record)
                if len(batch) >= self.settings.EMBEDDING_BATCH_SIZE:
                    self._pause_between_batches(batches_done)
                    self._persist_batch(dataset_id, token, batch, report, errors)
                    batches_done += 1
                    batch = []

            if batch:
                self._pause_between_batches(batches_done)
                self._persist_batch(dataset_id, token, batch, report, errors)

        except _RunSuperseded:
            return self._superseded(report, start_time)

        except (FatalParseError, UnsupportedFormat) as exc:
            log.error("run_fatal_parse_error", error=str(exc), samples_discarded=report.success_count)
            errors.entries.append(f"Fatal: {exc}")
            report.rows_read = stream.rows_read if stream is not None else 0
            return self._fail(report, errors, start_time, token)

        except Exception as exc:
            log.exception("run_unexpected_error", error=str(exc))
            errors.entries.append(f"Unexpected error: {exc}")
            report.rows_read = stream.rows_read if stream is not None else 0
            return self._fail(report, errors, start_time, token)

        report.rows_read = stream.rows_read
        if report.success_count == 0:
            errors.entries.append(NO_SAMPLES_MESSAGE)
            return self._fail(report, errors, start_time, token)

        try:
            completed = dal.compare_and_set_status(
                dataset_id,
                db=self.db,
                expected=("processing",),
                new_status="completed",
                expected_token=token,
                total_samples_generated=report.success_count,
                error_summary=errors.entries,
                processed_at=_utcnow(),
            )
            if not completed:
                return self._superseded(report, start_time)
            self.db.commit()
        except Exception as exc:
            self.db.rollback()
            log.exception("run_finalize_failed", error=str(exc))
            errors.entries.append(f"Unexpected error: {exc}")
            return self._fail(report, errors, start_time, token)

        report.status = "completed"
        report.error_summary = list(errors.entries)
        report.elapsed_seconds = round(time.time() - start_time, 3)
        log.info(
            "run_completed",
            success_count=report.success_count,
            failure_count=report.failure_count,
            rows_read=report.rows_read,
            elapsed_seconds=report.elapsed_seconds,
        )
        return report

    def fail_run(self, dataset_id: int, run_token: Optional[str], reason: str) -> bool:
        """
        Mark the run holding *run_token* failed with *reason*. Without a
        token the row's current ``processing`` run is failed.

        Returns False when no such run owns the row any more.
        """
        if run_token is None:
            dataset = dal.get_dataset_file(dataset_id, db=self.db)
            if dataset is None or dataset["status"] != "processing":
                return False
            run_token = dataset["run_token"]

        errors = _ErrorSummary(0)
        errors.entries.append(reason)
        report = ProcessingReport(dataset_id=dataset_id, status="processing")
        return self._fail(report, errors, time.time(), run_token).status == "failed"

    def _pause_between_batches(self, batches_done: int) -> None:
        delay = self.settings.EMBEDDING_BATCH_DELAY_SECONDS
        if batches_done > 0 and delay > 0:
            self._sleep(delay)

    def _persist_batch(
        self,
        dataset_id: int,
        token: str,
        batch: list[CanonicalRecord],
        report: ProcessingReport,
        errors: _ErrorSummary,
    ) -> None:
        """
        Embed one batch, save each sample under a savepoint, then commit
        together with the counter. Raises _RunSuperseded when the counter
        write no longer matches this run.
        """
        texts = [build_sample_embedding_text(r.question, r.answer) for r in batch]
        results = self.embedder.embed_batch(texts)

        saved = 0
        failed = 0
        for record, result in zip(batch, results):
            if not result.ok:
                failed += 1
                errors.add(f"{_record_label(record)}: embedding failed: {result.error}")
                continue
            try:
                with self.db.begin_nested():
                    self.store.save(
                        record,
                        result.vector,
                        source_type="dataset",
                        dataset_id=dataset_id,
                        embedding_model=self.embedder.model,
                    )
            except (PersistenceError, ValidationError) as exc:
                failed += 1
                errors.add(f"{_record_label(record)}: could not be saved: {exc}")
                continue
            saved += 1

        owned = dal.set_total_samples(
            dataset_id, report.success_count + saved, db=self.db, expected_token=token
        )
        if not owned:
            self.db.rollback()
            raise _RunSuperseded()
        self.db.commit()

        report.success_count += saved
        report.failure_count += failed
        logger.debug(
            "batch_committed",
            dataset_id=dataset_id,
            batch_size=len(batch),
            success_count=report.success_count,
        )

    def _superseded(self, report: ProcessingReport, start_time: float) -> ProcessingReport:
        self.db.rollback()
        report.status = SUPERSEDED
        report.elapsed_seconds = round(time.time() - start_time, 3)
        logger.warning(
            "run_superseded",
            dataset_id=report.dataset_id,
            committed_samples=report.success_count,
            elapsed_seconds=report.elapsed_seconds,
        )
        return report

    def _fail(
        self,
        report: ProcessingReport,
        errors: _ErrorSummary,
        start_time: float,
        token: str,
    ) -> ProcessingReport:
        """
        Mark the dataset failed if this run still owns it. Samples written
        earlier in the run are soft-deleted so the counter (0) matches the
        active count.
        """
        dataset_id = report.dataset_id
        discarded = 0
        try:
            self.db.rollback()
            owned = dal.compare_and_set_status(
                dataset_id,
                db=self.db,
                expected=("processing",),
                new_status="failed",
                expected_token=token,
                total_samples_generated=0,
                error_summary=errors.entries,
                processed_at=_utcnow(),
            )
            if not owned:
                return self._superseded(report, start_time)
            discarded = self.store.deactivate_for_dataset(dataset_id)
            self.db.commit()
        except Exception as exc:
            self.db.rollback()
            logger.exception("run_mark_failed_error", dataset_id=dataset_id, error=str(exc))

        report.status = "failed"
        report.error_summary = list(errors.entries)
        report.elapsed_seconds = round(time.time() - start_time, 3)
        logger.warning(
            "run_failed",
            dataset_id=dataset_id,
            success_count=report.success_count,
            failure_count=report.failure_count,
            samples_discarded=discarded,
            elapsed_seconds=report.elapsed_seconds,
        )
        report.success_count = 0
        return report

    # =========================================================================
    # Read-only and maintenance operations
    # =========================================================================

    def preview(self, dataset_id: int, limit: int = 10) -> dict[str, Any]:
        """
        Parse and normalize a dataset without embedding or persisting.

        Raises:
            DatasetNotFound: unknown id.
            ValueError: limit below 1.
            FatalParseError / UnsupportedFormat: the file cannot be parsed.
        """
        if limit < 1:
            raise ValueError("limit must be at least 1")

        dataset = dal.get_dataset_file(dataset_id, db=self.db)
        if dataset is None:
            raise DatasetNotFound(dataset_id)

        stream = parse_file(
            dataset["stored_path"],
            dataset["file_type"],
            pdf_split_mode=self.settings.PDF_SPLIT_MODE,
            pdf_min_chars=self.settings.PDF_MIN_PAGE_CHARS,
        )

        rows: list[dict[str, Any]] = []
        valid = invalid = 0
        for raw in stream:
            record, _ = normalize_with_reason(raw)
            if record is None:
                invalid += 1
                continue
            valid += 1
            if len(rows) < limit:
                rows.append(record.to_raw())

        return {
            "dataset_id": dataset_id,
            "file_type": dataset["file_type"],
            "preview": rows,
            "total_rows": stream.rows_read + len(stream.warnings),
            "valid_rows": valid,
            "invalid_rows": invalid + len(stream.warnings),
            "warnings": [str(w) for w in stream.warnings[: self.settings.ERROR_SUMMARY_LIMIT]],
        }

    def deactivate_dataset(self, dataset_id: int) -> dict[str, Any]:
        """Soft-delete every sample of a dataset and zero its counter."""
        dataset = dal.get_dataset_file(dataset_id, db=self.db)
        if dataset is None:
            raise DatasetNotFound(dataset_id)
        if dataset["status"] == "processing":
            raise ConcurrentProcessingConflict(dataset_id)

        deactivated = self.store.deactivate_for_dataset(dataset_id)
        dal.set_total_samples(dataset_id, 0, db=self.db)
        self.db.commit()

        logger.info("dataset_samples_deactivated", dataset_id=dataset_id, count=deactivated)
        return {"dataset_id": dataset_id, "deactivated": deactivated}

    def resync_sample_count(self, dataset_id: int) -> int:
        """
        Reset ``total_samples_generated`` to the active sample count after
        samples were removed by hand. Joins the caller's transaction and
        does not commit.

        Raises:
            DatasetNotFound: unknown id.
            ConcurrentProcessingConflict: a run currently owns the counter.
        """
        dataset = dal.get_dataset_file(dataset_id, db=self.db)
        if dataset is None:
            raise DatasetNotFound(dataset_id)
        if dataset["status"] == "processing":
            raise ConcurrentProcessingConflict(dataset_id)

        total = self.store.count_active_samples(dataset_id)
        dal.set_total_samples(dataset_id, total, db=self.db)
        return total

    def fail_stale_runs(self, max_age_seconds: Optional[int] = None) -> list[int]:
        """
        Mark datasets that have been ``processing`` for longer than
        *max_age_seconds* as failed. Returns the affected ids.
        """
        max_age = max_age_seconds if max_age_seconds is not None else self.settings.PROCESSING_STALE_AFTER_SECONDS
        cutoff = _utcnow() - timedelta(seconds=max_age)

        failed: list[int] = []
        for dataset_id in dal.find_stale_processing(cutoff, db=self.db):
            acquired = dal.compare_and_set_status(
                dataset_id,
                db=self.db,
                expected=("processing",),
                new_status="failed",
                total_samples_generated=0,
                error_summary=[f"Processing did not finish within {max_age} seconds"],
                processed_at=_utcnow(),
            )
            if acquired:
                self.store.deactivate_for_dataset(dataset_id)
                failed.append(dataset_id)
        self.db.commit()

        if failed:
            logger.warning("stale_runs_failed", dataset_ids=failed, max_age_seconds=max_age)
        return failed
