"""
SampleDesk Celery Task Definitions

Background processing for uploaded dataset files.

Tasks:
    process_dataset_task: Run the ingestion pipeline for a dataset that the
        process trigger already moved into ``processing``
    fail_stale_runs_task: Periodic sweep marking abandoned runs as failed

Rules:
    - The process trigger calls ``DatasetLifecycleController.start`` before
      enqueueing and passes the run token, so the task only runs the pipeline
      body and a stale queued task cannot take over a restarted run
    - If the worker cannot even build its embedding client, the run is
      failed right away instead of waiting for the stale-run sweep
    - Tasks never raise; failures are recorded on the dataset row
    - Unexpected errors are reported to Sentry when it is configured
"""

import time
from typing import Optional

import structlog

from sampledesk.celery_app import celery
from sampledesk.config import get_settings
from sampledesk.db.session import SessionLocal
from sampledesk.ingestion.lifecycle import DatasetLifecycleController
from sampledesk.search.embeddings import get_embedding_client

logger = structlog.get_logger(__name__)


def _report_to_sentry(exc: Exception) -> None:
    if not get_settings().SENTRY_DSN:
        return
    import sentry_sdk

    sentry_sdk.capture_exception(exc)


@celery.task(
    name="sampledesk.ingestion.tasks.process_dataset_task",
    bind=True,
    acks_late=True,
)
def process_dataset_task(self, dataset_id: int, run_token: Optional[str] = None) -> dict:
    """
    Process one dataset file: parse → normalize → embed → persist.

    Args:
        self: Celery task instance (bound)
        dataset_id: Primary key of the dataset file, already ``processing``
        run_token: Token returned by ``start`` for this run

    Returns:
        ProcessingReport as a dict
    """
    log = logger.bind(dataset_id=dataset_id, task_id=self.request.id)
    log.info("process_dataset_task_started")
    start_time = time.time()

    db = SessionLocal()
    try:
        controller = DatasetLifecycleController(db, get_embedding_client())
        report = controller.run(dataset_id, run_token=run_token)

        log.info(
            "process_dataset_task_complete",
            status=report.status,
            success_count=report.success_count,
            failure_count=report.failure_count,
            elapsed_seconds=round(time.time() - start_time, 3),
        )
        return report.to_dict()

    except Exception as exc:
        # run() records its own failures; this only covers setup errors
        log.error("process_dataset_task_failed", error_type=type(exc).__name__, error=str(exc))
        _report_to_sentry(exc)
        try:
            db.rollback()
            DatasetLifecycleController(db, embedder=None).fail_run(
                dataset_id, run_token, f"Unexpected error: {exc}"
            )
        except Exception as mark_exc:
            log.error("process_dataset_task_mark_failed_error", error=str(mark_exc))
        return {"dataset_id": dataset_id, "status": "failed", "error": str(exc)}

    finally:
        db.close()


@celery.task(
    name="sampledesk.ingestion.tasks.fail_stale_runs_task",
    bind=True,
)
def fail_stale_runs_task(self) -> dict:
    """
    Periodic task: datasets stuck in ``processing`` longer than
    PROCESSING_STALE_AFTER_SECONDS are marked failed so they can be
    restarted.
    """
    log = logger.bind(task="fail_stale_runs")
    log.info("fail_stale_runs_started")

    db = SessionLocal()
    try:
        controller = DatasetLifecycleController(db, embedder=None)
        failed = controller.fail_stale_runs()
        log.info("fail_stale_runs_complete", stale_count=len(failed))
        return {"stale_runs_failed": failed}

    except Exception as exc:
        db.rollback()
        log.error("fail_stale_runs_failed", error=str(exc))
        _report_to_sentry(exc)
        return {"error": str(exc)}

    finally:
        db.close()
