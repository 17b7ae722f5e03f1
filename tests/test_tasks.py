"""
Tests for the Celery tasks, run eagerly with ``.apply()``.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from sampledesk.db import dal
from sampledesk.ingestion.lifecycle import DatasetLifecycleController
from sampledesk.ingestion.tasks import fail_stale_runs_task, process_dataset_task


@pytest.fixture()
def task_env(db_session, embedder, test_settings):
    with patch("sampledesk.ingestion.tasks.SessionLocal", return_value=db_session), \
            patch("sampledesk.ingestion.tasks.get_embedding_client", return_value=embedder), \
            patch("sampledesk.ingestion.lifecycle.get_settings", return_value=test_settings):
        yield


def _started_dataset(db_session, embedder, test_settings, tmp_path):
    path = tmp_path / "faq.json"
    path.write_text(
        '[{"question": "How do I add a user?", "answer": "Invite them from the Team page."}]',
        encoding="utf-8",
    )
    controller = DatasetLifecycleController(db_session, embedder, test_settings)
    dataset_id = controller.register_upload(
        original_name="faq.json", stored_path=str(path), size_bytes=80
    )["dataset_id"]
    return dataset_id, controller.start(dataset_id)["run_token"]


def test_process_dataset_task(task_env, db_session, embedder, test_settings, tmp_path):
    dataset_id, token = _started_dataset(db_session, embedder, test_settings, tmp_path)

    result = process_dataset_task.apply(args=[dataset_id, token]).get()

    assert result["status"] == "completed"
    assert result["success_count"] == 1
    assert dal.get_dataset_file(dataset_id, db=db_session)["status"] == "completed"


def test_process_unknown_dataset_does_not_raise(task_env):
    result = process_dataset_task.apply(args=[404]).get()
    assert result["status"] == "failed"


def test_stale_task_skips_restarted_run(task_env, db_session, embedder, test_settings, tmp_path):
    dataset_id, token = _started_dataset(db_session, embedder, test_settings, tmp_path)
    controller = DatasetLifecycleController(db_session, embedder, test_settings)
    controller.fail_stale_runs(max_age_seconds=0)
    controller.start(dataset_id)

    result = process_dataset_task.apply(args=[dataset_id, token]).get()

    assert result["status"] == "superseded"
    assert dal.get_dataset_file(dataset_id, db=db_session)["status"] == "processing"


def test_setup_failure_fails_dataset(db_session, embedder, test_settings, tmp_path):
    dataset_id, token = _started_dataset(db_session, embedder, test_settings, tmp_path)

    with patch("sampledesk.ingestion.tasks.SessionLocal", return_value=db_session), \
            patch("sampledesk.ingestion.tasks.get_embedding_client",
                  side_effect=RuntimeError("no API key")), \
            patch("sampledesk.ingestion.lifecycle.get_settings", return_value=test_settings):
        result = process_dataset_task.apply(args=[dataset_id, token]).get()

    dataset = dal.get_dataset_file(dataset_id, db=db_session)
    assert result["status"] == "failed"
    assert dataset["status"] == "failed"
    assert dataset["error_summary"] == ["Unexpected error: no API key"]


def test_fail_stale_runs_task(task_env, db_session, embedder, test_settings, tmp_path):
    dataset_id, _ = _started_dataset(db_session, embedder, test_settings, tmp_path)
    dal.update_dataset_status(
        dataset_id, "processing", db=db_session,
        started_at=datetime.now(timezone.utc) - timedelta(days=1),
    )

    result = fail_stale_runs_task.apply().get()

    assert result == {"stale_runs_failed": [dataset_id]}
    assert dal.get_dataset_file(dataset_id, db=db_session)["status"] == "failed"
