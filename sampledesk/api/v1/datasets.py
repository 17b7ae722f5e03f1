"""
SampleDesk Dataset API Router

REST API endpoints for dataset upload, processing and status polling.

Endpoints:
    POST   /datasets/upload              — Upload a training-data file
    GET    /datasets                     — List datasets (optional status filter)
    GET    /datasets/{dataset_id}        — Poll status and counters
    POST   /datasets/{dataset_id}/process — Start processing (202, fire-and-forget)
    GET    /datasets/{dataset_id}/preview — Parse + normalize without persisting
    DELETE /datasets/{dataset_id}/samples — Soft-delete every sample of a dataset
"""

import os
import uuid
from pathlib import Path
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from sampledesk.config import get_settings
from sampledesk.db import dal
from sampledesk.db.models import DATASET_STATUSES
from sampledesk.db.session import get_db
from sampledesk.errors import (
    ConcurrentProcessingConflict,
    DatasetNotFound,
    FatalParseError,
    InvalidStatusTransition,
    UnsupportedFormat,
)
from sampledesk.ingestion.lifecycle import DatasetLifecycleController
from sampledesk.ingestion.parser import detect_file_type, resolve_file_type
from sampledesk.ingestion.tasks import process_dataset_task

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/datasets", tags=["Datasets"])

CHUNK_SIZE = 1024 * 1024  # 1 MB


def _not_found(dataset_id: int) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Dataset {dataset_id} not found",
    )


# =============================================================================
# POST /datasets/upload
# =============================================================================
@router.post(
    "/upload",
    status_code=status.HTTP_201_CREATED,
    summary="Upload a training-data file",
)
async def upload_dataset(
    file: UploadFile = File(..., description="CSV, JSON, Markdown, text, Excel or PDF file"),
    file_type: Optional[str] = Form(None, description="Override the detected file type"),
    db: Session = Depends(get_db),
):
    """
    Store an uploaded file under UPLOAD_DIR and register it as ``uploaded``.

    The file is streamed to disk in chunks and rejected with 413 once it
    exceeds MAX_UPLOAD_SIZE_BYTES. Processing is started separately via
    ``POST /datasets/{id}/process``.
    """
    settings = get_settings()
    log = logger.bind(filename=file.filename, content_type=file.content_type)
    log.info("upload_received")

    if not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Filename is required")

    try:
        if file_type:
            resolve_file_type(file_type)
        else:
            detect_file_type(file.filename, file.content_type)
    except UnsupportedFormat as exc:
        log.warning("upload_rejected_unsupported", error=str(exc))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    # -------------------------------------------------------------------------
    # Stream to UPLOAD_DIR in chunks
    # -------------------------------------------------------------------------
    upload_dir = Path(settings.UPLOAD_DIR)
    upload_dir.mkdir(parents=True, exist_ok=True)
    stored_path = upload_dir / f"{uuid.uuid4().hex}{Path(file.filename).suffix.lower()}"
    bytes_written = 0

    try:
        with open(stored_path, "wb") as out:
            while True:
                chunk = await file.read(CHUNK_SIZE)
                if not chunk:
                    break
                bytes_written += len(chunk)
                if bytes_written > settings.MAX_UPLOAD_SIZE_BYTES:
                    raise HTTPException(
                        status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                        detail=f"File exceeds maximum size of {settings.MAX_UPLOAD_SIZE_BYTES} bytes",
                    )
                out.write(chunk)
    except HTTPException:
        _discard(stored_path)
        log.warning("upload_rejected_too_large", bytes=bytes_written)
        raise
    except OSError as exc:
        _discard(stored_path)
        log.error("upload_stream_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save uploaded file",
        )

    # -------------------------------------------------------------------------
    # Create the dataset record
    # -------------------------------------------------------------------------
    controller = DatasetLifecycleController(db, embedder=None)
    try:
        dataset = controller.register_upload(
            original_name=file.filename,
            stored_path=str(stored_path),
            size_bytes=bytes_written,
            mime_type=file.content_type,
            declared_type=file_type,
        )
    except Exception as exc:
        _discard(stored_path)
        log.error("dataset_record_creation_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create dataset record",
        )

    log.info("upload_complete", dataset_id=dataset["dataset_id"], bytes=bytes_written)
    return dataset


def _discard(path: Path) -> None:
    try:
        os.unlink(path)
    except OSError:
        pass


# =============================================================================
# GET /datasets
# =============================================================================
@router.get("", summary="List datasets")
def list_datasets(
    status_filter: Optional[str] = Query(None, alias="status", description="Filter by status"),
    db: Session = Depends(get_db),
):
    if status_filter and status_filter not in DATASET_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"status must be one of {list(DATASET_STATUSES)}",
        )
    datasets = dal.list_dataset_files(status_filter, db=db)
    return {"datasets": datasets, "count": len(datasets)}


# =============================================================================
# GET /datasets/{dataset_id}
# =============================================================================
@router.get("/{dataset_id}", summary="Get dataset status")
def get_dataset(dataset_id: int, db: Session = Depends(get_db)):
    dataset = dal.get_dataset_file(dataset_id, db=db)
    if dataset is None:
        raise _not_found(dataset_id)
    return dataset


# =============================================================================
# POST /datasets/{dataset_id}/process
# =============================================================================
@router.post(
    "/{dataset_id}/process",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start processing a dataset",
)
def process_dataset(dataset_id: int, db: Session = Depends(get_db)):
    """
    Move the dataset into ``processing`` and enqueue the background job.

    The state change happens before enqueueing, so a second trigger while
    the first run is active gets 409 immediately.
    """
    log = logger.bind(dataset_id=dataset_id)
    controller = DatasetLifecycleController(db, embedder=None)

    try:
        dataset = controller.start(dataset_id)
    except DatasetNotFound:
        raise _not_found(dataset_id)
    except (ConcurrentProcessingConflict, InvalidStatusTransition) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))

    try:
        task = process_dataset_task.delay(dataset_id, dataset["run_token"])
    except Exception as exc:
        log.error("process_dispatch_failed", error=str(exc))
        controller.fail_run(
            dataset_id, dataset["run_token"], f"Could not enqueue processing job: {exc}"
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Processing queue is unavailable",
        )

    log.info("process_task_dispatched", task_id=getattr(task, "id", None))
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={
            "dataset_id": dataset_id,
            "status": "processing",
            "message": "Processing started. Poll GET /api/v1/datasets/{id} for status.",
        },
    )


# =============================================================================
# GET /datasets/{dataset_id}/preview
# =============================================================================
@router.get("/{dataset_id}/preview", summary="Preview parsed records")
def preview_dataset(
    dataset_id: int,
    limit: int = Query(10, ge=1, le=100, description="Max records to return"),
    db: Session = Depends(get_db),
):
    controller = DatasetLifecycleController(db, embedder=None)
    try:
        return controller.preview(dataset_id, limit=limit)
    except DatasetNotFound:
        raise _not_found(dataset_id)
    except UnsupportedFormat as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except FatalParseError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


# =============================================================================
# DELETE /datasets/{dataset_id}/samples
# =============================================================================
@router.delete("/{dataset_id}/samples", summary="Soft-delete all samples of a dataset")
def deactivate_dataset_samples(dataset_id: int, db: Session = Depends(get_db)):
    controller = DatasetLifecycleController(db, embedder=None)
    try:
        return controller.deactivate_dataset(dataset_id)
    except DatasetNotFound:
        raise _not_found(dataset_id)
    except ConcurrentProcessingConflict as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
