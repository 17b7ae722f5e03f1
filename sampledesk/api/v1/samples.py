"""
SampleDesk Samples API Router

Endpoints:
    POST   /samples/search      — Semantic search over active samples
    GET    /samples             — List samples with filters, newest first
    POST   /samples             — Create a manual sample (embedded on create)
    GET    /samples/{sample_id} — Fetch one sample
    PATCH  /samples/{sample_id} — Edit; re-embeds when question/answer change
    DELETE /samples/{sample_id} — Soft delete

Rules:
    - Blank queries and invalid payloads → 400
    - Embedding provider failures → 503
    - Log endpoint name, params, and response time via structlog
"""

import time
from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from sampledesk.db.models import SOURCE_TYPES
from sampledesk.db.session import get_db
from sampledesk.errors import (
    ConcurrentProcessingConflict,
    DatasetNotFound,
    EmbeddingError,
    EmptyInput,
    SampleNotFound,
    ValidationError,
)
from sampledesk.samples.service import SampleService
from sampledesk.samples.store import SampleFilters, SampleStore
from sampledesk.search.embeddings import EmbeddingClient, get_embedding_client
from sampledesk.search.search import SimilaritySearchEngine

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/samples", tags=["Samples"])


def get_embedder() -> EmbeddingClient:
    """FastAPI dependency for the configured embedding client."""
    return get_embedding_client()


# ── Request models ─────────────────────────────────────────────────────────


class SearchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(..., min_length=1, description="Free-text search query")
    top_k: Optional[int] = Field(None, alias="topK", description="Max results")
    filters: Optional[dict[str, Any]] = Field(
        None, description="type, tags, sourceType, language, isActive, datasetId"
    )


class SampleCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question: str
    answer: str
    type: Optional[str] = None
    tags: Optional[list[str]] = None
    language: Optional[str] = None
    code_snippet: Optional[str] = Field(None, alias="codeSnippet")
    greeting: Optional[str] = None
    suggestions: Optional[list[str]] = None


class SampleUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question: Optional[str] = None
    answer: Optional[str] = None
    type: Optional[str] = None
    tags: Optional[list[str]] = None
    language: Optional[str] = None
    code_snippet: Optional[str] = Field(None, alias="codeSnippet")
    greeting: Optional[str] = None
    suggestions: Optional[list[str]] = None


def _embedding_http_error(exc: EmbeddingError) -> HTTPException:
    if isinstance(exc, EmptyInput):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Embedding provider is unavailable. Please try again later.",
    )


# ── POST /samples/search ───────────────────────────────────────────────────


@router.post("/search", summary="Semantic search over training samples")
def search_samples(
    body: SearchRequest,
    db: Session = Depends(get_db),
    embedder: EmbeddingClient = Depends(get_embedder),
):
    start_time = time.time()
    log = logger.bind(endpoint="search_samples", query=body.query[:100])

    engine = SimilaritySearchEngine(SampleStore(db), embedder)
    try:
        response = engine.search(body.query, top_k=body.top_k, filters=body.filters)
    except DatasetNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except EmbeddingError as exc:
        log.error("search_embedding_failed", error_type=type(exc).__name__, error=str(exc))
        raise _embedding_http_error(exc)

    log.info(
        "search_samples_response",
        result_count=response.total_results,
        elapsed_seconds=round(time.time() - start_time, 3),
    )
    return {"results": response.results, "totalResults": response.total_results}


# ── POST /samples ──────────────────────────────────────────────────────────


@router.post("", status_code=status.HTTP_201_CREATED, summary="Create a manual sample")
def create_sample(
    body: SampleCreate,
    db: Session = Depends(get_db),
    embedder: EmbeddingClient = Depends(get_embedder),
):
    service = SampleService(db, embedder)
    try:
        return service.create(body.model_dump(exclude_none=True))
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except EmbeddingError as exc:
        logger.error("create_sample_embedding_failed", error=str(exc))
        raise _embedding_http_error(exc)


# ── GET /samples ───────────────────────────────────────────────────────────


@router.get("", summary="List training samples")
def list_samples(
    types: Optional[list[str]] = Query(None, alias="type", description="Repeat to match any"),
    tags: Optional[list[str]] = Query(None, description="Repeat to match any"),
    source_type: Optional[str] = Query(None, alias="sourceType"),
    language: Optional[str] = None,
    is_active: Optional[bool] = Query(True, alias="isActive"),
    dataset_id: Optional[int] = Query(None, alias="datasetId"),
    db: Session = Depends(get_db),
):
    """Samples matching every given filter, newest first. Embeddings are omitted."""
    if source_type and source_type not in SOURCE_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"sourceType must be one of {list(SOURCE_TYPES)}",
        )
    filters = SampleFilters(
        types=types or [],
        tags=tags or [],
        source_type=source_type,
        language=language,
        dataset_id=dataset_id,
        is_active=is_active,
    )
    samples = SampleStore(db).find_many(filters, newest_first=True)
    return {"samples": samples, "count": len(samples)}


# ── GET / PATCH / DELETE /samples/{sample_id} ──────────────────────────────


@router.get("/{sample_id}", summary="Get one sample")
def get_sample(sample_id: int, db: Session = Depends(get_db)):
    sample = SampleStore(db).get(sample_id)
    if sample is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Training sample {sample_id} not found",
        )
    return sample


@router.patch("/{sample_id}", summary="Edit a sample")
def update_sample(
    sample_id: int,
    body: SampleUpdate,
    db: Session = Depends(get_db),
    embedder: EmbeddingClient = Depends(get_embedder),
):
    service = SampleService(db, embedder)
    try:
        return service.update(sample_id, body.model_dump(exclude_unset=True))
    except SampleNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except EmbeddingError as exc:
        logger.error("update_sample_embedding_failed", sample_id=sample_id, error=str(exc))
        raise _embedding_http_error(exc)


@router.delete("/{sample_id}", summary="Soft-delete a sample")
def delete_sample(sample_id: int, db: Session = Depends(get_db)):
    service = SampleService(db, embedder=None)
    try:
        service.delete(sample_id)
    except SampleNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except ConcurrentProcessingConflict as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return {"sample_id": sample_id, "is_active": False}
