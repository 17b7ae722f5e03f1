"""
SampleDesk Semantic Search Module

Exact brute-force cosine similarity search over training-sample embeddings.

Steps:
    1. Embed the query once
    2. Load candidates from the SampleStore with conjunctive filters
    3. Score each candidate by cosine similarity
    4. Sort by score descending, newer samples first on ties
    5. Return the top K

Rules:
    - top_k defaults to SEARCH_DEFAULT_TOP_K and is capped at SEARCH_MAX_TOP_K
    - Candidates whose vector length differs from the query are skipped
    - Never log embedding vectors, only metadata
    - An empty candidate set is a valid, empty response
"""

import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union

import structlog

from sampledesk.config import Settings, get_settings
from sampledesk.db import dal
from sampledesk.errors import DatasetNotFound
from sampledesk.samples.store import SampleFilters, SampleStore
from sampledesk.search.embeddings import EmbeddingClient, cosine_similarity

logger = structlog.get_logger(__name__)

_FILTER_KEYS = {
    "type": "types",
    "types": "types",
    "tags": "tags",
    "source_type": "source_type",
    "sourcetype": "source_type",
    "language": "language",
    "dataset_id": "dataset_id",
    "datasetid": "dataset_id",
    "is_active": "is_active",
    "isactive": "is_active",
}


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value else []
    return [str(v) for v in value if v]


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ValueError(f"isActive must be true or false, got {value!r}")


def parse_filters(raw: Union[None, SampleFilters, Mapping[str, Any]]) -> SampleFilters:
    """
    Build SampleFilters from a request payload.

    Accepts snake_case or camelCase keys (``sourceType``, ``datasetId``,
    ``isActive``). ``type`` and ``tags`` may be a single value or a list.
    ``isActive`` takes a boolean or the strings "true" / "false".

    Raises:
        ValueError: an unknown filter key or a non-boolean isActive.
    """
    if raw is None:
        return SampleFilters()
    if isinstance(raw, SampleFilters):
        return raw

    values: dict[str, Any] = {}
    for key, value in raw.items():
        target = _FILTER_KEYS.get(str(key).lower())
        if target is None:
            raise ValueError(f"Unknown search filter '{key}'")
        if value is None:
            continue
        values[target] = value

    return SampleFilters(
        types=_as_list(values.get("types")),
        tags=_as_list(values.get("tags")),
        source_type=values.get("source_type") or None,
        language=values.get("language") or None,
        dataset_id=int(values["dataset_id"]) if "dataset_id" in values else None,
        is_active=_as_bool(values["is_active"]) if "is_active" in values else True,
    )


@dataclass
class SearchResponse:
    results: list[dict[str, Any]] = field(default_factory=list)

    @property
    def total_results(self) -> int:
        return len(self.results)

    def to_dict(self) -> dict[str, Any]:
        return {"results": self.results, "total_results": self.total_results}


class SimilaritySearchEngine:
    """
    Ranks stored samples against a free-text query.

    Args:
        store: SampleStore providing candidates.
        embedder: EmbeddingClient used to embed the query.
        settings: Settings instance; defaults to ``get_settings()``.
    """

    def __init__(
        self,
        store: SampleStore,
        embedder: EmbeddingClient,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.embedder = embedder
        self.settings = settings or get_settings()

    def search(
        self,
        query: str,
        top_k: Optional[int] = None,
        filters: Union[None, SampleFilters, Mapping[str, Any]] = None,
    ) -> SearchResponse:
        """
        Return up to *top_k* samples most similar to *query*.

        Each result is ``{"sample": <sample dict>, "score": float}`` with
        the score in [-1, 1].

        Raises:
            ValueError: top_k below 1 or an unknown filter key.
            DatasetNotFound: a dataset_id filter names an unknown dataset.
            EmptyInput: blank query.
            EmbeddingError: the provider could not embed the query.
        """
        start_time = time.time()

        if top_k is None:
            top_k = self.settings.SEARCH_DEFAULT_TOP_K
        if top_k < 1:
            raise ValueError(f"top_k must be at least 1, got {top_k}")
        top_k = min(top_k, self.settings.SEARCH_MAX_TOP_K)

        sample_filters = parse_filters(filters)
        if sample_filters.dataset_id is not None:
            if dal.get_dataset_file(sample_filters.dataset_id, db=self.store.db) is None:
                raise DatasetNotFound(sample_filters.dataset_id)

        query_vector = self.embedder.embed(query)

        candidates = self.store.find_many(sample_filters, include_embedding=True)

        scored = []
        skipped = 0
        for sample in candidates:
            vector = sample.pop("embedding", None) or []
            if len(vector) != len(query_vector):
                skipped += 1
                continue
            scored.append({"sample": sample, "score": cosine_similarity(query_vector, vector)})

        if skipped:
            logger.warning(
                "search_dimension_mismatch",
                skipped=skipped,
                query_dimensions=len(query_vector),
            )

        scored.sort(
            key=lambda r: (r["score"], r["sample"]["created_at"] or "", r["sample"]["sample_id"]),
            reverse=True,
        )
        results = scored[:top_k]

        logger.info(
            "search_samples",
            query=query[:100],
            top_k=top_k,
            candidate_count=len(candidates),
            result_count=len(results),
            elapsed_seconds=round(time.time() - start_time, 3),
        )
        return SearchResponse(results=results)
