"""
SampleDesk Embedding Generation

Centralized module for all embedding API calls, embedding text construction
and vector similarity. This is the ONLY module that talks to the embedding
provider.

Functions / classes:
    build_sample_embedding_text — Build embeddable text from a question/answer pair
    cosine_similarity           — Cosine similarity with a zero-magnitude guard
    create_openai_client        — OpenAI SDK client for OpenAI-compatible providers
    EmbeddingClient             — embed / embed_batch with chunking and error mapping

Rules:
    - One provider request per chunk of EMBEDDING_BATCH_SIZE texts
    - A failing chunk marks only its own items failed
    - Never log embedding vectors, only metadata
    - No DB access in this module
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import numpy as np
import openai
import structlog

from sampledesk.config import Settings, get_settings
from sampledesk.errors import (
    EmbeddingError,
    EmptyInput,
    ProviderError,
    ProviderRateLimited,
    ProviderUnreachable,
)

logger = structlog.get_logger(__name__)


def build_sample_embedding_text(question: str, answer: str) -> str:
    """
    Build the text string to embed for a training sample.

    The question and answer are embedded together so a search query can
    match either side of the pair.
    """
    return f"{question.strip()} {answer.strip()}".strip()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two vectors.

    Returns 0.0 when either vector has zero magnitude or the lengths
    differ; never raises for numeric input.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.ndim != 1 or va.shape != vb.shape or va.size == 0:
        return 0.0

    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0 or not np.isfinite(norm):
        return 0.0
    return float(np.dot(va, vb) / norm)


def create_openai_client(settings: Optional[Settings] = None) -> openai.OpenAI:
    """
    Create an OpenAI SDK client from settings.

    EMBEDDING_BASE_URL points the client at any OpenAI-compatible server
    (e.g. a local Ollama). Transient failures (connection errors, timeouts,
    429s) are retried inside the SDK up to EMBEDDING_MAX_RETRIES times.
    """
    settings = settings or get_settings()
    kwargs = {
        # Local OpenAI-compatible servers accept any key.
        "api_key": settings.OPENAI_API_KEY or "not-set",
        "timeout": settings.EMBEDDING_TIMEOUT_SECONDS,
        "max_retries": settings.EMBEDDING_MAX_RETRIES,
    }
    if settings.EMBEDDING_BASE_URL:
        kwargs["base_url"] = settings.EMBEDDING_BASE_URL
    return openai.OpenAI(**kwargs)


@dataclass
class EmbeddingResult:
    """Outcome for one input text: exactly one of vector / error is set."""

    vector: Optional[list[float]] = None
    error: Optional[EmbeddingError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class EmbeddingClient:
    """
    Turns text into fixed-length vectors through an OpenAI-compatible API.

    Args:
        client: An ``openai.OpenAI`` instance (or anything exposing
            ``embeddings.create(input=..., model=...)``).
        settings: Settings instance; defaults to ``get_settings()``.
        sleep: Injected for tests; used for the inter-chunk delay.
    """

    def __init__(
        self,
        client,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._client = client
        self._settings = settings or get_settings()
        self._sleep = sleep

    @property
    def model(self) -> str:
        return self._settings.EMBEDDING_MODEL

    def embed(self, text: str) -> list[float]:
        """Embed one text; raises the EmbeddingError subclass on failure."""
        result = self.embed_batch([text])[0]
        if result.error is not None:
            raise result.error
        return result.vector

    def embed_batch(self, texts: Sequence[str]) -> list[EmbeddingResult]:
        """
        Embed many texts, one provider request per chunk.

        Returns one EmbeddingResult per input, in input order. Blank texts
        fail with EmptyInput without reaching the provider.
        """
        results: list[Optional[EmbeddingResult]] = [None] * len(texts)
        pending: list[int] = []
        for i, text in enumerate(texts):
            if not isinstance(text, str) or not text.strip():
                results[i] = EmbeddingResult(error=EmptyInput(f"Input {i} is blank"))
            else:
                pending.append(i)

        batch_size = max(1, self._settings.EMBEDDING_BATCH_SIZE)
        chunks = [pending[i : i + batch_size] for i in range(0, len(pending), batch_size)]
        start_time = time.time()
        total_tokens = 0
        failed_chunks = 0

        for n, chunk in enumerate(chunks):
            if n > 0 and self._settings.EMBEDDING_BATCH_DELAY_SECONDS > 0:
                self._sleep(self._settings.EMBEDDING_BATCH_DELAY_SECONDS)

            try:
                response = self._request([texts[i] for i in chunk])
            except EmbeddingError as exc:
                failed_chunks += 1
                logger.warning(
                    "embedding_chunk_failed",
                    chunk=n,
                    size=len(chunk),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                for i in chunk:
                    results[i] = EmbeddingResult(error=exc)
                continue

            usage = getattr(response, "usage", None)
            if usage is not None and getattr(usage, "total_tokens", None):
                total_tokens += usage.total_tokens

            for i, result in zip(chunk, self._unpack(response, len(chunk))):
                results[i] = result

        logger.info(
            "embeddings_generated",
            text_count=len(texts),
            batch_count=len(chunks),
            failed_batches=failed_chunks,
            total_tokens=total_tokens,
            model=self.model,
            elapsed_seconds=round(time.time() - start_time, 3),
        )
        return results

    # ── internals ────────────────────────────────────────────────────────────

    def _request(self, batch: list[str]):
        """One provider call; the SDK has already retried transient failures."""
        try:
            return self._client.embeddings.create(input=batch, model=self.model)
        except openai.RateLimitError as exc:
            raise ProviderRateLimited(str(exc)) from exc
        except openai.APIConnectionError as exc:
            # APITimeoutError is a subclass of APIConnectionError
            raise ProviderUnreachable(str(exc)) from exc
        except openai.APIError as exc:
            raise ProviderError(str(exc)) from exc

    def _unpack(self, response, expected: int) -> list[EmbeddingResult]:
        data = list(getattr(response, "data", None) or [])
        if len(data) != expected:
            error = ProviderError(
                f"Provider returned {len(data)} embeddings for {expected} inputs"
            )
            return [EmbeddingResult(error=error) for _ in range(expected)]

        data.sort(key=lambda item: getattr(item, "index", 0))
        dimensions = self._settings.EMBEDDING_DIMENSIONS
        out = []
        for item in data:
            vector = [float(v) for v in (item.embedding or [])]
            if not vector:
                out.append(EmbeddingResult(error=ProviderError("Provider returned an empty vector")))
            elif dimensions and len(vector) != dimensions:
                out.append(EmbeddingResult(error=ProviderError(
                    f"Expected {dimensions}-dimensional vector, got {len(vector)}"
                )))
            else:
                out.append(EmbeddingResult(vector=vector))
        return out


def get_embedding_client(settings: Optional[Settings] = None) -> EmbeddingClient:
    """EmbeddingClient wired to the configured provider."""
    settings = settings or get_settings()
    return EmbeddingClient(create_openai_client(settings), settings)
