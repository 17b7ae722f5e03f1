"""
SampleDesk error taxonomy.

Format-level errors (UnsupportedFormat, FatalParseError) end a processing run.
Record-level errors (MalformedRecord, ValidationError, embedding and
persistence errors) are counted and skipped by the lifecycle controller.
Trigger-level errors (ConcurrentProcessingConflict, InvalidStatusTransition,
DatasetNotFound) reject a call outright.
"""

from dataclasses import dataclass
from typing import Optional


class SampleDeskError(Exception):
    """Base class for all domain errors."""


# ── Format level ─────────────────────────────────────────────────────────────


class UnsupportedFormat(SampleDeskError):
    """Unknown extension, MIME type, or declared file type."""


class FatalParseError(SampleDeskError):
    """The file as a whole is unreadable, corrupt, or empty."""


# ── Record level ─────────────────────────────────────────────────────────────


@dataclass
class MalformedRecord:
    """A row the parser could not turn into a raw record. Collected, never raised."""

    location: str
    reason: str

    def __str__(self) -> str:
        return f"{self.location}: {self.reason}"


class ValidationError(SampleDeskError):
    """A record failed canonical validation."""


class EmbeddingError(SampleDeskError):
    """Base class for embedding provider failures."""


class EmptyInput(EmbeddingError):
    """Blank text was passed to the embedding client."""


class ProviderUnreachable(EmbeddingError):
    """Network failure or timeout talking to the embedding provider."""


class ProviderRateLimited(EmbeddingError):
    """The provider rejected the call because of rate limits."""


class ProviderError(EmbeddingError):
    """Any other provider failure, including an unexpected vector length."""


class PersistenceError(SampleDeskError):
    """A sample could not be written to the store."""


# ── Trigger level ────────────────────────────────────────────────────────────


class DatasetNotFound(SampleDeskError):
    def __init__(self, dataset_id: int):
        super().__init__(f"Dataset {dataset_id} not found")
        self.dataset_id = dataset_id


class SampleNotFound(SampleDeskError):
    def __init__(self, sample_id: int):
        super().__init__(f"Training sample {sample_id} not found")
        self.sample_id = sample_id


class ConcurrentProcessingConflict(SampleDeskError):
    def __init__(self, dataset_id: int):
        super().__init__(f"Dataset {dataset_id} is already being processed")
        self.dataset_id = dataset_id


class InvalidStatusTransition(SampleDeskError):
    def __init__(self, dataset_id: int, current: Optional[str], target: str):
        super().__init__(
            f"Dataset {dataset_id} cannot move from '{current}' to '{target}'"
        )
        self.dataset_id = dataset_id
        self.current = current
        self.target = target
