"""
SampleDesk manual sample operations.

Create, edit and soft-delete individual training samples outside of dataset
ingestion. Every write that changes the question or answer re-embeds the
sample so stored vectors always match their text.
"""

from typing import Any, Optional

import structlog
from sqlalchemy.orm import Session

from sampledesk.errors import SampleNotFound, ValidationError
from sampledesk.ingestion.lifecycle import DatasetLifecycleController
from sampledesk.ingestion.normalizer import normalize_with_reason
from sampledesk.samples.store import SampleStore
from sampledesk.search.embeddings import EmbeddingClient, build_sample_embedding_text

logger = structlog.get_logger(__name__)

_EDITABLE = ("question", "answer", "type", "tags", "language", "code_snippet", "greeting", "suggestions")


def _raw_from_sample(sample: dict[str, Any]) -> dict[str, Any]:
    answer = sample.get("answer") or {}
    return {
        "question": sample["question"],
        "answer": answer.get("answer", ""),
        "type": sample["type"],
        "tags": sample.get("tags") or [],
        "language": sample.get("language"),
        "code_snippet": sample.get("code_snippet"),
        "greeting": answer.get("greeting"),
        "suggestions": answer.get("suggestions") or [],
    }


class SampleService:
    def __init__(self, db: Session, embedder: EmbeddingClient):
        self.db = db
        self.store = SampleStore(db)
        self.embedder = embedder

    def create(self, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Validate, embed and store a manual sample.

        Raises:
            ValidationError: the payload does not normalize.
            EmbeddingError: the provider could not embed the text.
        """
        record, reason = normalize_with_reason(payload)
        if record is None:
            raise ValidationError(reason)

        vector = self.embedder.embed(build_sample_embedding_text(record.question, record.answer))
        try:
            sample = self.store.save(
                record, vector, source_type="manual", embedding_model=self.embedder.model
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("manual_sample_created", sample_id=sample["sample_id"], type=sample["type"])
        return sample

    def get(self, sample_id: int) -> dict[str, Any]:
        sample = self.store.get(sample_id)
        if sample is None:
            raise SampleNotFound(sample_id)
        return sample

    def update(self, sample_id: int, changes: dict[str, Any]) -> dict[str, Any]:
        """
        Apply a partial edit. Unknown keys are ignored; the merged record is
        re-validated, and re-embedded when question or answer changed.
        """
        current = self.store.get(sample_id)
        if current is None or not current["is_active"]:
            raise SampleNotFound(sample_id)

        raw = _raw_from_sample(current)
        raw.update({k: v for k, v in changes.items() if k in _EDITABLE})
        record, reason = normalize_with_reason(raw)
        if record is None:
            raise ValidationError(reason)

        answer = record.answer_template()
        answer["sections"] = list((current.get("answer") or {}).get("sections") or [])
        fields: dict[str, Any] = {
            "question": record.question,
            "answer": answer,
            "sample_type": record.type,
            "tags": list(record.tags),
            "language": record.language,
            "code_snippet": record.code_snippet,
        }

        content_changed = (
            record.question != current["question"]
            or record.answer != (current.get("answer") or {}).get("answer")
        )
        if content_changed:
            fields["embedding"] = self.embedder.embed(
                build_sample_embedding_text(record.question, record.answer)
            )
            fields["embedding_model"] = self.embedder.model

        try:
            sample = self.store.update_content(sample_id, **fields)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("sample_updated", sample_id=sample_id, re_embedded=content_changed)
        return sample

    def delete(self, sample_id: int) -> None:
        """
        Soft-delete a sample. For a dataset sample the dataset counter is
        resynced through the lifecycle controller in the same transaction.

        Raises:
            SampleNotFound: unknown or already inactive sample.
            ConcurrentProcessingConflict: the sample's dataset is processing.
        """
        current: Optional[dict] = self.store.get(sample_id)
        if current is None or not current["is_active"]:
            raise SampleNotFound(sample_id)
        try:
            self.store.soft_delete(sample_id)
            if current["dataset_id"] is not None:
                controller = DatasetLifecycleController(self.db, embedder=None)
                controller.resync_sample_count(current["dataset_id"])
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info("sample_soft_deleted", sample_id=sample_id)
