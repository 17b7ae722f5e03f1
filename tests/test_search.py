"""
Tests for the similarity search engine.

Scenario D: search("reset password", top_k=2, filters={type: faq}) over a
corpus of 5 FAQ and 5 non-FAQ samples returns exactly 2 FAQ results.
"""

from datetime import datetime, timedelta, timezone

import pytest

from sampledesk.db import dal
from sampledesk.db.models import TrainingSample
from sampledesk.errors import DatasetNotFound, EmptyInput
from sampledesk.ingestion.normalizer import normalize
from sampledesk.samples.store import SampleStore
from sampledesk.search.search import SimilaritySearchEngine, parse_filters

QUERY = "reset password"
QUERY_VECTOR = [1.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0]


def _vector(similarity: float) -> list[float]:
    """Unit vector with the given cosine similarity to QUERY_VECTOR."""
    return [similarity, (1 - similarity ** 2) ** 0.5, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0]


def _save(store, question, vector, **extra):
    record = normalize({"question": question, "answer": "An answer that is long enough.", **extra})
    return store.save(record, vector)


@pytest.fixture()
def engine(db_session, embedder, fake_api, test_settings):
    fake_api.vectors[QUERY] = QUERY_VECTOR
    return SimilaritySearchEngine(SampleStore(db_session), embedder, test_settings)


class TestSearch:
    def test_scenario_d_filter_by_type(self, engine, db_session):
        store = SampleStore(db_session)
        for i in range(5):
            _save(store, f"FAQ question {i}", _vector(0.5 + i * 0.05), type="faq")
            _save(store, f"Doc question {i}", _vector(0.9), type="doc")

        response = engine.search(QUERY, top_k=2, filters={"type": "faq"})

        assert response.total_results == 2
        assert all(r["sample"]["type"] == "faq" for r in response.results)
        assert [r["sample"]["question"] for r in response.results] == ["FAQ question 4", "FAQ question 3"]

    def test_sorted_by_score_descending(self, engine, db_session):
        store = SampleStore(db_session)
        for similarity in (0.2, 0.9, -0.4, 0.6):
            _save(store, f"Question scored {similarity}", _vector(similarity))

        scores = [r["score"] for r in engine.search(QUERY, top_k=10).results]

        assert scores == sorted(scores, reverse=True)
        assert scores[0] == pytest.approx(0.9)
        assert scores[-1] == pytest.approx(-0.4)

    def test_ties_prefer_newer_samples(self, engine, db_session):
        store = SampleStore(db_session)
        older = _save(store, "Older question", _vector(0.7))
        newer = _save(store, "Newer question", _vector(0.7))
        db_session.get(TrainingSample, older["sample_id"]).created_at = (
            datetime.now(timezone.utc) - timedelta(days=1)
        )
        db_session.flush()

        results = engine.search(QUERY, top_k=2).results
        assert [r["sample"]["sample_id"] for r in results] == [newer["sample_id"], older["sample_id"]]

    def test_default_top_k(self, engine, db_session):
        store = SampleStore(db_session)
        for i in range(8):
            _save(store, f"Question number {i}", _vector(0.1 * i))

        assert engine.search(QUERY).total_results == 5

    def test_top_k_capped(self, engine, db_session, test_settings):
        test_settings.SEARCH_MAX_TOP_K = 3
        store = SampleStore(db_session)
        for i in range(6):
            _save(store, f"Question number {i}", _vector(0.1 * i))

        assert engine.search(QUERY, top_k=50).total_results == 3

    def test_top_k_below_one_rejected(self, engine):
        with pytest.raises(ValueError):
            engine.search(QUERY, top_k=0)

    def test_empty_corpus(self, engine):
        response = engine.search(QUERY)
        assert response.results == []
        assert response.total_results == 0

    def test_inactive_samples_excluded(self, engine, db_session):
        store = SampleStore(db_session)
        sample = _save(store, "Deleted question", _vector(0.9))
        store.soft_delete(sample["sample_id"])

        assert engine.search(QUERY).results == []

    def test_tag_filter_matches_any(self, engine, db_session):
        store = SampleStore(db_session)
        _save(store, "Billing question", _vector(0.5), tags="billing")
        _save(store, "Account question", _vector(0.6), tags="account;security")
        _save(store, "Other question", _vector(0.7), tags="misc")

        results = engine.search(QUERY, filters={"tags": ["billing", "security"]}).results
        assert {r["sample"]["question"] for r in results} == {"Billing question", "Account question"}

    def test_dimension_mismatch_skipped(self, engine, db_session):
        store = SampleStore(db_session)
        _save(store, "Old model question", [1.0, 0.0, 0.0])
        _save(store, "Current question", _vector(0.3))

        results = engine.search(QUERY).results
        assert [r["sample"]["question"] for r in results] == ["Current question"]

    def test_unknown_dataset_filter(self, engine):
        with pytest.raises(DatasetNotFound):
            engine.search(QUERY, filters={"datasetId": 999})

    def test_dataset_filter(self, engine, db_session):
        dataset_id = dal.create_dataset_file(
            db=db_session, original_name="f.csv", stored_path="/tmp/f.csv",
            mime_type=None, size_bytes=1, file_type="csv",
        )["dataset_id"]
        store = SampleStore(db_session)
        record = normalize({"q": "Dataset question", "a": "An answer that is long enough."})
        store.save(record, _vector(0.4), source_type="dataset", dataset_id=dataset_id)
        _save(store, "Manual question", _vector(0.9))

        results = engine.search(QUERY, filters={"datasetId": dataset_id}).results
        assert [r["sample"]["question"] for r in results] == ["Dataset question"]

    def test_blank_query(self, engine):
        with pytest.raises(EmptyInput):
            engine.search("   ")

    def test_embedding_not_returned(self, engine, db_session):
        _save(SampleStore(db_session), "Any question", _vector(0.5))
        sample = engine.search(QUERY).results[0]["sample"]
        assert "embedding" not in sample


class TestParseFilters:
    def test_camel_case_keys(self):
        filters = parse_filters({"type": ["faq", "qa"], "sourceType": "manual", "isActive": False})
        assert filters.types == ["faq", "qa"]
        assert filters.source_type == "manual"
        assert filters.is_active is False

    def test_unknown_key_rejected(self):
        with pytest.raises(ValueError):
            parse_filters({"colour": "blue"})

    def test_is_active_accepts_bool_strings(self):
        assert parse_filters({"isActive": "false"}).is_active is False
        assert parse_filters({"is_active": "TRUE"}).is_active is True
        assert parse_filters({"isActive": True}).is_active is True

    def test_is_active_rejects_other_values(self):
        with pytest.raises(ValueError):
            parse_filters({"isActive": "no"})
        with pytest.raises(ValueError):
            parse_filters({"isActive": 0})
