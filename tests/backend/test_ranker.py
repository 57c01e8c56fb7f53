"""
Unit tests for the Ranker module.
"""

import math
import os
import sys

import numpy as np
import pytest
from structlog.testing import capture_logs

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from errors import DimensionMismatchError, InvalidQueryError, ModelMismatchError
from indexer import VectorIndex
from models import EmbeddingVector, MatchQuery, NoteMetadata
from ranker import Ranker, cosine_similarity, recency_score

DAY = 86400.0
NOW = 1_700_000_000.0


def unit(angle_degrees):
    """2-d unit vector whose cosine with [1, 0] is cos(angle)."""
    radians = math.radians(angle_degrees)
    return [math.cos(radians), math.sin(radians)]


def query(vector=(1.0, 0.0), threshold=0.0, max_results=5, recency_weight=0.0, **kwargs):
    return MatchQuery(
        query_vector=np.array(vector, dtype=np.float64),
        threshold=threshold,
        max_results=max_results,
        recency_weight=recency_weight,
        **kwargs,
    )


class TestRankingHelpers:
    def test_cosine_identity(self):
        v = np.array([0.3, -1.2, 4.0])
        assert cosine_similarity(v, v) == pytest.approx(1.0)

    def test_cosine_bounds(self):
        a = np.array([1.0, 2.0, 3.0])
        assert cosine_similarity(a, -a) == pytest.approx(-1.0)
        for b in ([3.0, -1.0, 0.5], [0.0, 1.0, 0.0], [1e-9, 1e9, -3.0]):
            assert -1.0 <= cosine_similarity(a, np.array(b)) <= 1.0

    def test_cosine_zero_vector(self):
        assert cosine_similarity(np.zeros(3), np.ones(3)) == 0.0

    def test_recency_score(self):
        assert recency_score(NOW, NOW, 30 * DAY) == 1.0
        assert recency_score(NOW - 30 * DAY, NOW, 30 * DAY) == pytest.approx(0.5)
        assert recency_score(NOW - 60 * DAY, NOW, 30 * DAY) == pytest.approx(0.25)
        assert recency_score(NOW + DAY, NOW, 30 * DAY) == 1.0
        assert 0.0 <= recency_score(0.0, NOW, 30 * DAY) <= 1.0


class TestRanker:
    """Test suite for the Ranker class."""

    def setup_method(self):
        """Set up test fixtures."""
        self.index = VectorIndex()
        self.ranker = Ranker(half_life_seconds=30 * DAY)

    def add(self, note_id, rows, updated_at=NOW, tags=(), model_id="model-a", owner="owner"):
        vectors = [
            EmbeddingVector(note_id=note_id, chunk_index=i, vector=np.array(row, dtype=np.float64), model_id=model_id)
            for i, row in enumerate(rows)
        ]
        metadata = NoteMetadata(
            owner_id=owner,
            created_at=min(updated_at, NOW - 365 * DAY),
            updated_at=updated_at,
            tags=frozenset(tags),
            chunk_texts=tuple(f"{note_id} chunk {i}." for i in range(len(rows))),
        )
        self.index.upsert(owner, note_id, vectors, metadata)

    def rank(self, match_query):
        return self.ranker.rank(match_query, self.index.snapshot_for("owner"), now=NOW)

    def test_empty_snapshot(self):
        assert self.rank(query()) == []

    def test_best_chunk_wins(self):
        self.add("n1", [unit(80), unit(10), unit(45)])

        [result] = self.rank(query())
        assert result.best_chunk_index == 1
        assert result.raw_similarity == pytest.approx(math.cos(math.radians(10)))
        assert result.excerpt == "n1 chunk 1."

    def test_orders_by_similarity_without_recency(self):
        self.add("far", [unit(60)])
        self.add("near", [unit(5)])
        self.add("mid", [unit(30)])

        results = self.rank(query())
        assert [r.note_id for r in results] == ["near", "mid", "far"]
        assert all(r.combined_score == pytest.approx(r.raw_similarity) for r in results)

    def test_recency_blends_into_combined_score(self):
        self.add("old", [unit(10)], updated_at=NOW - 300 * DAY)
        self.add("fresh", [unit(20)], updated_at=NOW)

        results = self.rank(query(recency_weight=0.5))
        assert [r.note_id for r in results] == ["fresh", "old"]
        fresh = results[0]
        assert fresh.recency_score == 1.0
        assert fresh.combined_score == pytest.approx(0.5 * math.cos(math.radians(20)) + 0.5)

    def test_threshold_gates_on_raw_similarity(self):
        # cos(60) = 0.5: very recent, but below the similarity floor
        self.add("recent_unrelated", [unit(60)], updated_at=NOW)
        self.add("related", [unit(10)], updated_at=NOW - 400 * DAY)

        results = self.rank(query(threshold=0.7, recency_weight=1.0))
        assert [r.note_id for r in results] == ["related"]
        assert all(r.raw_similarity >= 0.7 for r in results)

    def test_threshold_inclusive(self):
        self.add("n1", [[1.0, 0.0]])
        assert len(self.rank(query(threshold=1.0))) == 1

    def test_ties_broken_by_recency_then_id(self):
        self.add("b", [unit(10)], updated_at=NOW - DAY)
        self.add("a", [unit(10)], updated_at=NOW - DAY)
        self.add("c", [unit(10)], updated_at=NOW)

        results = self.rank(query())
        assert [r.note_id for r in results] == ["c", "a", "b"]

    def test_max_results_truncates(self):
        for i in range(8):
            self.add(f"n{i}", [unit(i * 5)])

        results = self.rank(query(max_results=3))
        assert [r.note_id for r in results] == ["n0", "n1", "n2"]

    def test_matched_topics(self):
        self.add("n1", [unit(0)], tags={"CNN", "vision", "ml"})

        [result] = self.rank(query(query_terms=frozenset({"cnn", "ml", "other"})))
        assert result.matched_topics == frozenset({"CNN", "ml"})

    def test_zero_query_vector_excluded(self):
        self.add("n1", [unit(0)])

        with capture_logs() as logs:
            results = self.rank(query(vector=(0.0, 0.0)))
        assert results == []
        assert any(entry["event"] == "zero_query_vector_excluded" for entry in logs)

    def test_zero_chunk_vector_excluded(self):
        self.add("n1", [[0.0, 0.0], unit(20)])
        self.add("n2", [[0.0, 0.0]])

        with capture_logs() as logs:
            results = self.rank(query())
        assert [r.note_id for r in results] == ["n1"]
        assert results[0].best_chunk_index == 1
        excluded = [entry for entry in logs if entry["event"] == "zero_vector_excluded"]
        assert {(entry["note_id"], entry["chunk_index"]) for entry in excluded} == {("n1", 0), ("n2", 0)}
        assert all(entry["log_level"] == "warning" for entry in excluded)

    def test_dimension_mismatch(self):
        self.add("n1", [unit(0)])
        with pytest.raises(DimensionMismatchError):
            self.rank(query(vector=(1.0, 0.0, 0.0)))

    def test_model_mismatch(self):
        self.add("n1", [unit(0)])
        with pytest.raises(ModelMismatchError):
            self.rank(query(model_id="model-b"))
        assert len(self.rank(query(model_id="model-a"))) == 1

    @pytest.mark.parametrize("max_results", [0, -1, 2.5, True])
    def test_invalid_max_results(self, max_results):
        with pytest.raises(InvalidQueryError):
            self.rank(query(max_results=max_results))

    @pytest.mark.parametrize("threshold", [-0.1, 1.01, float("nan")])
    def test_invalid_threshold(self, threshold):
        with pytest.raises(InvalidQueryError):
            self.rank(query(threshold=threshold))

    @pytest.mark.parametrize("weight", [-0.5, 1.5])
    def test_invalid_recency_weight(self, weight):
        with pytest.raises(InvalidQueryError):
            self.rank(query(recency_weight=weight))

    @pytest.mark.parametrize("vector", [(), (float("nan"), 1.0), (float("inf"), 0.0)])
    def test_invalid_query_vector(self, vector):
        with pytest.raises(InvalidQueryError):
            self.rank(query(vector=vector))

    def test_validation_happens_before_scan(self):
        # The empty snapshot would otherwise short-circuit to [].
        with pytest.raises(InvalidQueryError):
            self.rank(query(max_results=0))

    def test_scores_within_bounds(self):
        rng = np.random.default_rng(7)
        for i in range(20):
            self.add(f"n{i}", rng.normal(size=(3, 2)).tolist(), updated_at=NOW - float(i) * DAY)

        results = self.rank(query(threshold=0.0, max_results=20, recency_weight=0.3))
        for r in results:
            assert -1.0 <= r.raw_similarity <= 1.0
            assert 0.0 <= r.recency_score <= 1.0
            assert r.raw_similarity >= 0.0
        combined = [r.combined_score for r in results]
        assert combined == sorted(combined, reverse=True)

    def test_deterministic(self):
        for i in range(6):
            self.add(f"n{i}", [unit(i * 7), unit(90 - i * 7)], updated_at=NOW - i * DAY)

        first = self.rank(query(recency_weight=0.25))
        second = self.rank(query(recency_weight=0.25))
        assert first == second
