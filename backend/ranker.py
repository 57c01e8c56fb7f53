"""
Ranking module for Recollect.

Scores indexed notes against a query vector, blending semantic similarity
with how recently each note was updated.
"""

from __future__ import annotations

import numbers
import time
from typing import List, Optional

import numpy as np
import structlog

from errors import DimensionMismatchError, InvalidQueryError, ModelMismatchError
from indexer import IndexSnapshot
from models import MatchQuery, RankedResult

log = structlog.get_logger(__name__)


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine of the angle between two vectors, clamped to [-1, 1]; 0 if either is zero."""
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    value = float(np.dot(a, b) / (norm_a * norm_b))
    return max(-1.0, min(1.0, value))


def recency_score(updated_at: float, now: float, half_life_seconds: float) -> float:
    """Exponential decay: 1.0 for a note updated now, 0.5 one half-life ago."""
    elapsed = now - updated_at
    if elapsed <= 0:
        return 1.0
    return max(0.0, min(1.0, 0.5 ** (elapsed / half_life_seconds)))


def _validate(query: MatchQuery) -> np.ndarray:
    threshold = query.threshold
    if isinstance(threshold, bool) or not isinstance(threshold, numbers.Real) or not 0.0 <= threshold <= 1.0:
        raise InvalidQueryError(f"threshold must be within [0, 1], got {threshold!r}")

    max_results = query.max_results
    if isinstance(max_results, bool) or not isinstance(max_results, numbers.Integral) or max_results <= 0:
        raise InvalidQueryError(f"max_results must be a positive integer, got {max_results!r}")

    weight = query.recency_weight
    if isinstance(weight, bool) or not isinstance(weight, numbers.Real) or not 0.0 <= weight <= 1.0:
        raise InvalidQueryError(f"recency_weight must be within [0, 1], got {weight!r}")

    try:
        vector = np.asarray(query.query_vector, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise InvalidQueryError(f"query_vector is not numeric: {exc}") from exc
    if vector.ndim != 1 or vector.size == 0:
        raise InvalidQueryError("query_vector must be a non-empty one-dimensional vector")
    if not np.all(np.isfinite(vector)):
        raise InvalidQueryError("query_vector contains non-finite values")
    return vector


class Ranker:
    """Orders snapshot entries by combined similarity and recency."""

    def __init__(self, half_life_seconds: float = 30 * 86400.0):
        if half_life_seconds <= 0:
            raise ValueError("half_life_seconds must be positive")
        self.half_life_seconds = half_life_seconds

    def rank(
        self,
        query: MatchQuery,
        snapshot: IndexSnapshot,
        now: Optional[float] = None,
    ) -> List[RankedResult]:
        """
        Rank the notes in ``snapshot`` against ``query``.

        Notes whose best chunk similarity is below ``query.threshold`` are
        dropped regardless of recency. Results are ordered by combined score,
        then most recent update, then note id.

        Raises:
            InvalidQueryError: query parameters out of range
            DimensionMismatchError: query and stored vectors differ in length
            ModelMismatchError: query and stored vectors come from different models
        """
        vector = _validate(query)
        if len(snapshot) == 0:
            return []

        query_norm = float(np.linalg.norm(vector))
        if query_norm == 0.0:
            log.warning("zero_query_vector_excluded", owner_id=snapshot.owner_id)
            return []
        unit_query = vector / query_norm

        now = time.time() if now is None else now
        weight = float(query.recency_weight)
        terms = {term.lower() for term in query.query_terms}

        results: List[RankedResult] = []
        for entry in snapshot:
            if entry.dimension != vector.shape[0]:
                raise DimensionMismatchError(
                    f"Query dimension {vector.shape[0]} does not match note dimension {entry.dimension}",
                    {"note_id": entry.note_id, "expected": entry.dimension, "actual": int(vector.shape[0])},
                )
            if query.model_id is not None and entry.model_id != query.model_id:
                raise ModelMismatchError(
                    f"Query model '{query.model_id}' does not match note model '{entry.model_id}'",
                    {"note_id": entry.note_id, "expected": entry.model_id, "actual": query.model_id},
                )

            matrix = entry.matrix
            norms = np.linalg.norm(matrix, axis=1)
            usable = norms > 0
            if not np.all(usable):
                for position in np.flatnonzero(~usable):
                    log.warning(
                        "zero_vector_excluded",
                        note_id=entry.note_id,
                        chunk_index=entry.vectors[position].chunk_index,
                    )
            if not np.any(usable):
                continue

            similarities = np.full(norms.shape, -np.inf)
            similarities[usable] = (matrix[usable] @ unit_query) / norms[usable]
            best = int(np.argmax(similarities))
            raw = max(-1.0, min(1.0, float(similarities[best])))
            if raw < query.threshold:
                continue

            updated_at = entry.metadata.updated_at
            recency = recency_score(updated_at, now, self.half_life_seconds)
            combined = (1.0 - weight) * raw + weight * recency
            chunk_index = entry.vectors[best].chunk_index

            results.append(
                RankedResult(
                    note_id=entry.note_id,
                    best_chunk_index=chunk_index,
                    raw_similarity=raw,
                    recency_score=recency,
                    combined_score=combined,
                    matched_topics=frozenset(
                        tag for tag in entry.metadata.tags if tag.lower() in terms
                    ),
                    updated_at=updated_at,
                    excerpt=entry.chunk_text(chunk_index),
                )
            )

        results.sort(key=lambda r: (-r.combined_score, -r.updated_at, r.note_id))
        return results[: query.max_results]
