"""Shared engine models for Recollect."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, List, Optional, Sequence, Tuple

import numpy as np


def _timestamp() -> float:
    return time.time()


@dataclass
class Note:
    """A user's note as held by the note store."""

    id: str
    owner_id: str
    text: str
    created_at: float = field(default_factory=_timestamp)
    updated_at: float = field(default_factory=_timestamp)
    tags: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self):
        self.tags = frozenset(self.tags)
        if self.updated_at < self.created_at:
            raise ValueError(
                f"Note {self.id}: updated_at ({self.updated_at}) precedes created_at ({self.created_at})"
            )

    def touch(self, text: Optional[str] = None) -> None:
        if text is not None:
            self.text = text
        self.updated_at = max(_timestamp(), self.created_at)


@dataclass(frozen=True)
class Chunk:
    """A bounded slice of a note, cut at sentence boundaries."""

    note_id: str
    index: int
    text: str
    token_count: int

    @property
    def comparison_text(self) -> str:
        return self.text.lower()


@dataclass(frozen=True)
class EmbeddingVector:
    """One chunk's embedding under a specific model."""

    note_id: str
    chunk_index: int
    vector: np.ndarray
    model_id: str

    @property
    def dimension(self) -> int:
        return int(self.vector.shape[0])


@dataclass(frozen=True)
class NoteMetadata:
    """What the index keeps about a note besides its vectors."""

    owner_id: str
    created_at: float
    updated_at: float
    tags: FrozenSet[str] = frozenset()
    chunk_texts: Tuple[str, ...] = ()

    @classmethod
    def from_note(cls, note: Note, chunks: Sequence[Chunk]) -> "NoteMetadata":
        return cls(
            owner_id=note.owner_id,
            created_at=note.created_at,
            updated_at=note.updated_at,
            tags=frozenset(note.tags),
            chunk_texts=tuple(chunk.text for chunk in chunks),
        )


@dataclass(frozen=True)
class MatchQuery:
    query_vector: np.ndarray
    threshold: float
    max_results: int
    recency_weight: float
    model_id: Optional[str] = None
    query_terms: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class RankedResult:
    note_id: str
    best_chunk_index: int
    raw_similarity: float
    recency_score: float
    combined_score: float
    matched_topics: FrozenSet[str]
    updated_at: float
    excerpt: str = ""


class ExcerptSource(str, Enum):
    PAGE = "page"
    NOTE = "note"
    TURN = "turn"


@dataclass(frozen=True)
class ContextExcerpt:
    """One piece of the context handed to the generation provider."""

    text: str
    source: ExcerptSource
    note_id: Optional[str] = None
    chunk_index: Optional[int] = None
    score: Optional[float] = None
    truncated: bool = False


@dataclass(frozen=True)
class ContextPayload:
    excerpts: Tuple[ContextExcerpt, ...]
    budget_chars: int
    separator: str = "\n\n"

    def render(self) -> str:
        return self.separator.join(excerpt.text for excerpt in self.excerpts)

    @property
    def total_chars(self) -> int:
        return len(self.render())

    @property
    def provenance(self) -> List[Tuple[Optional[str], Optional[int]]]:
        return [
            (excerpt.note_id, excerpt.chunk_index)
            for excerpt in self.excerpts
            if excerpt.source == ExcerptSource.NOTE
        ]

    @property
    def page_context(self) -> Optional[ContextExcerpt]:
        if self.excerpts and self.excerpts[0].source == ExcerptSource.PAGE:
            return self.excerpts[0]
        return None


@dataclass(frozen=True)
class ChatTurn:
    role: str
    content: str
