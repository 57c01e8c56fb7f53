"""
Indexer module for Recollect.

Holds note embeddings in memory, partitioned by owner. Each owner's index is
an immutable mapping that writers replace wholesale, so a snapshot taken by a
reader never changes underneath it.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import structlog

from errors import DimensionMismatchError, InvalidInputError, ModelMismatchError
from models import EmbeddingVector, NoteMetadata

log = structlog.get_logger(__name__)

_EMPTY: Mapping[str, "IndexedNote"] = MappingProxyType({})


@dataclass(frozen=True)
class IndexedNote:
    """All chunk vectors of one note plus the metadata ranking needs."""

    note_id: str
    vectors: Tuple[EmbeddingVector, ...]
    metadata: NoteMetadata
    model_id: str
    dimension: int

    @property
    def matrix(self) -> np.ndarray:
        return np.stack([vector.vector for vector in self.vectors])

    def chunk_text(self, chunk_index: int) -> str:
        texts = self.metadata.chunk_texts
        if 0 <= chunk_index < len(texts):
            return texts[chunk_index]
        return ""


@dataclass(frozen=True)
class IndexSnapshot:
    """Read-only view of one owner's index at a point in time."""

    owner_id: str
    entries: Mapping[str, IndexedNote]

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[IndexedNote]:
        return iter(self.entries.values())

    def get(self, note_id: str) -> Optional[IndexedNote]:
        return self.entries.get(note_id)


class VectorIndex:
    """In-memory vector store with per-owner copy-on-write updates."""

    def __init__(self):
        self._owners: Dict[str, Mapping[str, IndexedNote]] = {}
        self._owner_locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def upsert(
        self,
        owner_id: str,
        note_id: str,
        vectors: Sequence[EmbeddingVector],
        metadata: NoteMetadata,
    ) -> IndexedNote:
        """
        Replace every vector stored for a note.

        Args:
            owner_id: Owner the note belongs to
            note_id: Note identifier
            vectors: One vector per chunk of the note
            metadata: Timestamps, tags and chunk texts of the note

        Returns:
            The stored entry

        Raises:
            InvalidInputError: no vectors, or vectors for another note
            DimensionMismatchError: vector lengths disagree
            ModelMismatchError: vectors come from different models
        """
        if not vectors:
            raise InvalidInputError(
                "Cannot index a note without vectors", {"note_id": note_id}
            )

        first = vectors[0]
        for vector in vectors:
            if vector.note_id != note_id:
                raise InvalidInputError(
                    f"Vector for note '{vector.note_id}' passed while indexing '{note_id}'",
                    {"note_id": note_id},
                )
            self._check_compatible(vector.model_id, vector.dimension, first.model_id, first.dimension, note_id)

        entry = IndexedNote(
            note_id=note_id,
            vectors=tuple(sorted(vectors, key=lambda v: v.chunk_index)),
            metadata=metadata,
            model_id=first.model_id,
            dimension=first.dimension,
        )

        with self._lock_for(owner_id):
            current = self._owners.get(owner_id, _EMPTY)
            for other in current.values():
                if other.note_id == note_id:
                    continue
                self._check_compatible(
                    entry.model_id, entry.dimension, other.model_id, other.dimension, note_id
                )
                break

            updated = dict(current)
            updated[note_id] = entry
            self._owners[owner_id] = MappingProxyType(updated)

        log.debug(
            "note_indexed",
            owner_id=owner_id,
            note_id=note_id,
            chunks=len(entry.vectors),
            model_id=entry.model_id,
        )
        return entry

    def remove(self, owner_id: str, note_id: str) -> bool:
        """Drop a note's vectors. Returns False when the note was not indexed."""
        with self._lock_for(owner_id):
            current = self._owners.get(owner_id, _EMPTY)
            if note_id not in current:
                return False
            updated = dict(current)
            del updated[note_id]
            self._owners[owner_id] = MappingProxyType(updated)
        log.debug("note_removed", owner_id=owner_id, note_id=note_id)
        return True

    def clear(self, owner_id: Optional[str] = None) -> None:
        """Forget one owner's index, or every owner's when ``owner_id`` is None."""
        if owner_id is None:
            with self._registry_lock:
                owners = list(self._owners.keys())
            for owner in owners:
                self.clear(owner)
            return
        with self._lock_for(owner_id):
            self._owners[owner_id] = _EMPTY

    def replace_owner(self, owner_id: str, entries: Mapping[str, IndexedNote]) -> None:
        """
        Swap in a complete index for one owner.

        Readers see either the previous index or the new one, never a mix.

        Raises:
            DimensionMismatchError: entries disagree on vector length
            ModelMismatchError: entries come from different models
        """
        replacement = dict(entries)
        values = list(replacement.values())
        for entry in values[1:]:
            self._check_compatible(
                entry.model_id, entry.dimension, values[0].model_id, values[0].dimension, entry.note_id
            )
        with self._lock_for(owner_id):
            self._owners[owner_id] = MappingProxyType(replacement) if replacement else _EMPTY
        log.debug("owner_index_replaced", owner_id=owner_id, notes=len(replacement))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def snapshot_for(self, owner_id: str) -> IndexSnapshot:
        return IndexSnapshot(owner_id=owner_id, entries=self._owners.get(owner_id, _EMPTY))

    def note_ids(self, owner_id: str) -> List[str]:
        return sorted(self._owners.get(owner_id, _EMPTY).keys())

    def stats(self) -> Dict:
        """Get statistics about the index."""
        owners = dict(self._owners)
        total_chunks = 0
        models = set()
        for entries in owners.values():
            for entry in entries.values():
                total_chunks += len(entry.vectors)
                models.add(entry.model_id)
        return {
            "owners": sum(1 for entries in owners.values() if entries),
            "total_notes": sum(len(entries) for entries in owners.values()),
            "total_chunks": total_chunks,
            "models": sorted(models),
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _lock_for(self, owner_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._owner_locks.get(owner_id)
            if lock is None:
                lock = threading.Lock()
                self._owner_locks[owner_id] = lock
            return lock

    @staticmethod
    def _check_compatible(
        model_id: str, dimension: int, expected_model: str, expected_dimension: int, note_id: str
    ) -> None:
        if dimension != expected_dimension:
            raise DimensionMismatchError(
                f"Vector dimension {dimension} does not match indexed dimension {expected_dimension}",
                {"note_id": note_id, "expected": expected_dimension, "actual": dimension},
            )
        if model_id != expected_model:
            raise ModelMismatchError(
                f"Model '{model_id}' does not match indexed model '{expected_model}'",
                {"note_id": note_id, "expected": expected_model, "actual": model_id},
            )
