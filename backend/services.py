"""Service layer for coordinating storage, indexing, ranking and chat."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, List, Optional

import structlog

from context_assembler import ContextAssembler
from context_models import (
    ChatRequest,
    ChatResponsePayload,
    ContextExcerptPayload,
    RelatedNoteHitPayload,
    RelatedNotesRequest,
    RelatedNotesResponsePayload,
)
from embedder import EmbeddingAdapter
from errors import EmbeddingUnavailableError, InvalidInputError, ProviderError
from indexer import IndexSnapshot, VectorIndex
from models import ChatTurn, MatchQuery, Note, NoteMetadata, RankedResult
from normalizer import Normalizer
from providers import GenerationProvider
from ranker import Ranker
from settings import EngineSettings
from storage import NoteStore

log = structlog.get_logger(__name__)


@dataclass
class RebuildReport:
    owner_id: str
    indexed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


class SearchService:
    """Wraps normalization, embedding, the vector index and ranking."""

    def __init__(
        self,
        adapter: EmbeddingAdapter,
        settings: EngineSettings | None = None,
        normalizer: Normalizer | None = None,
        index: VectorIndex | None = None,
        ranker: Ranker | None = None,
    ):
        self.settings = settings or EngineSettings()
        self.adapter = adapter
        self.normalizer = normalizer or Normalizer(max_tokens=self.settings.max_chunk_tokens)
        self.index = index or VectorIndex()
        self.ranker = ranker or Ranker(half_life_seconds=self.settings.recency_half_life_seconds)

    def index_note(self, note: Note, cancel_event: Optional[threading.Event] = None) -> bool:
        """
        Normalize, embed and index one note.

        Returns:
            True if the note is now indexed, False if embedding was unavailable
            and the note was skipped (its previous vectors are dropped).

        Raises:
            InvalidInputError: the note has no usable text
        """
        return self._index_into(self.index, note, cancel_event)

    def _index_into(
        self, index: VectorIndex, note: Note, cancel_event: Optional[threading.Event]
    ) -> bool:
        chunks = self.normalizer.normalize(note.text, note_id=note.id)
        try:
            vectors = self.adapter.embed(chunks, cancel_event=cancel_event)
        except EmbeddingUnavailableError as exc:
            log.warning(
                "note_skipped",
                owner_id=note.owner_id,
                note_id=note.id,
                reason=exc.message,
            )
            index.remove(note.owner_id, note.id)
            return False

        index.upsert(note.owner_id, note.id, vectors, NoteMetadata.from_note(note, chunks))
        return True

    def remove_note(self, owner_id: str, note_id: str) -> bool:
        return self.index.remove(owner_id, note_id)

    def rebuild(
        self,
        owner_id: str,
        notes: Iterable[Note],
        cancel_event: Optional[threading.Event] = None,
    ) -> RebuildReport:
        """
        Re-index every note of one owner.

        Notes are embedded into a staging index that replaces the owner's
        index only once all of them are done, so searches running meanwhile
        keep seeing the previous index. A cancelled rebuild leaves it untouched.
        """
        report = RebuildReport(owner_id=owner_id)
        staging = VectorIndex()

        for note in notes:
            try:
                indexed = self._index_into(staging, note, cancel_event)
            except InvalidInputError as exc:
                log.warning("note_not_indexable", owner_id=owner_id, note_id=note.id, reason=exc.message)
                indexed = False
            (report.indexed if indexed else report.skipped).append(note.id)

        self.index.replace_owner(owner_id, staging.snapshot_for(owner_id).entries)
        log.info(
            "index_rebuilt",
            owner_id=owner_id,
            indexed=len(report.indexed),
            skipped=len(report.skipped),
        )
        return report

    def related_notes(
        self,
        owner_id: str,
        text: str,
        threshold: Optional[float] = None,
        max_results: Optional[int] = None,
        recency_weight: Optional[float] = None,
        exclude_note_id: Optional[str] = None,
        now: Optional[float] = None,
    ) -> List[RankedResult]:
        """Rank the owner's indexed notes against ``text``."""
        if not isinstance(text, str) or not text.strip():
            return []

        snapshot = self.index.snapshot_for(owner_id)
        if exclude_note_id is not None and snapshot.get(exclude_note_id) is not None:
            entries = {nid: entry for nid, entry in snapshot.entries.items() if nid != exclude_note_id}
            snapshot = IndexSnapshot(owner_id=owner_id, entries=MappingProxyType(entries))
        if len(snapshot) == 0:
            return []

        try:
            query_vector = self.adapter.embed_query(text, self.normalizer)
        except InvalidInputError:
            return []

        query = MatchQuery(
            query_vector=query_vector,
            threshold=self.settings.similarity_threshold if threshold is None else threshold,
            max_results=self.settings.max_results if max_results is None else max_results,
            recency_weight=self.settings.recency_weight if recency_weight is None else recency_weight,
            model_id=self.adapter.model_id,
            query_terms=frozenset(self.normalizer.terms(text)),
        )
        return self.ranker.rank(query, snapshot, now=now)


class NoteService:
    """Coordinates the note store with indexing, related-note lookups and chat."""

    def __init__(
        self,
        store: NoteStore,
        search: SearchService,
        assembler: ContextAssembler | None = None,
        generator: GenerationProvider | None = None,
    ):
        self.store = store
        self.search = search
        self.assembler = assembler or ContextAssembler(
            budget_chars=search.settings.context_budget_chars,
            normalizer=search.normalizer,
        )
        self.generator = generator

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------
    def save_note(self, note: Note) -> bool:
        """Persist a note, then index it. Returns whether it was indexed."""
        self.search.normalizer.normalize(note.text, note_id=note.id)
        self.store.save(note)
        return self.search.index_note(note)

    def index_note(self, note: Note, cancel_event: Optional[threading.Event] = None) -> bool:
        return self.search.index_note(note, cancel_event=cancel_event)

    def delete_note(self, owner_id: str, note_id: str) -> bool:
        removed = self.store.delete(owner_id, note_id)
        self.search.remove_note(owner_id, note_id)
        return removed

    def rebuild(self, owner_id: str, cancel_event: Optional[threading.Event] = None) -> RebuildReport:
        return self.search.rebuild(
            owner_id, self.store.load_all_for_owner(owner_id), cancel_event=cancel_event
        )

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------
    def related_notes(self, owner_id: str, text: str, **overrides) -> List[RankedResult]:
        return self.search.related_notes(owner_id, text, **overrides)

    def related(self, request: RelatedNotesRequest) -> RelatedNotesResponsePayload:
        results = self.search.related_notes(
            request.owner_id,
            request.text,
            threshold=request.threshold,
            max_results=request.max_results,
            recency_weight=request.recency_weight,
            exclude_note_id=request.exclude_note_id,
        )
        return RelatedNotesResponsePayload(results=[self._to_hit(result) for result in results])

    def chat(self, request: ChatRequest) -> ChatResponsePayload:
        if self.generator is None:
            raise ProviderError("No generation provider configured")

        results = self.search.related_notes(
            request.owner_id,
            request.message,
            exclude_note_id=request.note_id,
        )
        history = [ChatTurn(role=turn.role, content=turn.content) for turn in request.history]
        context = self.assembler.build_context(
            results,
            page_context=request.page_context,
            prior_turns=history,
        )
        conversation = history + [ChatTurn(role="user", content=request.message)]

        log.info(
            "chat_generating",
            owner_id=request.owner_id,
            related=len(results),
            context_chars=context.total_chars,
        )
        reply = self.generator.generate(context, conversation)

        return ChatResponsePayload(
            reply=reply,
            context=[
                ContextExcerptPayload(
                    source=excerpt.source.value,
                    text=excerpt.text,
                    note_id=excerpt.note_id,
                    chunk_index=excerpt.chunk_index,
                    score=excerpt.score,
                    truncated=excerpt.truncated,
                )
                for excerpt in context.excerpts
            ],
            related=[self._to_hit(result) for result in results],
        )

    def stats(self) -> Dict:
        stats = dict(self.search.index.stats())
        stats["embedding_cache"] = self.search.adapter.cache_info()
        return stats

    @staticmethod
    def _to_hit(result: RankedResult) -> RelatedNoteHitPayload:
        return RelatedNoteHitPayload(
            note_id=result.note_id,
            chunk_index=result.best_chunk_index,
            excerpt=result.excerpt,
            similarity=result.raw_similarity,
            recency=result.recency_score,
            score=result.combined_score,
            updated_at=result.updated_at,
            topics=sorted(result.matched_topics),
        )
