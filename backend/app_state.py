"""Backend application state wiring the engine together from settings."""

from __future__ import annotations

import threading
from typing import Optional

import structlog

from context_assembler import ContextAssembler
from context_models import WarmupResponsePayload
from embedder import EmbeddingAdapter
from indexer import VectorIndex
from log_config import configure_logging
from normalizer import Normalizer
from providers import (
    EmbeddingProvider,
    GenerationProvider,
    HashEmbeddingProvider,
    OllamaGenerationProvider,
    SentenceTransformerProvider,
)
from ranker import Ranker
from services import NoteService, SearchService
from settings import EngineSettings
from storage import InMemoryNoteStore, NoteStore

log = structlog.get_logger(__name__)


def build_embedding_provider(settings: EngineSettings) -> EmbeddingProvider:
    if settings.embed_provider == "hash":
        return HashEmbeddingProvider(dimension=settings.embedding_dim or 256)
    return SentenceTransformerProvider(allow_download=settings.allow_model_download)


class RecollectAppState:
    """Holds the configured engine and its services."""

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        store: Optional[NoteStore] = None,
        embedding_provider: Optional[EmbeddingProvider] = None,
        generation_provider: Optional[GenerationProvider] = None,
        configure_logs: bool = True,
    ):
        self._lock = threading.RLock()
        self.settings = settings or EngineSettings.from_env()
        if configure_logs:
            configure_logging(self.settings.log_level, json_format=self.settings.log_json)

        self.store = store or InMemoryNoteStore()
        self.embedding_provider = embedding_provider or build_embedding_provider(self.settings)
        self.generation_provider = generation_provider or OllamaGenerationProvider(
            base_url=self.settings.generation_base_url,
            model=self.settings.generation_model,
            timeout=self.settings.generation_timeout_seconds,
        )
        self._notes: Optional[NoteService] = None

    def current(self) -> NoteService:
        """The note service, built on first use (may load the embedding model)."""
        with self._lock:
            if self._notes is None:
                self._notes = self._build()
            return self._notes

    def warmup(self) -> WarmupResponsePayload:
        """Load the embedding model up front so the first request does not pay for it."""
        notes = self.current()
        adapter = notes.search.adapter
        self.embedding_provider.dimension(adapter.model_id)
        return WarmupResponsePayload(
            embedder_model=adapter.model_id,
            embedding_dim=adapter.dimension,
            indexed_notes=notes.search.index.stats()["total_notes"],
        )

    def close(self) -> None:
        with self._lock:
            if self._notes is not None:
                self._notes.search.adapter.close()

    def _build(self) -> NoteService:
        settings = self.settings
        dimension = settings.embedding_dim or self.embedding_provider.dimension(settings.embed_model)

        adapter = EmbeddingAdapter(
            provider=self.embedding_provider,
            model_id=settings.embed_model,
            dimension=dimension,
            batch_size=settings.embed_batch_size,
            cache_size=settings.embed_cache_size,
            max_attempts=settings.embed_max_attempts,
            backoff_base=settings.embed_backoff_base,
            backoff_max=settings.embed_backoff_max,
            timeout=settings.embed_timeout_seconds,
        )
        normalizer = Normalizer(max_tokens=settings.max_chunk_tokens)
        search = SearchService(
            adapter=adapter,
            settings=settings,
            normalizer=normalizer,
            index=VectorIndex(),
            ranker=Ranker(half_life_seconds=settings.recency_half_life_seconds),
        )
        assembler = ContextAssembler(budget_chars=settings.context_budget_chars, normalizer=normalizer)

        log.info(
            "engine_ready",
            embed_model=settings.embed_model,
            embedding_dim=dimension,
            provider=type(self.embedding_provider).__name__,
        )
        return NoteService(
            store=self.store,
            search=search,
            assembler=assembler,
            generator=self.generation_provider,
        )
