"""
Embedding module for Recollect.

Wraps an embedding provider with batching, a content-hash cache, bounded
timeouts and retry with exponential backoff.
"""

from __future__ import annotations

import concurrent.futures
import hashlib
import threading
import time
from collections import OrderedDict
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import structlog

from errors import (
    DimensionMismatchError,
    EmbeddingUnavailableError,
    OperationCancelledError,
    ProviderError,
)
from models import Chunk, EmbeddingVector
from normalizer import Normalizer
from providers import EmbeddingProvider

log = structlog.get_logger(__name__)

_TRANSIENT_ERRORS = (TimeoutError, concurrent.futures.TimeoutError, ConnectionError)
_POLL_INTERVAL = 0.05


def _frozen(values: Sequence[float]) -> np.ndarray:
    array = np.array(values, dtype=np.float64)
    array.setflags(write=False)
    return array


class EmbeddingAdapter:
    """Turns chunks into vectors through an external provider."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        model_id: str,
        dimension: int,
        batch_size: int = 32,
        cache_size: int = 10_000,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        timeout: float = 30.0,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """
        Initialize the adapter.

        Args:
            provider: Provider that performs the actual embedding
            model_id: Embedding model identifier sent with every call
            dimension: Expected vector length for ``model_id``
            batch_size: Maximum number of texts per provider call
            cache_size: Maximum number of cached vectors (0 disables caching)
            max_attempts: Provider attempts per batch, including the first
            backoff_base: Delay before the first retry, doubled each retry
            backoff_max: Upper bound for a single retry delay
            timeout: Seconds to wait for one provider call
            sleep: Delay function used between retries when no cancel event is given
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        if dimension <= 0:
            raise ValueError("dimension must be positive")

        self.provider = provider
        self.model_id = model_id
        self.dimension = dimension
        self.batch_size = batch_size
        self.cache_size = cache_size
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.timeout = timeout
        self._sleep = sleep or time.sleep

        self._cache: "OrderedDict[str, np.ndarray]" = OrderedDict()
        self._cache_lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._abandoned: List[threading.Thread] = []
        self._abandoned_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def configure_model(self, model_id: str, dimension: int) -> None:
        """Switch embedding model. A new model id invalidates the whole cache."""
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        with self._cache_lock:
            if model_id != self.model_id:
                log.info(
                    "embedding_cache_invalidated",
                    old_model=self.model_id,
                    new_model=model_id,
                    dropped=len(self._cache),
                )
                self._cache.clear()
            self.model_id = model_id
            self.dimension = dimension

    def embed(
        self, chunks: Sequence[Chunk], cancel_event: Optional[threading.Event] = None
    ) -> List[EmbeddingVector]:
        """
        Embed chunks, one vector per chunk, in input order.

        Raises:
            EmbeddingUnavailableError: provider kept failing or failed permanently
            DimensionMismatchError: provider returned vectors of the wrong length
            OperationCancelledError: ``cancel_event`` was set
        """
        model_id, dimension = self._model_snapshot()
        vectors = self._embed_texts(
            [chunk.text for chunk in chunks], model_id, dimension, cancel_event
        )
        return [
            EmbeddingVector(
                note_id=chunk.note_id,
                chunk_index=chunk.index,
                vector=vector,
                model_id=model_id,
            )
            for chunk, vector in zip(chunks, vectors)
        ]

    def embed_texts(
        self, texts: Sequence[str], cancel_event: Optional[threading.Event] = None
    ) -> List[np.ndarray]:
        """Embed raw texts with caching and batching; order and count preserved."""
        model_id, dimension = self._model_snapshot()
        return self._embed_texts(texts, model_id, dimension, cancel_event)

    def _embed_texts(
        self,
        texts: Sequence[str],
        model_id: str,
        dimension: int,
        cancel_event: Optional[threading.Event],
    ) -> List[np.ndarray]:
        if not texts:
            return []

        results: List[Optional[np.ndarray]] = [None] * len(texts)
        pending: Dict[str, List[int]] = {}

        for position, text in enumerate(texts):
            cached = self._cache_get(model_id, text)
            if cached is not None:
                results[position] = cached
            else:
                pending.setdefault(text, []).append(position)

        missing = list(pending.keys())
        for start in range(0, len(missing), self.batch_size):
            self._check_cancelled(cancel_event)
            batch = missing[start : start + self.batch_size]
            vectors = self._call_with_retry(batch, model_id, dimension, cancel_event)
            for text, vector in zip(batch, vectors):
                self._cache_put(model_id, text, vector)
                for position in pending[text]:
                    results[position] = vector

        self._check_cancelled(cancel_event)
        return results  # type: ignore[return-value]

    def embed_query(
        self,
        text: str,
        normalizer: Normalizer,
        cancel_event: Optional[threading.Event] = None,
    ) -> np.ndarray:
        """Embed query text as the mean of its chunk vectors."""
        chunks = normalizer.normalize(text, note_id="__query__")
        vectors = self.embed_texts([chunk.text for chunk in chunks], cancel_event=cancel_event)
        if len(vectors) == 1:
            return vectors[0]
        query = np.mean(np.stack(vectors), axis=0)
        query.setflags(write=False)
        return query

    def cache_info(self) -> Dict[str, object]:
        with self._cache_lock:
            return {
                "model_id": self.model_id,
                "size": len(self._cache),
                "max_size": self.cache_size,
                "hits": self._hits,
                "misses": self._misses,
            }

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    def abandoned_calls(self) -> int:
        """Number of timed-out provider calls whose threads are still running."""
        with self._abandoned_lock:
            self._abandoned = [thread for thread in self._abandoned if thread.is_alive()]
            return len(self._abandoned)

    def close(self) -> None:
        """Drop cached vectors. Timed-out calls run on daemon threads and are not joined."""
        abandoned = self.abandoned_calls()
        if abandoned:
            log.warning("embedding_calls_abandoned", count=abandoned)
        self.clear_cache()

    def _model_snapshot(self) -> Tuple[str, int]:
        with self._cache_lock:
            return self.model_id, self.dimension

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------
    def _call_with_retry(
        self,
        texts: List[str],
        model_id: str,
        dimension: int,
        cancel_event: Optional[threading.Event],
    ) -> List[np.ndarray]:
        last_error: Optional[BaseException] = None

        for attempt in range(self.max_attempts):
            try:
                raw = self._call_provider(texts, model_id, cancel_event)
            except ProviderError as exc:
                if not exc.transient:
                    raise EmbeddingUnavailableError(
                        f"Embedding provider failed: {exc.message}",
                        {"model_id": model_id, "batch_size": len(texts)},
                    ) from exc
                last_error = exc
            except _TRANSIENT_ERRORS as exc:
                last_error = exc
            else:
                return self._validate(raw, texts, model_id, dimension)

            if attempt + 1 < self.max_attempts:
                delay = min(self.backoff_base * (2 ** attempt), self.backoff_max)
                log.warning(
                    "embedding_retry",
                    attempt=attempt + 1,
                    max_attempts=self.max_attempts,
                    delay=delay,
                    error=type(last_error).__name__,
                )
                self._wait(delay, cancel_event)

        log.error(
            "embedding_unavailable",
            model_id=model_id,
            attempts=self.max_attempts,
            error=str(last_error),
        )
        raise EmbeddingUnavailableError(
            f"Embedding failed after {self.max_attempts} attempts: {last_error}",
            {"model_id": model_id, "batch_size": len(texts)},
        ) from last_error

    def _call_provider(
        self,
        texts: List[str],
        model_id: str,
        cancel_event: Optional[threading.Event],
    ) -> List[List[float]]:
        """
        Run one provider call on its own daemon thread.

        A call that outlives ``timeout`` is abandoned, not joined.
        """
        future: concurrent.futures.Future = concurrent.futures.Future()
        batch = list(texts)

        def run() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(self.provider.embed_batch(batch, model_id))
            except Exception as exc:
                future.set_exception(exc)

        thread = threading.Thread(target=run, name="embed-call", daemon=True)
        thread.start()

        deadline = time.monotonic() + self.timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._abandon(thread)
                raise TimeoutError(f"Embedding call exceeded {self.timeout}s")
            done, _ = concurrent.futures.wait([future], timeout=min(_POLL_INTERVAL, remaining))
            if done:
                return future.result()
            if cancel_event is not None and cancel_event.is_set():
                self._abandon(thread)
                raise OperationCancelledError("Embedding request cancelled")

    def _abandon(self, thread: threading.Thread) -> None:
        with self._abandoned_lock:
            self._abandoned.append(thread)

    def _validate(
        self, raw: List[List[float]], texts: List[str], model_id: str, dimension: int
    ) -> List[np.ndarray]:
        if len(raw) != len(texts):
            raise EmbeddingUnavailableError(
                f"Provider returned {len(raw)} vectors for {len(texts)} texts",
                {"model_id": model_id},
            )
        vectors = []
        for values in raw:
            if len(values) != dimension:
                raise DimensionMismatchError(
                    f"Provider returned a {len(values)}-dim vector, expected {dimension}",
                    {"model_id": model_id, "expected": dimension, "actual": len(values)},
                )
            vectors.append(_frozen(values))
        return vectors

    def _wait(self, delay: float, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is None:
            self._sleep(delay)
        elif cancel_event.wait(delay):
            raise OperationCancelledError("Embedding request cancelled")

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError("Embedding request cancelled")

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------
    @staticmethod
    def cache_key(model_id: str, text: str) -> str:
        return hashlib.sha256(f"{model_id}\x00{text}".encode("utf-8")).hexdigest()

    def _cache_get(self, model_id: str, text: str) -> Optional[np.ndarray]:
        key = self.cache_key(model_id, text)
        with self._cache_lock:
            vector = self._cache.get(key)
            if vector is None:
                self._misses += 1
                return None
            self._cache.move_to_end(key)
            self._hits += 1
            return vector

    def _cache_put(self, model_id: str, text: str, vector: np.ndarray) -> None:
        if self.cache_size <= 0:
            return
        key = self.cache_key(model_id, text)
        with self._cache_lock:
            if model_id != self.model_id:
                return
            self._cache[key] = vector
            self._cache.move_to_end(key)
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)
