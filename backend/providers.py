"""
Provider interfaces and implementations for Recollect.

Embedding providers turn texts into vectors; generation providers turn an
assembled context into a reply. Both report failures as ``ProviderError``.
"""

from __future__ import annotations

import hashlib
import os
import re
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Sequence

import numpy as np
import requests
import structlog

from errors import ProviderError
from models import ChatTurn, ContextPayload

log = structlog.get_logger(__name__)

_WORD_RE = re.compile(r"\w+", re.UNICODE)


def _resolve_hf_snapshot(model_name_or_path: str) -> str:
    """Resolve a HF model id to a local snapshot path (no network).

    If the model is not present locally, this raises.
    """
    name = (model_name_or_path or "").strip()
    if not name:
        raise ValueError("Model name is empty.")
    if os.path.exists(name):
        return name
    from huggingface_hub import snapshot_download

    try:
        return snapshot_download(repo_id=name, local_files_only=True)
    except Exception as exc:
        raise RuntimeError(
            f"Model '{name}' is not available in the local HF cache. "
            "Download it (with network access) before running."
        ) from exc


class EmbeddingProvider(ABC):
    """Text -> fixed-length vectors under a named model."""

    @abstractmethod
    def embed_batch(self, texts: Sequence[str], model_id: str) -> List[List[float]]:
        """Embed texts, one vector per text, in order."""

    @abstractmethod
    def dimension(self, model_id: str) -> int:
        """Vector length produced for ``model_id``."""


class SentenceTransformerProvider(EmbeddingProvider):
    """Local sentence-transformers models, loaded lazily per model id."""

    def __init__(self, allow_download: bool = True, device: str | None = None):
        self.allow_download = allow_download
        self.device = device
        self._models: Dict[str, object] = {}
        self._dims: Dict[str, int] = {}
        self._lock = threading.Lock()

    def load_model(self, model_id: str):
        with self._lock:
            model = self._models.get(model_id)
            if model is not None:
                return model

            from sentence_transformers import SentenceTransformer

            log.info("embedding_model_loading", model_id=model_id)
            try:
                source = model_id if self.allow_download else _resolve_hf_snapshot(model_id)
                model = SentenceTransformer(source, device=self.device)
                sample = model.encode(["test"], convert_to_numpy=True)
            except Exception as exc:
                raise ProviderError(
                    f"Failed to load sentence-transformers model '{model_id}': {exc}",
                    transient=False,
                    details={"model_id": model_id},
                ) from exc

            self._models[model_id] = model
            self._dims[model_id] = int(sample.shape[1])
            log.info("embedding_model_loaded", model_id=model_id, dimension=self._dims[model_id])
            return model

    def embed_batch(self, texts: Sequence[str], model_id: str) -> List[List[float]]:
        model = self.load_model(model_id)
        if not texts:
            return []
        try:
            embeddings = model.encode(list(texts), convert_to_numpy=True)
        except (MemoryError, RuntimeError) as exc:
            raise ProviderError(f"Batch embedding failed: {exc}", transient=True) from exc
        return [row.tolist() for row in embeddings]

    def dimension(self, model_id: str) -> int:
        self.load_model(model_id)
        return self._dims[model_id]


class HashEmbeddingProvider(EmbeddingProvider):
    """Deterministic feature-hashing embeddings.

    Each lowercased word token is hashed into a signed bucket, so texts that
    share words point in similar directions. Needs no model download; useful
    offline and in tests. Text without word tokens maps to the zero vector.
    """

    def __init__(self, dimension: int = 256):
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self._dimension = dimension

    def embed_batch(self, texts: Sequence[str], model_id: str) -> List[List[float]]:
        return [self._embed_one(text, model_id) for text in texts]

    def dimension(self, model_id: str) -> int:
        return self._dimension

    def _embed_one(self, text: str, model_id: str) -> List[float]:
        vector = np.zeros(self._dimension, dtype=np.float64)
        for token in _WORD_RE.findall(text.lower()):
            digest = hashlib.sha256(f"{model_id}:{token}".encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:8], "big") % self._dimension
            sign = 1.0 if digest[8] & 1 else -1.0
            vector[bucket] += sign
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector /= norm
        return vector.tolist()


class GenerationProvider(ABC):
    """Assembled context + conversation -> reply text."""

    @abstractmethod
    def generate(self, context: ContextPayload, conversation: Sequence[ChatTurn]) -> str:
        """Produce a reply, raising ProviderError on failure."""


class OllamaGenerationProvider(GenerationProvider):
    """Chat completion against an Ollama-compatible ``/api/chat`` endpoint."""

    def __init__(self, base_url: str, model: str, timeout: float = 60.0, session: requests.Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.session = session or requests.Session()

    def build_messages(self, context: ContextPayload, conversation: Sequence[ChatTurn]) -> List[Dict[str, str]]:
        messages = []
        rendered = context.render()
        if rendered:
            messages.append({"role": "system", "content": rendered})
        messages.extend({"role": turn.role, "content": turn.content} for turn in conversation)
        return messages

    def generate(self, context: ContextPayload, conversation: Sequence[ChatTurn]) -> str:
        payload = {
            "model": self.model,
            "messages": self.build_messages(context, conversation),
            "stream": False,
        }
        url = f"{self.base_url}/api/chat"
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise ProviderError(f"Generation request failed: {exc}", transient=True) from exc
        except requests.RequestException as exc:
            raise ProviderError(f"Generation request failed: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderError(
                f"Generation provider unavailable (HTTP {response.status_code})",
                transient=True,
                details={"status": response.status_code},
            )
        if response.status_code >= 400:
            raise ProviderError(
                f"Generation request rejected (HTTP {response.status_code})",
                details={"status": response.status_code},
            )

        try:
            content = response.json()["message"]["content"]
        except (ValueError, KeyError, TypeError) as exc:
            raise ProviderError(f"Malformed generation response: {exc}") from exc
        return content
