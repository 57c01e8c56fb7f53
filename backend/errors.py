"""Error taxonomy for the Recollect retrieval engine."""

from __future__ import annotations

from typing import Any, Dict, Optional


class RecollectError(Exception):
    """Base error carrying structured details for logging."""

    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class InvalidInputError(RecollectError):
    """Caller supplied text that cannot be normalized or indexed."""


class InvalidQueryError(RecollectError):
    """A match query was rejected before scanning."""


class ProviderError(RecollectError):
    """An external provider (embedding or generation) failed.

    ``transient`` marks failures worth retrying: timeouts, throttling,
    temporary unavailability.
    """

    def __init__(
        self,
        message: str,
        transient: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.transient = transient

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.transient


class EmbeddingUnavailableError(RecollectError):
    """Embedding could not be produced after the retry budget was spent.

    Callers treat this as "skip this note for now".
    """

    retryable = True


class DimensionMismatchError(RecollectError):
    """Vectors of different lengths were about to be mixed."""


class ModelMismatchError(DimensionMismatchError):
    """Vectors from different embedding model versions were about to be mixed."""


class OperationCancelledError(RecollectError):
    """An embedding request was cancelled by its caller."""
