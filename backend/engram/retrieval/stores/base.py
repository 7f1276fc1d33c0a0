"""Backend-agnostic vector store contract."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Sequence, TypeVar

from engram.core.errors import BackendError, ConfigurationError, EngramError, MalformedInputError
from engram.core.metrics import BACKEND_LATENCY
from engram.core.retry import RetryPolicy, call_with_backoff
from engram.models.entities import COLLECTION_NAME_RE, validate_collection_name

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class VectorHit:
    external_id: str
    score: float


@dataclass(slots=True, frozen=True)
class VectorItem:
    external_id: str
    vector: Sequence[float]
    text: str | None = None
    document_id: str | None = None
    ordinal: int | None = None


class VectorStore(ABC):
    """Approximate nearest neighbour index partitioned by collection.

    Scores are cosine similarities in ``[-1, 1]``; higher is more similar and
    results are ordered by decreasing score on every backend.
    """

    backend: str = "vector"

    def __init__(self, dim: int) -> None:
        if dim <= 0:
            raise ConfigurationError("Vector dimension must be positive")
        self.dim = dim

    @abstractmethod
    def upsert_many(self, collection: str, items: Sequence[VectorItem]) -> None:
        """Insert or replace vectors keyed by external id."""

    def upsert(self, collection: str, external_id: str, vector: Sequence[float]) -> None:
        self.upsert_many(collection, [VectorItem(external_id=external_id, vector=vector)])

    @abstractmethod
    def search(self, collection: str, vector: Sequence[float], k: int) -> list[VectorHit]:
        """Return up to ``k`` nearest entries of ``collection``; unknown collections yield []."""

    @abstractmethod
    def delete(self, collection: str, external_id: str) -> None:
        """Remove one entry; deleting a missing entry is not an error."""

    @abstractmethod
    def delete_collection(self, collection: str) -> None:
        """Drop every entry of a collection."""

    @abstractmethod
    def count(self, collection: str) -> int:
        """Number of live entries in a collection."""

    def stored_dimensions(self) -> dict[str, int]:
        """Dimension of every collection the backend already holds, keyed by its stored name."""
        return {}

    def check_dimension(self) -> None:
        """Refuse to start against collections built with another embedding size."""
        mismatched = {name: dim for name, dim in self.stored_dimensions().items() if dim != self.dim}
        if mismatched:
            raise ConfigurationError(
                f"{self.backend} holds collections with dimension other than {self.dim}: {mismatched}"
            )

    def flush(self, collection: str) -> None:
        """Make writes durable and visible to searches; no-op for strongly consistent backends."""

    def close(self) -> None:
        """Release client resources."""

    def _check_vector(self, vector: Sequence[float]) -> None:
        if len(vector) != self.dim:
            raise MalformedInputError(f"Vector dimension mismatch: expected {self.dim}, got {len(vector)}")


class RemoteVectorStore(VectorStore):
    """Vector store reached over the network; calls go through bounded backoff."""

    def __init__(self, dim: int, retry: RetryPolicy | None = None) -> None:
        super().__init__(dim)
        self.retry = retry or RetryPolicy()

    def _is_retryable(self, exc: BaseException) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    def _request(self, operation: str, fn: Callable[[], T]) -> T:
        """Run a client call, retrying transient failures and wrapping the rest as BackendError."""

        def attempt() -> T:
            try:
                return fn()
            except EngramError:
                raise
            except Exception as exc:
                if self._is_retryable(exc):
                    raise
                raise BackendError(f"{self.backend} {operation} failed: {exc}") from exc

        start = time.perf_counter()
        try:
            return call_with_backoff(
                attempt,
                policy=self.retry,
                is_retryable=self._is_retryable,
                operation=f"{self.backend}.{operation}",
            )
        finally:
            BACKEND_LATENCY.labels(backend=self.backend, operation=operation).observe(time.perf_counter() - start)


__all__ = [
    "VectorHit",
    "VectorItem",
    "VectorStore",
    "RemoteVectorStore",
    "validate_collection_name",
    "COLLECTION_NAME_RE",
]
