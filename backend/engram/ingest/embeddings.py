"""Embedding backends.

Every backend exposes a fixed dimensionality and turns text into vectors with
``embed``/``embed_batch``. The backend is chosen once from settings by
``build_embedder``.
"""

from __future__ import annotations

import hashlib
import math
import re
import time
from typing import Any, Sequence

from engram.core.config import Settings
from engram.core.errors import BackendError, ConfigurationError, MalformedInputError
from engram.core.logging import get_logger
from engram.core.metrics import BACKEND_LATENCY
from engram.core.retry import RetryPolicy, call_with_backoff

logger = get_logger(__name__)

_TOKEN_RE = re.compile(r"\w+")


class Embedder:
    """Common embedder interface."""

    name: str = "embedder"

    @property
    def dim(self) -> int:  # pragma: no cover - interface
        raise NotImplementedError

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:  # pragma: no cover - interface
        raise NotImplementedError

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def check_dimension(self) -> None:
        """Confirm the backend produces vectors of ``dim`` entries."""


class HashedEmbedder(Embedder):
    """Lightweight hashed bag-of-words embedder with deterministic output."""

    name = "hashed"

    def __init__(self, dim: int = 384) -> None:
        self._dim = dim

    @property
    def dim(self) -> int:
        return self._dim

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for text in texts:
            vector = [0.0] * self._dim
            for token in _tokenize(text):
                vector[_hash_token(token, self._dim)] += 1.0
            _normalize(vector)
            vectors.append(vector)
        return vectors


class SentenceTransformerEmbedder(Embedder):
    """Local inference with a sentence-transformers model loaded at startup."""

    name = "local"

    def __init__(self, model_name: str, device: str | None = None) -> None:
        from sentence_transformers import SentenceTransformer

        self.model_name = model_name
        logger.info("Loading embedding model %s", model_name)
        try:
            self._model = SentenceTransformer(model_name, device=device)
        except Exception as exc:
            raise ConfigurationError(f"Unable to load embedding model '{model_name}': {exc}") from exc
        dim = self._model.get_sentence_embedding_dimension()
        if not dim:
            raise ConfigurationError(f"Embedding model '{model_name}' does not report a dimension")
        self._dim = int(dim)

    @property
    def dim(self) -> int:
        return self._dim

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        start = time.perf_counter()
        vectors = self._model.encode(
            list(texts),
            batch_size=16,
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        BACKEND_LATENCY.labels(backend=self.name, operation="embed").observe(time.perf_counter() - start)
        return [vector.tolist() for vector in vectors]


class OpenAIEmbedder(Embedder):
    """Hosted embedding API with bounded retries on transient failures."""

    name = "openai"

    def __init__(
        self,
        model_name: str,
        dim: int,
        api_key: str | None,
        retry: RetryPolicy,
        timeout: float = 30.0,
        batch_size: int = 100,
        client: Any | None = None,
    ) -> None:
        if client is None:
            if not api_key:
                raise ConfigurationError("OpenAI embeddings require an API key")
            from openai import OpenAI

            client = OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self.client = client
        self.model_name = model_name.removeprefix("openai/")
        self._dim = dim
        self.retry = retry
        self.batch_size = batch_size

    @property
    def dim(self) -> int:
        return self._dim

    def check_dimension(self) -> None:
        # _embed_slice raises ConfigurationError on a size mismatch
        self._embed_slice(["dimension check"])

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for offset in range(0, len(texts), self.batch_size):
            vectors.extend(self._embed_slice(list(texts[offset : offset + self.batch_size])))
        return vectors

    def _embed_slice(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        def request() -> Any:
            try:
                return self.client.embeddings.create(model=self.model_name, input=texts)
            except Exception as exc:
                raise translate_openai_error(exc) from exc

        start = time.perf_counter()
        response = call_with_backoff(
            request,
            policy=self.retry,
            is_retryable=is_retryable_openai_error,
            operation="openai.embeddings",
        )
        BACKEND_LATENCY.labels(backend=self.name, operation="embed").observe(time.perf_counter() - start)
        vectors = [list(item.embedding) for item in response.data]
        for idx, vector in enumerate(vectors):
            if len(vector) != self._dim:
                raise ConfigurationError(
                    f"Expected {self._dim} dimensions from {self.model_name}, got {len(vector)} for text {idx}"
                )
        return vectors


def is_retryable_openai_error(exc: BaseException) -> bool:
    """Timeouts, connection problems, rate limits and 5xx are worth retrying."""
    import openai

    return isinstance(
        exc,
        (
            openai.APITimeoutError,
            openai.APIConnectionError,
            openai.RateLimitError,
            openai.InternalServerError,
        ),
    )


def translate_openai_error(exc: Exception) -> Exception:
    """Map non-retryable OpenAI errors into the engram taxonomy; retryable ones pass through."""
    import openai

    if is_retryable_openai_error(exc):
        return exc
    if isinstance(exc, openai.BadRequestError):
        if getattr(exc, "code", None) == "context_length_exceeded":
            return MalformedInputError(f"Context length exceeded: {exc}")
        return MalformedInputError(f"Rejected request: {exc}")
    if isinstance(exc, openai.APIStatusError):
        return BackendError(f"OpenAI request failed ({exc.status_code}): {exc}")
    return exc


def build_embedder(settings: Settings) -> Embedder:
    """Resolve the configured embedding backend."""
    if settings.embedding_backend == "hashed":
        return HashedEmbedder(dim=settings.embedding_dim)
    if settings.embedding_backend == "local":
        return SentenceTransformerEmbedder(settings.embedding_model)
    if settings.embedding_backend == "openai":
        return OpenAIEmbedder(
            model_name=settings.embedding_model,
            dim=settings.embedding_dim,
            api_key=settings.openai_api_key,
            retry=RetryPolicy(
                attempts=settings.retry_attempts,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
            ),
            timeout=settings.request_timeout,
        )
    raise ConfigurationError(f"Unknown embedding backend: {settings.embedding_backend}")


def _tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


def _hash_token(token: str, dim: int) -> int:
    digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
    value = int.from_bytes(digest, "big")
    return value % dim


def _normalize(vector: list[float]) -> None:
    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0:
        return
    inv = 1.0 / norm
    for idx, value in enumerate(vector):
        vector[idx] = value * inv


__all__ = [
    "Embedder",
    "HashedEmbedder",
    "SentenceTransformerEmbedder",
    "OpenAIEmbedder",
    "build_embedder",
    "is_retryable_openai_error",
    "translate_openai_error",
]
