"""Startup-resolved service graph and the core operations built on it.

``build_engine`` selects every backend once from settings. The resulting
``Engine`` is an explicit object handed to the HTTP layer, the CLI and the
tests; nothing below it is a module-level singleton.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from engram.core.config import Settings
from engram.core.errors import ConfigurationError, MalformedInputError
from engram.core.logging import get_logger
from engram.core.retry import RetryPolicy
from engram.db.store import MetadataStore
from engram.generation.answer import AnswerService, AskResult
from engram.generation.llm import CompletionBackend, build_llm
from engram.ingest.chunker import ChunkingConfig, document_text
from engram.ingest.embeddings import Embedder, build_embedder
from engram.ingest.fetch import fetch_url, pdf_to_text
from engram.ingest.pipeline import IngestPipeline
from engram.models.entities import Collection, Task, TaskStatus, TaskType, validate_collection_name
from engram.retrieval.search import QueryService, SegmentHit
from engram.retrieval.stores import VectorStore, get_vector_store
from engram.worker.loop import Worker

logger = get_logger(__name__)

_UNSET: Any = object()


@dataclass(slots=True)
class Engine:
    settings: Settings
    store: MetadataStore
    embedder: Embedder
    vector_store: VectorStore
    llm: CompletionBackend | None
    pipeline: IngestPipeline
    query_service: QueryService
    answer_service: AnswerService
    worker: Worker

    def enqueue_document(
        self,
        collection: str,
        content: str | Mapping[str, Any],
        task_type: TaskType | str = TaskType.INGEST,
    ) -> int:
        """Persist a document and queue it; returns the task id without waiting."""
        validate_collection_name(collection)
        try:
            task_type = TaskType(task_type)
        except ValueError as exc:
            raise MalformedInputError(f"Unknown task type: {task_type!r}") from exc
        if task_type is TaskType.SUMMARIZE and self.llm is None:
            raise MalformedInputError("Summarize tasks need a configured completion backend")
        if not isinstance(content, (str, Mapping)):
            raise MalformedInputError("Document content must be a string or an object")
        task = self.store.enqueue(collection, content, document_text(content), task_type)
        return task.id

    def get_task(self, task_id: int) -> Task | None:
        return self.store.get_task(task_id)

    def list_tasks(
        self,
        collection: str | None = None,
        status: TaskStatus | str | None = None,
        limit: int = 100,
    ) -> list[Task]:
        if status is not None:
            try:
                status = TaskStatus(status)
            except ValueError as exc:
                raise MalformedInputError(f"Unknown task status: {status!r}") from exc
        return self.store.list_tasks(collection=collection, status=status, limit=limit)

    def search(self, collection: str, query: str, limit: int = 10) -> list[SegmentHit]:
        return self.query_service.search(collection, query, limit)

    def ask(
        self,
        query: str,
        context: str | None = None,
        collection: str | None = None,
        schema: Mapping[str, Any] | str | None = None,
        limit: int = 5,
        quick: bool = False,
    ) -> AskResult:
        return self.answer_service.ask(
            query,
            context=context,
            collection=collection,
            schema=schema,
            limit=limit,
            quick=quick,
        )

    def delete_document(self, document_id: str) -> bool:
        """Remove a document, its segments and their vectors."""
        removed = self.store.delete_document(document_id)
        if removed is None:
            return False
        collection, segment_ids = removed
        for external_id in segment_ids:
            self.vector_store.delete(collection, external_id)
        self.vector_store.flush(collection)
        return True

    def delete_collection(self, name: str) -> bool:
        validate_collection_name(name)
        self.vector_store.delete_collection(name)
        return self.store.delete_collection(name)

    def list_collections(self) -> list[Collection]:
        return self.store.list_collections()

    def describe_collection(self, name: str) -> dict[str, Any] | None:
        collection = self.store.get_collection(name)
        if collection is None:
            return None
        return {
            "name": collection.name,
            "created_at": collection.created_at,
            "documents": self.store.count_documents(name),
            "segments": self.store.count_segments(name),
            "vectors": self.vector_store.count(name),
        }

    def fetch_url(self, url: str) -> str:
        """Download a page; the text is returned, not queued."""
        return fetch_url(
            url,
            retry=RetryPolicy(
                attempts=self.settings.retry_attempts,
                base_delay=self.settings.retry_base_delay,
                max_delay=self.settings.retry_max_delay,
            ),
            timeout=self.settings.request_timeout,
        )

    def parse_pdf(self, data: bytes) -> str:
        return pdf_to_text(data)

    def requeue_stale_tasks(self, older_than_seconds: float) -> list[int]:
        if older_than_seconds < 0:
            raise MalformedInputError("older_than_seconds must not be negative")
        return self.store.requeue_stale(older_than_seconds)

    def close(self) -> None:
        self.worker.stop()
        self.vector_store.close()
        if self.llm is not None:
            self.llm.close()
        self.store.close()


def build_engine(
    settings: Settings,
    *,
    embedder: Embedder | None = None,
    vector_store: VectorStore | None = None,
    llm: CompletionBackend | None = _UNSET,
) -> Engine:
    """Resolve every backend from settings; explicit arguments override the lookup."""
    embedder = embedder or build_embedder(settings)
    vector_store = vector_store or get_vector_store(settings.vector_url, settings.embedding_dim, settings)
    embedder.check_dimension()
    if embedder.dim != vector_store.dim:
        raise ConfigurationError(
            f"Embedding dimension {embedder.dim} does not match vector store dimension {vector_store.dim}"
        )
    vector_store.check_dimension()
    if llm is _UNSET:
        llm = build_llm(settings)

    store = MetadataStore.open(settings.db_path)
    chunking = ChunkingConfig(
        max_tokens=settings.chunk_max_tokens,
        min_tokens=settings.chunk_min_tokens,
        overlap_tokens=settings.chunk_overlap_tokens,
    )
    pipeline = IngestPipeline(store, vector_store, embedder, chunking=chunking, llm=llm)
    query_service = QueryService(store, vector_store, embedder, oversample=settings.search_oversample)
    answer_service = AnswerService(llm, query_service)
    worker = Worker(
        store,
        pipeline,
        poll_interval=settings.worker_poll_interval,
        max_active=settings.worker_max_active,
    )
    logger.info(
        "Engine ready",
        extra={
            "ctx_embedder": embedder.name,
            "ctx_vector_store": vector_store.backend,
            "ctx_llm": llm.name if llm is not None else None,
        },
    )
    return Engine(
        settings=settings,
        store=store,
        embedder=embedder,
        vector_store=vector_store,
        llm=llm,
        pipeline=pipeline,
        query_service=query_service,
        answer_service=answer_service,
        worker=worker,
    )


__all__ = ["Engine", "build_engine"]
