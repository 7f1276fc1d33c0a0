"""Task processing: chunk, embed, index and commit a document.

Vectors are written and flushed before the segment rows and the Completed
status are committed together, so a Completed task always has every segment
searchable. When a later step fails, vectors already written for the task are
deleted on a best-effort basis, unless a requeued run of the same task has
already completed with them. Any that survive are dropped at query time as
orphans.
"""

from __future__ import annotations

import time
from typing import Sequence

from engram.core.errors import ConfigurationError, DataIntegrityError
from engram.core.logging import get_logger
from engram.db.store import MetadataStore
from engram.generation import prompts
from engram.generation.llm import CompletionBackend
from engram.ingest.chunker import Chunk, ChunkingConfig, chunk_text
from engram.ingest.embeddings import Embedder
from engram.models.entities import Document, Segment, Task, TaskStatus, TaskType
from engram.retrieval.stores.base import VectorItem, VectorStore
from engram.utils.ids import segment_id
from engram.utils.time import now_ms

logger = get_logger(__name__)


class IngestPipeline:
    """Turn a claimed task into segments and vector entries."""

    def __init__(
        self,
        store: MetadataStore,
        vector_store: VectorStore,
        embedder: Embedder,
        chunking: ChunkingConfig | None = None,
        llm: CompletionBackend | None = None,
        batch_size: int = 64,
    ) -> None:
        self.store = store
        self.vector_store = vector_store
        self.embedder = embedder
        self.chunking = chunking or ChunkingConfig()
        self.llm = llm
        self.batch_size = max(1, batch_size)

    def process(self, task: Task) -> Task:
        """Run a Processing task to completion; errors propagate to the caller."""
        document = self._load_document(task)
        if task.task_type is TaskType.SUMMARIZE:
            return self._summarize(task, document)
        return self._ingest(task, document)

    # Internal helpers -------------------------------------------------

    def _load_document(self, task: Task) -> Document:
        if task.document_id is None:
            raise DataIntegrityError(f"Task {task.id} has no document")
        document = self.store.get_document(task.document_id)
        if document is None:
            raise DataIntegrityError(f"Document {task.document_id} of task {task.id} is missing")
        return document

    def _ingest(self, task: Task, document: Document) -> Task:
        started = time.perf_counter()
        chunks = chunk_text(document.text, self.chunking)
        if not chunks:
            logger.info("Document produced no segments", extra={"ctx_task_id": task.id})
            return self.store.complete(task.id, [])

        segments = self._build_segments(task, document, chunks)
        written: list[str] = []
        try:
            for offset in range(0, len(segments), self.batch_size):
                batch = segments[offset : offset + self.batch_size]
                vectors = self.embedder.embed_batch([segment.text for segment in batch])
                if len(vectors) != len(batch):
                    raise DataIntegrityError(
                        f"Embedder returned {len(vectors)} vectors for {len(batch)} segments"
                    )
                items = [
                    VectorItem(
                        external_id=segment.id,
                        vector=vector,
                        text=segment.text,
                        document_id=segment.document_id,
                        ordinal=segment.ordinal,
                    )
                    for segment, vector in zip(batch, vectors)
                ]
                written.extend(item.external_id for item in items)
                self.vector_store.upsert_many(task.collection, items)
            self.vector_store.flush(task.collection)
            completed = self.store.complete(task.id, segments)
        except Exception:
            if self._completed_elsewhere(task):
                logger.warning(
                    "Task was completed by another run; keeping its vectors",
                    extra={"ctx_task_id": task.id, "ctx_collection": task.collection},
                )
            else:
                self._discard_vectors(task, written)
            raise
        logger.info(
            "Indexed document",
            extra={
                "ctx_task_id": task.id,
                "ctx_collection": task.collection,
                "ctx_segments": len(segments),
                "ctx_seconds": round(time.perf_counter() - started, 3),
            },
        )
        return completed

    def _summarize(self, task: Task, document: Document) -> Task:
        if self.llm is None:
            raise ConfigurationError("Summarize tasks require a completion backend")
        chunks = chunk_text(document.text, self.chunking)
        summaries = [self.llm.complete(prompts.summarize(chunk.text)) for chunk in chunks]
        output = "\n".join(summary for summary in summaries if summary)
        return self.store.complete(task.id, [], output=output)

    @staticmethod
    def _build_segments(task: Task, document: Document, chunks: Sequence[Chunk]) -> list[Segment]:
        now = now_ms()
        return [
            Segment(
                id=segment_id(document.id, chunk.ordinal),
                document_id=document.id,
                task_id=task.id,
                collection=task.collection,
                ordinal=chunk.ordinal,
                text=chunk.text,
                start_char=chunk.start_char,
                end_char=chunk.end_char,
                token_count=chunk.token_count,
                created_at=now,
            )
            for chunk in chunks
        ]

    def _completed_elsewhere(self, task: Task) -> bool:
        # Segment ids are deterministic, so a requeued duplicate run writes the
        # same vector ids the Completed run relies on.
        current = self.store.get_task(task.id)
        return current is not None and current.status is TaskStatus.COMPLETED

    def _discard_vectors(self, task: Task, external_ids: Sequence[str]) -> None:
        if not external_ids:
            return
        for external_id in external_ids:
            try:
                self.vector_store.delete(task.collection, external_id)
            except Exception as exc:
                logger.warning(
                    "Could not remove vector after failed task: %s",
                    exc,
                    extra={"ctx_task_id": task.id, "ctx_segment_id": external_id},
                )
        try:
            self.vector_store.flush(task.collection)
        except Exception as exc:
            logger.warning("Could not flush vector cleanup: %s", exc, extra={"ctx_task_id": task.id})


__all__ = ["IngestPipeline"]
