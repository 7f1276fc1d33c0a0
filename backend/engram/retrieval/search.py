"""Semantic search over a collection."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Sequence

from engram.core.errors import MalformedInputError
from engram.core.logging import get_logger
from engram.core.metrics import ORPHANED_HITS, SEARCH_LATENCY
from engram.db.store import MetadataStore
from engram.ingest.embeddings import Embedder
from engram.retrieval.stores.base import VectorHit, VectorStore, validate_collection_name

logger = get_logger(__name__)


@dataclass(slots=True)
class SegmentHit:
    segment_id: str
    document_id: str
    task_id: int | None
    collection: str
    ordinal: int
    text: str
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "segment_id": self.segment_id,
            "document_id": self.document_id,
            "task_id": self.task_id,
            "collection": self.collection,
            "ordinal": self.ordinal,
            "text": self.text,
            "score": self.score,
        }


class QueryService:
    """Embeds a query, searches the vector store and hydrates hits from metadata."""

    def __init__(
        self,
        store: MetadataStore,
        vector_store: VectorStore,
        embedder: Embedder,
        oversample: int = 2,
    ) -> None:
        self.store = store
        self.vector_store = vector_store
        self.embedder = embedder
        self.oversample = max(1, oversample)

    def search(self, collection: str, query: str, limit: int = 10) -> list[SegmentHit]:
        validate_collection_name(collection)
        if limit <= 0:
            raise MalformedInputError("limit must be a positive integer")
        if not query or not query.strip():
            return []
        start = time.perf_counter()
        vector = self.embedder.embed(query)
        hits = self.vector_store.search(collection, vector, limit * self.oversample)
        results = self._hydrate(collection, hits)[:limit]
        SEARCH_LATENCY.observe(time.perf_counter() - start)
        logger.debug(
            "Search finished",
            extra={"ctx_collection": collection, "ctx_hits": len(hits), "ctx_results": len(results)},
        )
        return results

    def _hydrate(self, collection: str, hits: Sequence[VectorHit]) -> list[SegmentHit]:
        if not hits:
            return []
        segments = self.store.segments_by_ids(collection, [hit.external_id for hit in hits])
        results: list[SegmentHit] = []
        seen: set[str] = set()
        for hit in hits:
            if hit.external_id in seen:
                continue
            seen.add(hit.external_id)
            segment = segments.get(hit.external_id)
            if segment is None:
                ORPHANED_HITS.labels(collection=collection).inc()
                logger.warning(
                    "Dropping vector hit without segment metadata",
                    extra={"ctx_collection": collection, "ctx_segment_id": hit.external_id},
                )
                continue
            results.append(
                SegmentHit(
                    segment_id=segment.id,
                    document_id=segment.document_id,
                    task_id=segment.task_id,
                    collection=segment.collection,
                    ordinal=segment.ordinal,
                    text=segment.text,
                    score=hit.score,
                )
            )
        return results


__all__ = ["QueryService", "SegmentHit"]
