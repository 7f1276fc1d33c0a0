"""Qdrant backend.

One Qdrant collection (``engram_<collection>``) per engram collection, cosine
distance. Upserts wait for the write to be applied, so searches see them
immediately and ``flush`` has nothing to do.
"""

from __future__ import annotations

from typing import Any, Sequence

from engram.core.errors import ConfigurationError
from engram.core.logging import get_logger
from engram.core.retry import RetryPolicy
from engram.retrieval.stores.base import RemoteVectorStore, VectorHit, VectorItem, validate_collection_name

logger = get_logger(__name__)

COLLECTION_PREFIX = "engram_"


class QdrantStore(RemoteVectorStore):
    backend = "qdrant"

    def __init__(
        self,
        dim: int,
        location: str | None = None,
        host: str | None = None,
        port: int | None = None,
        https: bool = False,
        api_key: str | None = None,
        timeout: float = 30.0,
        retry: RetryPolicy | None = None,
        client: Any | None = None,
    ) -> None:
        super().__init__(dim, retry)
        if client is None:
            from qdrant_client import QdrantClient

            if location is not None:
                client = QdrantClient(location=location)
            else:
                client = QdrantClient(
                    host=host,
                    port=port or 6333,
                    https=https,
                    api_key=api_key,
                    timeout=int(timeout),
                )
        self.client = client
        self._known: set[str] = set()

    @staticmethod
    def collection_name(collection: str) -> str:
        return f"{COLLECTION_PREFIX}{validate_collection_name(collection)}"

    def upsert_many(self, collection: str, items: Sequence[VectorItem]) -> None:
        if not items:
            return
        from qdrant_client import models

        for item in items:
            self._check_vector(item.vector)
        name = self._ensure_collection(collection)
        points = [
            models.PointStruct(
                id=item.external_id,
                vector=[float(value) for value in item.vector],
                payload={"text": item.text, "document_id": item.document_id, "ordinal": item.ordinal},
            )
            for item in items
        ]
        self._request("upsert", lambda: self.client.upsert(collection_name=name, points=points, wait=True))

    def search(self, collection: str, vector: Sequence[float], k: int) -> list[VectorHit]:
        self._check_vector(vector)
        if k <= 0 or not self._exists(collection):
            return []
        name = self.collection_name(collection)
        query = [float(value) for value in vector]
        response = self._request(
            "search",
            lambda: self.client.query_points(collection_name=name, query=query, limit=k, with_payload=False),
        )
        hits = [
            VectorHit(external_id=str(point.id), score=max(-1.0, min(1.0, float(point.score))))
            for point in response.points
        ]
        hits.sort(key=lambda item: item.score, reverse=True)
        return hits

    def delete(self, collection: str, external_id: str) -> None:
        if not self._exists(collection):
            return
        from qdrant_client import models

        name = self.collection_name(collection)
        selector = models.PointIdsList(points=[external_id])
        self._request(
            "delete",
            lambda: self.client.delete(collection_name=name, points_selector=selector, wait=True),
        )

    def delete_collection(self, collection: str) -> None:
        name = self.collection_name(collection)
        if self._exists(collection):
            self._request("delete_collection", lambda: self.client.delete_collection(collection_name=name))
            logger.info("Deleted Qdrant collection %s", name)
        self._known.discard(name)

    def count(self, collection: str) -> int:
        if not self._exists(collection):
            return 0
        name = self.collection_name(collection)
        response = self._request("count", lambda: self.client.count(collection_name=name, exact=True))
        return int(response.count)

    def stored_dimensions(self) -> dict[str, int]:
        response = self._request("list_collections", self.client.get_collections)
        dims: dict[str, int] = {}
        for description in response.collections:
            name = description.name
            if not name.startswith(COLLECTION_PREFIX):
                continue
            info = self._request("get_collection", lambda: self.client.get_collection(collection_name=name))
            size = getattr(info.config.params.vectors, "size", None)
            if size is None:
                raise ConfigurationError(f"Qdrant collection {name} does not use a single unnamed vector")
            dims[name] = int(size)
        return dims

    def close(self) -> None:
        self.client.close()

    def _exists(self, collection: str) -> bool:
        name = self.collection_name(collection)
        if name in self._known:
            return True
        exists = bool(self._request("exists", lambda: self.client.collection_exists(collection_name=name)))
        if exists:
            self._known.add(name)
        return exists

    def _ensure_collection(self, collection: str) -> str:
        name = self.collection_name(collection)
        if self._exists(collection):
            return name
        from qdrant_client import models

        logger.info("Creating Qdrant collection %s", name)
        self._request(
            "create_collection",
            lambda: self.client.create_collection(
                collection_name=name,
                vectors_config=models.VectorParams(size=self.dim, distance=models.Distance.COSINE),
            ),
        )
        self._known.add(name)
        return name

    def _is_retryable(self, exc: BaseException) -> bool:
        from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

        if isinstance(exc, ResponseHandlingException):
            return True
        return isinstance(exc, UnexpectedResponse) and (exc.status_code == 429 or exc.status_code >= 500)


__all__ = ["QdrantStore", "COLLECTION_PREFIX"]
