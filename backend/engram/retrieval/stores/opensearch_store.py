"""OpenSearch k-NN backend.

Each collection maps to one index named ``engram-<collection>`` (lower-cased,
with a short hash suffix when the name has capitals). Documents carry the
vector next to the segment text so the index can also serve keyword
filtering. Writes become visible after a refresh, which ``flush`` issues
explicitly.
"""

from __future__ import annotations

from typing import Any, Sequence

from engram.core.errors import BackendError
from engram.core.logging import get_logger
from engram.core.retry import RetryPolicy
from engram.retrieval.stores.base import RemoteVectorStore, VectorHit, VectorItem, validate_collection_name
from engram.utils.hashing import sha256_text

logger = get_logger(__name__)

INDEX_PREFIX = "engram-"


class OpenSearchStore(RemoteVectorStore):
    backend = "opensearch"

    def __init__(
        self,
        hosts: list[dict[str, Any]] | None,
        dim: int,
        http_auth: tuple[str, str] | None = None,
        use_ssl: bool = True,
        verify_certs: bool = True,
        timeout: float = 30.0,
        retry: RetryPolicy | None = None,
        client: Any | None = None,
    ) -> None:
        super().__init__(dim, retry)
        if client is None:
            from opensearchpy import OpenSearch

            client = OpenSearch(
                hosts=hosts,
                http_auth=http_auth,
                use_ssl=use_ssl,
                verify_certs=verify_certs,
                ssl_show_warn=verify_certs,
                timeout=timeout,
            )
        self.client = client
        self._known: set[str] = set()

    @staticmethod
    def index_name(collection: str) -> str:
        name = validate_collection_name(collection)
        if name == name.lower():
            return f"{INDEX_PREFIX}{name}"
        # Index names are lower-case only; keep case-distinct collections apart.
        return f"{INDEX_PREFIX}{name.lower()}-{sha256_text(name)[:8]}"

    def upsert_many(self, collection: str, items: Sequence[VectorItem]) -> None:
        if not items:
            return
        for item in items:
            self._check_vector(item.vector)
        index = self._ensure_index(collection)
        body: list[dict[str, Any]] = []
        for item in items:
            body.append({"index": {"_index": index, "_id": item.external_id}})
            body.append(
                {
                    "vector": [float(value) for value in item.vector],
                    "text": item.text,
                    "document_id": item.document_id,
                    "ordinal": item.ordinal,
                }
            )
        response = self._request("bulk", lambda: self.client.bulk(body=body))
        if response.get("errors"):
            failures = [
                entry.get("index", {}).get("error")
                for entry in response.get("items", [])
                if entry.get("index", {}).get("error")
            ]
            raise BackendError(f"OpenSearch rejected {len(failures)} of {len(items)} vectors: {failures[:1]}")

    def search(
        self,
        collection: str,
        vector: Sequence[float],
        k: int,
        keyword: str | None = None,
    ) -> list[VectorHit]:
        self._check_vector(vector)
        if k <= 0 or not self._exists(collection):
            return []
        knn = {"knn": {"vector": {"vector": [float(value) for value in vector], "k": k}}}
        query: dict[str, Any] = knn
        if keyword:
            query = {"bool": {"must": [knn], "filter": [{"match": {"text": keyword}}]}}
        body = {"size": k, "query": query, "_source": False}
        index = self.index_name(collection)
        response = self._request("search", lambda: self.client.search(index=index, body=body))
        hits: list[VectorHit] = []
        for hit in response.get("hits", {}).get("hits", []):
            # cosinesimil scores are (1 + cos) / 2
            score = 2.0 * float(hit["_score"]) - 1.0
            hits.append(VectorHit(external_id=str(hit["_id"]), score=max(-1.0, min(1.0, score))))
        hits.sort(key=lambda item: item.score, reverse=True)
        return hits[:k]

    def delete(self, collection: str, external_id: str) -> None:
        if not self._exists(collection):
            return
        from opensearchpy.exceptions import NotFoundError

        index = self.index_name(collection)

        def remove() -> None:
            try:
                self.client.delete(index=index, id=external_id)
            except NotFoundError:
                logger.debug("Vector %s already absent from %s", external_id, index)

        self._request("delete", remove)

    def delete_collection(self, collection: str) -> None:
        index = self.index_name(collection)
        if self._exists(collection):
            self._request("delete_index", lambda: self.client.indices.delete(index=index))
            logger.info("Deleted OpenSearch index %s", index)
        self._known.discard(index)

    def count(self, collection: str) -> int:
        if not self._exists(collection):
            return 0
        index = self.index_name(collection)
        response = self._request("count", lambda: self.client.count(index=index))
        return int(response.get("count", 0))

    def flush(self, collection: str) -> None:
        if not self._exists(collection):
            return
        index = self.index_name(collection)
        self._request("refresh", lambda: self.client.indices.refresh(index=index))

    def stored_dimensions(self) -> dict[str, int]:
        mappings = self._request(
            "get_mapping", lambda: self.client.indices.get_mapping(index=f"{INDEX_PREFIX}*")
        )
        dims: dict[str, int] = {}
        for index, body in mappings.items():
            vector = body.get("mappings", {}).get("properties", {}).get("vector", {})
            if "dimension" in vector:
                dims[index] = int(vector["dimension"])
        return dims

    def close(self) -> None:
        close = getattr(self.client, "close", None)
        if callable(close):
            close()

    def _exists(self, collection: str) -> bool:
        index = self.index_name(collection)
        if index in self._known:
            return True
        exists = bool(self._request("exists", lambda: self.client.indices.exists(index=index)))
        if exists:
            self._known.add(index)
        return exists

    def _ensure_index(self, collection: str) -> str:
        index = self.index_name(collection)
        if self._exists(collection):
            return index
        body = {
            "settings": {"index": {"knn": True}},
            "mappings": {
                "properties": {
                    "vector": {
                        "type": "knn_vector",
                        "dimension": self.dim,
                        "method": {"name": "hnsw", "space_type": "cosinesimil", "engine": "lucene"},
                    },
                    "text": {"type": "text"},
                    "document_id": {"type": "keyword"},
                    "ordinal": {"type": "integer"},
                }
            },
        }
        logger.info("Creating OpenSearch index %s", index)
        self._request("create_index", lambda: self.client.indices.create(index=index, body=body))
        self._known.add(index)
        return index

    def _is_retryable(self, exc: BaseException) -> bool:
        from opensearchpy.exceptions import ConnectionError as OpenSearchConnectionError
        from opensearchpy.exceptions import TransportError

        if isinstance(exc, OpenSearchConnectionError):
            return True
        if not isinstance(exc, TransportError):
            return False
        # status_code is "N/A" when no response arrived
        status = exc.status_code
        return isinstance(status, int) and (status == 429 or status >= 500)


__all__ = ["OpenSearchStore", "INDEX_PREFIX"]
