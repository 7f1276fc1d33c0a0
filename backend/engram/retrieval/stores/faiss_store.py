"""Embedded, file-backed HNSW index built on faiss.

Each collection lives in its own directory under the store root::

    <root>/<collection>/vectors.faiss       faiss IndexIDMap2(IndexHNSWFlat)
    <root>/<collection>/vectors.meta.json   external id map, next id, tombstones

Vectors are L2-normalised and searched by inner product, so scores are cosine
similarities. HNSW graphs cannot drop points, so deletes and re-upserts
tombstone the old internal id; searches over-fetch and filter tombstones, and
``compact`` rebuilds the graph once tombstones pile up.

The store assumes a single writer. Readers in another process see a
consistent snapshot: when the metadata file on disk changes, the collection
is reloaded before the next operation.
"""

from __future__ import annotations

import os
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

import faiss
import numpy as np
import orjson

from engram.core.errors import ConfigurationError, DataIntegrityError
from engram.core.logging import get_logger
from engram.retrieval.stores.base import VectorHit, VectorItem, VectorStore, validate_collection_name

logger = get_logger(__name__)

INDEX_FILE = "vectors.faiss"
META_FILE = "vectors.meta.json"


@dataclass(slots=True)
class _CollectionIndex:
    path: Path
    index: faiss.IndexIDMap2
    id_map: dict[int, str] = field(default_factory=dict)
    reverse: dict[str, int] = field(default_factory=dict)
    tombstones: set[int] = field(default_factory=set)
    next_id: int = 0
    meta_stamp: tuple[int, int, int] | None = None
    dirty: bool = False


class FaissStore(VectorStore):
    """HNSW index per collection persisted to a directory on disk."""

    backend = "faiss"

    def __init__(
        self,
        root: Path,
        dim: int,
        m: int = 16,
        ef_construction: int = 200,
        ef_search: int = 32,
    ) -> None:
        super().__init__(dim)
        self.root = root.expanduser()
        self.root.mkdir(parents=True, exist_ok=True)
        self.m = m
        self.ef_construction = ef_construction
        self.ef_search = ef_search
        self._lock = threading.RLock()
        self._collections: dict[str, _CollectionIndex] = {}

    # Contract -----------------------------------------------------------

    def upsert_many(self, collection: str, items: Sequence[VectorItem]) -> None:
        if not items:
            return
        for item in items:
            self._check_vector(item.vector)
        with self._lock:
            entry = self._get(collection, create=True)
            assert entry is not None
            internal_ids: list[int] = []
            for item in items:
                previous = entry.reverse.pop(item.external_id, None)
                if previous is not None:
                    entry.id_map.pop(previous, None)
                    entry.tombstones.add(previous)
                internal_id = entry.next_id
                entry.next_id += 1
                entry.id_map[internal_id] = item.external_id
                entry.reverse[item.external_id] = internal_id
                internal_ids.append(internal_id)
            matrix = _as_matrix([item.vector for item in items])
            entry.index.add_with_ids(matrix, np.asarray(internal_ids, dtype="int64"))
            entry.dirty = True

    def search(self, collection: str, vector: Sequence[float], k: int) -> list[VectorHit]:
        self._check_vector(vector)
        if k <= 0:
            return []
        with self._lock:
            entry = self._get(collection, create=False)
            if entry is None or entry.index.ntotal == 0:
                return []
            fetch = min(entry.index.ntotal, k + len(entry.tombstones))
            scores, ids = entry.index.search(_as_matrix([vector]), fetch)
            hits: list[VectorHit] = []
            for score, internal_id in zip(scores[0], ids[0]):
                if internal_id < 0 or int(internal_id) in entry.tombstones:
                    continue
                external_id = entry.id_map.get(int(internal_id))
                if external_id is None:
                    raise DataIntegrityError(
                        f"Internal id {internal_id} of collection {collection} has no external id"
                    )
                hits.append(VectorHit(external_id=external_id, score=max(-1.0, min(1.0, float(score)))))
                if len(hits) >= k:
                    break
            return hits

    def delete(self, collection: str, external_id: str) -> None:
        with self._lock:
            entry = self._get(collection, create=False)
            if entry is None:
                return
            internal_id = entry.reverse.pop(external_id, None)
            if internal_id is None:
                return
            entry.id_map.pop(internal_id, None)
            entry.tombstones.add(internal_id)
            entry.dirty = True
            self._save(entry)

    def delete_collection(self, collection: str) -> None:
        validate_collection_name(collection)
        with self._lock:
            self._collections.pop(collection, None)
            path = self.root / collection
            if path.exists():
                shutil.rmtree(path)
                logger.info("Removed vector collection %s", collection)

    def count(self, collection: str) -> int:
        with self._lock:
            entry = self._get(collection, create=False)
            return len(entry.id_map) if entry else 0

    def flush(self, collection: str) -> None:
        with self._lock:
            entry = self._get(collection, create=False)
            if entry is None or not entry.dirty:
                return
            if len(entry.tombstones) > max(64, len(entry.id_map)):
                self._compact(entry)
            self._save(entry)

    def compact(self, collection: str) -> None:
        """Rebuild the graph without tombstoned points."""
        with self._lock:
            entry = self._get(collection, create=False)
            if entry is None or not entry.tombstones:
                return
            self._compact(entry)
            self._save(entry)

    def stored_dimensions(self) -> dict[str, int]:
        dims: dict[str, int] = {}
        for meta_path in sorted(self.root.glob(f"*/{META_FILE}")):
            meta = orjson.loads(meta_path.read_bytes())
            dims[meta_path.parent.name] = int(meta.get("dim", self.dim))
        return dims

    def close(self) -> None:
        with self._lock:
            for entry in self._collections.values():
                if entry.dirty:
                    self._save(entry)

    # Internals ----------------------------------------------------------

    def _get(self, collection: str, create: bool) -> _CollectionIndex | None:
        validate_collection_name(collection)
        path = self.root / collection
        meta_path = path / META_FILE
        entry = self._collections.get(collection)
        on_disk = _stamp(meta_path)
        if entry is not None and (entry.dirty or on_disk == entry.meta_stamp):
            return entry
        if on_disk is not None:
            entry = self._load(path)
        elif entry is None and create:
            logger.info("Initializing vector collection @ %s", path)
            entry = _CollectionIndex(path=path, index=self._new_index())
        elif entry is not None and entry.meta_stamp is not None:
            # Removed on disk by another process.
            entry = _CollectionIndex(path=path, index=self._new_index()) if create else None
        if entry is None:
            self._collections.pop(collection, None)
            return None
        self._collections[collection] = entry
        return entry

    def _new_index(self) -> faiss.IndexIDMap2:
        hnsw = faiss.IndexHNSWFlat(self.dim, self.m, faiss.METRIC_INNER_PRODUCT)
        hnsw.hnsw.efConstruction = self.ef_construction
        hnsw.hnsw.efSearch = self.ef_search
        return faiss.IndexIDMap2(hnsw)

    def _load(self, path: Path) -> _CollectionIndex:
        logger.info("Loading vector collection @ %s", path)
        meta_path = path / META_FILE
        meta = orjson.loads(meta_path.read_bytes())
        if int(meta.get("dim", self.dim)) != self.dim:
            raise ConfigurationError(
                f"Vector collection at {path} has dimension {meta.get('dim')}, expected {self.dim}"
            )
        index = faiss.read_index(str(path / INDEX_FILE))
        faiss.downcast_index(index.index).hnsw.efSearch = self.ef_search
        id_map = {int(key): value for key, value in meta.get("id_map", {}).items()}
        return _CollectionIndex(
            path=path,
            index=index,
            id_map=id_map,
            reverse={value: key for key, value in id_map.items()},
            tombstones={int(item) for item in meta.get("tombstones", [])},
            next_id=int(meta.get("next_id", 0)),
            meta_stamp=_stamp(meta_path),
        )

    def _save(self, entry: _CollectionIndex) -> None:
        entry.path.mkdir(parents=True, exist_ok=True)
        index_tmp = entry.path / f"{INDEX_FILE}.tmp"
        faiss.write_index(entry.index, str(index_tmp))
        os.replace(index_tmp, entry.path / INDEX_FILE)
        payload = {
            "dim": self.dim,
            "next_id": entry.next_id,
            "id_map": {str(key): value for key, value in entry.id_map.items()},
            "tombstones": sorted(entry.tombstones),
        }
        meta_path = entry.path / META_FILE
        meta_tmp = entry.path / f"{META_FILE}.tmp"
        meta_tmp.write_bytes(orjson.dumps(payload))
        os.replace(meta_tmp, meta_path)
        entry.meta_stamp = _stamp(meta_path)
        entry.dirty = False

    def _compact(self, entry: _CollectionIndex) -> None:
        logger.info("Compacting %s (%s tombstones)", entry.path, len(entry.tombstones))
        fresh = self._new_index()
        if entry.id_map:
            live_ids = sorted(entry.id_map)
            matrix = np.vstack([entry.index.reconstruct(internal_id) for internal_id in live_ids]).astype("float32")
            fresh.add_with_ids(matrix, np.asarray(live_ids, dtype="int64"))
        entry.index = fresh
        entry.tombstones.clear()
        entry.dirty = True


def _stamp(path: Path) -> tuple[int, int, int] | None:
    try:
        stat = path.stat()
    except FileNotFoundError:
        return None
    return (stat.st_ino, stat.st_mtime_ns, stat.st_size)


def _as_matrix(vectors: Sequence[Sequence[float]]) -> np.ndarray:
    matrix = np.array(vectors, dtype="float32")
    faiss.normalize_L2(matrix)
    return matrix


__all__ = ["FaissStore", "INDEX_FILE", "META_FILE"]
