"""Retrieval components: vector stores and the query service."""

from .search import QueryService, SegmentHit
from .stores import VectorHit, VectorStore, get_vector_store

__all__ = [
    "QueryService",
    "SegmentHit",
    "VectorHit",
    "VectorStore",
    "get_vector_store",
]
