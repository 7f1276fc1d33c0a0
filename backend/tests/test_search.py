"""Tests for semantic search."""

from __future__ import annotations

import pytest

from engram.core.errors import MalformedInputError
from engram.core.metrics import REGISTRY

DOCUMENTS = {
    "weather": "The sky is blue and the weather is sunny today.",
    "taxes": "Taxes rose in 2023 after the new budget passed.",
    "cooking": "Simmer the tomato sauce with garlic and basil.",
    "football": "The football match ended with a late goal.",
}


def _ingest(engine, collection: str, texts) -> None:
    for text in texts:
        engine.enqueue_document(collection, text)
    while engine.worker.run_once():
        pass


def _orphan_count(collection: str) -> float:
    return REGISTRY.get_sample_value("engram_orphaned_vector_hits_total", {"collection": collection}) or 0.0


def test_search_ranks_relevant_segment_first(engine) -> None:
    _ingest(engine, "notes", DOCUMENTS.values())
    for key, query in [("taxes", "taxes budget"), ("cooking", "tomato garlic sauce"), ("weather", "sunny sky")]:
        hits = engine.search("notes", query, limit=2)
        assert hits[0].text == DOCUMENTS[key]


def test_search_respects_limit_and_orders_scores(engine) -> None:
    _ingest(engine, "notes", DOCUMENTS.values())
    hits = engine.search("notes", "the", limit=2)
    assert len(hits) == 2
    assert hits[0].score >= hits[1].score
    assert len({hit.segment_id for hit in engine.search("notes", "the", limit=10)}) == len(DOCUMENTS)


def test_orphaned_vectors_are_dropped_and_counted(engine) -> None:
    _ingest(engine, "notes", [DOCUMENTS["taxes"]])
    vector = engine.embedder.embed("taxes rose")
    engine.vector_store.upsert("notes", "orphan-id", vector)
    engine.vector_store.flush("notes")

    before = _orphan_count("notes")
    hits = engine.search("notes", "taxes rose", limit=5)
    assert [hit.text for hit in hits] == [DOCUMENTS["taxes"]]
    assert _orphan_count("notes") == before + 1


def test_deleted_document_disappears_from_results(engine) -> None:
    _ingest(engine, "notes", [DOCUMENTS["taxes"], DOCUMENTS["cooking"]])
    hit = engine.search("notes", "taxes", limit=1)[0]
    assert engine.delete_document(hit.document_id) is True
    assert all(item.document_id != hit.document_id for item in engine.search("notes", "taxes", limit=5))
    assert engine.delete_document(hit.document_id) is False


def test_collections_are_case_sensitive(engine) -> None:
    _ingest(engine, "notes", [DOCUMENTS["taxes"]])
    _ingest(engine, "Notes", [DOCUMENTS["cooking"]])
    assert [hit.text for hit in engine.search("notes", "sauce", limit=5)] == [DOCUMENTS["taxes"]]
    assert [hit.text for hit in engine.search("Notes", "sauce", limit=5)] == [DOCUMENTS["cooking"]]


def test_search_edge_cases(engine) -> None:
    assert engine.search("empty", "anything") == []
    _ingest(engine, "notes", [DOCUMENTS["taxes"]])
    assert engine.search("notes", "   ") == []
    with pytest.raises(MalformedInputError):
        engine.search("notes", "taxes", limit=0)
    with pytest.raises(MalformedInputError):
        engine.search("bad/name", "taxes")
