"""Tests for engine wiring."""

from __future__ import annotations

from pathlib import Path

import pytest

from engram.core.config import Settings
from engram.core.errors import ConfigurationError, MalformedInputError
from engram.engine import build_engine
from engram.ingest.embeddings import HashedEmbedder
from engram.models.entities import TaskStatus
from engram.retrieval.stores.faiss_store import FaissStore


def test_dimension_mismatch_fails_at_startup(settings: Settings) -> None:
    with pytest.raises(ConfigurationError):
        build_engine(settings, embedder=HashedEmbedder(dim=32), llm=None)


def test_unknown_vector_backend_fails_at_startup(settings: Settings) -> None:
    settings.vector_url = "milvus://localhost:19530"
    with pytest.raises(ConfigurationError):
        build_engine(settings, llm=None)


def test_openai_without_key_disables_generation(settings: Settings) -> None:
    settings.llm_backend = "openai"
    engine = build_engine(settings)
    try:
        assert engine.llm is None
        assert engine.ask("Anything?").error.error_type == "ConfigurationError"
    finally:
        engine.close()


def test_describe_collection_counts_everything(engine) -> None:
    engine.enqueue_document("docs", "First paragraph.\n\nSecond paragraph.")
    engine.worker.run_once()
    detail = engine.describe_collection("docs")
    assert detail["documents"] == 1
    assert detail["segments"] == detail["vectors"] == 1
    assert engine.describe_collection("missing") is None


def test_engine_survives_restart(settings: Settings) -> None:
    first = build_engine(settings, llm=None)
    task_id = first.enqueue_document("docs", "Persisted across restarts.")
    first.worker.run_once()
    first.close()

    second = build_engine(settings, llm=None)
    try:
        assert second.get_task(task_id).status is TaskStatus.COMPLETED
        assert [hit.text for hit in second.search("docs", "persisted")] == ["Persisted across restarts."]
    finally:
        second.close()


def test_requeue_rejects_negative_age(engine) -> None:
    with pytest.raises(MalformedInputError):
        engine.requeue_stale_tasks(-1)


def test_explicit_vector_store_is_used(settings: Settings, tmp_path: Path) -> None:
    store = FaissStore(tmp_path / "custom", 64)
    engine = build_engine(settings, vector_store=store, llm=None)
    try:
        assert engine.vector_store is store
    finally:
        engine.close()


def test_persisted_collection_with_other_dimension_fails_at_startup(settings: Settings) -> None:
    first = build_engine(settings, llm=None)
    first.enqueue_document("docs", "Indexed with the first embedding size.")
    first.worker.run_once()
    first.close()

    settings.embedding_dim = 128
    with pytest.raises(ConfigurationError, match="docs"):
        build_engine(settings, llm=None)
