"""Tests for settings loading."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from engram.core.config import Settings, get_settings


def test_yaml_sections_map_to_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ENGRAM_EMBEDDING_DIM")
    monkeypatch.delenv("ENGRAM_VECTOR_URL")
    config = tmp_path / "config.yaml"
    config.write_text(
        """
storage:
  vector_url: qdrant://localhost:6333
  verify_tls: false
embeddings:
  dim: 1536
chunking:
  max_tokens: 128
retry:
  attempts: 5
worker:
  enabled: true
""",
        encoding="utf-8",
    )
    settings = Settings.from_yaml(config)
    assert settings.vector_url == "qdrant://localhost:6333"
    assert settings.vector_verify_tls is False
    assert settings.embedding_dim == 1536
    assert settings.chunk_max_tokens == 128
    assert settings.retry_attempts == 5
    assert settings.run_worker is True


def test_environment_overrides_yaml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = tmp_path / "config.yaml"
    config.write_text("embeddings:\n  dim: 1536\n", encoding="utf-8")
    monkeypatch.setenv("ENGRAM_CONFIG", str(config))
    settings = get_settings()
    assert settings.embedding_dim == 64
    assert settings.embedding_backend == "hashed"
    assert settings.db_path.name == "engram.db"


def test_openai_key_falls_back_to_standard_variable(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    assert Settings.from_yaml().openai_api_key == "sk-test"


def test_invalid_values_are_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(embedding_dim=0)
    with pytest.raises(ValidationError):
        Settings(vector_url="faiss:///tmp/x", embedding_backend="word2vec")
