"""Application configuration handling."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Mapping

import yaml
from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "ENGRAM_"
DEFAULT_CONFIG_PATH = Path("~/.config/engram/config.yaml")

_YAML_KEY_MAP: Mapping[tuple[str, ...], str] = {
    ("storage", "db_path"): "db_path",
    ("storage", "vector_url"): "vector_url",
    ("storage", "vector_api_key"): "vector_api_key",
    ("storage", "verify_tls"): "vector_verify_tls",
    ("embeddings", "backend"): "embedding_backend",
    ("embeddings", "model"): "embedding_model",
    ("embeddings", "dim"): "embedding_dim",
    ("llm", "backend"): "llm_backend",
    ("llm", "model"): "llm_model",
    ("llm", "api_key"): "openai_api_key",
    ("llm", "local_config"): "local_llm_config",
    ("chunking", "max_tokens"): "chunk_max_tokens",
    ("chunking", "min_tokens"): "chunk_min_tokens",
    ("chunking", "overlap_tokens"): "chunk_overlap_tokens",
    ("retrieval", "oversample"): "search_oversample",
    ("hnsw", "m"): "hnsw_m",
    ("hnsw", "ef_construction"): "hnsw_ef_construction",
    ("hnsw", "ef_search"): "hnsw_ef_search",
    ("worker", "enabled"): "run_worker",
    ("worker", "poll_interval"): "worker_poll_interval",
    ("worker", "max_active"): "worker_max_active",
    ("retry", "attempts"): "retry_attempts",
    ("retry", "base_delay"): "retry_base_delay",
    ("retry", "max_delay"): "retry_max_delay",
    ("retry", "timeout"): "request_timeout",
}


class Settings(BaseModel):
    """Runtime configuration loaded from YAML file and environment variables."""

    db_path: Path = Field(default=Path.home() / ".engram" / "engram.db")
    vector_url: str = "faiss://~/.engram/vectors"
    vector_api_key: str | None = None
    vector_verify_tls: bool = True

    embedding_backend: Literal["hashed", "local", "openai"] = "local"
    embedding_model: str = "sentence-transformers/all-MiniLM-L12-v2"
    embedding_dim: int = Field(default=384, ge=1)

    llm_backend: Literal["openai", "local", "none"] = "openai"
    llm_model: str = "gpt-4o-mini"
    openai_api_key: str | None = None
    local_llm_config: Path | None = None

    chunk_max_tokens: int = Field(default=256, ge=1)
    chunk_min_tokens: int = Field(default=32, ge=0)
    chunk_overlap_tokens: int = Field(default=86, ge=0)
    search_oversample: int = Field(default=2, ge=1)

    hnsw_m: int = 16
    hnsw_ef_construction: int = 200
    hnsw_ef_search: int = 32

    run_worker: bool = False
    worker_poll_interval: float = Field(default=0.1, gt=0)
    worker_max_active: int = Field(default=5, ge=1)

    retry_attempts: int = Field(default=3, ge=1, le=10)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    request_timeout: float = Field(default=30.0, gt=0)

    model_config = {
        "validate_assignment": True,
        "extra": "ignore",
    }

    @field_validator("db_path", mode="before")
    @classmethod
    def _expand_db_path(cls, value: Any) -> Path:
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("db_path must be a path or string")

    @field_validator("local_llm_config", mode="before")
    @classmethod
    def _expand_llm_config(cls, value: Any) -> Path | None:
        if value is None or value == "":
            return None
        return Path(value).expanduser()

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> "Settings":
        """Load YAML config and overlay env vars; fall back to defaults."""
        config_path = cls._resolve_config_path(path)
        data: dict[str, Any] = {}
        if config_path and config_path.exists():
            with config_path.open("r", encoding="utf-8") as fh:
                raw = yaml.safe_load(fh) or {}
            data.update(_flatten_yaml(raw))
        data.update(_load_env_overrides())
        return cls(**data)

    @staticmethod
    def _resolve_config_path(path: Path | None) -> Path | None:
        if path is not None:
            return path.expanduser()
        env_path = os.environ.get(f"{ENV_PREFIX}CONFIG")
        if env_path:
            return Path(env_path).expanduser()
        resolved_default = DEFAULT_CONFIG_PATH.expanduser()
        return resolved_default if resolved_default.exists() else None


def _flatten_yaml(raw: Mapping[str, Any], prefix: tuple[str, ...] = ()) -> dict[str, Any]:
    """Flatten nested YAML configuration to Settings field names."""
    flat: dict[str, Any] = {}
    for key, value in raw.items():
        next_prefix = prefix + (key,)
        if isinstance(value, Mapping):
            flat.update(_flatten_yaml(value, prefix=next_prefix))
        else:
            mapped_key = _YAML_KEY_MAP.get(next_prefix)
            if mapped_key:
                flat[mapped_key] = value
            elif key in Settings.model_fields:
                flat[key] = value
    return flat


def _load_env_overrides() -> dict[str, Any]:
    """Map environment variables with ENGRAM_ prefix into Settings fields."""
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        field_name = key[len(ENV_PREFIX) :].lower()
        if field_name in Settings.model_fields:
            overrides[field_name] = value
    if "openai_api_key" not in overrides and os.environ.get("OPENAI_API_KEY"):
        overrides["openai_api_key"] = os.environ["OPENAI_API_KEY"]
    return overrides


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings accessor for dependency injection."""
    return Settings.from_yaml()


__all__ = ["Settings", "get_settings"]
