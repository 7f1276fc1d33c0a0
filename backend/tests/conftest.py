"""Test fixtures for engram."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Iterator, Sequence

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from engram.core.config import Settings, get_settings  # noqa: E402
from engram.generation.llm import ChatMessage, CompletionBackend, CompletionOptions  # noqa: E402

TEST_DIM = 64


@pytest.fixture(autouse=True)
def reset_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Point every settings lookup at temporary storage and offline backends."""
    monkeypatch.setenv("ENGRAM_DB_PATH", str(tmp_path / "engram.db"))
    monkeypatch.setenv("ENGRAM_VECTOR_URL", f"faiss://{tmp_path / 'vectors'}")
    monkeypatch.setenv("ENGRAM_EMBEDDING_BACKEND", "hashed")
    monkeypatch.setenv("ENGRAM_EMBEDDING_DIM", str(TEST_DIM))
    monkeypatch.setenv("ENGRAM_LLM_BACKEND", "none")
    monkeypatch.delenv("ENGRAM_CONFIG", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "engram.db",
        vector_url=f"faiss://{tmp_path / 'vectors'}",
        embedding_backend="hashed",
        embedding_dim=TEST_DIM,
        llm_backend="none",
        retry_base_delay=0.0,
        worker_poll_interval=0.01,
    )


class FakeLLM(CompletionBackend):
    """Completion backend answering from a callable and recording every prompt."""

    name = "fake"

    def __init__(self, reply: str | Callable[[Sequence[ChatMessage]], str] = "fake answer") -> None:
        self.reply = reply
        self.calls: list[tuple[list[ChatMessage], CompletionOptions | None]] = []

    def complete(self, messages: Sequence[ChatMessage], options: CompletionOptions | None = None) -> str:
        self.calls.append((list(messages), options))
        if callable(self.reply):
            return self.reply(messages)
        return self.reply


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def engine(settings: Settings):
    from engram.engine import build_engine

    instance = build_engine(settings, llm=None)
    yield instance
    instance.close()


@pytest.fixture
def llm_engine(settings: Settings, fake_llm: FakeLLM):
    from engram.engine import build_engine

    instance = build_engine(settings, llm=fake_llm)
    yield instance
    instance.close()


@pytest.fixture(scope="session")
def sample_text() -> str:
    return "Title\n\nParagraph one.\n\nParagraph two is here."
