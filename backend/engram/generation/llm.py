"""Chat completion backends used by the answer engine and summarize tasks."""

from __future__ import annotations

import threading
import time
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

from engram.core.config import Settings
from engram.core.errors import BackendError, ConfigurationError, MalformedInputError
from engram.core.logging import get_logger
from engram.core.metrics import BACKEND_LATENCY
from engram.core.retry import RetryPolicy, call_with_backoff
from engram.ingest.embeddings import is_retryable_openai_error, translate_openai_error

logger = get_logger(__name__)


@dataclass(slots=True, frozen=True)
class ChatMessage:
    role: str
    content: str

    @classmethod
    def system(cls, content: str) -> "ChatMessage":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls(role="user", content=content)

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(slots=True)
class CompletionOptions:
    temperature: float = 0.2
    max_tokens: int = 1024
    json_output: bool = False
    extra: dict[str, Any] = field(default_factory=dict)


class CompletionBackend:
    """Turns a list of chat messages into a single assistant reply."""

    name: str = "llm"

    def complete(
        self, messages: Sequence[ChatMessage], options: CompletionOptions | None = None
    ) -> str:  # pragma: no cover - interface
        raise NotImplementedError

    def close(self) -> None:
        """Release model or client resources."""


class OpenAICompletion(CompletionBackend):
    name = "openai"

    def __init__(
        self,
        model_name: str,
        api_key: str | None,
        retry: RetryPolicy,
        timeout: float = 30.0,
        client: Any | None = None,
    ) -> None:
        if client is None:
            if not api_key:
                raise ConfigurationError("OpenAI completions require an API key")
            from openai import OpenAI

            client = OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self.client = client
        self.model_name = model_name
        self.retry = retry

    def complete(self, messages: Sequence[ChatMessage], options: CompletionOptions | None = None) -> str:
        options = options or CompletionOptions()
        payload: dict[str, Any] = {
            "model": self.model_name,
            "messages": [message.to_dict() for message in messages],
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
            **options.extra,
        }
        if options.json_output:
            payload["response_format"] = {"type": "json_object"}

        def request() -> Any:
            try:
                return self.client.chat.completions.create(**payload)
            except Exception as exc:
                raise translate_openai_error(exc) from exc

        start = time.perf_counter()
        try:
            response = call_with_backoff(
                request,
                policy=self.retry,
                is_retryable=is_retryable_openai_error,
                operation="openai.chat",
            )
        finally:
            BACKEND_LATENCY.labels(backend=self.name, operation="complete").observe(time.perf_counter() - start)
        if not response.choices:
            raise BackendError("OpenAI returned no choices")
        content = response.choices[0].message.content
        if content is None:
            raise BackendError("OpenAI returned an empty message")
        return content.strip()


@dataclass(slots=True)
class LocalModelConfig:
    """Parsed TOML model config; ``path`` is resolved relative to the config file."""

    path: Path
    context_size: int = 2048
    gpu_layers: int = 0
    chat_format: str | None = None
    max_tokens: int = 1024
    temperature: float = 0.2
    top_k: int = 40
    top_p: float = 0.95
    repeat_penalty: float = 1.1

    @classmethod
    def load(cls, config_path: Path) -> "LocalModelConfig":
        config_path = config_path.expanduser()
        if not config_path.exists():
            raise ConfigurationError(f"Local model config not found: {config_path}")
        with config_path.open("rb") as fh:
            raw = tomllib.load(fh)
        model = raw.get("model") or {}
        generation = raw.get("generation") or {}
        if "path" not in model:
            raise ConfigurationError(f"{config_path}: [model] path is required")
        model_path = Path(model["path"]).expanduser()
        if not model_path.is_absolute():
            model_path = config_path.parent / model_path
        return cls(
            path=model_path,
            context_size=int(model.get("context_size", 2048)),
            gpu_layers=int(model.get("gpu_layers", 0)),
            chat_format=model.get("chat_format"),
            max_tokens=int(generation.get("max_tokens", 1024)),
            temperature=float(generation.get("temperature", 0.2)),
            top_k=int(generation.get("top_k", 40)),
            top_p=float(generation.get("top_p", 0.95)),
            repeat_penalty=float(generation.get("repeat_penalty", 1.1)),
        )


class LocalCompletion(CompletionBackend):
    """llama.cpp model loaded once; generations are serialised on one lock."""

    name = "local"

    def __init__(self, config: LocalModelConfig, model: Any | None = None) -> None:
        self.config = config
        if model is None:
            if not config.path.exists():
                raise ConfigurationError(f"Local model file not found: {config.path}")
            from llama_cpp import Llama

            logger.info("Loading local model %s", config.path)
            model = Llama(
                model_path=str(config.path),
                n_ctx=config.context_size,
                n_gpu_layers=config.gpu_layers,
                chat_format=config.chat_format,
                verbose=False,
            )
        self.model = model
        self._lock = threading.Lock()

    def complete(self, messages: Sequence[ChatMessage], options: CompletionOptions | None = None) -> str:
        options = options or CompletionOptions(
            temperature=self.config.temperature, max_tokens=self.config.max_tokens
        )
        kwargs: dict[str, Any] = {
            "messages": [message.to_dict() for message in messages],
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "top_k": self.config.top_k,
            "top_p": self.config.top_p,
            "repeat_penalty": self.config.repeat_penalty,
        }
        if options.json_output:
            kwargs["response_format"] = {"type": "json_object"}
        start = time.perf_counter()
        with self._lock:
            try:
                response = self.model.create_chat_completion(**kwargs)
            except ValueError as exc:
                # llama.cpp reports prompts longer than the context window this way
                raise MalformedInputError(f"Local model rejected prompt: {exc}") from exc
            except RuntimeError as exc:
                raise BackendError(f"Local inference failed: {exc}") from exc
        BACKEND_LATENCY.labels(backend=self.name, operation="complete").observe(time.perf_counter() - start)
        choices = response.get("choices") or []
        if not choices:
            raise BackendError("Local model returned no choices")
        return (choices[0].get("message", {}).get("content") or "").strip()

    def close(self) -> None:
        close = getattr(self.model, "close", None)
        if callable(close):
            close()


def build_llm(settings: Settings) -> CompletionBackend | None:
    """Resolve the configured completion backend; ``none`` disables generation."""
    if settings.llm_backend == "none":
        return None
    if settings.llm_backend == "openai":
        if not settings.openai_api_key:
            logger.warning("No OpenAI API key configured; ask and summarize are disabled")
            return None
        return OpenAICompletion(
            model_name=settings.llm_model,
            api_key=settings.openai_api_key,
            retry=RetryPolicy(
                attempts=settings.retry_attempts,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
            ),
            timeout=settings.request_timeout,
        )
    if settings.llm_backend == "local":
        if settings.local_llm_config is None:
            raise ConfigurationError("llm_backend=local requires local_llm_config")
        return LocalCompletion(LocalModelConfig.load(settings.local_llm_config))
    raise ConfigurationError(f"Unknown LLM backend: {settings.llm_backend}")


__all__ = [
    "ChatMessage",
    "CompletionOptions",
    "CompletionBackend",
    "OpenAICompletion",
    "LocalCompletion",
    "LocalModelConfig",
    "build_llm",
]
