"""Question answering over retrieved segments, with optional JSON-schema output."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping

import orjson
from jsonschema import SchemaError, ValidationError
from jsonschema.validators import validator_for

from engram.core.errors import ConfigurationError, EngramError, MalformedInputError
from engram.core.logging import get_logger
from engram.generation import prompts
from engram.generation.llm import ChatMessage, CompletionBackend, CompletionOptions
from engram.models.entities import TaskError
from engram.retrieval.search import QueryService, SegmentHit

logger = get_logger(__name__)

_FENCE_RE = re.compile(r"^\s*```[A-Za-z0-9_-]*\s*\n(?P<body>.*?)\n?\s*```\s*$", re.DOTALL)


@dataclass(slots=True)
class AskResult:
    answer: str | None = None
    data: Any = None
    segments: list[SegmentHit] = field(default_factory=list)
    error: TaskError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "answer": self.answer,
            "data": self.data,
            "segments": [segment.to_dict() for segment in self.segments],
            "error": self.error.to_dict() if self.error else None,
        }


class AnswerService:
    """Builds prompts from context and turns completions into ``AskResult`` values.

    Failures (bad input, unusable model output, exhausted retries) are reported
    in ``AskResult.error`` rather than raised.
    """

    def __init__(
        self,
        llm: CompletionBackend | None,
        query_service: QueryService | None = None,
        options: CompletionOptions | None = None,
    ) -> None:
        self.llm = llm
        self.query_service = query_service
        self.options = options or CompletionOptions()

    def ask(
        self,
        query: str,
        context: str | None = None,
        collection: str | None = None,
        schema: Mapping[str, Any] | str | None = None,
        limit: int = 5,
        quick: bool = False,
    ) -> AskResult:
        segments: list[SegmentHit] = []
        try:
            if not query or not query.strip():
                raise MalformedInputError("query must not be empty")
            if self.llm is None:
                raise ConfigurationError("No completion backend is configured")
            parsed_schema = _load_schema(schema) if schema is not None else None

            if not quick and context is None and collection is not None:
                if self.query_service is None:
                    raise ConfigurationError("Retrieval is not available for ask")
                segments = self.query_service.search(collection, query, limit)
                context = "\n\n".join(segment.text for segment in segments)
            use_context = not quick and (context is not None or collection is not None)

            if parsed_schema is not None:
                return self._ask_structured(query, context if use_context else None, parsed_schema, segments)

            if use_context:
                messages = prompts.answer_with_context(context or "", query)
            else:
                messages = prompts.quick_question(query)
            answer = self._complete(messages, json_output=False)
            return AskResult(answer=answer, segments=segments)
        except EngramError as exc:
            logger.warning("Ask failed: %s", exc, extra={"ctx_error_type": exc.error_type})
            return AskResult(segments=segments, error=TaskError.from_exception(exc))

    def _ask_structured(
        self,
        query: str,
        context: str | None,
        schema: dict[str, Any],
        segments: list[SegmentHit],
    ) -> AskResult:
        messages = prompts.json_schema_extraction(
            context, query, orjson.dumps(schema, option=orjson.OPT_INDENT_2).decode("utf-8")
        )
        raw = self._complete(messages, json_output=True)
        data = parse_json_output(raw)
        try:
            validator_for(schema)(schema).validate(data)
        except ValidationError as exc:
            raise MalformedInputError(f"Model output does not match the schema: {exc.message}") from exc
        return AskResult(answer=raw, data=data, segments=segments)

    def _complete(self, messages: list[ChatMessage], json_output: bool) -> str:
        options = CompletionOptions(
            temperature=self.options.temperature,
            max_tokens=self.options.max_tokens,
            json_output=json_output,
        )
        assert self.llm is not None
        return self.llm.complete(messages, options)


def parse_json_output(raw: str) -> Any:
    """Parse model output as JSON, tolerating a surrounding markdown code fence."""
    text = raw.strip()
    match = _FENCE_RE.match(text)
    if match:
        text = match.group("body").strip()
    try:
        return orjson.loads(text)
    except orjson.JSONDecodeError as exc:
        raise MalformedInputError(f"Model output is not valid JSON: {exc}") from exc


def _load_schema(schema: Mapping[str, Any] | str) -> dict[str, Any]:
    if isinstance(schema, str):
        try:
            schema = orjson.loads(schema)
        except orjson.JSONDecodeError as exc:
            raise MalformedInputError(f"Schema is not valid JSON: {exc}") from exc
    if not isinstance(schema, Mapping):
        raise MalformedInputError("Schema must be a JSON object")
    schema = dict(schema)
    try:
        validator_for(schema).check_schema(schema)
    except SchemaError as exc:
        raise MalformedInputError(f"Invalid JSON schema: {exc.message}") from exc
    return schema


__all__ = ["AnswerService", "AskResult", "parse_json_output"]
