"""Prompt builders for question answering, structured extraction and summaries."""

from __future__ import annotations

from string import Template

from engram.generation.llm import ChatMessage

DEFAULT_SYSTEM = "You are a helpful assistant"

ANSWER_SYSTEM = (
    "You answer questions using only the provided context. "
    "If the context does not contain the answer, say that you do not know."
)

JSON_SCHEMA_SYSTEM = (
    "You extract information from the provided context. "
    "Reply with a single JSON value that validates against the given JSON schema "
    "and nothing else: no prose, no markdown."
)

JSON_SCHEMA_PROMPT = Template(
    "Request: $user_request\n\n"
    "Respond with JSON matching this schema:\n$json_schema"
)

SUMMARIZE_SYSTEM = (
    "You write faithful, concise summaries. Keep names, numbers and dates exactly as written."
)

SUMMARIZE_PROMPT = "Summarize the text above in a few sentences."


def quick_question(user_request: str) -> list[ChatMessage]:
    return [ChatMessage.system(DEFAULT_SYSTEM), ChatMessage.user(user_request)]


def answer_with_context(context: str, user_request: str) -> list[ChatMessage]:
    return [
        ChatMessage.system(ANSWER_SYSTEM),
        ChatMessage.user(f"Context:\n{context}"),
        ChatMessage.user(user_request),
    ]


def json_schema_extraction(context: str | None, user_request: str, json_schema: str) -> list[ChatMessage]:
    messages = [ChatMessage.system(JSON_SCHEMA_SYSTEM)]
    if context:
        messages.append(ChatMessage.user(context))
    messages.append(
        ChatMessage.user(JSON_SCHEMA_PROMPT.substitute(user_request=user_request, json_schema=json_schema))
    )
    return messages


def summarize(text: str) -> list[ChatMessage]:
    return [
        ChatMessage.system(SUMMARIZE_SYSTEM),
        ChatMessage.user(text),
        ChatMessage.user(SUMMARIZE_PROMPT),
    ]


__all__ = [
    "quick_question",
    "answer_with_context",
    "json_schema_extraction",
    "summarize",
]
