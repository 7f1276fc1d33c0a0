"""Chunking utilities.

Documents are split on blank lines into paragraphs; paragraphs longer than the
token budget are split into sentences, and sentences that are still too long
are cut into even runs of words. The pieces are then merged greedily into
chunks of at most ``max_tokens`` whitespace tokens, carrying the trailing
``overlap_tokens`` of each chunk into the next one.

The output depends only on the text and the budgets, so re-chunking the same
document always yields the same chunks.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Iterator, Mapping, Sequence

import orjson

_SEGMENT_RE = re.compile(r"\n\s*\n", re.MULTILINE)
_SENTENCE_RE = re.compile(r"[^.!?\n]+[.!?]?", re.MULTILINE)


@dataclass(slots=True, frozen=True)
class ChunkingConfig:
    max_tokens: int = 256
    min_tokens: int = 32
    overlap_tokens: int = 86


@dataclass(slots=True, frozen=True)
class Chunk:
    ordinal: int
    text: str
    start_char: int
    end_char: int
    token_count: int


@dataclass(slots=True)
class _Piece:
    text: str
    start: int
    end: int


def document_text(content: str | Mapping[str, Any]) -> str:
    """Flatten document content into the text that gets chunked.

    Structured content is rendered as one ``key: value`` line per field in
    insertion order; nested values are serialised as JSON.
    """
    if isinstance(content, str):
        return content
    lines = []
    for key, value in content.items():
        if isinstance(value, str):
            rendered = value
        else:
            rendered = orjson.dumps(value).decode("utf-8")
        lines.append(f"{key}: {rendered}")
    return "\n".join(lines)


def chunk_text(text: str, config: ChunkingConfig | None = None) -> list[Chunk]:
    """Split text into ordered chunks respecting the token budgets."""
    config = config or ChunkingConfig()
    if not text.strip():
        return []
    max_tokens = max(1, config.max_tokens)
    overlap_tokens = min(config.overlap_tokens, max_tokens - 1)

    pieces: list[_Piece] = []
    for paragraph in _iter_paragraphs(text):
        pieces.extend(_shrink_piece(paragraph, max_tokens))

    spans: list[tuple[int, int]] = []
    current: list[_Piece] = []
    current_tokens = 0

    for piece in pieces:
        piece_tokens = _count_tokens(piece.text)
        if not current:
            current.append(piece)
            current_tokens = piece_tokens
            continue

        if current_tokens + piece_tokens <= max_tokens:
            current.append(piece)
            current_tokens += piece_tokens
            continue

        spans.append((current[0].start, current[-1].end))
        current = _apply_overlap(current, min(overlap_tokens, max_tokens - piece_tokens))
        current.append(piece)
        current_tokens = sum(_count_tokens(item.text) for item in current)

    if current:
        spans.append((current[0].start, current[-1].end))
        _merge_short_tail(text, spans, config.min_tokens, max_tokens)

    chunks: list[Chunk] = []
    for start, end in spans:
        body = text[start:end]
        chunks.append(
            Chunk(
                ordinal=len(chunks),
                text=body,
                start_char=start,
                end_char=end,
                token_count=_count_tokens(body),
            )
        )
    return chunks


def _iter_paragraphs(text: str) -> Iterator[_Piece]:
    last_index = 0
    for match in _SEGMENT_RE.finditer(text):
        piece = _trim_piece(text, last_index, match.start())
        if piece:
            yield piece
        last_index = match.end()
    if last_index < len(text):
        piece = _trim_piece(text, last_index, len(text))
        if piece:
            yield piece


def _trim_piece(text: str, start: int, end: int) -> _Piece | None:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    if start >= end:
        return None
    return _Piece(text=text[start:end], start=start, end=end)


def _shrink_piece(piece: _Piece, max_tokens: int) -> list[_Piece]:
    if _count_tokens(piece.text) <= max_tokens:
        return [piece]
    sentences = list(_sentence_pieces(piece))
    if len(sentences) > 1:
        shrunk: list[_Piece] = []
        for sentence in sentences:
            shrunk.extend(_shrink_piece(sentence, max_tokens))
        return shrunk
    return _split_piece(piece, max_tokens)


def _sentence_pieces(piece: _Piece) -> Iterator[_Piece]:
    for match in _SENTENCE_RE.finditer(piece.text):
        sentence = match.group().strip()
        if not sentence:
            continue
        rel_start = match.start() + match.group().find(sentence)
        start = piece.start + rel_start
        yield _Piece(text=sentence, start=start, end=start + len(sentence))


def _split_piece(piece: _Piece, max_tokens: int) -> list[_Piece]:
    """Cut a piece with no usable sentence boundary on word boundaries."""
    words = list(re.finditer(r"\S+", piece.text))
    if len(words) <= max_tokens:
        return [piece]
    parts = math.ceil(len(words) / max_tokens)
    per_part = math.ceil(len(words) / parts)
    split: list[_Piece] = []
    for offset in range(0, len(words), per_part):
        group = words[offset : offset + per_part]
        start = piece.start + group[0].start()
        end = piece.start + group[-1].end()
        split.append(_Piece(text=piece.text[group[0].start() : group[-1].end()], start=start, end=end))
    return split


def _merge_short_tail(text: str, spans: list[tuple[int, int]], min_tokens: int, max_tokens: int) -> None:
    """Fold a trailing chunk shorter than ``min_tokens`` into its predecessor when it fits."""
    if len(spans) < 2:
        return
    tail_start, tail_end = spans[-1]
    if _count_tokens(text[tail_start:tail_end]) >= min_tokens:
        return
    prev_start, _ = spans[-2]
    if _count_tokens(text[prev_start:tail_end]) <= max_tokens:
        spans[-2:] = [(prev_start, tail_end)]


def _apply_overlap(pieces: Sequence[_Piece], overlap_tokens: int) -> list[_Piece]:
    if not pieces or overlap_tokens <= 0:
        return []
    retained: list[_Piece] = []
    token_budget = 0
    for piece in reversed(pieces):
        piece_tokens = _count_tokens(piece.text)
        if token_budget + piece_tokens > overlap_tokens:
            break
        retained.append(piece)
        token_budget += piece_tokens
    return list(reversed(retained))


def _count_tokens(text: str) -> int:
    return max(1, len(text.split()))


__all__ = ["Chunk", "ChunkingConfig", "chunk_text", "document_text"]
