"""ID helpers."""

from __future__ import annotations

import uuid

# Fixed namespace so segment ids are reproducible from (document, ordinal).
SEGMENT_NAMESPACE = uuid.UUID("5fdfe40a-de2c-11ed-bfa7-00155deae876")


def new_id(prefix: str | None = None) -> str:
    """Generate a random UUID4 string with optional prefix."""
    base = uuid.uuid4().hex
    return f"{prefix}_{base}" if prefix else base


def segment_id(document_id: str, ordinal: int) -> str:
    """Deterministic UUID5 for a document segment; doubles as its vector id."""
    return str(uuid.uuid5(SEGMENT_NAMESPACE, f"{document_id}-{ordinal}"))
