"""Internal dataclasses representing persisted entities."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from engram.core.errors import MalformedInputError

COLLECTION_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


class TaskStatus(str, Enum):
    QUEUED = "Queued"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class TaskType(str, Enum):
    INGEST = "Ingest"
    SUMMARIZE = "Summarize"


@dataclass(slots=True)
class Collection:
    name: str
    created_at: int


@dataclass(slots=True)
class Document:
    id: str
    collection: str
    content: str | dict[str, Any]
    text: str
    sha256: str
    created_at: int


@dataclass(slots=True)
class TaskError:
    error_type: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"error_type": self.error_type, "message": self.message}

    @classmethod
    def from_exception(cls, exc: BaseException) -> "TaskError":
        error_type = getattr(exc, "error_type", None) or type(exc).__name__
        return cls(error_type=error_type, message=str(exc) or repr(exc))


@dataclass(slots=True)
class Task:
    id: int
    collection: str
    document_id: str | None
    task_type: TaskType
    status: TaskStatus
    created_at: int
    updated_at: int
    error: TaskError | None = None
    output: str | None = None
    segment_count: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.id,
            "collection": self.collection,
            "document_id": self.document_id,
            "task_type": self.task_type.value,
            "status": self.status.value,
            "error": self.error.to_dict() if self.error else None,
            "output": self.output,
            "segment_count": self.segment_count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(slots=True)
class Segment:
    id: str
    document_id: str
    task_id: int | None
    collection: str
    ordinal: int
    text: str
    start_char: int
    end_char: int
    token_count: int
    created_at: int = 0


def validate_collection_name(name: str) -> str:
    """Collection names are case-sensitive and double as directory and index names."""
    if not isinstance(name, str) or not COLLECTION_NAME_RE.match(name) or name in {".", ".."}:
        raise MalformedInputError(
            f"Invalid collection name {name!r}: use 1-128 characters from [A-Za-z0-9_.-]"
        )
    return name


__all__ = [
    "COLLECTION_NAME_RE",
    "validate_collection_name",
    "TaskStatus",
    "TaskType",
    "Collection",
    "Document",
    "TaskError",
    "Task",
    "Segment",
]
