"""Pydantic DTOs exposed via API."""

from __future__ import annotations

from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    time: float = Field(description="Server-side handling time in seconds")
    status: Literal["ok", "error"] = "ok"
    result: T | None = None


class EnqueueRequest(BaseModel):
    content: str | dict[str, Any]
    task_type: Literal["Ingest", "Summarize"] = "Ingest"


class EnqueueResponse(BaseModel):
    task_id: int
    collection: str


class TaskErrorModel(BaseModel):
    error_type: str
    message: str


class TaskResponse(BaseModel):
    task_id: int
    collection: str
    document_id: str | None
    task_type: str
    status: Literal["Queued", "Processing", "Completed", "Failed"]
    error: TaskErrorModel | None = None
    output: str | None = None
    segment_count: int | None = None
    created_at: int
    updated_at: int


class RequeueRequest(BaseModel):
    older_than_seconds: float = Field(default=600.0, ge=0)


class RequeueResponse(BaseModel):
    task_ids: list[int]


class SearchRequest(BaseModel):
    query: str
    limit: int = Field(default=10, ge=1, le=100)


class SegmentResult(BaseModel):
    segment_id: str
    document_id: str
    task_id: int | None
    collection: str
    ordinal: int
    text: str
    score: float


class SearchResponse(BaseModel):
    results: list[SegmentResult]


class AskRequest(BaseModel):
    query: str
    context: str | None = None
    collection: str | None = None
    json_schema: dict[str, Any] | None = Field(default=None, alias="schema")
    limit: int = Field(default=5, ge=1, le=50)
    quick: bool = False

    model_config = {"populate_by_name": True}


class AskResponse(BaseModel):
    answer: str | None
    data: Any = None
    segments: list[SegmentResult]
    error: TaskErrorModel | None = None


class CollectionResponse(BaseModel):
    name: str
    created_at: int


class CollectionDetail(CollectionResponse):
    documents: int
    segments: int
    vectors: int


class DeleteResponse(BaseModel):
    status: Literal["ok", "noop"]
    deleted: int


class FetchResponse(BaseModel):
    content: str


class ParseResponse(BaseModel):
    parsed: str


__all__ = [
    "ApiResponse",
    "EnqueueRequest",
    "EnqueueResponse",
    "TaskErrorModel",
    "TaskResponse",
    "RequeueRequest",
    "RequeueResponse",
    "SearchRequest",
    "SegmentResult",
    "SearchResponse",
    "AskRequest",
    "AskResponse",
    "CollectionResponse",
    "CollectionDetail",
    "DeleteResponse",
    "FetchResponse",
    "ParseResponse",
]
