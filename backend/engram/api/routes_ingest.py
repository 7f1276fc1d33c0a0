"""Collection, document and task routes."""

from __future__ import annotations

import time

from fastapi import APIRouter, Depends, HTTPException, Query

from engram.api.dependencies import get_engine, respond
from engram.engine import Engine
from engram.models.dto import (
    ApiResponse,
    CollectionDetail,
    CollectionResponse,
    DeleteResponse,
    EnqueueRequest,
    EnqueueResponse,
    RequeueRequest,
    RequeueResponse,
    TaskResponse,
)

router = APIRouter()


@router.put(
    "/collections/{name}",
    response_model=ApiResponse[EnqueueResponse],
    summary="Queue a document for ingestion into a collection",
)
def enqueue_document(name: str, request: EnqueueRequest, engine: Engine = Depends(get_engine)) -> dict:
    started = time.perf_counter()
    task_id = engine.enqueue_document(name, request.content, request.task_type)
    return respond(started, EnqueueResponse(task_id=task_id, collection=name))


@router.get("/collections", response_model=ApiResponse[list[CollectionResponse]], summary="List collections")
def list_collections(engine: Engine = Depends(get_engine)) -> dict:
    started = time.perf_counter()
    collections = [
        CollectionResponse(name=item.name, created_at=item.created_at) for item in engine.list_collections()
    ]
    return respond(started, collections)


@router.get("/collections/{name}", response_model=ApiResponse[CollectionDetail], summary="Describe a collection")
def describe_collection(name: str, engine: Engine = Depends(get_engine)) -> dict:
    started = time.perf_counter()
    detail = engine.describe_collection(name)
    if detail is None:
        raise HTTPException(status_code=404, detail="Collection not found")
    return respond(started, CollectionDetail(**detail))


@router.delete(
    "/collections/{name}",
    response_model=ApiResponse[DeleteResponse],
    summary="Delete a collection with its documents and vectors",
)
def delete_collection(name: str, engine: Engine = Depends(get_engine)) -> dict:
    started = time.perf_counter()
    deleted = engine.delete_collection(name)
    return respond(started, DeleteResponse(status="ok" if deleted else "noop", deleted=int(deleted)))


@router.delete(
    "/documents/{document_id}",
    response_model=ApiResponse[DeleteResponse],
    summary="Delete a document and its segments",
)
def delete_document(document_id: str, engine: Engine = Depends(get_engine)) -> dict:
    started = time.perf_counter()
    if not engine.delete_document(document_id):
        raise HTTPException(status_code=404, detail="Document not found")
    return respond(started, DeleteResponse(status="ok", deleted=1))


@router.get("/tasks/{task_id}", response_model=ApiResponse[TaskResponse], summary="Get task status")
def get_task(task_id: int, engine: Engine = Depends(get_engine)) -> dict:
    started = time.perf_counter()
    task = engine.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return respond(started, TaskResponse(**task.to_dict()))


@router.get("/tasks", response_model=ApiResponse[list[TaskResponse]], summary="List recent tasks")
def list_tasks(
    collection: str | None = None,
    status: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    engine: Engine = Depends(get_engine),
) -> dict:
    started = time.perf_counter()
    tasks = engine.list_tasks(collection=collection, status=status, limit=limit)
    return respond(started, [TaskResponse(**task.to_dict()) for task in tasks])


@router.post(
    "/tasks/requeue",
    response_model=ApiResponse[RequeueResponse],
    summary="Return stale Processing tasks to the queue",
)
def requeue_tasks(request: RequeueRequest, engine: Engine = Depends(get_engine)) -> dict:
    started = time.perf_counter()
    task_ids = engine.requeue_stale_tasks(request.older_than_seconds)
    return respond(started, RequeueResponse(task_ids=task_ids))


__all__ = ["router"]
