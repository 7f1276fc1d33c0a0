"""Search and question answering routes."""

from __future__ import annotations

import time

from fastapi import APIRouter, Depends

from engram.api.dependencies import get_engine, respond
from engram.engine import Engine
from engram.models.dto import AskRequest, AskResponse, ApiResponse, SearchRequest, SearchResponse, SegmentResult

router = APIRouter()


@router.post(
    "/collections/{name}/search",
    response_model=ApiResponse[SearchResponse],
    summary="Semantic search within a collection",
)
def search_collection(name: str, request: SearchRequest, engine: Engine = Depends(get_engine)) -> dict:
    started = time.perf_counter()
    hits = engine.search(name, request.query, request.limit)
    return respond(started, SearchResponse(results=[SegmentResult(**hit.to_dict()) for hit in hits]))


@router.post("/action/ask", response_model=ApiResponse[AskResponse], summary="Answer a question")
def ask(request: AskRequest, engine: Engine = Depends(get_engine)) -> dict:
    started = time.perf_counter()
    result = engine.ask(
        request.query,
        context=request.context,
        collection=request.collection,
        schema=request.json_schema,
        limit=request.limit,
        quick=request.quick,
    )
    return respond(started, AskResponse(**result.to_dict()))


__all__ = ["router"]
