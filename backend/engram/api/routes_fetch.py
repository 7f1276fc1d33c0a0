"""Document acquisition routes: fetch a URL, parse an uploaded PDF."""

from __future__ import annotations

import time

from fastapi import APIRouter, Depends, File, Query, UploadFile

from engram.api.dependencies import get_engine, respond
from engram.core.errors import MalformedInputError
from engram.engine import Engine
from engram.ingest.fetch import is_pdf
from engram.models.dto import ApiResponse, FetchResponse, ParseResponse

router = APIRouter()


@router.get("/fetch", response_model=ApiResponse[FetchResponse], summary="Fetch a page's content")
def fetch(url: str = Query(..., min_length=1), engine: Engine = Depends(get_engine)) -> dict:
    started = time.perf_counter()
    return respond(started, FetchResponse(content=engine.fetch_url(url)))


@router.post("/fetch/parse", response_model=ApiResponse[ParseResponse], summary="Extract text from a PDF")
def parse(file: UploadFile = File(...), engine: Engine = Depends(get_engine)) -> dict:
    started = time.perf_counter()
    if not is_pdf(file.content_type, file.filename):
        raise MalformedInputError(f"File type not supported: {file.content_type or file.filename}")
    return respond(started, ParseResponse(parsed=engine.parse_pdf(file.file.read())))


__all__ = ["router"]
