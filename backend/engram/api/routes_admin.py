"""Administrative routes."""

from __future__ import annotations

import time

from fastapi import APIRouter, Depends

from engram.api.dependencies import get_engine, respond
from engram.core.metrics import metrics_response
from engram.engine import Engine

router = APIRouter()


@router.get("/health", summary="Liveness check")
def health(engine: Engine = Depends(get_engine)) -> dict:
    started = time.perf_counter()
    return respond(
        started,
        {
            "ok": True,
            "vector_store": engine.vector_store.backend,
            "embedder": engine.embedder.name,
            "llm": engine.llm.name if engine.llm is not None else None,
        },
    )


@router.get("/metrics", summary="Prometheus metrics")
def get_metrics():
    return metrics_response()


__all__ = ["router"]
