"""Shared FastAPI dependencies."""

from __future__ import annotations

import time
from typing import Any

from fastapi import Request

from engram.engine import Engine


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


def respond(started: float, result: Any) -> dict[str, Any]:
    """Wrap a route result in the ``{time, status, result}`` envelope."""
    return {"time": round(time.perf_counter() - started, 6), "status": "ok", "result": result}


__all__ = ["get_engine", "respond"]
