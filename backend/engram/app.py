"""FastAPI application setup for engram."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from engram.api.routes_admin import router as admin_router
from engram.api.routes_fetch import router as fetch_router
from engram.api.routes_ingest import router as ingest_router
from engram.api.routes_query import router as query_router
from engram.core.config import Settings, get_settings
from engram.core.errors import (
    BackendError,
    ConfigurationError,
    DataIntegrityError,
    EngramError,
    InvalidTransitionError,
    MalformedInputError,
    TransientBackendError,
)
from engram.core.logging import configure_logging, get_logger
from engram.engine import Engine, build_engine

logger = get_logger(__name__)

_STATUS_BY_ERROR: list[tuple[type[EngramError], int]] = [
    (MalformedInputError, 400),
    (InvalidTransitionError, 409),
    (TransientBackendError, 503),
    (BackendError, 502),
    (ConfigurationError, 503),
    (DataIntegrityError, 500),
]


def create_app(settings: Settings | None = None, engine: Engine | None = None) -> FastAPI:
    """Build the application; the engine is created in the lifespan unless one is supplied."""
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = engine is None
        app.state.engine = engine or build_engine(settings or get_settings())
        if app.state.engine.settings.run_worker:
            app.state.engine.worker.start()
        try:
            yield
        finally:
            if owned:
                app.state.engine.close()
            else:
                app.state.engine.worker.stop()

    app = FastAPI(
        title="engram",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://127.0.0.1:8181", "http://localhost:8181"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(ingest_router, prefix="/api", tags=["collections"])
    app.include_router(query_router, prefix="/api", tags=["query"])
    app.include_router(fetch_router, prefix="/api", tags=["fetch"])
    app.include_router(admin_router, prefix="/api", tags=["admin"])

    @app.exception_handler(EngramError)
    async def engram_error_handler(request: Request, exc: EngramError) -> JSONResponse:
        status_code = next((code for kind, code in _STATUS_BY_ERROR if isinstance(exc, kind)), 500)
        if status_code >= 500:
            logger.error("Request failed: %s", exc, extra={"ctx_path": request.url.path})
        return JSONResponse(
            status_code=status_code,
            content={
                "time": 0.0,
                "status": "error",
                "result": {"error_type": exc.error_type, "message": str(exc)},
            },
        )

    @app.middleware("http")
    async def timing_header(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Process-Time"] = f"{time.perf_counter() - started:.6f}"
        return response

    return app


__all__ = ["create_app"]
