"""Prometheus metrics instrumentation."""

from __future__ import annotations

from fastapi import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

REGISTRY = CollectorRegistry()

TASKS_TOTAL = Counter(
    "engram_tasks_total",
    "Tasks that reached a terminal state",
    labelnames=("task_type", "status"),
    registry=REGISTRY,
)

TASK_DURATION = Histogram(
    "engram_task_duration_seconds",
    "Time from claim to terminal state",
    labelnames=("task_type",),
    registry=REGISTRY,
)

ACTIVE_TASKS = Gauge(
    "engram_worker_active_tasks",
    "Tasks currently processed by this worker",
    registry=REGISTRY,
)

BACKEND_LATENCY = Histogram(
    "engram_backend_call_seconds",
    "Latency of embedding, completion and vector backend calls",
    labelnames=("backend", "operation"),
    registry=REGISTRY,
)

BACKEND_RETRIES = Counter(
    "engram_backend_retries_total",
    "Retried backend calls",
    labelnames=("operation",),
    registry=REGISTRY,
)

SEARCH_LATENCY = Histogram(
    "engram_search_latency_seconds",
    "End-to-end latency of semantic searches",
    registry=REGISTRY,
)

ORPHANED_HITS = Counter(
    "engram_orphaned_vector_hits_total",
    "Vector hits dropped because their segment metadata is missing",
    labelnames=("collection",),
    registry=REGISTRY,
)


def metrics_response() -> Response:
    """Return Prometheus metrics as an HTTP response."""
    payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)


__all__ = [
    "REGISTRY",
    "TASKS_TOTAL",
    "TASK_DURATION",
    "ACTIVE_TASKS",
    "BACKEND_LATENCY",
    "BACKEND_RETRIES",
    "SEARCH_LATENCY",
    "ORPHANED_HITS",
    "metrics_response",
]
