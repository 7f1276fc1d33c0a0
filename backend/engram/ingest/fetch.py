"""Document acquisition helpers: download a page, extract text from a PDF.

Neither helper queues anything; callers pass the text on to
``Engine.enqueue_document`` when they want it indexed.
"""

from __future__ import annotations

import time
from typing import Any
from urllib.parse import urlparse

import fitz
import requests

from engram.core.errors import BackendError, MalformedInputError
from engram.core.logging import get_logger
from engram.core.metrics import BACKEND_LATENCY
from engram.core.retry import RetryPolicy, call_with_backoff

logger = get_logger(__name__)

MAX_DOCUMENT_BYTES = 50_000_000
PDF_CONTENT_TYPES = ("application/pdf", "application/x-pdf")


def fetch_url(
    url: str,
    retry: RetryPolicy | None = None,
    timeout: float = 30.0,
    http: Any = requests,
) -> str:
    """GET an http(s) URL and return the decoded body."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise MalformedInputError(f"Only absolute http(s) URLs can be fetched, got {url!r}")

    def request() -> requests.Response:
        try:
            response = http.get(url, timeout=timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            if _is_retryable(exc):
                raise
            raise BackendError(f"Fetching {url} failed: {exc}") from exc
        return response

    start = time.perf_counter()
    try:
        response = call_with_backoff(
            request,
            policy=retry or RetryPolicy(),
            is_retryable=_is_retryable,
            operation="http.fetch",
        )
    finally:
        BACKEND_LATENCY.labels(backend="http", operation="fetch").observe(time.perf_counter() - start)
    if len(response.content) > MAX_DOCUMENT_BYTES:
        raise MalformedInputError(f"{url} returned more than {MAX_DOCUMENT_BYTES} bytes")
    logger.info("Fetched %s", url, extra={"ctx_bytes": len(response.content), "ctx_status": response.status_code})
    return response.text


def is_pdf(content_type: str | None, filename: str | None = None) -> bool:
    if content_type and content_type.split(";")[0].strip().lower() in PDF_CONTENT_TYPES:
        return True
    return bool(filename) and filename.lower().endswith(".pdf")


def pdf_to_text(data: bytes) -> str:
    """Extract the text layer of every page, pages separated by a blank line."""
    if not data:
        raise MalformedInputError("PDF upload is empty")
    if len(data) > MAX_DOCUMENT_BYTES:
        raise MalformedInputError(f"PDF upload is larger than {MAX_DOCUMENT_BYTES} bytes")
    try:
        with fitz.open(stream=data, filetype="pdf") as doc:
            pages = [page.get_text("text", sort=True) for page in doc]
    except RuntimeError as exc:
        # FileDataError and friends
        raise MalformedInputError(f"Could not read PDF: {exc}") from exc
    text = "\n\n".join(page.strip() for page in pages if page.strip())
    logger.info("Parsed PDF", extra={"ctx_pages": len(pages), "ctx_chars": len(text)})
    return text


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


__all__ = ["fetch_url", "is_pdf", "pdf_to_text", "MAX_DOCUMENT_BYTES", "PDF_CONTENT_TYPES"]
