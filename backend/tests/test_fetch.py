"""Tests for the fetch and PDF parsing helpers."""

from __future__ import annotations

import fitz
import pytest
import requests
from fastapi.testclient import TestClient

from engram.app import create_app
from engram.core.errors import BackendError, MalformedInputError, TransientBackendError
from engram.core.retry import RetryPolicy
from engram.ingest.fetch import fetch_url, is_pdf, pdf_to_text


def _response(url: str, status: int = 200, body: bytes = b"<p>Taxes rose in 2023.</p>") -> requests.Response:
    response = requests.Response()
    response.url = url
    response.status_code = status
    response.reason = "OK" if status < 400 else "Error"
    response.encoding = "utf-8"
    response._content = body
    return response


class FakeHTTP:
    """Stands in for the ``requests`` module, replaying queued outcomes."""

    def __init__(self, outcomes: list) -> None:
        self.outcomes = outcomes
        self.calls: list[tuple[str, float]] = []

    def get(self, url: str, timeout: float) -> requests.Response:
        self.calls.append((url, timeout))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _pdf(*pages: str) -> bytes:
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        page.insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


_RETRY = RetryPolicy(attempts=2, base_delay=0.0)
_URL = "https://example.com/page"


def test_fetch_returns_decoded_body() -> None:
    http = FakeHTTP([_response(_URL)])
    assert fetch_url(_URL, retry=_RETRY, timeout=5.0, http=http) == "<p>Taxes rose in 2023.</p>"
    assert http.calls == [(_URL, 5.0)]


def test_fetch_retries_connection_errors_and_server_errors() -> None:
    http = FakeHTTP([requests.ConnectionError("reset"), _response(_URL)])
    assert fetch_url(_URL, retry=_RETRY, http=http)
    assert len(http.calls) == 2

    http = FakeHTTP([_response(_URL, status=503), _response(_URL, status=502)])
    with pytest.raises(TransientBackendError):
        fetch_url(_URL, retry=_RETRY, http=http)
    assert len(http.calls) == 2


def test_fetch_client_errors_are_not_retried() -> None:
    http = FakeHTTP([_response(_URL, status=404)])
    with pytest.raises(BackendError):
        fetch_url(_URL, retry=_RETRY, http=http)
    assert len(http.calls) == 1


@pytest.mark.parametrize("url", ["file:///etc/passwd", "example.com", "ftp://example.com/file", ""])
def test_fetch_rejects_non_http_urls(url: str) -> None:
    http = FakeHTTP([])
    with pytest.raises(MalformedInputError):
        fetch_url(url, http=http)
    assert http.calls == []


def test_pdf_text_is_extracted_per_page() -> None:
    text = pdf_to_text(_pdf("Taxes rose in 2023.", "The sky is blue."))
    assert text.split("\n\n") == ["Taxes rose in 2023.", "The sky is blue."]


@pytest.mark.parametrize("data", [b"", b"not a pdf at all"])
def test_unreadable_pdf_is_malformed_input(data: bytes) -> None:
    with pytest.raises(MalformedInputError):
        pdf_to_text(data)


def test_pdf_detection() -> None:
    assert is_pdf("application/pdf")
    assert is_pdf("application/octet-stream", "Report.PDF")
    assert not is_pdf("text/plain", "notes.txt")
    assert not is_pdf(None)


def test_fetch_and_parse_routes(engine, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(requests, "get", lambda url, timeout: _response(url))
    with TestClient(create_app(engine=engine)) as client:
        fetched = client.get("/api/fetch", params={"url": _URL})
        assert fetched.status_code == 200
        assert fetched.json()["result"]["content"] == "<p>Taxes rose in 2023.</p>"
        assert client.get("/api/fetch", params={"url": "file:///etc/passwd"}).status_code == 400

        upload = {"file": ("report.pdf", _pdf("Taxes rose in 2023."), "application/pdf")}
        parsed = client.post("/api/fetch/parse", files=upload)
        assert parsed.status_code == 200
        assert parsed.json()["result"]["parsed"] == "Taxes rose in 2023."

        text_file = {"file": ("notes.txt", b"plain text", "text/plain")}
        rejected = client.post("/api/fetch/parse", files=text_file)
        assert rejected.status_code == 400
        assert rejected.json()["result"]["error_type"] == "MalformedInputError"
