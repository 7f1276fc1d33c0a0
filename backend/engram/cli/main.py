"""CLI entrypoint for engram."""

from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Optional

import requests
import typer

app = typer.Typer(name="engram", help="engram command-line interface")

DEFAULT_HOST = "http://127.0.0.1:8181"
TERMINAL_STATES = {"Completed", "Failed"}


def _resolve_host(override: Optional[str]) -> str:
    if override:
        return override.rstrip("/")
    env_host = os.environ.get("ENGRAM_HOST")
    if env_host:
        return env_host.rstrip("/")
    return DEFAULT_HOST


def _request(method: str, path: str, host: Optional[str] = None, **kwargs) -> requests.Response:
    base = _resolve_host(host)
    url = f"{base}/api{path}"
    try:
        resp = requests.request(method, url, timeout=60, **kwargs)
    except requests.ConnectionError as exc:
        typer.echo(f"Unable to reach {base}: {exc}", err=True)
        raise typer.Exit(code=1)
    if not resp.ok:
        try:
            detail = resp.json()
        except ValueError:
            detail = resp.text
        typer.echo(f"Request failed ({resp.status_code}): {detail}", err=True)
        raise typer.Exit(code=1)
    return resp


def _echo(payload: object) -> None:
    typer.echo(json.dumps(payload, indent=2))


@app.command()
def add(
    collection: str = typer.Argument(..., help="Target collection"),
    text: Optional[str] = typer.Argument(None, help="Document text"),
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="Read the document from a file"),
    as_json: bool = typer.Option(False, "--json", help="Treat the document as a JSON object"),
    summarize: bool = typer.Option(False, "--summarize", help="Queue a Summarize task instead of Ingest"),
    wait: bool = typer.Option(False, "--wait", help="Poll until the task finishes"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Queue a document for ingestion."""
    if file is not None:
        raw = file.expanduser().read_text(encoding="utf-8")
    elif text is not None:
        raw = text
    else:
        typer.echo("Provide document text or --file", err=True)
        raise typer.Exit(code=2)
    content: object = raw
    if as_json:
        try:
            content = json.loads(raw)
        except json.JSONDecodeError as exc:
            typer.echo(f"Invalid JSON document: {exc}", err=True)
            raise typer.Exit(code=2)
    body = {"content": content, "task_type": "Summarize" if summarize else "Ingest"}
    resp = _request("PUT", f"/collections/{collection}", host=host, json=body)
    payload = resp.json()
    if not wait:
        _echo(payload)
        return
    task_id = payload["result"]["task_id"]
    _echo(_wait_for_task(task_id, host))


@app.command()
def task(
    task_id: int = typer.Argument(..., help="Task identifier"),
    wait: bool = typer.Option(False, "--wait", help="Poll until the task finishes"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Show the status of a task."""
    if wait:
        _echo(_wait_for_task(task_id, host))
        return
    _echo(_request("GET", f"/tasks/{task_id}", host=host).json())


@app.command()
def search(
    collection: str = typer.Argument(..., help="Collection to search"),
    q: str = typer.Argument(..., help="Query text"),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of results to return"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Semantic search within a collection."""
    resp = _request("POST", f"/collections/{collection}/search", host=host, json={"query": q, "limit": limit})
    _echo(resp.json())


@app.command()
def ask(
    q: str = typer.Argument(..., help="Question"),
    collection: Optional[str] = typer.Option(None, "--collection", "-c", help="Answer from this collection"),
    context: Optional[str] = typer.Option(None, "--context", help="Answer from this text instead"),
    schema: Optional[Path] = typer.Option(None, "--schema", help="JSON schema file for structured output"),
    limit: int = typer.Option(5, "--limit", "-n", help="Segments to retrieve"),
    quick: bool = typer.Option(False, "--quick", help="Skip retrieval"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Ask a question, optionally grounded in a collection."""
    body: dict[str, object] = {"query": q, "limit": limit, "quick": quick}
    if collection:
        body["collection"] = collection
    if context:
        body["context"] = context
    if schema is not None:
        body["schema"] = json.loads(schema.expanduser().read_text(encoding="utf-8"))
    _echo(_request("POST", "/action/ask", host=host, json=body).json())


@app.command()
def collections(
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """List collections."""
    _echo(_request("GET", "/collections", host=host).json())


@app.command()
def requeue(
    older_than: float = typer.Option(600.0, "--older-than", help="Seconds a task may sit in Processing"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Return stale Processing tasks to the queue."""
    _echo(_request("POST", "/tasks/requeue", host=host, json={"older_than_seconds": older_than}).json())


@app.command()
def fetch(
    url: str = typer.Argument(..., help="Page to download"),
    collection: Optional[str] = typer.Option(None, "--add", help="Queue the page content into this collection"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Fetch a URL through the server, optionally queueing its content."""
    payload = _request("GET", "/fetch", host=host, params={"url": url}).json()
    if collection is None:
        _echo(payload)
        return
    body = {"content": payload["result"]["content"]}
    _echo(_request("PUT", f"/collections/{collection}", host=host, json=body).json())


@app.command()
def parse(
    path: Path = typer.Argument(..., help="PDF file to convert"),
    collection: Optional[str] = typer.Option(None, "--add", help="Queue the extracted text into this collection"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Extract text from a PDF through the server."""
    path = path.expanduser()
    with path.open("rb") as fh:
        files = {"file": (path.name, fh, "application/pdf")}
        payload = _request("POST", "/fetch/parse", host=host, files=files).json()
    if collection is None:
        _echo(payload)
        return
    body = {"content": payload["result"]["parsed"]}
    _echo(_request("PUT", f"/collections/{collection}", host=host, json=body).json())


@app.command()
def worker(
    config: Optional[Path] = typer.Option(None, "--config", help="Path to config.yaml"),
) -> None:
    """Run the ingestion worker in this process until interrupted."""
    from engram.core.config import Settings
    from engram.core.logging import configure_logging
    from engram.engine import build_engine

    configure_logging()
    engine = build_engine(Settings.from_yaml(config))
    try:
        engine.worker.run_forever()
    except KeyboardInterrupt:
        typer.echo("Stopping worker", err=True)
    finally:
        engine.close()


@app.command()
def serve(
    config: Optional[Path] = typer.Option(None, "--config", help="Path to config.yaml"),
    bind: str = typer.Option("127.0.0.1", "--bind", help="Interface to listen on"),
    port: int = typer.Option(8181, "--port", help="Port to listen on"),
    with_worker: Optional[bool] = typer.Option(
        None, "--worker/--no-worker", help="Run the worker inside the API process"
    ),
) -> None:
    """Serve the HTTP API."""
    import uvicorn

    from engram.app import create_app
    from engram.core.config import Settings

    settings = Settings.from_yaml(config)
    if with_worker is not None:
        settings.run_worker = with_worker
    uvicorn.run(create_app(settings), host=bind, port=port, log_level="info")


def _wait_for_task(task_id: int, host: Optional[str], interval: float = 0.5) -> dict:
    while True:
        payload = _request("GET", f"/tasks/{task_id}", host=host).json()
        if payload["result"]["status"] in TERMINAL_STATES:
            return payload
        time.sleep(interval)


if __name__ == "__main__":
    app()
