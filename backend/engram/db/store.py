"""Relational metadata: collections, documents, tasks and segments.

The task table doubles as the work queue. Every state change is a conditional
``UPDATE ... WHERE status = ?`` so the database, not a Python lock, decides who
wins a race: exactly one caller sees ``rowcount == 1``.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

import orjson

from engram.core.errors import DataIntegrityError, InvalidTransitionError, MalformedInputError
from engram.core.logging import get_logger
from engram.db.sqlite import SQLiteDatabase
from engram.models.entities import (
    Collection,
    Document,
    Segment,
    Task,
    TaskError,
    TaskStatus,
    TaskType,
    validate_collection_name,
)
from engram.utils.hashing import sha256_text
from engram.utils.ids import new_id
from engram.utils.time import now_ms

logger = get_logger(__name__)

_CLAIM_BATCH = 8


class MetadataStore:
    """Repository over the SQLite schema in ``schema.sql``."""

    def __init__(self, db: SQLiteDatabase) -> None:
        self.db = db

    @classmethod
    def open(cls, db_path: Path) -> "MetadataStore":
        db = SQLiteDatabase(db_path)
        db.ensure_schema()
        return cls(db)

    def close(self) -> None:
        self.db.close_all()

    # Collections & documents -------------------------------------------

    def list_collections(self) -> list[Collection]:
        rows = self.db.query("SELECT name, created_at FROM collections ORDER BY name")
        return [Collection(name=row["name"], created_at=row["created_at"]) for row in rows]

    def get_collection(self, name: str) -> Collection | None:
        rows = self.db.query("SELECT name, created_at FROM collections WHERE name = ?", (name,))
        if not rows:
            return None
        return Collection(name=rows[0]["name"], created_at=rows[0]["created_at"])

    def count_documents(self, collection: str) -> int:
        rows = self.db.query("SELECT COUNT(*) AS n FROM documents WHERE collection = ?", (collection,))
        return int(rows[0]["n"])

    def get_document(self, document_id: str) -> Document | None:
        rows = self.db.query(
            "SELECT id, collection, content_json, text, sha256, created_at FROM documents WHERE id = ?",
            (document_id,),
        )
        if not rows:
            return None
        row = rows[0]
        return Document(
            id=row["id"],
            collection=row["collection"],
            content=orjson.loads(row["content_json"]),
            text=row["text"],
            sha256=row["sha256"],
            created_at=row["created_at"],
        )

    def delete_document(self, document_id: str) -> tuple[str, list[str]] | None:
        """Delete a document and its segments; returns its collection and former segment ids."""
        with self.db.transaction() as cur:
            row = cur.execute("SELECT collection FROM documents WHERE id = ?", (document_id,)).fetchone()
            if row is None:
                return None
            segment_ids = [
                item["id"]
                for item in cur.execute(
                    "SELECT id FROM segments WHERE document_id = ? ORDER BY ordinal", (document_id,)
                ).fetchall()
            ]
            cur.execute("DELETE FROM documents WHERE id = ?", (document_id,))
        logger.info("Deleted document %s (%s segments)", document_id, len(segment_ids))
        return row["collection"], segment_ids

    def delete_collection(self, name: str) -> bool:
        """Drop a collection with its documents, segments and non-running tasks."""
        with self.db.transaction() as cur:
            deleted = cur.execute("DELETE FROM collections WHERE name = ?", (name,)).rowcount
            cur.execute(
                "DELETE FROM tasks WHERE collection = ? AND status != ?",
                (name, TaskStatus.PROCESSING.value),
            )
        if deleted:
            logger.info("Deleted collection %s", name)
        return bool(deleted)

    # Queue ---------------------------------------------------------------

    def enqueue(
        self,
        collection: str,
        content: str | Mapping[str, Any],
        text: str,
        task_type: TaskType = TaskType.INGEST,
    ) -> Task:
        """Persist the document and a Queued task in one transaction."""
        validate_collection_name(collection)
        if not isinstance(content, (str, Mapping)):
            raise MalformedInputError("Document content must be a string or a mapping")
        now = now_ms()
        document_id = new_id()
        with self.db.transaction() as cur:
            cur.execute(
                "INSERT OR IGNORE INTO collections (name, created_at) VALUES (?, ?)",
                (collection, now),
            )
            cur.execute(
                """
                INSERT INTO documents (id, collection, content_json, text, sha256, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    document_id,
                    collection,
                    orjson.dumps(content if isinstance(content, str) else dict(content)).decode("utf-8"),
                    text,
                    sha256_text(text),
                    now,
                ),
            )
            cur.execute(
                """
                INSERT INTO tasks (collection, document_id, task_type, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (collection, document_id, task_type.value, TaskStatus.QUEUED.value, now, now),
            )
            task_id = int(cur.lastrowid)
        logger.info(
            "Enqueued task",
            extra={"ctx_task_id": task_id, "ctx_collection": collection, "ctx_task_type": task_type.value},
        )
        return Task(
            id=task_id,
            collection=collection,
            document_id=document_id,
            task_type=task_type,
            status=TaskStatus.QUEUED,
            created_at=now,
            updated_at=now,
        )

    def claim(self, task_id: int) -> Task | None:
        """Move one task from Queued to Processing; None when another claimer won."""
        with self.db.transaction() as cur:
            changed = cur.execute(
                "UPDATE tasks SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (TaskStatus.PROCESSING.value, now_ms(), task_id, TaskStatus.QUEUED.value),
            ).rowcount
        if changed != 1:
            return None
        return self.get_task(task_id)

    def claim_next(self) -> Task | None:
        """Claim the oldest Queued task, if any."""
        while True:
            rows = self.db.query(
                "SELECT id FROM tasks WHERE status = ? ORDER BY created_at, id LIMIT ?",
                (TaskStatus.QUEUED.value, _CLAIM_BATCH),
            )
            if not rows:
                return None
            for row in rows:
                task = self.claim(int(row["id"]))
                if task is not None:
                    return task
            # Every candidate was taken by someone else; look again.

    def complete(self, task_id: int, segments: Sequence[Segment], output: str | None = None) -> Task:
        """Insert segment rows and mark the task Completed atomically."""
        now = now_ms()
        try:
            self._complete(task_id, segments, output, now)
        except sqlite3.IntegrityError as exc:
            # Segments reference their document; it was deleted while the task ran.
            raise DataIntegrityError(f"Document of task {task_id} was deleted before completion: {exc}") from exc
        return self._require_task(task_id)

    def _complete(self, task_id: int, segments: Sequence[Segment], output: str | None, now: int) -> None:
        with self.db.transaction() as cur:
            cur.executemany(
                """
                INSERT OR REPLACE INTO segments (
                  id, document_id, task_id, collection, ordinal,
                  start_char, end_char, text, token_count, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        segment.id,
                        segment.document_id,
                        task_id,
                        segment.collection,
                        segment.ordinal,
                        segment.start_char,
                        segment.end_char,
                        segment.text,
                        segment.token_count,
                        segment.created_at or now,
                    )
                    for segment in segments
                ],
            )
            changed = cur.execute(
                """
                UPDATE tasks SET status = ?, output = ?, segment_count = ?, error_json = NULL, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (TaskStatus.COMPLETED.value, output, len(segments), now, task_id, TaskStatus.PROCESSING.value),
            ).rowcount
            if changed != 1:
                raise self._transition_error(cur, task_id, TaskStatus.COMPLETED)

    def fail(self, task_id: int, error: TaskError) -> Task:
        with self.db.transaction() as cur:
            changed = cur.execute(
                "UPDATE tasks SET status = ?, error_json = ?, updated_at = ? WHERE id = ? AND status = ?",
                (
                    TaskStatus.FAILED.value,
                    orjson.dumps(error.to_dict()).decode("utf-8"),
                    now_ms(),
                    task_id,
                    TaskStatus.PROCESSING.value,
                ),
            ).rowcount
            if changed != 1:
                raise self._transition_error(cur, task_id, TaskStatus.FAILED)
        return self._require_task(task_id)

    def requeue_stale(self, older_than_seconds: float) -> list[int]:
        """Return Processing tasks untouched for longer than the cutoff to Queued."""
        cutoff = now_ms() - int(older_than_seconds * 1000)
        with self.db.transaction() as cur:
            ids = [
                int(row["id"])
                for row in cur.execute(
                    "SELECT id FROM tasks WHERE status = ? AND updated_at < ? ORDER BY id",
                    (TaskStatus.PROCESSING.value, cutoff),
                ).fetchall()
            ]
            cur.executemany(
                "UPDATE tasks SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                [(TaskStatus.QUEUED.value, now_ms(), task_id, TaskStatus.PROCESSING.value) for task_id in ids],
            )
        if ids:
            logger.warning("Requeued %s stale tasks", len(ids), extra={"ctx_task_ids": ids})
        return ids

    def get_task(self, task_id: int) -> Task | None:
        rows = self.db.query("SELECT * FROM tasks WHERE id = ?", (task_id,))
        return _row_to_task(rows[0]) if rows else None

    def list_tasks(
        self,
        collection: str | None = None,
        status: TaskStatus | None = None,
        limit: int = 100,
    ) -> list[Task]:
        clauses: list[str] = []
        params: list[Any] = []
        if collection is not None:
            clauses.append("collection = ?")
            params.append(collection)
        if status is not None:
            clauses.append("status = ?")
            params.append(TaskStatus(status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        rows = self.db.query(f"SELECT * FROM tasks {where} ORDER BY created_at DESC, id DESC LIMIT ?", params)
        return [_row_to_task(row) for row in rows]

    # Segments ------------------------------------------------------------

    def segments_by_ids(self, collection: str, segment_ids: Iterable[str]) -> dict[str, Segment]:
        """Resolve vector hits to segments whose document still exists."""
        ids = list(dict.fromkeys(segment_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        rows = self.db.query(
            f"""
            SELECT s.* FROM segments s
            JOIN documents d ON d.id = s.document_id
            WHERE s.collection = ? AND s.id IN ({placeholders})
            """,
            [collection, *ids],
        )
        return {row["id"]: _row_to_segment(row) for row in rows}

    def list_segments(self, document_id: str) -> list[Segment]:
        rows = self.db.query("SELECT * FROM segments WHERE document_id = ? ORDER BY ordinal", (document_id,))
        return [_row_to_segment(row) for row in rows]

    def count_segments(self, collection: str) -> int:
        rows = self.db.query("SELECT COUNT(*) AS n FROM segments WHERE collection = ?", (collection,))
        return int(rows[0]["n"])

    # Internals -----------------------------------------------------------

    def _require_task(self, task_id: int) -> Task:
        task = self.get_task(task_id)
        if task is None:
            raise DataIntegrityError(f"Task {task_id} vanished")
        return task

    @staticmethod
    def _transition_error(cur: Any, task_id: int, target: TaskStatus) -> InvalidTransitionError:
        row = cur.execute("SELECT status FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return InvalidTransitionError(task_id, row["status"] if row else None, target.value)


def _row_to_task(row: Any) -> Task:
    error = None
    if row["error_json"]:
        payload = orjson.loads(row["error_json"])
        error = TaskError(error_type=payload.get("error_type", "Error"), message=payload.get("message", ""))
    return Task(
        id=int(row["id"]),
        collection=row["collection"],
        document_id=row["document_id"],
        task_type=TaskType(row["task_type"]),
        status=TaskStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        error=error,
        output=row["output"],
        segment_count=row["segment_count"],
    )


def _row_to_segment(row: Any) -> Segment:
    return Segment(
        id=row["id"],
        document_id=row["document_id"],
        task_id=row["task_id"],
        collection=row["collection"],
        ordinal=row["ordinal"],
        text=row["text"],
        start_char=row["start_char"],
        end_char=row["end_char"],
        token_count=row["token_count"],
        created_at=row["created_at"],
    )


__all__ = ["MetadataStore"]
