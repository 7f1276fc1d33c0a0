"""Tests for the task queue and metadata store."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from engram.core.errors import InvalidTransitionError, MalformedInputError
from engram.db.store import MetadataStore
from engram.models.entities import Segment, TaskError, TaskStatus, TaskType


@pytest.fixture
def store(tmp_path: Path):
    instance = MetadataStore.open(tmp_path / "queue.db")
    yield instance
    instance.close()


def _segment(document_id: str, collection: str, ordinal: int = 0) -> Segment:
    return Segment(
        id=f"{document_id}-{ordinal}",
        document_id=document_id,
        task_id=None,
        collection=collection,
        ordinal=ordinal,
        text="segment text",
        start_char=0,
        end_char=12,
        token_count=2,
    )


def test_enqueue_records_document_and_queued_task(store: MetadataStore) -> None:
    task = store.enqueue("docs", {"title": "Budget"}, "title: Budget")
    assert task.status is TaskStatus.QUEUED
    assert task.task_type is TaskType.INGEST
    document = store.get_document(task.document_id)
    assert document is not None
    assert document.content == {"title": "Budget"}
    assert document.text == "title: Budget"
    assert [collection.name for collection in store.list_collections()] == ["docs"]
    assert store.get_task(task.id).status is TaskStatus.QUEUED


def test_enqueue_rejects_bad_input(store: MetadataStore) -> None:
    with pytest.raises(MalformedInputError):
        store.enqueue("no spaces allowed", "text", "text")
    with pytest.raises(MalformedInputError):
        store.enqueue("docs", 42, "42")  # type: ignore[arg-type]


def test_claim_is_exclusive_across_threads(store: MetadataStore) -> None:
    task = store.enqueue("docs", "hello", "hello")
    barrier = threading.Barrier(8)
    winners: list[int] = []
    lock = threading.Lock()

    def contend() -> None:
        barrier.wait()
        claimed = store.claim(task.id)
        if claimed is not None:
            with lock:
                winners.append(claimed.id)

    threads = [threading.Thread(target=contend) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert winners == [task.id]
    assert store.get_task(task.id).status is TaskStatus.PROCESSING


def test_claim_next_hands_out_each_task_once(store: MetadataStore) -> None:
    expected = {store.enqueue("docs", f"doc {i}", f"doc {i}").id for i in range(20)}
    claimed: list[int] = []
    lock = threading.Lock()

    def drain() -> None:
        while True:
            task = store.claim_next()
            if task is None:
                return
            with lock:
                claimed.append(task.id)

    threads = [threading.Thread(target=drain) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert sorted(claimed) == sorted(expected)
    assert len(claimed) == len(set(claimed))


def test_claim_next_takes_oldest_first(store: MetadataStore) -> None:
    first = store.enqueue("docs", "one", "one")
    second = store.enqueue("docs", "two", "two")
    assert store.claim_next().id == first.id
    assert store.claim_next().id == second.id
    assert store.claim_next() is None


def test_complete_stores_segments_and_output(store: MetadataStore) -> None:
    task = store.enqueue("docs", "hello", "hello")
    store.claim(task.id)
    done = store.complete(task.id, [_segment(task.document_id, "docs", 0), _segment(task.document_id, "docs", 1)])
    assert done.status is TaskStatus.COMPLETED
    assert done.segment_count == 2
    assert done.error is None
    assert [segment.ordinal for segment in store.list_segments(task.document_id)] == [0, 1]
    assert store.count_segments("docs") == 2


def test_transitions_are_monotonic(store: MetadataStore) -> None:
    task = store.enqueue("docs", "hello", "hello")
    with pytest.raises(InvalidTransitionError):
        store.complete(task.id, [])
    store.claim(task.id)
    store.complete(task.id, [])
    assert store.claim(task.id) is None
    with pytest.raises(InvalidTransitionError) as excinfo:
        store.fail(task.id, TaskError("BackendError", "late failure"))
    assert excinfo.value.current == "Completed"
    with pytest.raises(InvalidTransitionError) as missing:
        store.complete(9999, [])
    assert missing.value.current is None


def test_fail_records_error(store: MetadataStore) -> None:
    task = store.enqueue("docs", "hello", "hello")
    store.claim(task.id)
    failed = store.fail(task.id, TaskError("TransientBackendError", "embedding service down"))
    assert failed.status is TaskStatus.FAILED
    assert failed.error == TaskError("TransientBackendError", "embedding service down")
    assert failed.to_dict()["error"]["error_type"] == "TransientBackendError"


def test_failed_complete_leaves_no_segments(store: MetadataStore) -> None:
    task = store.enqueue("docs", "hello", "hello")
    with pytest.raises(InvalidTransitionError):
        store.complete(task.id, [_segment(task.document_id, "docs")])
    assert store.count_segments("docs") == 0


def test_requeue_stale_returns_old_processing_tasks(store: MetadataStore) -> None:
    stale = store.enqueue("docs", "one", "one")
    fresh = store.enqueue("docs", "two", "two")
    store.claim(stale.id)
    store.claim(fresh.id)
    store.db.execute("UPDATE tasks SET updated_at = 0 WHERE id = ?", (stale.id,))
    store.db.commit()

    assert store.requeue_stale(60) == [stale.id]
    assert store.get_task(stale.id).status is TaskStatus.QUEUED
    assert store.get_task(fresh.id).status is TaskStatus.PROCESSING
    assert store.claim_next().id == stale.id


def test_list_tasks_filters(store: MetadataStore) -> None:
    first = store.enqueue("docs", "one", "one")
    store.enqueue("other", "two", "two")
    store.claim(first.id)
    assert [task.id for task in store.list_tasks(collection="docs")] == [first.id]
    assert [task.id for task in store.list_tasks(status=TaskStatus.PROCESSING)] == [first.id]
    assert len(store.list_tasks(limit=1)) == 1


def test_delete_document_returns_segment_ids(store: MetadataStore) -> None:
    task = store.enqueue("docs", "hello", "hello")
    store.claim(task.id)
    store.complete(task.id, [_segment(task.document_id, "docs")])
    collection, segment_ids = store.delete_document(task.document_id)
    assert collection == "docs"
    assert segment_ids == [f"{task.document_id}-0"]
    assert store.count_segments("docs") == 0
    assert store.get_task(task.id).document_id is None
    assert store.delete_document(task.document_id) is None


def test_delete_collection_keeps_running_tasks(store: MetadataStore) -> None:
    running = store.enqueue("docs", "one", "one")
    waiting = store.enqueue("docs", "two", "two")
    store.claim(running.id)
    assert store.delete_collection("docs") is True
    assert store.get_collection("docs") is None
    assert store.count_documents("docs") == 0
    assert store.get_task(waiting.id) is None
    assert store.get_task(running.id).status is TaskStatus.PROCESSING
    assert store.delete_collection("docs") is False
