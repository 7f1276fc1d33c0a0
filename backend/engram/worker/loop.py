"""Polling worker that drains the task queue.

The worker claims Queued tasks (the only coordinated step, see
``MetadataStore.claim``) and hands them to a thread pool bounded by
``max_active``. Whatever goes wrong inside a task is recorded on that task as
Failed; the loop itself keeps polling.
"""

from __future__ import annotations

import sqlite3
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor

from engram.core.errors import InvalidTransitionError
from engram.core.logging import get_logger
from engram.core.metrics import ACTIVE_TASKS, TASK_DURATION, TASKS_TOTAL
from engram.db.store import MetadataStore
from engram.ingest.pipeline import IngestPipeline
from engram.models.entities import Task, TaskError, TaskStatus

logger = get_logger(__name__)


class Worker:
    def __init__(
        self,
        store: MetadataStore,
        pipeline: IngestPipeline,
        poll_interval: float = 0.1,
        max_active: int = 5,
    ) -> None:
        self.store = store
        self.pipeline = pipeline
        self.poll_interval = poll_interval
        self.max_active = max(1, max_active)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self) -> bool:
        """Claim and process a single task inline; False when the queue is empty."""
        task = self._claim()
        if task is None:
            return False
        self.execute(task)
        return True

    def run_forever(self, stop_event: threading.Event | None = None) -> None:
        stop = stop_event or self._stop
        logger.info(
            "Worker started",
            extra={"ctx_max_active": self.max_active, "ctx_poll_interval": self.poll_interval},
        )
        with ThreadPoolExecutor(max_workers=self.max_active, thread_name_prefix="engram-task") as executor:
            active: set[Future] = set()
            while not stop.is_set():
                active = {future for future in active if not future.done()}
                claimed = False
                while len(active) < self.max_active and not stop.is_set():
                    task = self._claim()
                    if task is None:
                        break
                    active.add(executor.submit(self.execute, task))
                    claimed = True
                if not claimed or len(active) >= self.max_active:
                    stop.wait(self.poll_interval)
            if active:
                logger.info("Waiting for %s in-flight tasks", len(active))
        logger.info("Worker stopped")

    def start(self) -> None:
        """Run the loop in a daemon thread (API and worker in one process)."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="engram-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def execute(self, task: Task) -> Task | None:
        """Process a claimed task and record its terminal state."""
        ACTIVE_TASKS.inc()
        started = time.perf_counter()
        result: Task | None = None
        try:
            result = self.pipeline.process(task)
        except Exception as exc:
            error = TaskError.from_exception(exc)
            logger.warning(
                "Task failed: %s",
                error.message,
                extra={"ctx_task_id": task.id, "ctx_error_type": error.error_type},
                exc_info=not isinstance(exc, InvalidTransitionError),
            )
            result = self._fail(task, error)
        finally:
            ACTIVE_TASKS.dec()
            TASK_DURATION.labels(task_type=task.task_type.value).observe(time.perf_counter() - started)
        if result is not None:
            TASKS_TOTAL.labels(task_type=task.task_type.value, status=result.status.value).inc()
        return result

    def _fail(self, task: Task, error: TaskError) -> Task | None:
        try:
            return self.store.fail(task.id, error)
        except InvalidTransitionError as exc:
            logger.warning("Could not mark task failed: %s", exc, extra={"ctx_task_id": task.id})
            current = self.store.get_task(task.id)
            return current if current is not None and current.status is TaskStatus.FAILED else None
        except sqlite3.Error:
            logger.exception("Could not record failure of task %s; it stays Processing", task.id)
            return None

    def _claim(self) -> Task | None:
        try:
            return self.store.claim_next()
        except sqlite3.Error as exc:
            logger.warning("Claim query failed, retrying next tick: %s", exc)
            return None


__all__ = ["Worker"]
