"""TaskManager: background sweeps, syncs, detections and reconciliations via ThreadPoolExecutor."""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor

from replyguard.clock import to_iso, utcnow
from replyguard.config import Config, load_config

logger = logging.getLogger(__name__)

# SSE event bus: worker threads post updates, the SSE endpoint reads them
_event_listeners: list = []
_event_lock = threading.Lock()


def publish_event(event: dict) -> None:
    """Publish a task event to all SSE listeners."""
    with _event_lock:
        for q in _event_listeners:
            q.append(event)


def subscribe_events() -> list:
    """Return a new event queue that receives task events."""
    q: list = []
    with _event_lock:
        _event_listeners.append(q)
    return q


def unsubscribe_events(q: list) -> None:
    """Remove an event queue from the listener list."""
    with _event_lock:
        try:
            _event_listeners.remove(q)
        except ValueError:
            pass


TASK_DESCRIPTIONS = {
    "sweep": "Delta sync of every connected mailbox",
    "sync": "Delta sync of one user's mailbox",
    "detect": "Run all detection layers for one sent message",
    "reconcile": "Hourly or nightly reconciliation run",
}


class TaskManager:
    """Runs tasks in background threads and records them in task_runs.

    Failures are stored on the run and published as ``task_failed`` events,
    never swallowed.
    """

    def __init__(self, config: Config | None = None, max_workers: int = 2, service_factory=None):
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="replyguard-task")
        self._active_runs: dict[int, Future] = {}
        self._config = config
        self._service_factory = service_factory

    def _get_config(self) -> Config:
        if self._config is None:
            self._config = load_config()
        return self._config

    def _connect(self):
        from replyguard.database import get_db, init_db

        conn = get_db(self._get_config())
        init_db(conn)
        return conn

    def run_task(self, task: str, triggered_by: str = "web", **params) -> int:
        """Submit a task to run in background. Returns run_id."""
        if task not in TASK_DESCRIPTIONS:
            raise ValueError(f"Unknown task: {task!r}. Use one of {', '.join(TASK_DESCRIPTIONS)}.")

        conn = self._connect()
        try:
            cursor = conn.execute(
                """INSERT INTO task_runs (task, status, triggered_by, params, created_at)
                   VALUES (?, 'pending', ?, ?, ?)""",
                (task, triggered_by, json.dumps(params), to_iso(utcnow())),
            )
            run_id = cursor.lastrowid
            conn.commit()
        finally:
            conn.close()

        future = self.executor.submit(self._execute_task, run_id, task, params)
        self._active_runs[run_id] = future
        publish_event({"type": "task_queued", "run_id": run_id, "task": task})
        return run_id

    def _execute_task(self, run_id: int, task: str, params: dict) -> None:
        """Runs in background thread."""
        from replyguard.service import build_service

        conn = self._connect()
        conn.execute(
            "UPDATE task_runs SET status = 'running', started_at = ? WHERE id = ?",
            (to_iso(utcnow()), run_id),
        )
        conn.commit()
        publish_event({"type": "task_started", "run_id": run_id, "task": task})

        try:
            factory = self._service_factory or build_service
            with factory(self._get_config()) as service:
                result = service.run_task(task, **params)
            conn.execute(
                """UPDATE task_runs SET status = 'completed', completed_at = ?, result = ?
                   WHERE id = ?""",
                (to_iso(utcnow()), json.dumps(result, default=str), run_id),
            )
            conn.commit()
            publish_event({"type": "task_completed", "run_id": run_id, "task": task, "result": result})
        except Exception as e:
            logger.exception("Task %s (run %d) failed", task, run_id)
            conn.execute(
                """UPDATE task_runs SET status = 'failed', completed_at = ?, error_message = ?
                   WHERE id = ?""",
                (to_iso(utcnow()), str(e), run_id),
            )
            conn.commit()
            publish_event({"type": "task_failed", "run_id": run_id, "task": task, "error": str(e)})
        finally:
            conn.close()
            self._active_runs.pop(run_id, None)

    def get_status(self, run_id: int) -> dict | None:
        """Get current status of a task run."""
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM task_runs WHERE id = ?", (run_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return _run_to_dict(row)

    def list_runs(self, limit: int = 20) -> list[dict]:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT * FROM task_runs ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        finally:
            conn.close()
        return [_run_to_dict(r) for r in rows]

    def wait(self, run_id: int, timeout: float | None = None) -> None:
        """Block until a submitted run finishes (CLI and tests)."""
        future = self._active_runs.get(run_id)
        if future is not None:
            future.result(timeout=timeout)


def _run_to_dict(row) -> dict:
    item = dict(row)
    item["params"] = json.loads(row["params"]) if row["params"] else {}
    item["result"] = json.loads(row["result"]) if row["result"] else None
    return item


# Global singleton
task_manager = TaskManager()
