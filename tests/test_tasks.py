"""Tests for background task execution and the event bus."""

import pytest

from replyguard.config import Config
from replyguard.database import get_db, init_db
from replyguard.service import build_service
from replyguard.stores import build_state_stores
from replyguard.tasks import TaskManager, publish_event, subscribe_events, unsubscribe_events
from tests.conftest import insert_account


@pytest.fixture
def manager(tmp_path, adapter, monkeypatch):
    config = Config()
    config.storage.sqlite_path = str(tmp_path / "tasks.db")
    stores = build_state_stores(config)
    monkeypatch.setattr("replyguard.providers.get_adapter", lambda account, cfg: adapter)
    tm = TaskManager(config, max_workers=1, service_factory=lambda cfg: build_service(cfg, stores))
    yield tm
    tm.executor.shutdown(wait=True)


def test_unknown_task_rejected(manager):
    with pytest.raises(ValueError, match="Unknown task"):
        manager.run_task("defrag")


def test_sweep_task_completes(manager):
    conn = get_db(manager._get_config())
    init_db(conn)
    insert_account(conn)
    conn.close()
    events = subscribe_events()
    try:
        run_id = manager.run_task("sweep", triggered_by="cli")
        manager.wait(run_id, timeout=10)
    finally:
        unsubscribe_events(events)

    status = manager.get_status(run_id)
    assert status["status"] == "completed"
    assert status["triggered_by"] == "cli"
    assert status["result"]["accounts"] == 1
    assert [e["type"] for e in events] == ["task_queued", "task_started", "task_completed"]


def test_failed_task_recorded(manager):
    run_id = manager.run_task("reconcile", run_type="weekly")
    manager.wait(run_id, timeout=10)

    status = manager.get_status(run_id)
    assert status["status"] == "failed"
    assert "weekly" in status["error_message"]
    assert status["params"] == {"run_type": "weekly"}


def test_list_runs_and_missing_status(manager):
    first = manager.run_task("reconcile", run_type="hourly")
    manager.wait(first, timeout=10)
    assert [r["id"] for r in manager.list_runs()] == [first]
    assert manager.get_status(9999) is None


def test_event_bus():
    queue = subscribe_events()
    publish_event({"type": "task_queued", "run_id": 1})
    unsubscribe_events(queue)
    unsubscribe_events(queue)
    publish_event({"type": "task_started", "run_id": 1})
    assert queue == [{"type": "task_queued", "run_id": 1}]
