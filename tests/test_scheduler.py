"""Tests for the scheduler job bodies."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from replyguard import accounts
from replyguard.clock import to_iso, utcnow
from replyguard.config import Config
from replyguard.database import get_db, init_db
from replyguard.errors import CredentialError
from replyguard.notify import ALERT_CREDENTIALS, ALERT_PUSH_FAILING, ALERT_SYNC_STALE
from replyguard.scheduler import ReplyScheduler
from replyguard.service import build_service
from replyguard.stores import build_state_stores
from tests.conftest import insert_account


@pytest.fixture
def file_config(tmp_path):
    config = Config()
    config.storage.sqlite_path = str(tmp_path / "scheduler.db")
    return config


@pytest.fixture
def conn(file_config):
    """Connection for arranging and asserting; jobs open their own."""
    connection = get_db(file_config)
    init_db(connection)
    yield connection
    connection.close()


@pytest.fixture
def scheduler(file_config, conn, adapter, monkeypatch):
    monkeypatch.setattr("replyguard.providers.get_adapter", lambda account, cfg: adapter)
    stores = build_state_stores(file_config)
    return ReplyScheduler(
        file_config,
        service_factory=lambda cfg: build_service(cfg, stores),
        scheduler=MagicMock(),
    )


def _alert_types(conn, user_id="u1"):
    rows = conn.execute("SELECT alert_type FROM alerts WHERE user_id = ? ORDER BY id", (user_id,)).fetchall()
    return [r["alert_type"] for r in rows]


def test_start_registers_every_tier(scheduler):
    scheduler.start()

    job_ids = [c.kwargs["id"] for c in scheduler.scheduler.add_job.call_args_list]
    assert sorted(job_ids) == sorted(scheduler.jobs)
    for call in scheduler.scheduler.add_job.call_args_list:
        assert call.kwargs["replace_existing"]
        assert call.kwargs["max_instances"] == 1
    scheduler.scheduler.start.assert_called_once()


def test_hourly_reconciliation_can_be_disabled(scheduler):
    scheduler.config.scheduler.hourly_reconciliation = False
    scheduler.start()
    job_ids = [c.kwargs["id"] for c in scheduler.scheduler.add_job.call_args_list]
    assert "hourly_reconciliation" not in job_ids


def test_shutdown_only_when_running(scheduler):
    scheduler.scheduler.running = False
    scheduler.shutdown()
    scheduler.scheduler.shutdown.assert_not_called()

    scheduler.scheduler.running = True
    scheduler.shutdown()
    scheduler.scheduler.shutdown.assert_called_once_with(wait=False)


def test_run_job_unknown_name(scheduler):
    with pytest.raises(ValueError, match="Unknown job"):
        scheduler.run_job("defragment")


def test_failing_job_is_logged_not_raised(scheduler):
    def broken(cfg):
        raise RuntimeError("database unavailable")

    scheduler.service_factory = broken
    assert scheduler.run_job("delta_sweep") is None


def test_delta_sweep(conn, scheduler):
    insert_account(conn, user_id="u1")
    insert_account(conn, user_id="u2", email="other@example.com")

    assert scheduler.run_job("delta_sweep") == 2
    rows = conn.execute("SELECT user_id, cursor FROM sync_checkpoints ORDER BY user_id").fetchall()
    assert [(r["user_id"], r["cursor"]) for r in rows] == [("u1", "0"), ("u2", "0")]


def test_parallel_delta_sweep(conn, scheduler):
    for n in range(4):
        insert_account(conn, user_id=f"u{n}", email=f"user{n}@example.com")
    scheduler.config.scheduler.sweep_workers = 3

    assert scheduler.run_job("delta_sweep") == 4
    assert conn.execute("SELECT COUNT(*) AS cnt FROM sync_checkpoints").fetchone()["cnt"] == 4


def test_polling_and_push_maintenance(conn, adapter, scheduler):
    insert_account(conn)

    assert scheduler.run_job("polling") == 1

    adapter.push_enabled = True
    adapter.watch_result = {"history_id": "1", "expiration": to_iso(utcnow() + timedelta(days=7))}
    assert scheduler.run_job("push_maintenance") == {"restored": 1, "renewed": 0}
    # On push now: nothing left to poll
    assert scheduler.run_job("polling") == 0


def test_health_check_credential_failure(conn, adapter, scheduler):
    insert_account(conn)
    adapter.failures["check_health"] = CredentialError("invalid_grant", "gmail")

    assert scheduler.run_job("health_check") == 1
    assert scheduler.run_job("health_check") == 0

    assert _alert_types(conn) == [ALERT_CREDENTIALS]
    # Logged once on the transition to unhealthy
    anomalies = conn.execute(
        "SELECT COUNT(*) AS cnt FROM reconciliation_anomalies WHERE anomaly_type = 'token_unhealthy'"
    ).fetchone()
    assert anomalies["cnt"] == 1
    assert accounts.get_account(conn, "u1").needs_reauth


def test_health_check_stale_sync(conn, scheduler):
    insert_account(conn)
    conn.execute(
        """INSERT INTO sync_checkpoints (user_id, provider, cursor, status, last_sync_at, last_error)
           VALUES ('u1', 'gmail', '5', 'error', ?, 'rate limited')""",
        (to_iso(utcnow() - timedelta(hours=3)),),
    )
    conn.commit()

    assert scheduler.run_job("health_check") == 1
    message = conn.execute("SELECT message FROM alerts").fetchone()["message"]
    assert _alert_types(conn) == [ALERT_SYNC_STALE]
    assert "rate limited" in message


def test_health_check_quiet_when_fresh(conn, scheduler):
    insert_account(conn)
    scheduler.run_job("delta_sweep")
    assert scheduler.run_job("health_check") == 0


def test_health_check_push_failures(conn, scheduler):
    insert_account(conn)
    with scheduler.service_factory(scheduler.config) as service:
        for _ in range(3):
            service.push.record_failure("u1", "gmail", "watch expired")
        service.sync.sync_user("u1")

    assert scheduler.run_job("health_check") == 1
    assert _alert_types(conn) == [ALERT_PUSH_FAILING]


def test_push_failure_alert_follows_scheduler_threshold(conn, scheduler):
    scheduler.config.scheduler.push_failure_threshold = 2
    insert_account(conn)
    with scheduler.service_factory(scheduler.config) as service:
        for _ in range(2):
            service.push.record_failure("u1", "gmail", "watch expired")
        service.sync.sync_user("u1")

    assert scheduler.run_job("health_check") == 1
    assert _alert_types(conn) == [ALERT_PUSH_FAILING]


def test_refresh_credentials(conn, adapter, scheduler, monkeypatch):
    expiry = utcnow() + timedelta(hours=1)
    insert_account(conn, token_expires_at=utcnow() + timedelta(hours=2))
    monkeypatch.setattr(adapter, "refresh_credentials", lambda: expiry)

    assert scheduler.run_job("credential_refresh") == 1
    stored = accounts.get_account(conn, "u1").token_expires_at
    assert to_iso(stored) == to_iso(expiry)


def test_refresh_skips_far_expiry_and_passwords(conn, scheduler):
    insert_account(conn, user_id="u1", token_expires_at=utcnow() + timedelta(days=10))
    insert_account(conn, user_id="u2", provider="yahoo", email="y@yahoo.com")
    # u2 has no expiry and the adapter returns None: nothing to store
    assert scheduler.run_job("credential_refresh") == 0


def test_refresh_credential_failure_flags_reauth(conn, adapter, scheduler):
    insert_account(conn)
    adapter.failures["refresh_credentials"] = CredentialError("invalid_grant", "gmail")

    assert scheduler.run_job("credential_refresh") == 0
    assert accounts.get_account(conn, "u1").needs_reauth
    assert _alert_types(conn) == [ALERT_CREDENTIALS]


def test_reconciliation_jobs(conn, scheduler):
    insert_account(conn)
    hourly = scheduler.run_job("hourly_reconciliation")
    assert hourly["run_type"] == "hourly"

    nightly = scheduler.run_job("nightly_reconciliation")
    assert nightly["run_type"] == "nightly"
    assert set(nightly["pruned"]) == {"audit", "anomalies", "reviews", "aliases"}
