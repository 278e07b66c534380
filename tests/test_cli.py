"""Tests for CLI commands."""

import sqlite3

import pytest
from typer.testing import CliRunner

from replyguard.aliases import AliasStore
from replyguard.cli import app
from replyguard.service import reset_shared_state
from tests.conftest import FakeAdapter, make_message

runner = CliRunner()


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    """Run commands from a directory whose config.yaml points at a scratch database."""
    for name in ("REPLYGUARD_CONFIG", "REPLYGUARD_DB", "REPLYGUARD_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    db_path = tmp_path / "cli.db"
    (tmp_path / "config.yaml").write_text(f"storage:\n  sqlite_path: {db_path}\n")
    reset_shared_state()
    yield db_path
    reset_shared_state()


def test_help():
    """CLI shows help without error."""
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "reply" in result.output.lower()


def test_db_reset(workdir):
    """db --reset creates a fresh database."""
    result = runner.invoke(app, ["db", "--reset"])
    assert result.exit_code == 0
    assert "reset" in result.output.lower()
    assert workdir.exists()


def test_db_stats(workdir):
    """db --stats shows table counts."""
    result = runner.invoke(app, ["db", "--stats"])
    assert result.exit_code == 0
    assert "sent_messages" in result.output
    assert "manual_review_queue" in result.output


def test_db_migrate_fresh(workdir):
    runner.invoke(app, ["db", "--reset"])
    result = runner.invoke(app, ["db", "--migrate"])
    assert result.exit_code == 0
    assert "0 change(s)" in result.output


def test_contact_and_sent_flow(workdir):
    result = runner.invoke(app, ["contact", "add", "u1", "Sarah@Acme.com", "--name", "Sarah"])
    assert result.exit_code == 0
    assert "Contact #1 saved." in result.output

    result = runner.invoke(
        app, ["sent", "add", "u1", "1", "--subject", "Pricing", "--sent-at", "2026-03-02T09:00:00+00:00"],
    )
    assert result.exit_code == 0
    assert "Sent message #1 recorded." in result.output

    result = runner.invoke(app, ["sent", "list", "--unreplied"])
    assert result.exit_code == 0
    assert "sarah@acme.com" in result.output
    assert "waiting" in result.output


def test_sent_add_bad_timestamp(workdir):
    runner.invoke(app, ["contact", "add", "u1", "sarah@acme.com"])
    result = runner.invoke(app, ["sent", "add", "u1", "1", "--sent-at", "whenever"])
    assert result.exit_code == 1


def test_empty_listings(workdir):
    assert "No sent messages found." in runner.invoke(app, ["sent", "list"]).output
    assert "No review items." in runner.invoke(app, ["review", "list"]).output
    assert "No anomalies." in runner.invoke(app, ["anomalies"]).output
    assert "No accounts connected." in runner.invoke(app, ["account", "list"]).output
    assert "No audit entries." in runner.invoke(app, ["audit", "1"]).output


def test_account_add_unknown_provider(workdir):
    result = runner.invoke(app, ["account", "add", "u1", "hotmail"])
    assert result.exit_code == 1


def test_review_accept_missing_item(workdir):
    result = runner.invoke(app, ["review", "accept", "5", "--by", "ops"])
    assert result.exit_code == 1


def test_review_stats(workdir):
    result = runner.invoke(app, ["review", "stats"])
    assert result.exit_code == 0
    assert "pending" in result.output


def test_health_unknown_user(workdir):
    result = runner.invoke(app, ["health", "ghost"])
    assert result.exit_code == 1


def test_scheduler_unknown_job(workdir):
    result = runner.invoke(app, ["scheduler", "--job", "defragment"])
    assert result.exit_code == 1


def test_contact_list_and_show(workdir):
    runner.invoke(app, ["contact", "add", "u1", "sarah@acme.com", "--name", "Sarah Chen"])

    result = runner.invoke(app, ["contact", "list", "--user", "u1"])
    assert "sarah@acme.com" in result.output
    assert "Sarah Chen" in result.output
    assert "No contacts found." in runner.invoke(app, ["contact", "list", "--user", "u2"]).output

    result = runner.invoke(app, ["contact", "show", "1"])
    assert result.exit_code == 0
    assert "No aliases." in result.output
    assert runner.invoke(app, ["contact", "show", "99"]).exit_code == 1


def test_alias_verify_and_invalidate(workdir):
    runner.invoke(app, ["contact", "add", "u1", "sarah@acme.com"])
    conn = sqlite3.connect(workdir)
    conn.row_factory = sqlite3.Row
    AliasStore(conn).record(1, "s.chen@acme.io")
    conn.close()

    result = runner.invoke(app, ["alias", "verify", "1", "S.Chen@acme.io"])
    assert result.exit_code == 0
    assert "verified" in runner.invoke(app, ["contact", "show", "1"]).output

    result = runner.invoke(app, ["alias", "invalidate", "1", "s.chen@acme.io"])
    assert result.exit_code == 0
    assert "No aliases." in runner.invoke(app, ["contact", "show", "1"]).output
    assert runner.invoke(app, ["alias", "invalidate", "1", "s.chen@acme.io"]).exit_code == 1
    assert runner.invoke(app, ["alias", "verify", "1", "s.chen@acme.io"]).exit_code == 1


def test_sync_reset_and_checkpoints(workdir, monkeypatch):
    adapter = FakeAdapter()
    monkeypatch.setattr("replyguard.providers.get_adapter", lambda account, cfg: adapter)
    runner.invoke(app, ["account", "add", "u1", "gmail", "--email", "brandon@example.com"])
    assert "No sync checkpoints." in runner.invoke(app, ["checkpoints"]).output
    assert "Sync initialized" in runner.invoke(app, ["sync", "u1"]).output
    adapter.deliver(make_message("m1", "x@y.com"))
    adapter.deliver(make_message("m2", "x@y.com"))

    result = runner.invoke(app, ["sync", "u1", "--reset"])

    assert result.exit_code == 0
    assert "Checkpoint for u1/gmail reset." in result.output
    # Mail that arrived before the reset is skipped, not replayed
    assert "Sync initialized: 0 processed" in result.output
    result = runner.invoke(app, ["checkpoints", "--user", "u1"])
    line = next(l for l in result.output.splitlines() if l.strip().startswith("u1"))
    assert line.split()[:4] == ["u1", "gmail", "active", "2"]


def test_sync_reset_unknown_user(workdir):
    assert runner.invoke(app, ["sync", "ghost", "--reset"]).exit_code == 1
