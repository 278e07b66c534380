"""Tests for database module."""

import sqlite3

import pytest

from replyguard.database import TABLES, db_stats, get_db, init_db, migrate_db
from tests.conftest import insert_contact, insert_sent


def test_init_db_creates_all_tables(db):
    """Schema creates every expected table."""
    stats = db_stats(db)
    for table in TABLES:
        assert table in stats, f"Missing table: {table}"
        assert stats[table] >= 0, f"Table {table} not created properly"


def test_db_stats_empty(db):
    """All tables start with 0 rows."""
    stats = db_stats(db)
    for table, count in stats.items():
        assert count == 0, f"Table {table} should be empty, has {count} rows"


def test_init_db_is_idempotent(db):
    insert_contact(db)
    init_db(db)
    assert db_stats(db)["contacts"] == 1


def test_reply_provider_message_id_unique(db):
    """A provider message can be stored as a reply only once."""
    sent_id = insert_sent(db, insert_contact(db))
    insert = "INSERT INTO replies (sent_message_id, provider_message_id) VALUES (?, ?)"
    db.execute(insert, (sent_id, "m1"))
    with pytest.raises(sqlite3.IntegrityError):
        db.execute(insert, (sent_id, "m1"))


def test_foreign_key_sent_message(db):
    """Sent messages reference contacts via foreign key."""
    with pytest.raises(sqlite3.IntegrityError):
        insert_sent(db, contact_id=999)


def test_get_db_file(tmp_path):
    conn = get_db(db_path=str(tmp_path / "file.db"))
    try:
        assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
        assert conn.row_factory is sqlite3.Row
    finally:
        conn.close()


def test_migrate_db_adds_missing_columns():
    """migrate_db() adds missing columns to a pre-existing schema."""
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.execute(
        """CREATE TABLE sent_messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            contact_id INTEGER NOT NULL,
            provider TEXT,
            thread_id TEXT,
            message_id TEXT,
            subject TEXT,
            sent_at TIMESTAMP NOT NULL,
            reply_received BOOLEAN DEFAULT 0,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )"""
    )
    conn.commit()

    actions = migrate_db(conn)

    assert len(actions) == 2
    assert any("rfc_message_id" in a for a in actions)
    assert any("last_reply_check" in a for a in actions)

    cols = {row["name"] for row in conn.execute("PRAGMA table_info(sent_messages)").fetchall()}
    assert "rfc_message_id" in cols
    assert "last_reply_check" in cols
    # Tables missing entirely are created
    assert db_stats(conn)["manual_review_queue"] == 0
    conn.close()


def test_migrate_db_noop_on_fresh_schema(db):
    """migrate_db() does nothing on a fresh schema that already has all columns."""
    assert migrate_db(db) == []
