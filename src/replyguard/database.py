"""SQLite database connection and schema management."""

from __future__ import annotations

import sqlite3
from pathlib import Path

from replyguard.config import Config, load_config

_SCHEMA_PATH = Path(__file__).parent / "schema.sql"

TABLES = [
    "accounts", "contacts", "sent_messages", "replies", "processed_messages",
    "sync_checkpoints", "contact_aliases", "manual_review_queue",
    "detection_audit_log", "reconciliation_runs", "reconciliation_anomalies",
    "alerts", "task_runs", "kv_store",
]


def get_db(config: Config | None = None, db_path: str | None = None) -> sqlite3.Connection:
    """Return a configured SQLite connection.

    Uses WAL mode and row_factory=sqlite3.Row for dict-like access. The
    connection may be handed to another thread but must not be used by two
    threads at once.
    """
    if db_path is None:
        if config is None:
            config = load_config()
        db_path = config.storage.sqlite_path

    conn = sqlite3.connect(db_path, timeout=10, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=5000")
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    """Create all tables from schema.sql."""
    schema = _SCHEMA_PATH.read_text()
    conn.executescript(schema)


def reset_db(config: Config | None = None) -> sqlite3.Connection:
    """Drop and recreate the database. Returns a fresh connection."""
    if config is None:
        config = load_config()

    db_path = Path(config.storage.sqlite_path)
    if db_path.exists():
        db_path.unlink()

    conn = get_db(config)
    init_db(conn)
    return conn


def migrate_db(conn: sqlite3.Connection) -> list[str]:
    """Run schema migrations for columns that may be missing from older databases.

    Uses PRAGMA table_info to detect missing columns and ALTER TABLE to add them.
    Returns list of migration actions taken.
    """
    migrations: list[str] = []

    # Columns added after the first release: (table, column, type)
    expected_columns = [
        ("accounts", "token_healthy", "BOOLEAN"),
        ("accounts", "token_last_checked", "TIMESTAMP"),
        ("accounts", "token_last_error", "TEXT"),
        ("sent_messages", "rfc_message_id", "TEXT"),
        ("sent_messages", "last_reply_check", "TIMESTAMP"),
        ("processed_messages", "match_strategy", "TEXT"),
        ("sync_checkpoints", "messages_processed", "INTEGER DEFAULT 0"),
        ("alerts", "delivered", "BOOLEAN DEFAULT 0"),
    ]

    for table, column, col_type in expected_columns:
        existing = conn.execute(f"PRAGMA table_info({table})").fetchall()
        if not existing:
            continue  # created with the full column set by init_db below
        existing_names = {row["name"] for row in existing}
        if column not in existing_names:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}")
            migrations.append(f"Added {table}.{column} ({col_type})")

    # Create tables and indexes added since the database was first initialized
    init_db(conn)

    if migrations:
        conn.commit()

    return migrations


def db_stats(conn: sqlite3.Connection) -> dict[str, int]:
    """Return row counts for all tables."""
    stats = {}
    for table in TABLES:
        try:
            row = conn.execute(f"SELECT COUNT(*) as cnt FROM {table}").fetchone()
            stats[table] = row["cnt"]
        except sqlite3.OperationalError:
            stats[table] = -1  # table doesn't exist
    return stats
