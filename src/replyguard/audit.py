"""Append-only audit log of detection attempts."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import timedelta

from replyguard.clock import to_iso, utcnow


@dataclass
class AuditEntry:
    layer: str
    user_id: str | None = None
    sent_message_id: int | None = None
    contact_id: int | None = None
    query: str = ""
    found: bool = False
    reply_count: int = 0
    duration_ms: int = 0
    error: str | None = None
    metadata: dict = field(default_factory=dict)


class AuditLog:
    """Pure sink: entries are never updated, only pruned by age."""

    def __init__(self, db: sqlite3.Connection):
        self.db = db

    def log(self, entry: AuditEntry) -> int:
        return self.log_many([entry])[0]

    def log_many(self, entries: list[AuditEntry]) -> list[int]:
        """Write entries in one transaction. Returns their IDs."""
        now = to_iso(utcnow())
        ids = []
        with self.db:
            for entry in entries:
                cursor = self.db.execute(
                    """INSERT INTO detection_audit_log
                       (user_id, sent_message_id, contact_id, layer, query, found,
                        reply_count, duration_ms, error, metadata, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        entry.user_id, entry.sent_message_id, entry.contact_id, entry.layer,
                        entry.query, int(entry.found), entry.reply_count, entry.duration_ms,
                        entry.error, json.dumps(entry.metadata, default=str), now,
                    ),
                )
                ids.append(cursor.lastrowid)
        return ids

    def list_for_sent_message(self, sent_message_id: int) -> list[dict]:
        rows = self.db.execute(
            "SELECT * FROM detection_audit_log WHERE sent_message_id = ? ORDER BY id",
            (sent_message_id,),
        ).fetchall()
        return [self._to_dict(r) for r in rows]

    def recent(self, limit: int = 50, user_id: str | None = None) -> list[dict]:
        if user_id:
            rows = self.db.execute(
                "SELECT * FROM detection_audit_log WHERE user_id = ? ORDER BY id DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        else:
            rows = self.db.execute(
                "SELECT * FROM detection_audit_log ORDER BY id DESC LIMIT ?", (limit,),
            ).fetchall()
        return [self._to_dict(r) for r in rows]

    def prune(self, days: int) -> int:
        cutoff = to_iso(utcnow() - timedelta(days=days))
        cursor = self.db.execute("DELETE FROM detection_audit_log WHERE created_at < ?", (cutoff,))
        self.db.commit()
        return cursor.rowcount

    @staticmethod
    def _to_dict(row: sqlite3.Row) -> dict:
        item = dict(row)
        item["found"] = bool(row["found"])
        item["metadata"] = json.loads(row["metadata"]) if row["metadata"] else {}
        return item
