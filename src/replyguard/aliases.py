"""Learned alternate addresses for contacts."""

from __future__ import annotations

import logging
import sqlite3
from datetime import timedelta

from replyguard.clock import parse_datetime, to_iso, utcnow
from replyguard.matching import normalize_email
from replyguard.models import Alias, AliasType

logger = logging.getLogger(__name__)


class AliasStore:
    """Alias persistence with optional expiry of auto-detected aliases.

    With ``ttl_days`` > 0, an auto-detected alias not seen for that long is
    ignored by lookups and removed by ``prune_expired``. Verified aliases
    never expire; ``invalidate`` removes any alias explicitly.
    """

    def __init__(self, db: sqlite3.Connection, ttl_days: int = 0):
        self.db = db
        self.ttl_days = ttl_days

    def _cutoff(self) -> str | None:
        if self.ttl_days <= 0:
            return None
        return to_iso(utcnow() - timedelta(days=self.ttl_days))

    def _live_clause(self) -> tuple[str, tuple]:
        cutoff = self._cutoff()
        if cutoff is None:
            return "", ()
        return " AND (alias_type = 'verified' OR last_seen >= ?)", (cutoff,)

    def record(
        self, contact_id: int, alias_email: str, alias_type: AliasType = AliasType.AUTO_DETECTED,
    ) -> Alias:
        """Insert the alias or advance its last_seen. A verified alias stays verified."""
        address = normalize_email(alias_email)
        now = to_iso(utcnow())
        self.db.execute(
            """INSERT INTO contact_aliases (contact_id, alias_email, alias_type, first_seen, last_seen)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(contact_id, alias_email) DO UPDATE SET
                   last_seen = excluded.last_seen,
                   alias_type = CASE WHEN contact_aliases.alias_type = 'verified'
                                     THEN 'verified' ELSE excluded.alias_type END""",
            (contact_id, address, AliasType(alias_type).value, now, now),
        )
        self.db.commit()
        logger.info("Recorded alias %s for contact %d", address, contact_id)
        return self.get(contact_id, address)

    def get(self, contact_id: int, alias_email: str) -> Alias | None:
        row = self.db.execute(
            "SELECT * FROM contact_aliases WHERE contact_id = ? AND alias_email = ?",
            (contact_id, normalize_email(alias_email)),
        ).fetchone()
        return self._from_row(row) if row else None

    def list_for_contact(self, contact_id: int, include_expired: bool = False) -> list[Alias]:
        clause, params = ("", ()) if include_expired else self._live_clause()
        rows = self.db.execute(
            f"SELECT * FROM contact_aliases WHERE contact_id = ?{clause} ORDER BY alias_email",
            (contact_id, *params),
        ).fetchall()
        return [self._from_row(r) for r in rows]

    def addresses_for_contact(self, contact_id: int) -> list[str]:
        return [a.alias_email for a in self.list_for_contact(contact_id)]

    def find_contact_ids(self, address: str) -> list[int]:
        """Contacts that have ``address`` as a live alias."""
        clause, params = self._live_clause()
        rows = self.db.execute(
            f"SELECT contact_id FROM contact_aliases WHERE alias_email = ?{clause}",
            (normalize_email(address), *params),
        ).fetchall()
        return [r["contact_id"] for r in rows]

    def verify(self, contact_id: int, alias_email: str) -> bool:
        cursor = self.db.execute(
            "UPDATE contact_aliases SET alias_type = 'verified' WHERE contact_id = ? AND alias_email = ?",
            (contact_id, normalize_email(alias_email)),
        )
        self.db.commit()
        return cursor.rowcount > 0

    def invalidate(self, contact_id: int, alias_email: str) -> bool:
        """Remove an alias, e.g. after the contact changed employer. Returns True if deleted."""
        cursor = self.db.execute(
            "DELETE FROM contact_aliases WHERE contact_id = ? AND alias_email = ?",
            (contact_id, normalize_email(alias_email)),
        )
        self.db.commit()
        if cursor.rowcount:
            logger.info("Invalidated alias %s for contact %d", alias_email, contact_id)
        return cursor.rowcount > 0

    def prune_expired(self) -> int:
        cutoff = self._cutoff()
        if cutoff is None:
            return 0
        cursor = self.db.execute(
            "DELETE FROM contact_aliases WHERE alias_type != 'verified' AND last_seen < ?",
            (cutoff,),
        )
        self.db.commit()
        return cursor.rowcount

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Alias:
        return Alias(
            id=row["id"],
            contact_id=row["contact_id"],
            alias_email=row["alias_email"],
            alias_type=AliasType(row["alias_type"]),
            first_seen=parse_datetime(row["first_seen"]),
            last_seen=parse_datetime(row["last_seen"]),
        )
