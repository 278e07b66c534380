"""Rate-limited user alerts: stored, logged and optionally posted to a webhook."""

from __future__ import annotations

import logging
import sqlite3

import httpx

from replyguard.clock import to_iso, utcnow
from replyguard.config import AlertConfig
from replyguard.stores import KeyValueStore, MemoryStore

logger = logging.getLogger(__name__)

ALERT_SYNC_STALE = "sync_stale"
ALERT_CREDENTIALS = "credentials_invalid"
ALERT_PUSH_FAILING = "push_failing"


class AlertNotifier:
    """At most one alert per (user, alert type) per cooldown window.

    The cooldown lives in ``cooldowns``, whose TTL is the window length, so
    several scheduler processes sharing a SQLite-backed store agree on it.
    """

    def __init__(
        self,
        db: sqlite3.Connection,
        cooldowns: KeyValueStore | None = None,
        config: AlertConfig | None = None,
        http_client: httpx.Client | None = None,
    ):
        self.db = db
        self.config = config or AlertConfig()
        self.cooldowns = cooldowns if cooldowns is not None else MemoryStore(ttl=self.config.cooldown_hours * 3600)
        self._http = http_client

    def alert(self, user_id: str, alert_type: str, message: str) -> bool:
        """Send an alert unless one of the same type went out recently. Returns True if sent."""
        key = f"{user_id}:{alert_type}"
        if self.cooldowns.get(key) is not None:
            logger.debug("Alert %s for %s suppressed by cooldown", alert_type, user_id)
            return False

        logger.warning("ALERT [%s] user=%s: %s", alert_type, user_id, message)
        delivered = self._deliver(user_id, alert_type, message)
        self.db.execute(
            """INSERT INTO alerts (user_id, alert_type, message, delivered, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (user_id, alert_type, message, int(delivered), to_iso(utcnow())),
        )
        self.db.commit()
        self.cooldowns.set(key, to_iso(utcnow()))
        return True

    def _deliver(self, user_id: str, alert_type: str, message: str) -> bool:
        if not self.config.webhook_url:
            # The log line above is the only channel
            return True
        payload = {"user_id": user_id, "alert_type": alert_type, "message": message}
        try:
            if self._http is not None:
                response = self._http.post(self.config.webhook_url, json=payload)
            else:
                with httpx.Client(timeout=self.config.webhook_timeout) as client:
                    response = client.post(self.config.webhook_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Alert webhook delivery failed for %s/%s: %s", user_id, alert_type, exc)
            return False
        return True

    def list_alerts(self, user_id: str | None = None, limit: int = 50) -> list[dict]:
        if user_id:
            rows = self.db.execute(
                "SELECT * FROM alerts WHERE user_id = ? ORDER BY id DESC LIMIT ?", (user_id, limit),
            ).fetchall()
        else:
            rows = self.db.execute("SELECT * FROM alerts ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
