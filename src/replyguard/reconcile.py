"""Reconciliation: re-run detection for sent messages the real-time paths left unreplied."""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from datetime import timedelta
from typing import Callable

from replyguard import accounts
from replyguard.clock import to_iso, utcnow
from replyguard.config import ReconciliationConfig
from replyguard.models import AnomalyType, ReconciliationResult

logger = logging.getLogger(__name__)

RUN_HOURLY = "hourly"
RUN_NIGHTLY = "nightly"


def log_anomaly(
    db: sqlite3.Connection,
    anomaly_type: AnomalyType | str,
    user_id: str | None = None,
    sent_message_id: int | None = None,
    details: dict | None = None,
    requires_review: bool = False,
    run_id: int | None = None,
) -> int:
    """Append an entry to the anomaly ledger. Returns its ID."""
    cursor = db.execute(
        """INSERT INTO reconciliation_anomalies
           (run_id, user_id, sent_message_id, anomaly_type, details, requires_review, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (
            run_id, user_id, sent_message_id, AnomalyType(anomaly_type).value,
            json.dumps(details or {}, default=str), int(requires_review), to_iso(utcnow()),
        ),
    )
    db.commit()
    return cursor.lastrowid


class ReconciliationService:
    """Hourly and nightly scans over unreplied sent messages.

    Each candidate goes through ``check_sent_message``; a reply found here
    was missed by sync (``missed_reply``), a pending outcome needs a human
    (``quorum_failure``). Item failures are counted and the run continues;
    database errors fail the run and propagate.
    """

    def __init__(
        self,
        db: sqlite3.Connection,
        orchestrator,
        sync_engine=None,
        config: ReconciliationConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.orchestrator = orchestrator
        self.sync_engine = sync_engine
        self.config = config or ReconciliationConfig()
        self.sleep = sleep

    # --- Candidate windows ---

    def hourly_candidates(self) -> list[int]:
        now = utcnow()
        sent_after = to_iso(now - timedelta(hours=self.config.hourly_lookback_hours))
        checked_before = to_iso(now - timedelta(hours=self.config.hourly_recheck_hours))
        rows = self.db.execute(
            """SELECT id FROM sent_messages
               WHERE reply_received = 0 AND sent_at >= ?
                 AND (last_reply_check IS NULL OR last_reply_check < ?)
               ORDER BY sent_at DESC""",
            (sent_after, checked_before),
        ).fetchall()
        return [r["id"] for r in rows]

    def nightly_candidates(self) -> list[int]:
        limit = self.config.nightly_max_items if self.config.nightly_max_items > 0 else -1
        rows = self.db.execute(
            "SELECT id FROM sent_messages WHERE reply_received = 0 ORDER BY sent_at DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [r["id"] for r in rows]

    # --- Runs ---

    def run_hourly(self) -> ReconciliationResult:
        return self._run(RUN_HOURLY, self.hourly_candidates, self.config.hourly_pacing_seconds)

    def run_nightly(self) -> ReconciliationResult:
        if self.config.nightly_sync_first and self.sync_engine is not None:
            # Let the change log close what it can before the expensive scan
            for account in accounts.list_syncable_accounts(self.db):
                self.sync_engine.sync_user(account.user_id, account.provider)
        return self._run(RUN_NIGHTLY, self.nightly_candidates, self.config.nightly_pacing_seconds)

    def _run(self, run_type: str, candidates: Callable[[], list[int]], pacing: float) -> ReconciliationResult:
        cursor = self.db.execute(
            "INSERT INTO reconciliation_runs (run_type, status, started_at) VALUES (?, 'running', ?)",
            (run_type, to_iso(utcnow())),
        )
        self.db.commit()
        result = ReconciliationResult(run_id=cursor.lastrowid, run_type=run_type)
        logger.info("Starting %s reconciliation (run %d)", run_type, result.run_id)

        try:
            for index, sent_message_id in enumerate(candidates()):
                if index and pacing > 0:
                    self.sleep(pacing)
                self._reconcile_one(result, sent_message_id)
        except Exception as exc:
            self._finish(result, "failed", str(exc))
            logger.exception("%s reconciliation run %d failed", run_type.capitalize(), result.run_id)
            raise

        self._finish(result, "completed")
        logger.info(
            "%s reconciliation run %d: %d checked, %d replies found, %d anomalies, %d errors",
            run_type.capitalize(), result.run_id, result.messages_checked,
            result.replies_found, result.anomalies, result.errors,
        )
        return result

    def _reconcile_one(self, result: ReconciliationResult, sent_message_id: int) -> None:
        try:
            detection = self.orchestrator.check_sent_message(sent_message_id)
        except sqlite3.Error:
            raise
        except Exception:
            logger.exception("Reconciliation of sent message %d failed", sent_message_id)
            result.errors += 1
            return

        result.messages_checked += 1
        sent = self.db.execute(
            "SELECT user_id FROM sent_messages WHERE id = ?", (sent_message_id,),
        ).fetchone()
        user_id = sent["user_id"] if sent else None

        if detection.found:
            result.replies_found += 1
            result.anomalies += 1
            reply = detection.replies[0] if detection.replies else None
            log_anomaly(
                self.db, AnomalyType.MISSED_REPLY, user_id=user_id,
                sent_message_id=sent_message_id, run_id=result.run_id,
                details={
                    "reply_id": detection.reply_id,
                    "provider_message_id": reply.provider_message_id if reply else None,
                    "layer": reply.layer if reply else None,
                    "found_layers": detection.quorum.found_layers if detection.quorum else [],
                },
            )
        elif detection.pending_review:
            result.anomalies += 1
            log_anomaly(
                self.db, AnomalyType.QUORUM_FAILURE, user_id=user_id,
                sent_message_id=sent_message_id, run_id=result.run_id, requires_review=True,
                details={
                    "healthy_layers": detection.quorum.healthy_layers if detection.quorum else [],
                    "failed_layers": detection.quorum.failed_layers if detection.quorum else [],
                    "preflight": detection.preflight.message if detection.preflight else None,
                    "review_item_id": detection.review_item_id,
                },
            )

    def _finish(self, result: ReconciliationResult, status: str, error: str | None = None) -> None:
        self.db.execute(
            """UPDATE reconciliation_runs SET status = ?, messages_checked = ?, replies_found = ?,
                   anomalies = ?, errors = ?, error_message = ?, completed_at = ?
               WHERE id = ?""",
            (
                status, result.messages_checked, result.replies_found, result.anomalies,
                result.errors, error, to_iso(utcnow()), result.run_id,
            ),
        )
        self.db.commit()

    # --- History ---

    def list_runs(self, limit: int = 20) -> list[dict]:
        rows = self.db.execute(
            "SELECT * FROM reconciliation_runs ORDER BY id DESC LIMIT ?", (limit,),
        ).fetchall()
        return [dict(r) for r in rows]

    def list_anomalies(
        self,
        run_id: int | None = None,
        anomaly_type: AnomalyType | str | None = None,
        requires_review: bool | None = None,
        limit: int = 100,
    ) -> list[dict]:
        clauses, params = [], []
        if run_id is not None:
            clauses.append("run_id = ?")
            params.append(run_id)
        if anomaly_type:
            clauses.append("anomaly_type = ?")
            params.append(AnomalyType(anomaly_type).value)
        if requires_review is not None:
            clauses.append("requires_review = ?")
            params.append(int(requires_review))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.db.execute(
            f"SELECT * FROM reconciliation_anomalies{where} ORDER BY id DESC LIMIT ?", (*params, limit),
        ).fetchall()
        items = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(row["details"]) if row["details"] else {}
            item["requires_review"] = bool(row["requires_review"])
            items.append(item)
        return items

    def prune(self, days: int) -> int:
        """Drop anomalies older than ``days``."""
        cutoff = to_iso(utcnow() - timedelta(days=days))
        cursor = self.db.execute("DELETE FROM reconciliation_anomalies WHERE created_at < ?", (cutoff,))
        self.db.commit()
        return cursor.rowcount
