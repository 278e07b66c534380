"""Manual review queue for detections too uncertain to decide automatically."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import timedelta

from replyguard import records
from replyguard.audit import AuditEntry, AuditLog
from replyguard.clock import to_iso, utcnow
from replyguard.errors import ReviewNotFoundError, ReviewStateError
from replyguard.models import DetectedReply, ManualReviewItem, ReviewStatus

logger = logging.getLogger(__name__)

MANUAL_REVIEW_LAYER = "manual_review"


class ManualReviewQueue:
    """Pending items move once to accepted, rejected or auto_resolved.

    Every transition is a conditional UPDATE on ``status = 'pending'`` so two
    reviewers racing on the same item cannot both win.
    """

    def __init__(self, db: sqlite3.Connection, audit: AuditLog | None = None):
        self.db = db
        self.audit = audit or AuditLog(db)

    def add(
        self,
        sent_message_id: int,
        user_id: str,
        reason: str,
        contact_id: int | None = None,
        healthy_layers: list[str] | None = None,
        found_layers: list[str] | None = None,
        failed_layers: list[str] | None = None,
        potential_reply: DetectedReply | None = None,
    ) -> int:
        """Queue a sent message for review; refreshes the existing pending item if any."""
        payload = (
            reason,
            json.dumps(healthy_layers or []),
            json.dumps(found_layers or []),
            json.dumps(failed_layers or []),
            json.dumps(potential_reply.to_dict()) if potential_reply else None,
        )
        existing = self.db.execute(
            "SELECT id FROM manual_review_queue WHERE sent_message_id = ? AND status = 'pending'",
            (sent_message_id,),
        ).fetchone()
        if existing:
            self.db.execute(
                """UPDATE manual_review_queue SET
                       reason = ?, healthy_layers = ?, found_layers = ?, failed_layers = ?,
                       potential_reply = COALESCE(?, potential_reply)
                   WHERE id = ?""",
                (*payload, existing["id"]),
            )
            self.db.commit()
            return existing["id"]

        cursor = self.db.execute(
            """INSERT INTO manual_review_queue
               (sent_message_id, contact_id, user_id, reason, healthy_layers, found_layers,
                failed_layers, potential_reply, status, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?)""",
            (sent_message_id, contact_id, user_id, *payload, to_iso(utcnow())),
        )
        self.db.commit()
        logger.info("Queued sent message %d for manual review: %s", sent_message_id, reason)
        return cursor.lastrowid

    def get(self, item_id: int) -> ManualReviewItem | None:
        row = self.db.execute("SELECT * FROM manual_review_queue WHERE id = ?", (item_id,)).fetchone()
        return ManualReviewItem.from_row(row) if row else None

    def list_pending(self, user_id: str | None = None, limit: int = 100) -> list[ManualReviewItem]:
        return self.list_items(ReviewStatus.PENDING, user_id=user_id, limit=limit)

    def list_items(
        self, status: ReviewStatus | str | None = None, user_id: str | None = None, limit: int = 100,
    ) -> list[ManualReviewItem]:
        clauses, params = [], []
        if status:
            clauses.append("status = ?")
            params.append(ReviewStatus(status).value)
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.db.execute(
            f"SELECT * FROM manual_review_queue{where} ORDER BY created_at DESC, id DESC LIMIT ?",
            (*params, limit),
        ).fetchall()
        return [ManualReviewItem.from_row(r) for r in rows]

    def _transition(self, item_id: int, status: ReviewStatus, reviewer: str, notes: str | None) -> None:
        """Conditionally move a pending item; leaves the transaction open."""
        cursor = self.db.execute(
            """UPDATE manual_review_queue
               SET status = ?, reviewed_by = ?, review_notes = ?, reviewed_at = ?
               WHERE id = ? AND status = 'pending'""",
            (status.value, reviewer, notes, to_iso(utcnow()), item_id),
        )
        if cursor.rowcount == 0:
            self.db.rollback()
            item = self.get(item_id)
            if item is None:
                raise ReviewNotFoundError(f"Review item {item_id} not found")
            raise ReviewStateError(f"Review item {item_id} is already {item.status.value}")

    def accept(self, item_id: int, reviewer: str, notes: str | None = None) -> ManualReviewItem:
        """Confirm the reply: persist the candidate if present and mark the sent message replied."""
        self._transition(item_id, ReviewStatus.ACCEPTED, reviewer, notes)
        item = self.get(item_id)
        sent = records.get_sent_message(self.db, item.sent_message_id)

        reply_id = None
        if item.potential_reply and sent is not None:
            reply = DetectedReply.from_dict(item.potential_reply)
            reply_id = records.persist_reply(
                self.db, item.user_id, sent.provider, sent, reply, strategy=MANUAL_REVIEW_LAYER,
            )
        else:
            records.mark_reply_received(self.db, item.sent_message_id)

        self._audit(item, "accepted", reviewer, notes, reply_id)
        logger.info("Review %d accepted by %s", item_id, reviewer)
        return self.get(item_id)

    def reject(self, item_id: int, reviewer: str, notes: str | None = None) -> ManualReviewItem:
        self._transition(item_id, ReviewStatus.REJECTED, reviewer, notes)
        self.db.commit()
        item = self.get(item_id)
        self._audit(item, "rejected", reviewer, notes, None)
        logger.info("Review %d rejected by %s", item_id, reviewer)
        return item

    def auto_resolve(self, sent_message_id: int, notes: str = "Reply confirmed by detection") -> int:
        """Close pending items for a sent message whose reply was confirmed. Returns the count."""
        cursor = self.db.execute(
            """UPDATE manual_review_queue
               SET status = 'auto_resolved', reviewed_by = 'system', review_notes = ?, reviewed_at = ?
               WHERE sent_message_id = ? AND status = 'pending'""",
            (notes, to_iso(utcnow()), sent_message_id),
        )
        self.db.commit()
        if cursor.rowcount:
            logger.info("Auto-resolved %d review item(s) for sent message %d", cursor.rowcount, sent_message_id)
        return cursor.rowcount

    def stats(self) -> dict[str, int]:
        counts = {s.value: 0 for s in ReviewStatus}
        for row in self.db.execute(
            "SELECT status, COUNT(*) AS cnt FROM manual_review_queue GROUP BY status"
        ).fetchall():
            counts[row["status"]] = row["cnt"]
        counts["total"] = sum(counts.values())
        return counts

    def clear_old(self, days: int) -> int:
        """Delete reviewed items older than ``days``. Pending items are kept."""
        cutoff = to_iso(utcnow() - timedelta(days=days))
        cursor = self.db.execute(
            "DELETE FROM manual_review_queue WHERE status != 'pending' AND reviewed_at < ?",
            (cutoff,),
        )
        self.db.commit()
        return cursor.rowcount

    def _audit(self, item: ManualReviewItem, action: str, reviewer: str, notes: str | None, reply_id) -> None:
        self.audit.log(AuditEntry(
            layer=MANUAL_REVIEW_LAYER,
            user_id=item.user_id,
            sent_message_id=item.sent_message_id,
            contact_id=item.contact_id,
            query=f"review:{item.id}",
            found=action == "accepted",
            reply_count=1 if reply_id else 0,
            metadata={"action": action, "reviewer": reviewer, "notes": notes, "reply_id": reply_id},
        ))
