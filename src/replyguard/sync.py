"""Incremental sync: follow each mailbox's change log and record replies idempotently."""

from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from replyguard import accounts, records
from replyguard.aliases import AliasStore
from replyguard.classify import classify_message
from replyguard.clock import parse_datetime, to_iso, utcnow
from replyguard.config import SyncConfig
from replyguard.errors import AccountNotFoundError, CredentialError, CursorInvalidError, ProviderError
from replyguard.matching import (
    MATCH_STRATEGIES,
    STRICT_MATCH_STRATEGIES,
    MatchResult,
    emails_match_loose,
    match_message,
    normalize_email,
)
from replyguard.models import (
    DetectedReply,
    HealthAction,
    Provider,
    ProviderMessage,
    SentMessage,
    SyncCheckpoint,
    SyncResult,
    SyncStatus,
)
from replyguard.review import ManualReviewQueue

logger = logging.getLogger(__name__)

SYNC_LAYER = "sync"


class IncrementalSyncEngine:
    """Per-(user, provider) state machine over a stored change-log cursor.

    uninitialized -> active: store the provider's current cursor, skip history.
    active -> active: process changes since the cursor, advance it forward only.
    active -> error: record the failure; an invalid cursor is also cleared so
    the next run reinitializes, and a credential failure flags the account
    for re-authentication, which suspends its sync. An unhealthy mailbox is
    caught by the health pre-flight before any of this runs.
    """

    def __init__(
        self,
        db: sqlite3.Connection,
        adapter_factory: Callable,
        aliases: AliasStore,
        review: ManualReviewQueue,
        config: SyncConfig | None = None,
        health=None,
        notifier=None,
    ):
        self.db = db
        self.adapter_factory = adapter_factory
        self.aliases = aliases
        self.review = review
        self.config = config or SyncConfig()
        self.health = health
        self.notifier = notifier

    # --- Checkpoints ---

    def get_checkpoint(self, user_id: str, provider: Provider | str) -> SyncCheckpoint | None:
        row = self.db.execute(
            "SELECT * FROM sync_checkpoints WHERE user_id = ? AND provider = ?",
            (user_id, Provider(provider).value),
        ).fetchone()
        if row is None:
            return None
        return SyncCheckpoint(
            user_id=row["user_id"],
            provider=Provider(row["provider"]),
            cursor=row["cursor"],
            status=SyncStatus(row["status"]),
            consecutive_errors=row["consecutive_errors"],
            last_sync_at=parse_datetime(row["last_sync_at"]),
            last_error=row["last_error"],
            messages_processed=row["messages_processed"] or 0,
        )

    def _save_success(self, user_id: str, provider: Provider, cursor: str, processed: int) -> None:
        now = to_iso(utcnow())
        self.db.execute(
            """INSERT INTO sync_checkpoints
               (user_id, provider, cursor, status, consecutive_errors, last_sync_at,
                last_error, messages_processed, updated_at)
               VALUES (?, ?, ?, 'active', 0, ?, NULL, ?, ?)
               ON CONFLICT(user_id, provider) DO UPDATE SET
                   cursor = excluded.cursor,
                   status = 'active',
                   consecutive_errors = 0,
                   last_sync_at = excluded.last_sync_at,
                   last_error = NULL,
                   messages_processed = sync_checkpoints.messages_processed + excluded.messages_processed,
                   updated_at = excluded.updated_at""",
            (user_id, provider.value, cursor, now, processed, now),
        )
        self.db.commit()

    def _save_error(self, user_id: str, provider: Provider, error: str, clear_cursor: bool = False) -> None:
        now = to_iso(utcnow())
        self.db.execute(
            """INSERT INTO sync_checkpoints
               (user_id, provider, cursor, status, consecutive_errors, last_error, updated_at)
               VALUES (?, ?, NULL, 'error', 1, ?, ?)
               ON CONFLICT(user_id, provider) DO UPDATE SET
                   cursor = CASE WHEN ? THEN NULL ELSE sync_checkpoints.cursor END,
                   status = 'error',
                   consecutive_errors = sync_checkpoints.consecutive_errors + 1,
                   last_error = excluded.last_error,
                   updated_at = excluded.updated_at""",
            (user_id, provider.value, error, now, int(clear_cursor)),
        )
        self.db.commit()

    def reset_checkpoint(self, user_id: str, provider: Provider | str) -> None:
        """Forget the cursor; the next sync reinitializes from the provider's current position."""
        self.db.execute(
            "UPDATE sync_checkpoints SET cursor = NULL, updated_at = ? WHERE user_id = ? AND provider = ?",
            (to_iso(utcnow()), user_id, Provider(provider).value),
        )
        self.db.commit()

    def get_sync_status(self, user_id: str | None = None) -> list[dict]:
        query = "SELECT * FROM sync_checkpoints"
        params: tuple = ()
        if user_id:
            query += " WHERE user_id = ?"
            params = (user_id,)
        rows = self.db.execute(query + " ORDER BY user_id, provider", params).fetchall()
        return [dict(r) for r in rows]

    # --- Sync ---

    def sync_user(self, user_id: str, provider: Provider | str | None = None) -> SyncResult:
        try:
            account = accounts.get_account(self.db, user_id, provider)
        except AccountNotFoundError as exc:
            return SyncResult(user_id=user_id, provider=str(provider or ""), status="skipped", errors=[str(exc)])

        provider = account.provider
        result = SyncResult(user_id=user_id, provider=provider.value)
        if not account.active or account.needs_reauth:
            result.status = "skipped"
            result.errors.append("Account needs re-authentication" if account.needs_reauth else "Account inactive")
            return result

        if self.health is not None:
            preflight = self.health.pre_flight_health_check(user_id, provider)
            if not preflight.ok:
                if preflight.action == HealthAction.REQUIRES_REAUTH:
                    return self._suspend(result, preflight.message)
                self._save_error(user_id, provider, preflight.message)
                result.status = "error"
                result.errors.append(preflight.message)
                logger.warning("Skipping sync for %s/%s: %s", user_id, provider.value, preflight.message)
                return result

        checkpoint = self.get_checkpoint(user_id, provider)
        try:
            adapter = self.adapter_factory(user_id, provider)
            if checkpoint is None or not checkpoint.cursor:
                cursor = adapter.get_current_cursor()
                self._save_success(user_id, provider, cursor, 0)
                result.status = "initialized"
                result.cursor = cursor
                logger.info("Initialized sync for %s/%s at cursor %s", user_id, provider.value, cursor)
                return result

            changes = adapter.list_changes(checkpoint.cursor, self.config.max_changes_per_run)
            user_email = account.email or adapter.get_user_email()
        except CursorInvalidError as exc:
            self._save_error(user_id, provider, str(exc), clear_cursor=True)
            result.status = "error"
            result.errors.append(str(exc))
            logger.warning("Cursor invalid for %s/%s, will reinitialize: %s", user_id, provider.value, exc)
            return result
        except CredentialError as exc:
            return self._suspend(result, str(exc))
        except ProviderError as exc:
            self._save_error(user_id, provider, str(exc))
            result.status = "error"
            result.errors.append(str(exc))
            logger.warning("Sync failed for %s/%s: %s", user_id, provider.value, exc)
            return result

        candidates = records.outstanding_sent_messages(self.db, user_id, self.aliases)
        for message in changes.messages:
            self.process_message(user_id, provider, message, user_email, candidates, result)

        cursor = checkpoint.cursor
        if adapter.cursor_advances(checkpoint.cursor, changes.cursor):
            cursor = changes.cursor
        else:
            logger.warning(
                "Provider returned cursor %s behind stored %s for %s/%s; keeping stored cursor",
                changes.cursor, checkpoint.cursor, user_id, provider.value,
            )
        self._save_success(user_id, provider, cursor, result.messages_processed)
        result.cursor = cursor
        if result.replies_found:
            logger.info("Sync for %s/%s recorded %d reply(ies)", user_id, provider.value, result.replies_found)
        return result

    def _suspend(self, result: SyncResult, error: str) -> SyncResult:
        """Flag the account for re-authentication, which stops further syncs."""
        user_id, provider = result.user_id, Provider(result.provider)
        self._save_error(user_id, provider, error)
        accounts.set_needs_reauth(self.db, user_id, provider)
        if self.health is not None:
            self.health.invalidate(user_id, provider)
        if self.notifier is not None:
            self.notifier.alert(user_id, "credentials_invalid", f"Reconnect your {provider.value} mailbox: {error}")
        result.status = "error"
        result.errors.append(error)
        logger.error("Credential failure for %s/%s, sync suspended: %s", user_id, provider.value, error)
        return result

    def process_message(
        self,
        user_id: str,
        provider: Provider,
        message: ProviderMessage,
        user_email: str,
        candidates: list[SentMessage],
        result: SyncResult,
    ) -> MatchResult | None:
        """Evaluate one inbound message exactly once."""
        if records.is_processed(self.db, user_id, message.id):
            result.duplicates_skipped += 1
            return None
        result.messages_processed += 1

        classification = classify_message(message)
        detected = DetectedReply.from_message(message, SYNC_LAYER)
        skip = False
        if user_email and emails_match_loose(message.from_address, user_email):
            skip = True
        elif classification.is_bounce:
            result.bounces_filtered += 1
            skip = True
        elif classification.is_auto_reply:
            result.auto_replies_filtered += 1
            skip = True

        match = None
        if not skip:
            strategies = MATCH_STRATEGIES if classification.is_reply else STRICT_MATCH_STRATEGIES
            match = match_message(message, candidates, strategies)

        if match is None:
            records.record_processed_message(
                self.db, user_id, provider, detected, message.rfc_message_id, classification,
            )
            return None

        sent = match.sent_message
        records.persist_reply(
            self.db, user_id, provider, sent, detected,
            strategy=match.strategy,
            rfc_message_id=message.rfc_message_id,
            classification=classification,
        )
        sent.reply_received = True
        result.replies_found += 1
        result.matched_sent_message_ids.append(sent.id)
        self.review.auto_resolve(sent.id)

        sender = normalize_email(message.from_address)
        if sender and sender != normalize_email(sent.contact_email):
            self.aliases.record(sent.contact_id, sender)
            sent.contact_aliases.append(sender)
        logger.debug("Message %s matched sent message %d via %s", message.id, sent.id, match.strategy)
        return match
