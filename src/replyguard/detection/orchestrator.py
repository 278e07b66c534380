"""Fan out to all detection layers, apply quorum, learn aliases, escalate to review."""

from __future__ import annotations

import logging
import sqlite3
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable

from replyguard import accounts, records
from replyguard.aliases import AliasStore
from replyguard.audit import AuditEntry, AuditLog
from replyguard.config import DetectionConfig
from replyguard.detection.address import DomainLayer, ExactAddressLayer
from replyguard.detection.base import DetectionLayer
from replyguard.detection.name_subject import DisplayNameLayer, SubjectLayer
from replyguard.detection.quorum import validate_quorum
from replyguard.detection.thread import ThreadLayer
from replyguard.errors import AccountNotFoundError, ProviderError
from replyguard.health import HealthWatchdog
from replyguard.matching import normalize_email
from replyguard.models import (
    DetectedReply,
    DetectionOptions,
    DetectionResult,
    HealthAction,
    LayerResult,
    PreflightResult,
    SearchMetadata,
)
from replyguard.review import ManualReviewQueue

logger = logging.getLogger(__name__)

DEFAULT_LAYERS: tuple[type[DetectionLayer], ...] = (
    ThreadLayer,
    ExactAddressLayer,
    DomainLayer,
    DisplayNameLayer,
    SubjectLayer,
)

PREFLIGHT_LAYER = "preflight"
ORCHESTRATOR_LAYER = "orchestrator"


def merge_replies(results: list[LayerResult]) -> list[DetectedReply]:
    """Replies from all healthy layers, one per provider message id, earliest first."""
    merged: dict[str, DetectedReply] = {}
    for result in results:
        if not result.healthy:
            continue
        for reply in result.replies:
            merged.setdefault(reply.provider_message_id, reply)
    return sorted(merged.values(), key=lambda r: (r.received_at is None, r.received_at))


class DetectionOrchestrator:
    """Runs one detection attempt across every layer.

    Layers run concurrently in a thread pool and never touch the database;
    audit entries, aliases and review items are written from the calling
    thread once all layers have returned or timed out.
    """

    def __init__(
        self,
        db: sqlite3.Connection,
        adapter_factory: Callable,
        health: HealthWatchdog,
        aliases: AliasStore,
        review: ManualReviewQueue,
        audit: AuditLog,
        config: DetectionConfig | None = None,
        layers: tuple[type[DetectionLayer], ...] = DEFAULT_LAYERS,
    ):
        self.db = db
        self.adapter_factory = adapter_factory
        self.health = health
        self.aliases = aliases
        self.review = review
        self.audit = audit
        self.config = config or DetectionConfig()
        self.layers = layers

    # --- Detection ---

    def detect_reply_with_all_layers(self, options: DetectionOptions) -> DetectionResult:
        start = time.monotonic()

        preflight = self._preflight(options)
        adapter = None
        if preflight.ok:
            try:
                adapter = self.adapter_factory(options.user_id, options.provider)
            except (AccountNotFoundError, ProviderError) as exc:
                # Credentials revoked since the cached health check
                self.health.invalidate(options.user_id, options.provider)
                preflight = PreflightResult(ok=False, action=HealthAction.REQUIRES_REAUTH, message=str(exc))
        if not preflight.ok:
            self.audit.log(self._entry(
                options, PREFLIGHT_LAYER, error=preflight.message,
                metadata={"action": preflight.action.value if preflight.action else None},
            ))
            logger.warning(
                "Pre-flight failed for user %s (sent message %s): %s",
                options.user_id, options.sent_message_id, preflight.message,
            )
            return DetectionResult(
                found=False, pending_review=True, preflight=preflight,
                duration_ms=int((time.monotonic() - start) * 1000),
            )

        layer_results = self._run_layers(adapter, options)
        replies = merge_replies(layer_results)
        quorum = validate_quorum(layer_results, self.config.min_healthy_layers)

        result = DetectionResult(
            found=quorum.found,
            pending_review=quorum.pending_review,
            quorum_met=quorum.quorum_met,
            replies=replies if quorum.found else [],
            layer_results=layer_results,
            quorum=quorum,
            preflight=preflight,
        )

        if quorum.found:
            result.aliases_learned = self._learn_aliases(options, replies)
        elif quorum.pending_review and options.sent_message_id is not None:
            result.review_item_id = self.review.add(
                sent_message_id=options.sent_message_id,
                user_id=options.user_id,
                contact_id=options.contact_id,
                reason=(
                    f"quorum_failure: {len(quorum.healthy_layers)}/{len(layer_results)} healthy layers, "
                    f"{self.config.min_healthy_layers} required"
                ),
                healthy_layers=quorum.healthy_layers,
                found_layers=quorum.found_layers,
                failed_layers=quorum.failed_layers,
                potential_reply=replies[0] if replies else None,
            )

        result.duration_ms = int((time.monotonic() - start) * 1000)
        self._write_audit(options, result)
        return result

    def _preflight(self, options: DetectionOptions) -> PreflightResult:
        if options.provider is None:
            try:
                account = accounts.get_account(self.db, options.user_id)
            except AccountNotFoundError as exc:
                return PreflightResult(ok=False, action=HealthAction.REQUIRES_REAUTH, message=str(exc))
            options.provider = account.provider
            options.user_email = options.user_email or account.email
        return self.health.pre_flight_health_check(options.user_id, options.provider)

    def _run_layers(self, adapter, options: DetectionOptions) -> list[LayerResult]:
        layers = [cls(adapter, max_results=self.config.max_results) for cls in self.layers]
        executor = ThreadPoolExecutor(max_workers=len(layers), thread_name_prefix="replyguard-layer")
        try:
            futures = {executor.submit(layer.detect, options): layer for layer in layers}
            done, _ = wait(futures, timeout=self.config.layer_timeout)
            results = []
            for future, layer in futures.items():
                if future not in done:
                    # Left running; its result is ignored
                    results.append(self._unhealthy(layer, f"timed out after {self.config.layer_timeout}s"))
                    continue
                try:
                    results.append(future.result())
                except Exception as exc:  # noqa: BLE001
                    logger.exception("Layer %s raised", layer.name)
                    results.append(self._unhealthy(layer, f"{type(exc).__name__}: {exc}"))
            return results
        finally:
            executor.shutdown(wait=False)

    @staticmethod
    def _unhealthy(layer: DetectionLayer, error: str) -> LayerResult:
        return LayerResult(layer=layer.name, healthy=False, error=error, metadata=SearchMetadata())

    def _learn_aliases(self, options: DetectionOptions, replies: list[DetectedReply]) -> list[str]:
        if options.contact_id is None:
            return []
        primary = normalize_email(options.contact_email)
        learned = []
        for reply in replies:
            address = normalize_email(reply.from_address)
            if address and address != primary and address not in learned:
                self.aliases.record(options.contact_id, address)
                learned.append(address)
        return learned

    def _entry(self, options: DetectionOptions, layer: str, **kwargs) -> AuditEntry:
        return AuditEntry(
            layer=layer,
            user_id=options.user_id,
            sent_message_id=options.sent_message_id,
            contact_id=options.contact_id,
            **kwargs,
        )

    def _write_audit(self, options: DetectionOptions, result: DetectionResult) -> None:
        entries = [
            self._entry(
                options, r.layer,
                query=r.metadata.query,
                found=r.found,
                reply_count=len(r.replies),
                duration_ms=r.metadata.duration_ms,
                error=r.error,
                metadata={
                    "healthy": r.healthy,
                    "skipped": r.metadata.skipped,
                    "messages_scanned": r.metadata.messages_scanned,
                    "reply_ids": [reply.provider_message_id for reply in r.replies],
                },
            )
            for r in result.layer_results
        ]
        entries.append(self._entry(
            options, ORCHESTRATOR_LAYER,
            query="all_layers",
            found=result.found,
            reply_count=len(result.replies),
            duration_ms=result.duration_ms,
            metadata={
                "pending_review": result.pending_review,
                "quorum_met": result.quorum_met,
                "healthy_layers": result.quorum.healthy_layers,
                "found_layers": result.quorum.found_layers,
                "failed_layers": result.quorum.failed_layers,
                "aliases_learned": result.aliases_learned,
                "review_item_id": result.review_item_id,
            },
        ))
        self.audit.log_many(entries)

    # --- Stored sent messages ---

    def options_for(self, sent_message_id: int) -> DetectionOptions:
        sent = records.get_sent_message(self.db, sent_message_id, self.aliases)
        if sent is None:
            raise ValueError(f"Sent message {sent_message_id} not found")
        options = DetectionOptions(
            user_id=sent.user_id,
            sent_message_id=sent.id,
            contact_email=sent.contact_email,
            sent_at=sent.sent_at,
            provider=sent.provider,
            contact_id=sent.contact_id,
            contact_name=sent.contact_name,
            contact_company=sent.contact_company,
            contact_aliases=sent.contact_aliases,
            subject=sent.subject,
            thread_id=sent.thread_id,
            message_id=sent.message_id,
        )
        try:
            account = accounts.get_account(self.db, sent.user_id, sent.provider)
        except AccountNotFoundError:
            return options
        options.provider = account.provider
        options.user_email = account.email
        return options

    def check_sent_message(self, sent_message_id: int) -> DetectionResult:
        """Detect a reply for a stored sent message and persist what is confirmed.

        The earliest confirmed reply is stored together with its
        ProcessedMessage and the reply_received flag; pending reviews for the
        message are auto-resolved. last_reply_check is always updated.
        """
        options = self.options_for(sent_message_id)
        try:
            result = self.detect_reply_with_all_layers(options)
            if result.found and result.replies:
                sent = records.get_sent_message(self.db, sent_message_id)
                reply = result.replies[0]
                result.reply_id = records.persist_reply(
                    self.db, options.user_id, options.provider, sent, reply,
                    strategy=f"detection:{reply.layer}",
                )
                self.review.auto_resolve(sent_message_id)
                logger.info(
                    "Reply %s confirmed for sent message %d by layer %s",
                    reply.provider_message_id, sent_message_id, reply.layer,
                )
            return result
        finally:
            records.touch_last_reply_check(self.db, sent_message_id)
