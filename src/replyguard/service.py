"""Service container: one SQLite connection plus every component wired to it."""

from __future__ import annotations

import logging
import sqlite3
import threading

from replyguard import accounts
from replyguard.aliases import AliasStore
from replyguard.audit import AuditLog
from replyguard.config import Config, load_config
from replyguard.detection.orchestrator import DetectionOrchestrator
from replyguard.errors import CredentialError
from replyguard.health import HealthWatchdog
from replyguard.models import Account, Provider, SyncResult
from replyguard.notify import AlertNotifier
from replyguard.push import PushManager
from replyguard.reconcile import ReconciliationService
from replyguard.review import ManualReviewQueue
from replyguard.stores import StateStores, build_state_stores
from replyguard.sync import IncrementalSyncEngine

logger = logging.getLogger(__name__)

_shared_stores: StateStores | None = None
_shared_lock = threading.Lock()


def shared_state_stores(config: Config) -> StateStores:
    """Process-wide state stores, built on first use."""
    global _shared_stores
    with _shared_lock:
        if _shared_stores is None:
            _shared_stores = build_state_stores(config)
        return _shared_stores


def reset_shared_state() -> None:
    global _shared_stores
    with _shared_lock:
        _shared_stores = None


class Service:
    """Owns a connection and the components built on it.

    Not thread-safe: every scheduler job, background task and HTTP request
    builds its own Service. Shared runtime state comes in through ``stores``.
    """

    def __init__(self, config: Config, db: sqlite3.Connection, stores: StateStores | None = None):
        self.config = config
        self.db = db
        self.stores = stores or build_state_stores(config)
        self._adapters: dict[tuple[str, Provider], object] = {}

        self.audit = AuditLog(db)
        self.aliases = AliasStore(db, ttl_days=config.aliases.ttl_days)
        self.review = ManualReviewQueue(db, audit=self.audit)
        self.health = HealthWatchdog(db, self.get_adapter, cache=self.stores.health_cache)
        self.notifier = AlertNotifier(db, self.stores.alert_cooldowns, config.alerts)
        self.orchestrator = DetectionOrchestrator(
            db, self.get_adapter, self.health, self.aliases, self.review, self.audit,
            config=config.detection,
        )
        self.sync = IncrementalSyncEngine(
            db, self.get_adapter, self.aliases, self.review,
            config=config.sync, health=self.health, notifier=self.notifier,
        )
        self.reconciliation = ReconciliationService(
            db, self.orchestrator, self.sync, config=config.reconciliation,
        )
        self.push = PushManager(db, self.stores.push_modes, self.get_adapter, config=config.scheduler)

    def __enter__(self) -> Service:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        for adapter in self._adapters.values():
            adapter.close()
        self._adapters.clear()
        self.db.close()

    # --- Adapters ---

    def get_adapter(self, user_id: str, provider: Provider | str | None = None):
        """Adapter for a user's mailbox, built once per Service.

        Raises AccountNotFoundError, or CredentialError when the account is
        waiting for re-authentication.
        """
        account = accounts.get_account(self.db, user_id, provider)
        if account.needs_reauth:
            raise CredentialError(
                f"Account {user_id}/{account.provider.value} needs re-authentication",
                account.provider.value,
            )
        key = (account.user_id, account.provider)
        if key in self._adapters:
            return self._adapters[key]
        from replyguard.providers import get_adapter

        adapter = get_adapter(account, self.config)
        self._adapters[key] = adapter
        return adapter

    # --- Operations ---

    def sync_account(self, account: Account) -> SyncResult:
        """Delta sync one mailbox; a failure on a push mailbox counts against push."""
        result = self.sync.sync_user(account.user_id, account.provider)
        if result.status == "error" and self.push.is_push(account.user_id, account.provider):
            self.push.record_failure(account.user_id, account.provider, "; ".join(result.errors))
        return result

    def sweep(self) -> list[SyncResult]:
        """Delta sync every syncable mailbox in turn."""
        results = []
        for account in accounts.list_syncable_accounts(self.db):
            results.append(self.sync_account(account))
        errors = sum(1 for r in results if r.status == "error")
        logger.info("Delta sweep: %d mailbox(es), %d error(s)", len(results), errors)
        return results

    def run_task(self, task: str, **params) -> dict:
        """Dispatch a named background task. Returns a JSON-serializable result."""
        if task == "sweep":
            results = self.sweep()
            return {"accounts": len(results), "results": [r.to_dict() for r in results]}
        if task == "sync":
            return self.sync.sync_user(params["user_id"], params.get("provider")).to_dict()
        if task == "detect":
            return self.orchestrator.check_sent_message(int(params["sent_message_id"])).to_dict()
        if task == "reconcile":
            run_type = params.get("run_type", "hourly")
            if run_type == "hourly":
                return self.reconciliation.run_hourly().to_dict()
            if run_type == "nightly":
                return self.reconciliation.run_nightly().to_dict()
            raise ValueError(f"Unknown reconciliation run type: {run_type!r}. Use 'hourly' or 'nightly'.")
        raise ValueError(f"Unknown task: {task!r}")


def build_service(config: Config | None = None, stores: StateStores | None = None) -> Service:
    """Open a connection, make sure the schema exists and wire a Service around it."""
    from replyguard.database import get_db, init_db

    if config is None:
        config = load_config()
    conn = get_db(config)
    init_db(conn)
    return Service(config, conn, stores or shared_state_stores(config))
