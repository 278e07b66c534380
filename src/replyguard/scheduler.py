"""Multi-tier background scheduling with APScheduler.

Tier 1 keeps mailboxes on push (polling every ``polling_seconds`` when push
is down), tier 2 delta-sweeps every mailbox, tier 3 runs hourly and nightly
reconciliation. Health checks and credential refresh run alongside.
Every job builds its own Service and logs, never raises, on failure.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from replyguard import accounts
from replyguard.clock import utcnow
from replyguard.config import Config, load_config
from replyguard.errors import CredentialError, ProviderError
from replyguard.health import ERROR_CREDENTIAL
from replyguard.models import Account, AnomalyType
from replyguard.notify import ALERT_CREDENTIALS, ALERT_PUSH_FAILING, ALERT_SYNC_STALE
from replyguard.reconcile import log_anomaly
from replyguard.service import build_service

logger = logging.getLogger(__name__)


class ReplyScheduler:
    """Owns the APScheduler instance and the job bodies."""

    def __init__(
        self,
        config: Config | None = None,
        service_factory: Callable = build_service,
        scheduler: BackgroundScheduler | None = None,
    ):
        self.config = config or load_config()
        self.service_factory = service_factory
        self.scheduler = scheduler or BackgroundScheduler(timezone=self.config.scheduler.timezone)
        self.jobs: dict[str, Callable[[], object]] = {
            "delta_sweep": self.delta_sweep,
            "polling": self.polling_tick,
            "push_maintenance": self.push_maintenance,
            "health_check": self.health_check,
            "credential_refresh": self.refresh_credentials,
            "hourly_reconciliation": self.hourly_reconciliation,
            "nightly_reconciliation": self.nightly_reconciliation,
        }

    def _service(self):
        return self.service_factory(self.config)

    # --- Lifecycle ---

    def start(self) -> None:
        sched = self.config.scheduler
        common = {"replace_existing": True, "max_instances": 1, "coalesce": True}

        self.scheduler.add_job(
            self._guarded("push_maintenance"),
            trigger=IntervalTrigger(minutes=sched.push_retry_minutes),
            id="push_maintenance",
            name="Push registration, restore and renewal",
            next_run_time=utcnow(),
            **common,
        )
        self.scheduler.add_job(
            self._guarded("polling"),
            trigger=IntervalTrigger(seconds=sched.polling_seconds),
            id="polling",
            name="Polling sync for mailboxes without push",
            **common,
        )
        self.scheduler.add_job(
            self._guarded("delta_sweep"),
            trigger=IntervalTrigger(minutes=sched.delta_sweep_minutes),
            id="delta_sweep",
            name="Delta sweep of every mailbox",
            **common,
        )
        self.scheduler.add_job(
            self._guarded("health_check"),
            trigger=IntervalTrigger(minutes=sched.health_check_minutes),
            id="health_check",
            name="Mailbox health and stale sync alerts",
            **common,
        )
        self.scheduler.add_job(
            self._guarded("credential_refresh"),
            trigger=IntervalTrigger(hours=sched.credential_refresh_hours),
            id="credential_refresh",
            name="Refresh tokens close to expiry",
            **common,
        )
        if sched.hourly_reconciliation:
            self.scheduler.add_job(
                self._guarded("hourly_reconciliation"),
                trigger=IntervalTrigger(hours=1),
                id="hourly_reconciliation",
                name="Hourly reconciliation",
                **common,
            )
        self.scheduler.add_job(
            self._guarded("nightly_reconciliation"),
            trigger=CronTrigger(hour=sched.nightly_hour, minute=sched.nightly_minute, timezone=sched.timezone),
            id="nightly_reconciliation",
            name="Nightly reconciliation and retention",
            **common,
        )

        self.scheduler.start()
        logger.info(
            "Scheduler started: sweep every %d min, polling every %ds, nightly reconciliation at %02d:%02d %s",
            sched.delta_sweep_minutes, sched.polling_seconds,
            sched.nightly_hour, sched.nightly_minute, sched.timezone,
        )

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    def _guarded(self, name: str) -> Callable[[], None]:
        def job() -> None:
            self.run_job(name)

        job.__name__ = name
        return job

    def run_job(self, name: str):
        """Run one job body now. Failures are logged, not raised."""
        if name not in self.jobs:
            raise ValueError(f"Unknown job: {name!r}. Use one of {', '.join(self.jobs)}.")
        try:
            return self.jobs[name]()
        except Exception:
            logger.exception("Scheduled job %s failed", name)
            return None

    # --- Tier 1 and 2: sync ---

    def delta_sweep(self) -> int:
        workers = max(1, self.config.scheduler.sweep_workers)
        if workers == 1:
            with self._service() as service:
                return len(service.sweep())

        with self._service() as service:
            syncable = accounts.list_syncable_accounts(service.db)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="replyguard-sweep") as pool:
            results = list(pool.map(self._sync_one, syncable))
        logger.info("Parallel delta sweep: %d mailbox(es) with %d worker(s)", len(results), workers)
        return len(results)

    def _sync_one(self, account: Account):
        with self._service() as service:
            return service.sync_account(account)

    def polling_tick(self) -> int:
        with self._service() as service:
            polled = service.push.polling_accounts()
            for account in polled:
                service.sync_account(account)
            return len(polled)

    def push_maintenance(self) -> dict:
        with self._service() as service:
            restored = service.push.restore_push()
            renewed = service.push.renew_expiring()
        if restored or renewed:
            logger.info("Push maintenance: %d restored, %d renewed", restored, renewed)
        return {"restored": restored, "renewed": renewed}

    # --- Health and credentials ---

    def health_check(self) -> int:
        """Check every active mailbox and alert on credential, stale sync and push problems."""
        alerts_sent = 0
        stale_after = timedelta(minutes=self.config.alerts.stale_sync_minutes)
        with self._service() as service:
            now = utcnow()
            for account in accounts.list_accounts(service.db):
                if not account.active:
                    continue
                was_healthy = account.token_healthy is not False
                status = service.health.check_health(account.user_id, account.provider, force=True)
                if not status.healthy:
                    if was_healthy:
                        log_anomaly(
                            service.db, AnomalyType.TOKEN_UNHEALTHY, user_id=account.user_id,
                            details={
                                "provider": account.provider.value,
                                "error_kind": status.error_kind,
                                "error": status.error_message,
                            },
                        )
                    if status.error_kind == ERROR_CREDENTIAL:
                        alerts_sent += service.notifier.alert(
                            account.user_id, ALERT_CREDENTIALS,
                            f"Reconnect your {account.provider.value} mailbox: {status.error_message}",
                        )
                    continue

                checkpoint = service.sync.get_checkpoint(account.user_id, account.provider)
                if checkpoint is None:
                    continue
                if checkpoint.last_sync_at is None or now - checkpoint.last_sync_at > stale_after:
                    alerts_sent += service.notifier.alert(
                        account.user_id, ALERT_SYNC_STALE,
                        f"No successful {account.provider.value} sync for more than "
                        f"{self.config.alerts.stale_sync_minutes} minutes"
                        + (f": {checkpoint.last_error}" if checkpoint.last_error else ""),
                    )

            threshold = self.config.scheduler.push_failure_threshold
            for user_id, provider, failures in service.push.failing_accounts(threshold):
                alerts_sent += service.notifier.alert(
                    user_id, ALERT_PUSH_FAILING,
                    f"Push notifications for {provider} failed {failures} times; falling back to polling",
                )
        return alerts_sent

    def refresh_credentials(self) -> int:
        """Refresh tokens expiring within the configured window. Returns count refreshed."""
        refreshed = 0
        window = self.config.scheduler.credential_refresh_window_hours
        with self._service() as service:
            for account in accounts.accounts_expiring_within(service.db, window):
                try:
                    adapter = service.get_adapter(account.user_id, account.provider)
                    expiry = adapter.refresh_credentials()
                except CredentialError as exc:
                    accounts.set_needs_reauth(service.db, account.user_id, account.provider)
                    service.health.invalidate(account.user_id, account.provider)
                    service.notifier.alert(
                        account.user_id, ALERT_CREDENTIALS,
                        f"Reconnect your {account.provider.value} mailbox: {exc}",
                    )
                    logger.error("Token refresh failed for %s/%s: %s", account.user_id, account.provider.value, exc)
                    continue
                except ProviderError as exc:
                    logger.warning(
                        "Token refresh for %s/%s will be retried: %s", account.user_id, account.provider.value, exc,
                    )
                    continue
                if expiry is None:
                    # Password-based mailbox: nothing to refresh
                    continue
                accounts.save_credentials(
                    service.db, account.user_id, account.provider, adapter.export_credentials(), expiry,
                )
                refreshed += 1
        if refreshed:
            logger.info("Refreshed credentials for %d mailbox(es)", refreshed)
        return refreshed

    # --- Tier 3: reconciliation ---

    def hourly_reconciliation(self) -> dict:
        with self._service() as service:
            return service.reconciliation.run_hourly().to_dict()

    def nightly_reconciliation(self) -> dict:
        with self._service() as service:
            result = service.reconciliation.run_nightly().to_dict()
            result["pruned"] = self.prune(service)
            return result

    def prune(self, service) -> dict:
        """Age out audit entries, anomalies, reviewed items and stale aliases."""
        retention = self.config.retention
        pruned = {
            "audit": service.audit.prune(retention.audit_days),
            "anomalies": service.reconciliation.prune(retention.anomaly_days),
            "reviews": service.review.clear_old(retention.review_days),
            "aliases": service.aliases.prune_expired(),
        }
        logger.info("Retention prune: %s", pruned)
        return pruned
