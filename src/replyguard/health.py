"""Per-(user, provider) connectivity and credential checks with a short TTL cache."""

from __future__ import annotations

import logging
import sqlite3
import time
from typing import Callable

from replyguard import accounts
from replyguard.clock import utcnow
from replyguard.errors import AccountNotFoundError, CredentialError, ProviderError
from replyguard.models import HealthAction, HealthStatus, PreflightResult, Provider
from replyguard.stores import KeyValueStore, MemoryStore

logger = logging.getLogger(__name__)

ERROR_CREDENTIAL = "credential"
ERROR_TRANSIENT = "transient"


def cache_key(user_id: str, provider: Provider | str) -> str:
    return f"{user_id}:{Provider(provider).value}"


class HealthWatchdog:
    """Checks a mailbox with one cheap authenticated call.

    Results are cached in ``cache`` (whose TTL bounds how often a mailbox is hit) and written
    to the account's token health columns. A credential failure also flags
    the account for re-authentication.
    """

    def __init__(
        self,
        db: sqlite3.Connection,
        adapter_factory: Callable,
        cache: KeyValueStore | None = None,
    ):
        self.db = db
        self.adapter_factory = adapter_factory
        self.cache = cache if cache is not None else MemoryStore(ttl=60)

    def check_health(self, user_id: str, provider: Provider | str, force: bool = False) -> HealthStatus:
        key = cache_key(user_id, provider)
        if not force:
            cached = self.cache.get(key)
            if cached is not None:
                return HealthStatus.from_dict(cached)

        status = self._run_check(user_id, Provider(provider))
        self.cache.set(key, status.to_dict())
        return status

    def _run_check(self, user_id: str, provider: Provider) -> HealthStatus:
        start = time.monotonic()
        error_kind = None
        error_message = None
        account_exists = True
        try:
            adapter = self.adapter_factory(user_id, provider)
            adapter.check_health()
        except AccountNotFoundError as exc:
            account_exists = False
            error_kind, error_message = ERROR_CREDENTIAL, str(exc)
        except CredentialError as exc:
            error_kind, error_message = ERROR_CREDENTIAL, str(exc)
        except ProviderError as exc:
            error_kind, error_message = ERROR_TRANSIENT, str(exc)

        status = HealthStatus(
            healthy=error_kind is None,
            response_time_ms=int((time.monotonic() - start) * 1000),
            error_message=error_message,
            error_kind=error_kind,
            checked_at=utcnow(),
        )

        if account_exists:
            accounts.update_token_health(self.db, user_id, provider, status.healthy, error_message)
            if error_kind == ERROR_CREDENTIAL:
                accounts.set_needs_reauth(self.db, user_id, provider)
        if not status.healthy:
            logger.warning("Health check failed for %s/%s (%s): %s", user_id, provider.value, error_kind, error_message)
        return status

    def pre_flight_health_check(self, user_id: str, provider: Provider | str) -> PreflightResult:
        """Classify whether provider work can proceed for this user."""
        status = self.check_health(user_id, provider)
        if status.healthy:
            return PreflightResult(ok=True, health=status)
        if status.error_kind == ERROR_CREDENTIAL:
            return PreflightResult(
                ok=False,
                action=HealthAction.REQUIRES_REAUTH,
                message=f"Mailbox requires re-authentication: {status.error_message}",
                health=status,
            )
        return PreflightResult(
            ok=False,
            action=HealthAction.RETRY_LATER,
            message=f"Mailbox temporarily unavailable, retry later: {status.error_message}",
            health=status,
        )

    def invalidate(self, user_id: str, provider: Provider | str) -> None:
        self.cache.delete(cache_key(user_id, provider))
