"""Push registration and the push/polling mode table."""

from __future__ import annotations

import base64
import binascii
import hmac
import json
import logging
import sqlite3
from datetime import timedelta
from typing import Callable

from replyguard import accounts
from replyguard.clock import parse_datetime, to_iso, utcnow
from replyguard.config import SchedulerConfig
from replyguard.errors import ProviderError, PushUnavailableError
from replyguard.models import Account, AnomalyType, Provider, PushMode
from replyguard.reconcile import log_anomaly
from replyguard.stores import KeyValueStore, MemoryStore

logger = logging.getLogger(__name__)


def mode_key(user_id: str, provider: Provider | str) -> str:
    return f"{user_id}:{Provider(provider).value}"


class PushManager:
    """Keeps each mailbox on push when possible and on polling otherwise.

    State per (user, provider) lives in ``modes`` as
    ``{mode, failures, expiration, last_error, since}``. After
    ``push_failure_threshold`` consecutive failures the mailbox drops to
    polling and a ``layer_fallback`` anomaly is logged; ``restore_push``
    tries to bring it back.
    """

    def __init__(
        self,
        db: sqlite3.Connection,
        modes: KeyValueStore | None,
        adapter_factory: Callable,
        config: SchedulerConfig | None = None,
    ):
        self.db = db
        self.modes = modes if modes is not None else MemoryStore()
        self.adapter_factory = adapter_factory
        self.config = config or SchedulerConfig()

    # --- State ---

    def get_state(self, user_id: str, provider: Provider | str) -> dict | None:
        return self.modes.get(mode_key(user_id, provider))

    def _set_state(self, user_id: str, provider: Provider | str, **fields) -> dict:
        state = self.get_state(user_id, provider) or {
            "mode": PushMode.POLLING.value, "failures": 0, "expiration": None,
            "last_error": None, "since": to_iso(utcnow()),
        }
        if "mode" in fields and fields["mode"] != state["mode"]:
            state["since"] = to_iso(utcnow())
        state.update(fields)
        self.modes.set(mode_key(user_id, provider), state)
        return state

    def is_push(self, user_id: str, provider: Provider | str) -> bool:
        state = self.get_state(user_id, provider)
        return bool(state) and state["mode"] == PushMode.PUSH.value

    # --- Transitions ---

    def ensure_registered(self, account: Account) -> dict:
        """Register (or re-register) push for a mailbox, falling back to polling."""
        adapter = self.adapter_factory(account.user_id, account.provider)
        if not adapter.supports_push:
            return self._set_state(
                account.user_id, account.provider,
                mode=PushMode.POLLING.value, last_error="push not configured",
            )
        try:
            registration = adapter.watch()
        except PushUnavailableError as exc:
            logger.warning("Push unavailable for %s/%s: %s", account.user_id, account.provider.value, exc)
            return self.switch_to_polling(account.user_id, account.provider, str(exc))
        except ProviderError as exc:
            return self.record_failure(account.user_id, account.provider, str(exc))
        logger.info("Push registered for %s/%s", account.user_id, account.provider.value)
        return self.record_success(
            account.user_id, account.provider, registration.get("expiration"),
            subscription_id=registration.get("subscription_id"),
            client_state=registration.get("client_state"),
        )

    def record_success(
        self, user_id: str, provider: Provider | str, expiration: str | None = None, **registration,
    ) -> dict:
        fields = {"mode": PushMode.PUSH.value, "failures": 0, "last_error": None}
        if expiration is not None:
            fields["expiration"] = expiration
        fields.update({k: v for k, v in registration.items() if v is not None})
        return self._set_state(user_id, provider, **fields)

    def record_failure(self, user_id: str, provider: Provider | str, error: str) -> dict:
        state = self.get_state(user_id, provider) or {}
        failures = int(state.get("failures") or 0) + 1
        state = self._set_state(user_id, provider, failures=failures, last_error=error)
        logger.warning("Push failure %d for %s/%s: %s", failures, user_id, Provider(provider).value, error)
        if failures >= self.config.push_failure_threshold and state["mode"] != PushMode.POLLING.value:
            return self.switch_to_polling(user_id, provider, error)
        return state

    def switch_to_polling(self, user_id: str, provider: Provider | str, reason: str) -> dict:
        previous = self.get_state(user_id, provider) or {}
        state = self._set_state(user_id, provider, mode=PushMode.POLLING.value, last_error=reason)
        if previous.get("mode") != PushMode.POLLING.value:
            log_anomaly(
                self.db, AnomalyType.LAYER_FALLBACK, user_id=user_id,
                details={
                    "provider": Provider(provider).value,
                    "from": previous.get("mode"),
                    "to": PushMode.POLLING.value,
                    "failures": state.get("failures", 0),
                    "reason": reason,
                },
            )
            logger.warning(
                "Switched %s/%s to polling every %ds: %s",
                user_id, Provider(provider).value, self.config.polling_seconds, reason,
            )
        return state

    # --- Periodic maintenance ---

    def restore_push(self) -> int:
        """Try push again for every syncable mailbox not currently on push. Returns count restored."""
        restored = 0
        for account in accounts.list_syncable_accounts(self.db):
            if self.is_push(account.user_id, account.provider):
                continue
            try:
                state = self.ensure_registered(account)
            except ProviderError as exc:
                # Adapter could not be built (credentials); the health job reports it
                logger.warning("Push restore skipped for %s/%s: %s", account.user_id, account.provider.value, exc)
                continue
            if state["mode"] == PushMode.PUSH.value:
                restored += 1
        return restored

    def renew_expiring(self) -> int:
        """Re-register push for mailboxes whose registration expires soon. Returns count renewed."""
        horizon = utcnow() + timedelta(hours=self.config.push_renew_hours)
        renewed = 0
        for account in accounts.list_syncable_accounts(self.db):
            state = self.get_state(account.user_id, account.provider)
            if not state or state["mode"] != PushMode.PUSH.value:
                continue
            expiration = parse_datetime(state.get("expiration"))
            if expiration is not None and expiration > horizon:
                continue
            try:
                state = self.ensure_registered(account)
            except ProviderError as exc:
                self.record_failure(account.user_id, account.provider, str(exc))
                continue
            if state["mode"] == PushMode.PUSH.value:
                renewed += 1
        return renewed

    def polling_accounts(self) -> list[Account]:
        """Syncable mailboxes that are not on push."""
        return [
            account for account in accounts.list_syncable_accounts(self.db)
            if not self.is_push(account.user_id, account.provider)
        ]

    def graph_subscriptions(self) -> dict[str, tuple[str, str]]:
        """Subscription id -> (user id, client state) for every registered Graph subscription."""
        subscriptions = {}
        for key, state in self.modes.items():
            user_id, _, provider = key.rpartition(":")
            if provider != Provider.OUTLOOK.value:
                continue
            if state.get("subscription_id") and state.get("client_state"):
                subscriptions[state["subscription_id"]] = (user_id, state["client_state"])
        return subscriptions

    def failing_accounts(self, threshold: int) -> list[tuple[str, str, int]]:
        """(user, provider, failures) for every mailbox at or over ``threshold`` push failures."""
        failing = []
        for key, state in self.modes.items():
            failures = int(state.get("failures") or 0)
            if failures >= threshold:
                user_id, _, provider = key.rpartition(":")
                failing.append((user_id, provider, failures))
        return failing


# --- Notification payloads ---

def parse_gmail_push(envelope: dict) -> tuple[str, str | None]:
    """Decode a Pub/Sub push envelope into (email address, history id).

    Raises ValueError for malformed envelopes.
    """
    message = envelope.get("message") or {}
    data = message.get("data")
    if not data:
        raise ValueError("Pub/Sub envelope has no message data")
    try:
        payload = json.loads(base64.b64decode(data))
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Undecodable Pub/Sub message data: {exc}") from exc
    email = payload.get("emailAddress")
    if not email:
        raise ValueError("Pub/Sub payload has no emailAddress")
    history_id = payload.get("historyId")
    return email, str(history_id) if history_id is not None else None


def parse_graph_notifications(body: dict, subscriptions: dict[str, tuple[str, str]]) -> list[str]:
    """User ids for the Graph change notifications that carry their subscription's secret.

    ``subscriptions`` maps subscription id to (user id, client state). A
    notification for an unknown subscription or with any other clientState
    is dropped. The result is deduplicated.
    """
    user_ids: list[str] = []
    for notification in body.get("value") or []:
        subscription_id = notification.get("subscriptionId") or ""
        known = subscriptions.get(subscription_id)
        if known is None:
            logger.info("Graph notification for unknown subscription %r ignored", subscription_id)
            continue
        user_id, secret = known
        if not hmac.compare_digest(str(notification.get("clientState") or ""), secret):
            logger.warning("Graph notification for %s carried a bad clientState, ignored", user_id)
            continue
        if user_id not in user_ids:
            user_ids.append(user_id)
    return user_ids
