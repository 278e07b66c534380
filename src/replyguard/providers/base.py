"""Mailbox provider adapter protocol and its three capability variants."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from replyguard.errors import PushUnavailableError
from replyguard.models import ChangeSet, Provider, ProviderMessage, SearchQuery


@runtime_checkable
class ProviderAdapter(Protocol):
    """Protocol every mailbox adapter implements.

    All methods raise the ``replyguard.errors`` provider hierarchy:
    ``TransientProviderError`` (already retried), ``CredentialError`` and
    ``CursorInvalidError`` (``list_changes`` only).
    """

    provider: Provider
    kind: str

    def check_health(self) -> None:
        """Cheap authenticated call; raises on failure."""
        ...

    def get_user_email(self) -> str:
        ...

    def fetch_thread(self, thread_id: str) -> list[ProviderMessage]:
        ...

    def search_messages(self, query: SearchQuery) -> list[ProviderMessage]:
        ...

    def get_current_cursor(self) -> str:
        """Current position in the provider's change log."""
        ...

    def list_changes(self, cursor: str, max_messages: int = 500) -> ChangeSet:
        """New messages since ``cursor`` (at most ``max_messages``) plus the cursor to store next."""
        ...

    def cursor_advances(self, old: str | None, new: str) -> bool:
        """True when ``new`` is not behind ``old``."""
        ...

    def refresh_credentials(self) -> datetime | None:
        """Refresh the access token; returns the new expiry when known."""
        ...

    def export_credentials(self) -> dict:
        ...

    @property
    def supports_push(self) -> bool:
        ...

    def watch(self) -> dict:
        """Register for push notifications; raises PushUnavailableError."""
        ...


class _AdapterBase:
    """Defaults shared by the variants: no push, nothing to export or close."""

    provider: Provider
    kind: str = ""

    @property
    def supports_push(self) -> bool:
        return False

    def watch(self) -> dict:
        raise PushUnavailableError("Push notifications are not supported", self.provider.value)

    def export_credentials(self) -> dict:
        return {}

    def close(self) -> None:
        pass


class ChangeLogProvider(_AdapterBase):
    """Provider with a numbered change log (Gmail history ids)."""

    kind = "change_log"

    def cursor_advances(self, old: str | None, new: str) -> bool:
        if not old:
            return True
        try:
            return int(new) >= int(old)
        except (TypeError, ValueError):
            return True


class DeltaQueryProvider(_AdapterBase):
    """Provider with server-issued delta links (Microsoft Graph)."""

    kind = "delta_query"

    def cursor_advances(self, old: str | None, new: str) -> bool:
        # Delta links are opaque and only ever issued forward
        return bool(new)


class PollingOnlyProvider(_AdapterBase):
    """Classic polling access (IMAP); cursor is ``<uidvalidity>:<last uid>``."""

    kind = "polling"

    @staticmethod
    def parse_cursor(cursor: str) -> tuple[int, int]:
        validity, _, uid = cursor.partition(":")
        return int(validity), int(uid or 0)

    def cursor_advances(self, old: str | None, new: str) -> bool:
        if not old:
            return True
        try:
            old_validity, old_uid = self.parse_cursor(old)
            new_validity, new_uid = self.parse_cursor(new)
        except ValueError:
            return True
        if old_validity != new_validity:
            # A new UIDVALIDITY restarts numbering; only reachable via reinitialization
            return True
        return new_uid >= old_uid
