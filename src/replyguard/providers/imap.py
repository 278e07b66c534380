"""IMAP adapter for polling-only mailboxes (Yahoo) built on imapclient."""

from __future__ import annotations

import email
import email.policy
import email.utils
import logging
import socket
from contextlib import contextmanager
from datetime import datetime, timezone

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError, LoginError

from replyguard.clock import parse_datetime
from replyguard.config import ImapConfig, RetryConfig
from replyguard.errors import CredentialError, CursorInvalidError, ProviderError, TransientProviderError
from replyguard.matching import normalize_message_id, parse_references
from replyguard.models import ChangeSet, Provider, ProviderMessage, SearchQuery
from replyguard.providers.base import PollingOnlyProvider
from replyguard.retry import call_with_retry

logger = logging.getLogger(__name__)

FETCH_ITEMS = ["BODY.PEEK[]", "INTERNALDATE"]


def build_criteria(query: SearchQuery) -> list:
    """Render a SearchQuery as imapclient search criteria."""
    criteria: list = []
    if query.from_address:
        criteria += ["FROM", query.from_address]
    if query.from_domain:
        criteria += ["FROM", f"@{query.from_domain}"]
    if query.from_name:
        criteria += ["FROM", query.from_name]
    if query.subject:
        criteria += ["SUBJECT", query.subject]
    if query.after:
        criteria += ["SINCE", query.after.date()]
    return criteria or ["ALL"]


class ImapAdapter(PollingOnlyProvider):
    """Opens one IMAP session per operation; the folder is selected read-only."""

    provider = Provider.YAHOO

    def __init__(
        self,
        credentials: dict,
        config: ImapConfig | None = None,
        retry: RetryConfig | None = None,
        client_factory=None,
    ):
        self.config = config or ImapConfig()
        self.retry = retry or RetryConfig()
        self.username = credentials.get("username", "")
        self.password = credentials.get("password", "")
        self._client_factory = client_factory or (
            lambda: IMAPClient(
                host=self.config.host,
                port=self.config.port,
                ssl=self.config.use_ssl,
                timeout=self.config.timeout,
            )
        )

    @contextmanager
    def _session(self):
        if not self.username or not self.password:
            raise CredentialError("IMAP username/password not configured", "yahoo")
        client = self._client_factory()
        try:
            client.login(self.username, self.password)
            info = client.select_folder(self.config.folder, readonly=True)
            yield client, info
        finally:
            try:
                client.logout()
            except (IMAPClientError, OSError):
                logger.debug("IMAP logout failed", exc_info=True)

    def _run(self, operation, description: str):
        def attempt():
            try:
                with self._session() as (client, info):
                    return operation(client, info)
            except LoginError as exc:
                raise CredentialError(f"IMAP login rejected: {exc}", "yahoo") from exc
            except (IMAPClientAbortError, socket.timeout, TimeoutError, ConnectionError, OSError) as exc:
                raise TransientProviderError(f"IMAP {description} failed: {exc}", "yahoo") from exc
            except IMAPClientError as exc:
                raise ProviderError(f"IMAP {description} failed: {exc}", "yahoo") from exc

        return call_with_retry(attempt, self.retry, f"imap {description}")

    # --- Identity & health ---

    def check_health(self) -> None:
        self._run(lambda client, info: client.noop(), "noop")

    def get_user_email(self) -> str:
        return self.username.lower()

    # --- Reads ---

    def _fetch(self, client, info, uids: list[int]) -> list[ProviderMessage]:
        if not uids:
            return []
        validity = int(info.get(b"UIDVALIDITY", 0))
        data = client.fetch(uids, FETCH_ITEMS)
        messages = []
        for uid in sorted(data):
            item = data[uid]
            raw = item.get(b"BODY[]")
            if raw is None:
                continue
            messages.append(self.parse_message(uid, raw, item.get(b"INTERNALDATE"), validity))
        return messages

    def search_messages(self, query: SearchQuery) -> list[ProviderMessage]:
        criteria = build_criteria(query)

        def operation(client, info):
            uids = sorted(client.search(criteria))[-query.max_results:]
            return self._fetch(client, info, uids)

        return self._run(operation, "search")

    def fetch_thread(self, thread_id: str) -> list[ProviderMessage]:
        """Messages whose Message-ID, References or In-Reply-To carry the thread root."""
        root = f"<{normalize_message_id(thread_id)}>"
        criteria = [
            "OR", "HEADER", "Message-ID", root,
            "OR", "HEADER", "References", root, "HEADER", "In-Reply-To", root,
        ]

        def operation(client, info):
            return self._fetch(client, info, sorted(client.search(criteria)))

        return self._run(operation, "thread search")

    # --- Polling cursor ---

    def get_current_cursor(self) -> str:
        def operation(client, info):
            validity = int(info.get(b"UIDVALIDITY", 0))
            uid_next = info.get(b"UIDNEXT")
            if uid_next:
                last = int(uid_next) - 1
            else:
                uids = client.search(["ALL"])
                last = max(uids) if uids else 0
            return f"{validity}:{last}"

        return self._run(operation, "select")

    def list_changes(self, cursor: str, max_messages: int = 500) -> ChangeSet:
        try:
            validity, last_uid = self.parse_cursor(cursor)
        except ValueError as exc:
            raise CursorInvalidError(f"Malformed IMAP cursor {cursor!r}", "yahoo") from exc

        def operation(client, info):
            current_validity = int(info.get(b"UIDVALIDITY", 0))
            if current_validity != validity:
                raise CursorInvalidError(
                    f"UIDVALIDITY changed from {validity} to {current_validity}", "yahoo",
                )
            # "n:*" always returns the highest uid, even when it is below n
            uids = sorted(u for u in client.search(["UID", f"{last_uid + 1}:*"]) if u > last_uid)
            uids = uids[:max_messages]
            messages = self._fetch(client, info, uids)
            new_last = uids[-1] if uids else last_uid
            return ChangeSet(messages=messages, cursor=f"{validity}:{new_last}")

        return self._run(operation, "poll")

    # --- Credentials ---

    def refresh_credentials(self) -> datetime | None:
        # App passwords do not expire
        return None

    def export_credentials(self) -> dict:
        return {"username": self.username, "password": self.password}

    # --- Parsing ---

    def parse_message(self, uid: int, raw: bytes, internal_date=None, validity: int = 0) -> ProviderMessage:
        """Parse a fetched message.

        UIDs are only unique within one mailbox and UIDVALIDITY epoch, so the
        message id is qualified with both.
        """
        msg = email.message_from_bytes(raw, policy=email.policy.default)
        headers: dict[str, str] = {}
        for key, value in msg.items():
            headers.setdefault(key.lower(), str(value))

        from_name, from_email = email.utils.parseaddr(headers.get("from", ""))
        to_addresses = [
            e.strip().lower()
            for _, e in email.utils.getaddresses([headers.get("to", ""), headers.get("cc", "")])
            if e
        ]
        references = parse_references(headers.get("references"))
        in_reply_to = normalize_message_id(headers.get("in-reply-to")) or None
        rfc_message_id = normalize_message_id(headers.get("message-id")) or None
        thread_root = references[0] if references else (in_reply_to or rfc_message_id)

        if isinstance(internal_date, datetime):
            # imapclient returns INTERNALDATE as naive local time
            received_at = internal_date.astimezone(timezone.utc)
        else:
            received_at = parse_datetime(headers.get("date"))

        body = ""
        part = msg.get_body(preferencelist=("plain", "html"))
        if part is not None:
            try:
                body = part.get_content()
            except (LookupError, KeyError, ValueError):
                body = ""

        return ProviderMessage(
            id=f"{self.username.lower()}:{validity}:{uid}",
            thread_id=thread_root,
            from_address=from_email.lower(),
            from_name=from_name.strip(),
            subject=headers.get("subject", ""),
            received_at=received_at,
            to_addresses=to_addresses,
            snippet=" ".join(body.split())[:200],
            body=body,
            headers=headers,
            rfc_message_id=rfc_message_id,
            in_reply_to=in_reply_to,
            references=references,
            content_type=headers.get("content-type") or msg.get_content_type(),
        )
