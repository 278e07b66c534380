"""Shared test fixtures."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from replyguard import accounts, records
from replyguard.config import Config
from replyguard.database import init_db
from replyguard.matching import domain_of, emails_match_loose, normalize_email, subjects_correlate
from replyguard.models import ChangeSet, Provider, ProviderMessage, SearchQuery
from replyguard.providers.base import ChangeLogProvider
from replyguard.service import Service
from replyguard.stores import build_state_stores

SENT_AT = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def db():
    """In-memory SQLite database with schema initialized."""
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    init_db(conn)
    yield conn
    conn.close()


def make_message(
    message_id: str,
    from_address: str,
    subject: str = "",
    received_at: datetime | None = None,
    thread_id: str | None = None,
    from_name: str = "",
    headers: dict | None = None,
    in_reply_to: str | None = None,
    references: list[str] | None = None,
    body: str = "",
) -> ProviderMessage:
    return ProviderMessage(
        id=message_id,
        thread_id=thread_id,
        from_address=from_address,
        from_name=from_name,
        subject=subject,
        received_at=received_at or SENT_AT + timedelta(hours=2),
        to_addresses=["brandon@example.com"],
        snippet=body[:100],
        body=body,
        headers={k.lower(): v for k, v in (headers or {}).items()},
        rfc_message_id=f"{message_id}@mail.test",
        in_reply_to=in_reply_to,
        references=list(references or []),
    )


class FakeAdapter(ChangeLogProvider):
    """In-memory mailbox with a numbered change log.

    ``failures`` maps a method name to the exception that method raises.
    """

    provider = Provider.GMAIL

    def __init__(self, messages: list[ProviderMessage] | None = None, user_email: str = "brandon@example.com"):
        self.messages = list(messages or [])
        self.log: list[ProviderMessage] = []
        self.user_email = user_email
        self.failures: dict[str, Exception] = {}
        self.calls: list[str] = []
        self.push_enabled = False
        self.watch_result = {"history_id": "1", "expiration": None}

    def _maybe_fail(self, name: str) -> None:
        self.calls.append(name)
        if name in self.failures:
            raise self.failures[name]

    def deliver(self, message: ProviderMessage) -> None:
        """New inbound mail: visible to search and to the change log."""
        self.messages.append(message)
        self.log.append(message)

    def check_health(self) -> None:
        self._maybe_fail("check_health")

    def get_user_email(self) -> str:
        self._maybe_fail("get_user_email")
        return self.user_email

    def fetch_thread(self, thread_id: str) -> list[ProviderMessage]:
        self._maybe_fail("fetch_thread")
        return [m for m in self.messages if m.thread_id == thread_id]

    def search_messages(self, query: SearchQuery) -> list[ProviderMessage]:
        self._maybe_fail("search_messages")
        hits = []
        for m in self.messages:
            if query.from_address and not emails_match_loose(m.from_address, query.from_address):
                continue
            if query.from_domain and domain_of(m.from_address) != query.from_domain:
                continue
            if query.from_name and query.from_name.lower() not in m.from_name.lower():
                continue
            if query.subject and not subjects_correlate(m.subject, query.subject):
                continue
            if query.after and m.received_at and m.received_at < query.after:
                continue
            hits.append(m)
        return hits[: query.max_results]

    def get_current_cursor(self) -> str:
        self._maybe_fail("get_current_cursor")
        return str(len(self.log))

    def list_changes(self, cursor: str, max_messages: int = 500) -> ChangeSet:
        self._maybe_fail("list_changes")
        start = int(cursor)
        batch = self.log[start:start + max_messages]
        return ChangeSet(messages=list(batch), cursor=str(start + len(batch)))

    def refresh_credentials(self):
        self._maybe_fail("refresh_credentials")
        return None

    @property
    def supports_push(self) -> bool:
        return self.push_enabled

    def watch(self) -> dict:
        self._maybe_fail("watch")
        return dict(self.watch_result)


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def adapter_factory(adapter):
    def factory(user_id, provider=None):
        return adapter

    return factory


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def service(db, adapter, config, monkeypatch):
    """Service over the in-memory database, with every mailbox served by ``adapter``."""
    monkeypatch.setattr("replyguard.providers.get_adapter", lambda account, cfg: adapter)
    return Service(config, db, build_state_stores(config))


def insert_account(
    db: sqlite3.Connection,
    user_id: str = "u1",
    provider: str = "gmail",
    email: str = "brandon@example.com",
    **kwargs,
):
    return accounts.add_account(db, user_id, provider, email=email, credentials={"token": "t"}, **kwargs)


def insert_contact(
    db: sqlite3.Connection,
    email: str = "sarah@acme.com",
    user_id: str = "u1",
    name: str | None = "Sarah Chen",
    company: str | None = "Acme",
) -> int:
    return records.add_contact(db, user_id, email, name=name, company=company)


def insert_sent(
    db: sqlite3.Connection,
    contact_id: int,
    subject: str = "Quick question about your API pricing",
    sent_at: datetime = SENT_AT,
    user_id: str = "u1",
    provider: str | None = "gmail",
    thread_id: str | None = "thread_001",
    message_id: str | None = "sent_001",
    rfc_message_id: str | None = "sent_001@example.com",
) -> int:
    return records.add_sent_message(
        db, user_id, contact_id, subject, sent_at,
        provider=provider, thread_id=thread_id, message_id=message_id, rfc_message_id=rfc_message_id,
    )


def reply_count(db: sqlite3.Connection, sent_message_id: int | None = None) -> int:
    if sent_message_id is None:
        return db.execute("SELECT COUNT(*) AS cnt FROM replies").fetchone()["cnt"]
    return db.execute(
        "SELECT COUNT(*) AS cnt FROM replies WHERE sent_message_id = ?", (sent_message_id,),
    ).fetchone()["cnt"]


def is_replied(db: sqlite3.Connection, sent_message_id: int) -> bool:
    row = db.execute("SELECT reply_received FROM sent_messages WHERE id = ?", (sent_message_id,)).fetchone()
    return bool(row["reply_received"])


def aliases_of(db: sqlite3.Connection, contact_id: int) -> list[str]:
    rows = db.execute(
        "SELECT alias_email FROM contact_aliases WHERE contact_id = ? ORDER BY alias_email", (contact_id,),
    ).fetchall()
    return [normalize_email(r["alias_email"]) for r in rows]
