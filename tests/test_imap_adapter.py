"""Tests for the IMAP polling adapter (fake imapclient session)."""

from datetime import date, datetime, timezone

import pytest
from imapclient.exceptions import LoginError

from replyguard.config import RetryConfig
from replyguard.errors import CredentialError, CursorInvalidError, TransientProviderError
from replyguard.models import SearchQuery
from replyguard.providers.imap import ImapAdapter, build_criteria
from replyguard.service import Service
from replyguard.stores import build_state_stores
from tests.conftest import insert_account, insert_contact, insert_sent, reply_count

RAW_REPLY = (
    b"From: Sarah Chen <Sarah@Acme.com>\r\n"
    b"To: brandon@yahoo.com\r\n"
    b"Subject: Re: Pricing\r\n"
    b"Date: Mon, 02 Mar 2026 11:30:00 +0000\r\n"
    b"Message-ID: <reply-1@acme.com>\r\n"
    b"In-Reply-To: <sent-1@yahoo.com>\r\n"
    b"References: <root-1@yahoo.com> <sent-1@yahoo.com>\r\n"
    b"Content-Type: text/plain; charset=utf-8\r\n"
    b"\r\n"
    b"Thanks, the numbers look good.\r\n"
)


class FakeIMAPClient:
    def __init__(self, uids=(41, 42), validity=7, uid_next=43, login_error=None):
        self.uids = list(uids)
        self.validity = validity
        self.uid_next = uid_next
        self.login_error = login_error
        self.searches = []
        self.logged_out = False

    def login(self, username, password):
        if self.login_error:
            raise self.login_error

    def select_folder(self, folder, readonly=False):
        assert readonly
        return {b"UIDVALIDITY": self.validity, b"UIDNEXT": self.uid_next}

    def noop(self):
        return (b"NOOP completed", [])

    def search(self, criteria):
        self.searches.append(criteria)
        return list(self.uids)

    def fetch(self, uids, items):
        return {uid: {b"BODY[]": RAW_REPLY, b"INTERNALDATE": None} for uid in uids}

    def logout(self):
        self.logged_out = True


def _adapter(client=None, **credentials):
    client = client or FakeIMAPClient()
    creds = {"username": "Brandon@yahoo.com", "password": "app-password"}
    creds.update(credentials)
    return ImapAdapter(creds, retry=RetryConfig(max_attempts=1), client_factory=lambda: client), client


def test_build_criteria():
    query = SearchQuery(from_domain="acme.com", subject="Pricing", after=datetime(2026, 3, 2, tzinfo=timezone.utc))
    assert build_criteria(query) == ["FROM", "@acme.com", "SUBJECT", "Pricing", "SINCE", date(2026, 3, 2)]
    assert build_criteria(SearchQuery()) == ["ALL"]


def test_health_and_identity():
    adapter, client = _adapter()
    adapter.check_health()
    assert client.logged_out
    assert adapter.get_user_email() == "brandon@yahoo.com"
    assert adapter.refresh_credentials() is None


def test_missing_password_is_credential_error():
    adapter, _ = _adapter(password="")
    with pytest.raises(CredentialError):
        adapter.check_health()


def test_login_rejected():
    adapter, client = _adapter(FakeIMAPClient(login_error=LoginError("AUTHENTICATIONFAILED")))
    with pytest.raises(CredentialError):
        adapter.check_health()
    assert client.logged_out


def test_connection_failure_is_transient():
    def refuse():
        raise ConnectionRefusedError("connection refused")

    adapter = ImapAdapter(
        {"username": "b@yahoo.com", "password": "x"}, retry=RetryConfig(max_attempts=1), client_factory=refuse,
    )
    with pytest.raises(TransientProviderError):
        adapter.check_health()


def test_current_cursor_from_uidnext():
    adapter, _ = _adapter()
    assert adapter.get_current_cursor() == "7:42"


def test_list_changes_advances_cursor():
    adapter, client = _adapter()
    changes = adapter.list_changes("7:40")
    assert changes.cursor == "7:42"
    assert [m.id for m in changes.messages] == ["brandon@yahoo.com:7:41", "brandon@yahoo.com:7:42"]
    assert client.searches == [["UID", "41:*"]]


def test_list_changes_ignores_highest_uid_below_cursor():
    adapter, _ = _adapter(FakeIMAPClient(uids=[40]))
    changes = adapter.list_changes("7:40")
    assert changes.messages == []
    assert changes.cursor == "7:40"


def test_list_changes_respects_max_messages():
    adapter, _ = _adapter(FakeIMAPClient(uids=[41, 42, 43]))
    changes = adapter.list_changes("7:40", max_messages=2)
    assert changes.cursor == "7:42"


def test_uidvalidity_change_invalidates_cursor():
    adapter, _ = _adapter()
    with pytest.raises(CursorInvalidError):
        adapter.list_changes("6:40")
    with pytest.raises(CursorInvalidError):
        adapter.list_changes("garbage")


def test_cursor_advances():
    adapter, _ = _adapter()
    assert adapter.cursor_advances(None, "7:1")
    assert adapter.cursor_advances("7:40", "7:41")
    assert not adapter.cursor_advances("7:40", "7:39")
    assert adapter.cursor_advances("7:40", "8:1")


def test_parse_message():
    adapter, _ = _adapter()
    msg = adapter.parse_message(41, RAW_REPLY, validity=7)

    assert msg.id == "brandon@yahoo.com:7:41"
    assert msg.from_address == "sarah@acme.com"
    assert msg.from_name == "Sarah Chen"
    assert msg.to_addresses == ["brandon@yahoo.com"]
    assert msg.rfc_message_id == "reply-1@acme.com"
    assert msg.in_reply_to == "sent-1@yahoo.com"
    assert msg.references == ["root-1@yahoo.com", "sent-1@yahoo.com"]
    assert msg.thread_id == "root-1@yahoo.com"
    assert msg.received_at == datetime(2026, 3, 2, 11, 30, tzinfo=timezone.utc)
    assert "numbers look good" in msg.body


def test_fetch_thread_searches_headers():
    adapter, client = _adapter(FakeIMAPClient(uids=[41]))
    messages = adapter.fetch_thread("root-1@yahoo.com")
    assert [m.id for m in messages] == ["brandon@yahoo.com:7:41"]
    assert "<root-1@yahoo.com>" in client.searches[0]


def test_same_uid_in_two_mailboxes_records_both_replies(db, config, monkeypatch):
    adapters = {}
    for user_id in ("u1", "u2"):
        address = f"{user_id}@yahoo.com"
        insert_account(db, user_id=user_id, provider="yahoo", email=address)
        contact_id = insert_contact(db, user_id=user_id)
        insert_sent(db, contact_id, user_id=user_id, provider="yahoo", rfc_message_id="sent-1@yahoo.com")
        adapters[user_id], _ = _adapter(FakeIMAPClient(uids=[41], uid_next=41), username=address)
    monkeypatch.setattr("replyguard.providers.get_adapter", lambda account, cfg: adapters[account.user_id])
    service = Service(config, db, build_state_stores(config))

    for user_id in adapters:
        assert service.sync.sync_user(user_id).status == "initialized"
        assert service.sync.sync_user(user_id).replies_found == 1

    assert reply_count(db) == 2
    ids = [r["provider_message_id"] for r in db.execute("SELECT provider_message_id FROM replies ORDER BY id")]
    assert ids == ["u1@yahoo.com:7:41", "u2@yahoo.com:7:41"]
