"""Tests for the Gmail adapter (mocked API service)."""

import base64
from datetime import datetime, timezone
from unittest.mock import MagicMock

import httplib2
import pytest
from google.auth.exceptions import RefreshError
from googleapiclient.errors import HttpError

from replyguard.config import RetryConfig
from replyguard.errors import (
    CredentialError,
    CursorInvalidError,
    ProviderError,
    PushUnavailableError,
    TransientProviderError,
)
from replyguard.models import SearchQuery
from replyguard.providers.gmail import GmailAdapter, render_query, translate_http_error
from replyguard.providers.gmail_auth import load_credentials


def _b64(text):
    return base64.urlsafe_b64encode(text.encode()).decode()


def raw_message(msg_id, sender="Sarah Chen <sarah@acme.com>", thread_id="t1"):
    return {
        "id": msg_id,
        "threadId": thread_id,
        "snippet": "Thanks, looks good",
        "internalDate": "1772451000000",
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [
                {"name": "From", "value": sender},
                {"name": "To", "value": "brandon@example.com"},
                {"name": "Subject", "value": "Re: Pricing"},
                {"name": "Message-ID", "value": f"<{msg_id}@acme.com>"},
                {"name": "In-Reply-To", "value": "<sent-1@example.com>"},
            ],
            "parts": [
                {"mimeType": "text/plain", "body": {"data": _b64("Thanks, looks good.")}},
                {"mimeType": "text/html", "body": {"data": _b64("<p>Thanks, looks good.</p>")}},
                {"mimeType": "application/pdf", "filename": "quote.pdf", "body": {"attachmentId": "a1"}},
            ],
        },
    }


def http_error(status, message="error"):
    content = f'{{"error": {{"code": {status}, "message": "{message}"}}}}'.encode()
    return HttpError(httplib2.Response({"status": status}), content)


@pytest.fixture
def gmail_service():
    return MagicMock()


@pytest.fixture
def gmail(gmail_service):
    return GmailAdapter(
        MagicMock(),
        retry=RetryConfig(max_attempts=2, base_delay=0, max_delay=0, jitter=0),
        service_builder=lambda creds: gmail_service,
    )


def test_render_query():
    query = SearchQuery(
        from_domain="acme.com", subject='Re: "Pricing"', after=datetime(2026, 3, 2, tzinfo=timezone.utc),
    )
    assert render_query(query) == 'from:@acme.com subject:"Re: Pricing" after:1772409600 -from:me'


def test_translate_http_error():
    assert isinstance(translate_http_error(http_error(401), "x"), CredentialError)
    assert translate_http_error(http_error(503), "x").retry_after is None
    assert isinstance(translate_http_error(http_error(403, "Insufficient Permission"), "x"), CredentialError)
    transient = translate_http_error(http_error(403, "rateLimitExceeded"), "x")
    assert isinstance(transient, TransientProviderError)
    assert type(translate_http_error(http_error(400), "x")) is ProviderError


def test_profile_cursor_and_identity(gmail, gmail_service):
    gmail_service.users().getProfile().execute.return_value = {
        "emailAddress": "Brandon@Example.com", "historyId": 4242,
    }
    assert gmail.get_user_email() == "brandon@example.com"
    assert gmail.get_current_cursor() == "4242"


def test_transient_error_retried(gmail, gmail_service):
    gmail_service.users().getProfile().execute.side_effect = [
        http_error(503),
        {"emailAddress": "brandon@example.com", "historyId": 1},
    ]
    gmail.check_health()
    assert gmail_service.users().getProfile().execute.call_count == 2


def test_search_fetches_full_messages(gmail, gmail_service):
    gmail_service.users().messages().list().execute.return_value = {"messages": [{"id": "m1"}]}
    gmail_service.users().messages().get().execute.return_value = raw_message("m1")

    results = gmail.search_messages(SearchQuery(from_address="sarah@acme.com"))

    assert [m.id for m in results] == ["m1"]
    assert results[0].from_address == "sarah@acme.com"


def test_list_changes(gmail, gmail_service):
    gmail_service.users().history().list().execute.return_value = {
        "history": [
            {"id": "101", "messagesAdded": [{"message": {"id": "m1", "labelIds": ["INBOX"]}}]},
            {"id": "102", "messagesAdded": [
                {"message": {"id": "d1", "labelIds": ["DRAFT"]}},
                {"message": {"id": "m1", "labelIds": ["INBOX"]}},
                {"message": {"id": "m2", "labelIds": ["INBOX"]}},
            ]},
        ],
        "historyId": "105",
    }
    gmail_service.users().messages().get().execute.side_effect = [raw_message("m1"), http_error(404)]

    changes = gmail.list_changes("100")

    # m2 was deleted before it could be fetched
    assert [m.id for m in changes.messages] == ["m1"]
    assert changes.cursor == "105"


def test_list_changes_truncates_at_history_entry(gmail, gmail_service):
    gmail_service.users().history().list().execute.return_value = {
        "history": [
            {"id": "101", "messagesAdded": [{"message": {"id": "m1"}}]},
            {"id": "102", "messagesAdded": [{"message": {"id": "m2"}}]},
        ],
        "historyId": "105",
    }
    gmail_service.users().messages().get().execute.return_value = raw_message("m1")

    changes = gmail.list_changes("100", max_messages=1)

    assert changes.cursor == "101"
    assert len(changes.messages) == 1


def test_expired_history_id(gmail, gmail_service):
    gmail_service.users().history().list().execute.side_effect = http_error(404, "Requested entity was not found.")
    with pytest.raises(CursorInvalidError):
        gmail.list_changes("1")


def test_parse_message(gmail):
    msg = gmail.parse_message(raw_message("m1"))

    assert msg.thread_id == "t1"
    assert msg.from_name == "Sarah Chen"
    assert msg.to_addresses == ["brandon@example.com"]
    assert msg.body == "Thanks, looks good."
    assert msg.rfc_message_id == "m1@acme.com"
    assert msg.in_reply_to == "sent-1@example.com"
    assert msg.received_at == datetime(2026, 3, 2, 11, 30, tzinfo=timezone.utc)
    assert msg.content_type == "multipart/alternative"


def test_watch(gmail_service):
    adapter = GmailAdapter(MagicMock(), service_builder=lambda creds: gmail_service)
    assert not adapter.supports_push
    with pytest.raises(PushUnavailableError):
        adapter.watch()

    adapter.pubsub_topic = "projects/p/topics/replies"
    gmail_service.users().watch().execute.return_value = {"historyId": 77, "expiration": "1772971200000"}
    result = adapter.watch()
    assert result["history_id"] == "77"
    assert result["expiration"].startswith("2026-03-08")


def test_watch_on_missing_topic(gmail, gmail_service):
    gmail.pubsub_topic = "projects/p/topics/missing"
    gmail_service.users().watch().execute.side_effect = http_error(404, "Topic not found")
    with pytest.raises(PushUnavailableError):
        gmail.watch()


def test_refresh_credentials():
    credentials = MagicMock()
    credentials.expiry = datetime(2026, 3, 2, 12, 0)
    adapter = GmailAdapter(credentials, service_builder=lambda creds: MagicMock())

    assert adapter.refresh_credentials() == datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    credentials.refresh.side_effect = RefreshError("invalid_grant")
    with pytest.raises(CredentialError):
        adapter.refresh_credentials()


def test_load_credentials():
    with pytest.raises(CredentialError):
        load_credentials({"token": "abc"})

    creds = load_credentials({
        "token": "abc", "refresh_token": "r1", "client_id": "cid", "client_secret": "secret",
    })
    assert creds.refresh_token == "r1"
