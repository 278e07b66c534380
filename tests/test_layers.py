"""Tests for the individual detection layers."""

from datetime import timedelta

from replyguard.detection import (
    DisplayNameLayer,
    DomainLayer,
    ExactAddressLayer,
    SubjectLayer,
    ThreadLayer,
    is_candidate_reply,
)
from replyguard.errors import TransientProviderError
from replyguard.models import DetectionOptions
from tests.conftest import SENT_AT, FakeAdapter, make_message

SUBJECT = "Quick question about your API pricing"


def _options(**kwargs):
    defaults = dict(
        user_id="u1",
        sent_message_id=1,
        contact_email="sarah@acme.com",
        sent_at=SENT_AT,
        user_email="brandon@example.com",
        contact_id=1,
        contact_name="Sarah Chen",
        subject=SUBJECT,
        thread_id="thread_001",
        message_id="sent_001",
    )
    defaults.update(kwargs)
    return DetectionOptions(**defaults)


def _reply(message_id="r1", from_address="sarah@acme.com", **kwargs):
    kwargs.setdefault("subject", f"Re: {SUBJECT}")
    kwargs.setdefault("thread_id", "thread_001")
    kwargs.setdefault("from_name", "Sarah Chen")
    return make_message(message_id, from_address, **kwargs)


# --- Shared filters ---

def test_candidate_filter_rejects_own_and_early_messages():
    options = _options()
    assert is_candidate_reply(_reply(), options)
    assert not is_candidate_reply(_reply(from_address="brandon+x@example.com"), options)
    assert not is_candidate_reply(_reply(message_id="sent_001"), options)
    assert not is_candidate_reply(_reply(received_at=SENT_AT - timedelta(hours=1)), options)
    assert not is_candidate_reply(_reply(headers={"Auto-Submitted": "auto-replied"}), options)


# --- Layers ---

def test_thread_layer_finds_contact_and_colleague():
    adapter = FakeAdapter([
        _reply("r1"),
        _reply("r2", from_address="cto@acme.com", from_name="Ana"),
        _reply("r3", from_address="spam@other.com"),
    ])
    result = ThreadLayer(adapter).detect(_options())
    assert result.found
    assert result.healthy
    assert [r.provider_message_id for r in result.replies] == ["r1", "r2"]
    assert result.metadata.query == "thread:thread_001"
    assert result.metadata.messages_scanned == 3


def test_thread_layer_skipped_without_thread():
    result = ThreadLayer(FakeAdapter()).detect(_options(thread_id=None))
    assert result.healthy
    assert not result.found
    assert result.metadata.skipped


def test_exact_address_layer_accepts_plus_address_and_alias():
    adapter = FakeAdapter([
        _reply("r1", from_address="sarah+sales@acme.com", thread_id=None),
    ])
    assert ExactAddressLayer(adapter).detect(_options()).found

    alias_adapter = FakeAdapter([_reply("r2", from_address="sarah.chen@acme.io", thread_id=None)])
    layer = ExactAddressLayer(alias_adapter)
    # The search runs on the primary address; the alias message is only found by other layers
    assert not layer.detect(_options(contact_aliases=["sarah.chen@acme.io"])).found
    assert layer.accepts(alias_adapter.messages[0], _options(contact_aliases=["sarah.chen@acme.io"]))


def test_domain_layer_requires_subject_correlation():
    adapter = FakeAdapter([
        _reply("r1", from_address="ana@acme.com", thread_id=None),
        _reply("r2", from_address="bob@acme.com", subject="Lunch?", thread_id=None),
    ])
    result = DomainLayer(adapter).detect(_options())
    assert [r.provider_message_id for r in result.replies] == ["r1"]


def test_domain_layer_skips_free_mail_without_subject():
    result = DomainLayer(FakeAdapter()).detect(_options(contact_email="sarah@gmail.com", subject=None))
    assert result.metadata.skipped


def test_display_name_layer_requires_contact_domain():
    adapter = FakeAdapter([
        _reply("r1", from_address="s.chen@acme.com", thread_id=None),
        _reply("r2", from_address="sarah.chen@gmail.com", thread_id=None),
    ])
    result = DisplayNameLayer(adapter).detect(_options())
    assert [r.provider_message_id for r in result.replies] == ["r1"]
    assert DisplayNameLayer(adapter).detect(_options(contact_name=" ")).metadata.skipped


def test_subject_layer_rejects_unrelated_senders():
    adapter = FakeAdapter([
        _reply("r1", thread_id=None),
        _reply("r2", from_address="someone@unrelated.com", thread_id=None),
    ])
    result = SubjectLayer(adapter).detect(_options())
    assert [r.provider_message_id for r in result.replies] == ["r1"]
    assert SubjectLayer(adapter).detect(_options(subject="Re:")).metadata.skipped


def test_provider_error_marks_layer_unhealthy():
    adapter = FakeAdapter([_reply()])
    adapter.failures["search_messages"] = TransientProviderError("503 backend error")
    result = ExactAddressLayer(adapter).detect(_options())
    assert not result.healthy
    assert not result.found
    assert "503" in result.error


def test_replies_sorted_earliest_first():
    adapter = FakeAdapter([
        _reply("late", received_at=SENT_AT + timedelta(hours=5)),
        _reply("early", received_at=SENT_AT + timedelta(hours=1)),
    ])
    result = ThreadLayer(adapter).detect(_options())
    assert [r.provider_message_id for r in result.replies] == ["early", "late"]
