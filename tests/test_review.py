"""Tests for the manual review queue."""

from datetime import timedelta

import pytest

from replyguard.audit import AuditLog
from replyguard.clock import to_iso, utcnow
from replyguard.errors import ReviewNotFoundError, ReviewStateError
from replyguard.models import DetectedReply, ReviewStatus
from replyguard.review import ManualReviewQueue
from tests.conftest import SENT_AT, insert_account, insert_contact, insert_sent, is_replied, reply_count


@pytest.fixture
def queue(db):
    return ManualReviewQueue(db, AuditLog(db))


@pytest.fixture
def sent_id(db):
    insert_account(db)
    return insert_sent(db, insert_contact(db))


def _candidate():
    return DetectedReply(
        provider_message_id="reply_001",
        from_address="sarah@acme.com",
        layer="thread",
        subject="Re: Pricing",
        body="Sounds good",
        received_at=SENT_AT + timedelta(hours=3),
    )


def test_add_and_get(queue, sent_id):
    item_id = queue.add(
        sent_id, "u1", "quorum_failure: 2/5 healthy layers",
        contact_id=1, healthy_layers=["thread", "subject"], failed_layers=["domain"],
        potential_reply=_candidate(),
    )
    item = queue.get(item_id)
    assert item.status == ReviewStatus.PENDING
    assert item.healthy_layers == ["thread", "subject"]
    assert item.failed_layers == ["domain"]
    assert item.potential_reply["provider_message_id"] == "reply_001"


def test_one_pending_item_per_sent_message(queue, sent_id):
    first = queue.add(sent_id, "u1", "first", potential_reply=_candidate())
    second = queue.add(sent_id, "u1", "second")
    assert first == second
    item = queue.get(first)
    assert item.reason == "second"
    # A refresh without a candidate keeps the earlier one
    assert item.potential_reply is not None
    assert len(queue.list_pending()) == 1


def test_accept_persists_candidate(db, queue, sent_id):
    item_id = queue.add(sent_id, "u1", "quorum_failure", potential_reply=_candidate())

    item = queue.accept(item_id, "ops@example.com", notes="verified in inbox")

    assert item.status == ReviewStatus.ACCEPTED
    assert item.reviewed_by == "ops@example.com"
    assert item.reviewed_at is not None
    assert is_replied(db, sent_id)
    assert reply_count(db, sent_id) == 1
    audit = queue.audit.list_for_sent_message(sent_id)
    assert audit[-1]["layer"] == "manual_review"
    assert audit[-1]["metadata"]["action"] == "accepted"


def test_accept_without_candidate_marks_replied(db, queue, sent_id):
    item_id = queue.add(sent_id, "u1", "preflight")
    queue.accept(item_id, "ops")
    assert is_replied(db, sent_id)
    assert reply_count(db) == 0


def test_reject_leaves_message_unreplied(db, queue, sent_id):
    item_id = queue.add(sent_id, "u1", "quorum_failure", potential_reply=_candidate())
    item = queue.reject(item_id, "ops", notes="that was a newsletter")
    assert item.status == ReviewStatus.REJECTED
    assert not is_replied(db, sent_id)


def test_items_transition_once(queue, sent_id):
    item_id = queue.add(sent_id, "u1", "quorum_failure")
    queue.reject(item_id, "ops")
    with pytest.raises(ReviewStateError):
        queue.accept(item_id, "someone else")
    with pytest.raises(ReviewNotFoundError):
        queue.reject(9999, "ops")


def test_auto_resolve_and_stats(queue, sent_id):
    queue.add(sent_id, "u1", "quorum_failure")
    assert queue.auto_resolve(sent_id) == 1
    assert queue.auto_resolve(sent_id) == 0
    stats = queue.stats()
    assert stats["auto_resolved"] == 1
    assert stats["pending"] == 0
    assert stats["total"] == 1


def test_list_items_by_status_and_user(queue, sent_id):
    queue.add(sent_id, "u1", "quorum_failure")
    assert len(queue.list_items(ReviewStatus.PENDING, user_id="u1")) == 1
    assert queue.list_items("accepted") == []
    assert queue.list_items(user_id="u2") == []


def test_clear_old_keeps_pending(db, queue, sent_id):
    other_sent = insert_sent(db, 1, message_id="sent_002", rfc_message_id=None)
    old = queue.add(sent_id, "u1", "quorum_failure")
    queue.reject(old, "ops")
    db.execute(
        "UPDATE manual_review_queue SET reviewed_at = ? WHERE id = ?",
        (to_iso(utcnow() - timedelta(days=60)), old),
    )
    db.commit()
    pending = queue.add(other_sent, "u1", "quorum_failure")

    assert queue.clear_old(30) == 1
    assert queue.get(old) is None
    assert queue.get(pending) is not None
