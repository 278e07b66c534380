"""Tests for auto-reply, bounce and reply classification."""

from replyguard.classify import classify_message, is_auto_reply, is_bounce, is_excluded, is_reply
from tests.conftest import make_message


def test_auto_submitted_header():
    msg = make_message("m1", "sarah@acme.com", headers={"Auto-Submitted": "auto-replied"})
    assert is_auto_reply(msg)


def test_auto_submitted_no_is_not_auto():
    msg = make_message("m1", "sarah@acme.com", subject="Re: Pricing", headers={"Auto-Submitted": "no"})
    assert not is_auto_reply(msg)


def test_out_of_office_subject():
    assert is_auto_reply(make_message("m1", "sarah@acme.com", subject="Out of Office: back Monday"))
    assert is_auto_reply(make_message("m2", "sarah@acme.com", subject="Automatic reply: Pricing"))


def test_precedence_bulk():
    assert is_auto_reply(make_message("m1", "news@acme.com", headers={"Precedence": "bulk"}))


def test_bounce_from_mailer_daemon():
    msg = make_message("m1", "MAILER-DAEMON@mx.acme.com", subject="Undeliverable: Pricing")
    assert is_bounce(msg)
    classification = classify_message(msg)
    assert classification.is_bounce
    assert not classification.is_auto_reply


def test_bounce_delivery_status_content_type():
    msg = make_message("m1", "postbox@acme.com")
    msg.content_type = "multipart/report; report-type=delivery-status"
    assert is_bounce(msg)


def test_reply_signals():
    assert is_reply(make_message("m1", "a@b.com", subject="RE: Pricing"))
    assert is_reply(make_message("m2", "a@b.com", in_reply_to="<x@y>"))
    assert not is_reply(make_message("m3", "a@b.com", subject="Pricing"))


def test_human_reply_not_excluded():
    msg = make_message("m1", "sarah@acme.com", subject="Re: Pricing", in_reply_to="<x@y>")
    assert not is_excluded(msg)
    classification = classify_message(msg)
    assert classification.is_reply
    assert not classification.is_auto_reply
    assert not classification.is_bounce
