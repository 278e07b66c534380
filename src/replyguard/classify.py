"""Header and subject heuristics: auto-reply, bounce and reply detection."""

from __future__ import annotations

import re
from dataclasses import dataclass

from replyguard.matching import has_reply_prefix, normalize_email
from replyguard.models import ProviderMessage

AUTO_REPLY_HEADERS = (
    "x-autoreply",
    "x-autorespond",
    "x-autogenerated",
)

AUTO_REPLY_PRECEDENCE = ("auto_reply", "bulk", "junk")

AUTO_REPLY_SUBJECT_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"\bout of (?:the )?office\b",
        r"\bauto(?:matic)?[- ]?(?:reply|response|antwort)\b",
        r"\bautoreply\b",
        r"\bon vacation\b",
        r"\bvacation (?:reply|message|notice)\b",
        r"\baway from (?:the )?office\b",
        r"\babwesenheitsnotiz\b",
        r"\bOOO\b",
    )
]

BOUNCE_SENDERS = ("mailer-daemon", "postmaster", "mail-daemon", "bounce")

BOUNCE_SUBJECT_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"\bundeliver(?:able|ed)\b",
        r"\bdelivery (?:status notification|has failed|failure|failed)\b",
        r"\bmail delivery (?:failed|failure|subsystem)\b",
        r"\breturned mail\b",
        r"\bfailure notice\b",
        r"\baddress not found\b",
        r"\bmessage not delivered\b",
    )
]


@dataclass
class MessageClassification:
    is_reply: bool = False
    is_auto_reply: bool = False
    is_bounce: bool = False


def is_auto_reply(message: ProviderMessage) -> bool:
    """Auto-Submitted, Precedence, X-Autoreply style headers or out-of-office subjects."""
    auto_submitted = message.header("auto-submitted").strip().lower()
    if auto_submitted and auto_submitted != "no":
        return True

    precedence = message.header("precedence").strip().lower()
    if precedence in AUTO_REPLY_PRECEDENCE:
        return True

    for name in AUTO_REPLY_HEADERS:
        if message.header(name):
            return True

    subject = message.subject or ""
    return any(p.search(subject) for p in AUTO_REPLY_SUBJECT_PATTERNS)


def is_bounce(message: ProviderMessage) -> bool:
    """Delivery status notifications from mailer daemons."""
    local = normalize_email(message.from_address).split("@", 1)[0]
    if any(local.startswith(prefix) for prefix in BOUNCE_SENDERS):
        return True
    if message.header("x-failed-recipients"):
        return True
    content_type = (message.content_type or message.header("content-type")).lower()
    if "multipart/report" in content_type and "delivery-status" in content_type:
        return True
    subject = message.subject or ""
    return any(p.search(subject) for p in BOUNCE_SUBJECT_PATTERNS)


def is_reply(message: ProviderMessage) -> bool:
    """Carries reply threading headers or a Re:/Fwd: subject prefix."""
    if message.in_reply_to or message.references:
        return True
    return has_reply_prefix(message.subject)


def classify_message(message: ProviderMessage) -> MessageClassification:
    bounce = is_bounce(message)
    auto = not bounce and is_auto_reply(message)
    return MessageClassification(
        is_reply=is_reply(message),
        is_auto_reply=auto,
        is_bounce=bounce,
    )


def is_excluded(message: ProviderMessage) -> bool:
    """Auto-replies and bounces never count as replies."""
    return is_bounce(message) or is_auto_reply(message)
