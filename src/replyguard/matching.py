"""Address/subject comparison and the ordered reply matching strategies.

Each strategy is a pure function over (message, candidates) returning the
SentMessage the message replies to, or None. ``match_message`` tries them in
order and returns the first hit.
"""

from __future__ import annotations

import email.utils
import re
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from replyguard.models import ProviderMessage, SentMessage

# Consumer mailbox domains: sharing one says nothing about who the sender is
FREE_MAIL_DOMAINS = frozenset({
    "gmail.com", "googlemail.com", "yahoo.com", "ymail.com", "outlook.com",
    "hotmail.com", "live.com", "msn.com", "aol.com", "icloud.com", "me.com",
    "mac.com", "proton.me", "protonmail.com", "gmx.com", "gmx.de", "mail.com",
    "yandex.com", "zoho.com", "fastmail.com",
})

_REPLY_PREFIX_RE = re.compile(
    r"^\s*(?:(?:re|fwd?|aw|wg|sv|vs|antw|tr)\s*(?:\[\d+\])?\s*:\s*)+",
    flags=re.IGNORECASE,
)
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_email(address: str | None) -> str:
    """Lowercase and strip display names / angle brackets."""
    if not address:
        return ""
    _, addr = email.utils.parseaddr(address)
    return (addr or address).strip().strip("<>").lower()


def split_address(address: str | None) -> tuple[str, str]:
    addr = normalize_email(address)
    if "@" not in addr:
        return addr, ""
    local, _, domain = addr.rpartition("@")
    return local, domain


def domain_of(address: str | None) -> str:
    return split_address(address)[1]


def is_free_mail_domain(domain: str) -> bool:
    return domain.lower() in FREE_MAIL_DOMAINS


def emails_match_loose(a: str | None, b: str | None) -> bool:
    """Same domain and same local part before any "+" tag.

    ``a@x.com`` matches ``a+tag@x.com`` but neither ``b@x.com`` nor ``a@y.com``.
    """
    local_a, domain_a = split_address(a)
    local_b, domain_b = split_address(b)
    if not local_a or not domain_a or domain_a != domain_b:
        return False
    return local_a.split("+", 1)[0] == local_b.split("+", 1)[0]


def matches_contact(address: str, contact_email: str, aliases: Iterable[str] = ()) -> bool:
    """True when the address is the contact, a sub-address of it, or a known alias."""
    if emails_match_loose(address, contact_email):
        return True
    addr = normalize_email(address)
    return any(addr == normalize_email(alias) or emails_match_loose(addr, alias) for alias in aliases)


def normalize_subject(subject: str | None) -> str:
    """Strip Re:/Fwd: style prefixes, collapse whitespace, lowercase."""
    if not subject:
        return ""
    stripped = _REPLY_PREFIX_RE.sub("", subject)
    return _WHITESPACE_RE.sub(" ", stripped).strip().lower()


def has_reply_prefix(subject: str | None) -> bool:
    return bool(subject) and bool(_REPLY_PREFIX_RE.match(subject))


def subjects_correlate(a: str | None, b: str | None) -> bool:
    """Case-insensitive substring match on normalized subjects. Empty never correlates."""
    na, nb = normalize_subject(a), normalize_subject(b)
    if not na or not nb:
        return False
    return na in nb or nb in na


def normalize_message_id(value: str | None) -> str:
    return (value or "").strip().strip("<>").strip().lower()


def parse_references(value: str | None) -> list[str]:
    """Split a References header into bare message ids."""
    if not value:
        return []
    ids = re.findall(r"<([^>]+)>", value)
    if not ids:
        ids = value.split()
    return [normalize_message_id(i) for i in ids if i.strip()]


# --- Matching strategies ---

@dataclass
class MatchResult:
    sent_message: SentMessage
    strategy: str


MatchStrategy = Callable[[ProviderMessage, Sequence[SentMessage]], "MatchResult | None"]


def _sent_before(candidate: SentMessage, message: ProviderMessage) -> bool:
    if candidate.sent_at is None or message.received_at is None:
        return True
    return candidate.sent_at <= message.received_at


def _most_recent(candidates: Iterable[SentMessage]) -> SentMessage | None:
    best = None
    for candidate in candidates:
        if best is None or (candidate.sent_at and best.sent_at and candidate.sent_at > best.sent_at):
            best = candidate
    return best


def match_by_header_correlation(
    message: ProviderMessage, candidates: Sequence[SentMessage],
) -> MatchResult | None:
    """In-Reply-To / References against the stored Message-ID header."""
    referenced = set(message.references)
    if message.in_reply_to:
        referenced.add(normalize_message_id(message.in_reply_to))
    referenced.discard("")
    if not referenced:
        return None
    hits = [
        c for c in candidates
        if c.rfc_message_id and normalize_message_id(c.rfc_message_id) in referenced
    ]
    best = _most_recent(hits)
    return MatchResult(best, "header_correlation") if best else None


def match_by_thread_id(
    message: ProviderMessage, candidates: Sequence[SentMessage],
) -> MatchResult | None:
    """Same provider thread/conversation as the sent message."""
    if not message.thread_id:
        return None
    hits = [
        c for c in candidates
        if c.thread_id and c.thread_id == message.thread_id and _sent_before(c, message)
    ]
    best = _most_recent(hits)
    return MatchResult(best, "thread_id") if best else None


def match_by_contact_address(
    message: ProviderMessage, candidates: Sequence[SentMessage],
) -> MatchResult | None:
    """Sender is the contact (loosely) or a known alias: most recent un-replied message."""
    hits = [
        c for c in candidates
        if not c.reply_received
        and matches_contact(message.from_address, c.contact_email, c.contact_aliases)
        and _sent_before(c, message)
    ]
    best = _most_recent(hits)
    return MatchResult(best, "contact_address") if best else None


def match_by_contact_domain(
    message: ProviderMessage, candidates: Sequence[SentMessage],
) -> MatchResult | None:
    """Sender shares the contact's company domain: most recent un-replied message."""
    domain = domain_of(message.from_address)
    if not domain or is_free_mail_domain(domain):
        return None
    hits = [
        c for c in candidates
        if not c.reply_received
        and domain_of(c.contact_email) == domain
        and _sent_before(c, message)
    ]
    best = _most_recent(hits)
    return MatchResult(best, "contact_domain") if best else None


# Tried in order; the first strategy that returns a match wins
MATCH_STRATEGIES: tuple[MatchStrategy, ...] = (
    match_by_header_correlation,
    match_by_thread_id,
    match_by_contact_address,
    match_by_contact_domain,
)

# Messages that carry no reply signal only match on strong evidence
STRICT_MATCH_STRATEGIES: tuple[MatchStrategy, ...] = MATCH_STRATEGIES[:3]


def match_message(
    message: ProviderMessage,
    candidates: Sequence[SentMessage],
    strategies: Sequence[MatchStrategy] = MATCH_STRATEGIES,
) -> MatchResult | None:
    """Return the first strategy match for the message, or None."""
    if not candidates:
        return None
    for strategy in strategies:
        result = strategy(message, candidates)
        if result is not None:
            return result
    return None
