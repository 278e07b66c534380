"""Contacts, sent messages, replies and processed-message records."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from typing import TYPE_CHECKING

from replyguard.clock import to_iso, utcnow
from replyguard.models import Contact, DetectedReply, Provider, SentMessage

if TYPE_CHECKING:
    from replyguard.aliases import AliasStore
    from replyguard.classify import MessageClassification

_SENT_SELECT = """SELECT sm.*, c.email AS contact_email, c.name AS contact_name,
                         c.company AS contact_company
                  FROM sent_messages sm
                  JOIN contacts c ON c.id = sm.contact_id"""


# --- Contacts ---

def add_contact(
    db: sqlite3.Connection,
    user_id: str,
    email: str,
    name: str | None = None,
    company: str | None = None,
) -> int:
    """Create the contact or update its name/company. Returns the contact ID."""
    db.execute(
        """INSERT INTO contacts (user_id, email, name, company)
           VALUES (?, ?, ?, ?)
           ON CONFLICT(user_id, email) DO UPDATE SET
               name = COALESCE(excluded.name, contacts.name),
               company = COALESCE(excluded.company, contacts.company)""",
        (user_id, email.strip().lower(), name, company),
    )
    db.commit()
    row = db.execute(
        "SELECT id FROM contacts WHERE user_id = ? AND email = ?",
        (user_id, email.strip().lower()),
    ).fetchone()
    return row["id"]


def get_contact(db: sqlite3.Connection, contact_id: int) -> Contact | None:
    row = db.execute("SELECT * FROM contacts WHERE id = ?", (contact_id,)).fetchone()
    if row is None:
        return None
    return Contact(
        id=row["id"], user_id=row["user_id"], email=row["email"],
        name=row["name"], company=row["company"],
    )


def list_contacts(db: sqlite3.Connection, user_id: str | None = None) -> list[Contact]:
    if user_id:
        rows = db.execute("SELECT * FROM contacts WHERE user_id = ? ORDER BY email", (user_id,)).fetchall()
    else:
        rows = db.execute("SELECT * FROM contacts ORDER BY user_id, email").fetchall()
    return [
        Contact(id=r["id"], user_id=r["user_id"], email=r["email"], name=r["name"], company=r["company"])
        for r in rows
    ]


# --- Sent messages ---

def add_sent_message(
    db: sqlite3.Connection,
    user_id: str,
    contact_id: int,
    subject: str,
    sent_at: datetime,
    provider: Provider | str | None = None,
    thread_id: str | None = None,
    message_id: str | None = None,
    rfc_message_id: str | None = None,
) -> int:
    """Record an outbound message awaiting a reply. Returns the sent message ID."""
    cursor = db.execute(
        """INSERT INTO sent_messages
           (user_id, contact_id, provider, thread_id, message_id, rfc_message_id, subject, sent_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            user_id, contact_id, Provider(provider).value if provider else None,
            thread_id, message_id,
            rfc_message_id.strip().strip("<>").lower() if rfc_message_id else None,
            subject, to_iso(sent_at),
        ),
    )
    db.commit()
    return cursor.lastrowid


def _with_aliases(rows, aliases: AliasStore | None) -> list[SentMessage]:
    cache: dict[int, list[str]] = {}
    result = []
    for row in rows:
        contact_id = row["contact_id"]
        if aliases is not None and contact_id not in cache:
            cache[contact_id] = aliases.addresses_for_contact(contact_id)
        result.append(SentMessage.from_row(row, cache.get(contact_id, [])))
    return result


def get_sent_message(
    db: sqlite3.Connection, sent_message_id: int, aliases: AliasStore | None = None,
) -> SentMessage | None:
    row = db.execute(f"{_SENT_SELECT} WHERE sm.id = ?", (sent_message_id,)).fetchone()
    if row is None:
        return None
    return _with_aliases([row], aliases)[0]


def list_sent_messages(
    db: sqlite3.Connection,
    user_id: str | None = None,
    unreplied_only: bool = False,
    limit: int = 100,
) -> list[SentMessage]:
    clauses, params = [], []
    if user_id:
        clauses.append("sm.user_id = ?")
        params.append(user_id)
    if unreplied_only:
        clauses.append("sm.reply_received = 0")
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = db.execute(
        f"{_SENT_SELECT}{where} ORDER BY sm.sent_at DESC LIMIT ?", (*params, limit),
    ).fetchall()
    return _with_aliases(rows, None)


def outstanding_sent_messages(
    db: sqlite3.Connection, user_id: str, aliases: AliasStore | None = None,
) -> list[SentMessage]:
    """The user's un-replied sent messages: the candidates inbound mail is matched against."""
    rows = db.execute(
        f"{_SENT_SELECT} WHERE sm.user_id = ? AND sm.reply_received = 0 ORDER BY sm.sent_at DESC",
        (user_id,),
    ).fetchall()
    return _with_aliases(rows, aliases)


def touch_last_reply_check(db: sqlite3.Connection, sent_message_id: int) -> None:
    db.execute(
        "UPDATE sent_messages SET last_reply_check = ? WHERE id = ?",
        (to_iso(utcnow()), sent_message_id),
    )
    db.commit()


def mark_reply_received(db: sqlite3.Connection, sent_message_id: int) -> None:
    """Set the stop signal. Never cleared once set."""
    db.execute("UPDATE sent_messages SET reply_received = 1 WHERE id = ?", (sent_message_id,))
    db.commit()


# --- Processed messages & replies ---

def is_processed(db: sqlite3.Connection, user_id: str, provider_message_id: str) -> bool:
    row = db.execute(
        "SELECT 1 FROM processed_messages WHERE user_id = ? AND provider_message_id = ?",
        (user_id, provider_message_id),
    ).fetchone()
    return row is not None


def _insert_processed(
    db: sqlite3.Connection,
    user_id: str,
    provider: Provider | str | None,
    reply: DetectedReply,
    rfc_message_id: str | None,
    classification: MessageClassification | None,
    sent_message_id: int | None,
    strategy: str | None,
) -> None:
    # A later match fills in a previously unmatched record
    db.execute(
        """INSERT INTO processed_messages
           (user_id, provider, provider_message_id, thread_id, rfc_message_id, in_reply_to,
            references_header, from_address, subject, is_reply, is_auto_reply, is_bounce,
            matched_sent_message_id, match_strategy, processed_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(user_id, provider_message_id) DO UPDATE SET
               matched_sent_message_id = COALESCE(
                   processed_messages.matched_sent_message_id, excluded.matched_sent_message_id),
               match_strategy = COALESCE(processed_messages.match_strategy, excluded.match_strategy)""",
        (
            user_id,
            Provider(provider).value if provider else None,
            reply.provider_message_id,
            reply.thread_id,
            rfc_message_id,
            reply.in_reply_to,
            " ".join(reply.references) or None,
            reply.from_address,
            reply.subject,
            int(classification.is_reply) if classification else 1,
            int(classification.is_auto_reply) if classification else 0,
            int(classification.is_bounce) if classification else 0,
            sent_message_id,
            strategy,
            to_iso(utcnow()),
        ),
    )


def record_processed_message(
    db: sqlite3.Connection,
    user_id: str,
    provider: Provider | str | None,
    reply: DetectedReply,
    rfc_message_id: str | None = None,
    classification: MessageClassification | None = None,
) -> None:
    """Mark an inbound message evaluated without a match."""
    with db:
        _insert_processed(db, user_id, provider, reply, rfc_message_id, classification, None, None)


def persist_reply(
    db: sqlite3.Connection,
    user_id: str,
    provider: Provider | str | None,
    sent_message: SentMessage,
    reply: DetectedReply,
    strategy: str,
    rfc_message_id: str | None = None,
    classification: MessageClassification | None = None,
) -> int:
    """Write ProcessedMessage, Reply and the reply_received flag in one transaction.

    The Reply insert is a no-op when the provider message id is already
    stored, so concurrent or repeated calls are safe. Returns the reply ID.
    """
    metadata = {
        "from": reply.from_address,
        "from_name": reply.from_name,
        "in_reply_to": reply.in_reply_to,
        "references": reply.references,
        "thread_id": reply.thread_id,
        "match_strategy": strategy,
    }
    with db:
        _insert_processed(
            db, user_id, provider, reply, rfc_message_id, classification, sent_message.id, strategy,
        )
        db.execute(
            """INSERT INTO replies
               (sent_message_id, contact_id, subject, body, received_at,
                provider_message_id, detected_by_layer, metadata, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(provider_message_id) DO NOTHING""",
            (
                sent_message.id, sent_message.contact_id, reply.subject,
                reply.body or reply.snippet, to_iso(reply.received_at),
                reply.provider_message_id, reply.layer, json.dumps(metadata), to_iso(utcnow()),
            ),
        )
        db.execute(
            "UPDATE sent_messages SET reply_received = 1 WHERE id = ?", (sent_message.id,),
        )
    row = db.execute(
        "SELECT id FROM replies WHERE provider_message_id = ?", (reply.provider_message_id,),
    ).fetchone()
    return row["id"]


def replies_for_sent_message(db: sqlite3.Connection, sent_message_id: int) -> list[dict]:
    rows = db.execute(
        "SELECT * FROM replies WHERE sent_message_id = ? ORDER BY received_at",
        (sent_message_id,),
    ).fetchall()
    result = []
    for row in rows:
        item = dict(row)
        item["metadata"] = json.loads(row["metadata"]) if row["metadata"] else {}
        result.append(item)
    return result
