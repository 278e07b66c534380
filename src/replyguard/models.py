"""Dataclasses mirroring DB tables and the detection result types."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum

from replyguard.clock import parse_datetime, to_iso


class Provider(str, Enum):
    GMAIL = "gmail"
    OUTLOOK = "outlook"
    YAHOO = "yahoo"


class LayerName(str, Enum):
    THREAD = "thread"
    EXACT_ADDRESS = "exact_address"
    DOMAIN = "domain"
    DISPLAY_NAME = "display_name"
    SUBJECT = "subject"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    AUTO_RESOLVED = "auto_resolved"


class AliasType(str, Enum):
    AUTO_DETECTED = "auto_detected"
    VERIFIED = "verified"


class AnomalyType(str, Enum):
    MISSED_REPLY = "missed_reply"
    QUORUM_FAILURE = "quorum_failure"
    STALE_DETECTION = "stale_detection"  # reserved
    TOKEN_UNHEALTHY = "token_unhealthy"
    LAYER_FALLBACK = "layer_fallback"


class SyncStatus(str, Enum):
    ACTIVE = "active"
    ERROR = "error"


class HealthAction(str, Enum):
    REQUIRES_REAUTH = "requires_reauth"
    RETRY_LATER = "retry_later"


class PushMode(str, Enum):
    PUSH = "push"
    POLLING = "polling"


# --- Stored records ---

@dataclass
class Account:
    user_id: str
    provider: Provider
    email: str = ""
    credentials: dict = field(default_factory=dict)
    token_expires_at: datetime | None = None
    active: bool = True
    needs_reauth: bool = False
    token_healthy: bool | None = None
    token_last_checked: datetime | None = None
    token_last_error: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Account:
        return cls(
            user_id=row["user_id"],
            provider=Provider(row["provider"]),
            email=row["email"] or "",
            credentials=json.loads(row["credentials"]) if row["credentials"] else {},
            token_expires_at=parse_datetime(row["token_expires_at"]),
            active=bool(row["active"]),
            needs_reauth=bool(row["needs_reauth"]),
            token_healthy=None if row["token_healthy"] is None else bool(row["token_healthy"]),
            token_last_checked=parse_datetime(row["token_last_checked"]),
            token_last_error=row["token_last_error"],
        )


@dataclass
class Contact:
    id: int
    user_id: str
    email: str
    name: str | None = None
    company: str | None = None


@dataclass
class SentMessage:
    id: int
    user_id: str
    contact_id: int
    subject: str = ""
    sent_at: datetime | None = None
    provider: Provider | None = None
    thread_id: str | None = None
    message_id: str | None = None  # provider message id
    rfc_message_id: str | None = None  # Message-ID header
    reply_received: bool = False
    last_reply_check: datetime | None = None
    contact_email: str = ""
    contact_name: str | None = None
    contact_company: str | None = None
    contact_aliases: list[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: sqlite3.Row, aliases: list[str] | None = None) -> SentMessage:
        keys = row.keys()
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            contact_id=row["contact_id"],
            subject=row["subject"] or "",
            sent_at=parse_datetime(row["sent_at"]),
            provider=Provider(row["provider"]) if row["provider"] else None,
            thread_id=row["thread_id"],
            message_id=row["message_id"],
            rfc_message_id=row["rfc_message_id"],
            reply_received=bool(row["reply_received"]),
            last_reply_check=parse_datetime(row["last_reply_check"]),
            contact_email=row["contact_email"] if "contact_email" in keys else "",
            contact_name=row["contact_name"] if "contact_name" in keys else None,
            contact_company=row["contact_company"] if "contact_company" in keys else None,
            contact_aliases=list(aliases or []),
        )


@dataclass
class Alias:
    contact_id: int
    alias_email: str
    alias_type: AliasType = AliasType.AUTO_DETECTED
    first_seen: datetime | None = None
    last_seen: datetime | None = None
    id: int | None = None


@dataclass
class SyncCheckpoint:
    user_id: str
    provider: Provider
    cursor: str | None = None
    status: SyncStatus = SyncStatus.ACTIVE
    consecutive_errors: int = 0
    last_sync_at: datetime | None = None
    last_error: str | None = None
    messages_processed: int = 0


@dataclass
class ManualReviewItem:
    id: int
    sent_message_id: int
    contact_id: int | None
    user_id: str
    reason: str
    healthy_layers: list[str] = field(default_factory=list)
    found_layers: list[str] = field(default_factory=list)
    failed_layers: list[str] = field(default_factory=list)
    potential_reply: dict | None = None
    status: ReviewStatus = ReviewStatus.PENDING
    reviewed_by: str | None = None
    review_notes: str | None = None
    created_at: datetime | None = None
    reviewed_at: datetime | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ManualReviewItem:
        return cls(
            id=row["id"],
            sent_message_id=row["sent_message_id"],
            contact_id=row["contact_id"],
            user_id=row["user_id"],
            reason=row["reason"],
            healthy_layers=json.loads(row["healthy_layers"] or "[]"),
            found_layers=json.loads(row["found_layers"] or "[]"),
            failed_layers=json.loads(row["failed_layers"] or "[]"),
            potential_reply=json.loads(row["potential_reply"]) if row["potential_reply"] else None,
            status=ReviewStatus(row["status"]),
            reviewed_by=row["reviewed_by"],
            review_notes=row["review_notes"],
            created_at=parse_datetime(row["created_at"]),
            reviewed_at=parse_datetime(row["reviewed_at"]),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        data["created_at"] = to_iso(self.created_at)
        data["reviewed_at"] = to_iso(self.reviewed_at)
        return data


# --- Provider-facing types ---

@dataclass
class ProviderMessage:
    """A mailbox message normalized across providers."""

    id: str
    thread_id: str | None = None
    from_address: str = ""
    from_name: str = ""
    subject: str = ""
    received_at: datetime | None = None
    to_addresses: list[str] = field(default_factory=list)
    snippet: str = ""
    body: str = ""
    headers: dict[str, str] = field(default_factory=dict)  # lowercased names
    rfc_message_id: str | None = None
    in_reply_to: str | None = None
    references: list[str] = field(default_factory=list)
    content_type: str = ""

    def header(self, name: str) -> str:
        return self.headers.get(name.lower(), "")


@dataclass
class SearchQuery:
    """Provider-neutral search; each adapter renders it in its own syntax."""

    from_address: str | None = None
    from_domain: str | None = None
    from_name: str | None = None
    subject: str | None = None
    after: datetime | None = None
    max_results: int = 25


@dataclass
class ChangeSet:
    messages: list[ProviderMessage]
    cursor: str


# --- Detection types ---

@dataclass
class DetectionOptions:
    user_id: str
    sent_message_id: int | None
    contact_email: str
    sent_at: datetime
    user_email: str = ""
    provider: Provider | None = None
    contact_id: int | None = None
    contact_name: str | None = None
    contact_company: str | None = None
    contact_aliases: list[str] = field(default_factory=list)
    subject: str | None = None
    thread_id: str | None = None
    message_id: str | None = None


@dataclass
class DetectedReply:
    provider_message_id: str
    from_address: str
    layer: str
    thread_id: str | None = None
    from_name: str = ""
    subject: str = ""
    snippet: str = ""
    body: str = ""
    received_at: datetime | None = None
    in_reply_to: str | None = None
    references: list[str] = field(default_factory=list)

    @classmethod
    def from_message(cls, message: ProviderMessage, layer: str) -> DetectedReply:
        return cls(
            provider_message_id=message.id,
            from_address=message.from_address,
            layer=layer,
            thread_id=message.thread_id,
            from_name=message.from_name,
            subject=message.subject,
            snippet=message.snippet,
            body=message.body,
            received_at=message.received_at,
            in_reply_to=message.in_reply_to,
            references=list(message.references),
        )

    @classmethod
    def from_dict(cls, data: dict) -> DetectedReply:
        return cls(
            provider_message_id=data["provider_message_id"],
            from_address=data.get("from_address", ""),
            layer=data.get("layer", ""),
            thread_id=data.get("thread_id"),
            from_name=data.get("from_name", ""),
            subject=data.get("subject", ""),
            snippet=data.get("snippet", ""),
            body=data.get("body", ""),
            received_at=parse_datetime(data.get("received_at")),
            in_reply_to=data.get("in_reply_to"),
            references=list(data.get("references") or []),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["received_at"] = to_iso(self.received_at)
        return data


@dataclass
class SearchMetadata:
    query: str = ""
    duration_ms: int = 0
    messages_scanned: int = 0
    skipped: bool = False


@dataclass
class LayerResult:
    layer: str
    found: bool = False
    replies: list[DetectedReply] = field(default_factory=list)
    metadata: SearchMetadata = field(default_factory=SearchMetadata)
    healthy: bool = True
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "layer": self.layer,
            "found": self.found,
            "healthy": self.healthy,
            "error": self.error,
            "replies": [r.to_dict() for r in self.replies],
            "metadata": asdict(self.metadata),
        }


@dataclass
class QuorumResult:
    quorum_met: bool
    found: bool
    pending_review: bool
    healthy_layers: list[str] = field(default_factory=list)
    found_layers: list[str] = field(default_factory=list)
    failed_layers: list[str] = field(default_factory=list)


@dataclass
class HealthStatus:
    healthy: bool
    response_time_ms: int = 0
    error_message: str | None = None
    error_kind: str | None = None  # credential | transient
    checked_at: datetime | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["checked_at"] = to_iso(self.checked_at)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> HealthStatus:
        return cls(
            healthy=bool(data["healthy"]),
            response_time_ms=int(data.get("response_time_ms") or 0),
            error_message=data.get("error_message"),
            error_kind=data.get("error_kind"),
            checked_at=parse_datetime(data.get("checked_at")),
        )


@dataclass
class PreflightResult:
    ok: bool
    action: HealthAction | None = None
    message: str | None = None
    health: HealthStatus | None = None


@dataclass
class DetectionResult:
    """Outcome of one orchestrated detection attempt across all layers."""

    found: bool
    pending_review: bool
    quorum_met: bool = False
    replies: list[DetectedReply] = field(default_factory=list)
    layer_results: list[LayerResult] = field(default_factory=list)
    quorum: QuorumResult | None = None
    preflight: PreflightResult | None = None
    aliases_learned: list[str] = field(default_factory=list)
    review_item_id: int | None = None
    reply_id: int | None = None
    duration_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "found": self.found,
            "pending_review": self.pending_review,
            "quorum_met": self.quorum_met,
            "replies": [r.to_dict() for r in self.replies],
            "layers": [r.to_dict() for r in self.layer_results],
            "healthy_layers": self.quorum.healthy_layers if self.quorum else [],
            "found_layers": self.quorum.found_layers if self.quorum else [],
            "failed_layers": self.quorum.failed_layers if self.quorum else [],
            "preflight": {
                "ok": self.preflight.ok,
                "action": self.preflight.action.value if self.preflight.action else None,
                "message": self.preflight.message,
            } if self.preflight else None,
            "aliases_learned": self.aliases_learned,
            "review_item_id": self.review_item_id,
            "reply_id": self.reply_id,
            "duration_ms": self.duration_ms,
        }


@dataclass
class SyncResult:
    user_id: str
    provider: str
    status: str = "synced"  # initialized | synced | error | skipped
    messages_processed: int = 0
    replies_found: int = 0
    auto_replies_filtered: int = 0
    bounces_filtered: int = 0
    duplicates_skipped: int = 0
    errors: list[str] = field(default_factory=list)
    cursor: str | None = None
    matched_sent_message_ids: list[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status in ("initialized", "synced")

    def to_dict(self) -> dict:
        data = asdict(self)
        data["ok"] = self.ok
        return data


@dataclass
class ReconciliationResult:
    run_id: int
    run_type: str
    messages_checked: int = 0
    replies_found: int = 0
    anomalies: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return asdict(self)
