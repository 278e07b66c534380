"""Gmail adapter: history-based change log, search, threads and push via Pub/Sub."""

from __future__ import annotations

import base64
import email.utils
import json
import logging
import socket
import threading
from datetime import datetime, timezone

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from googleapiclient.errors import HttpError

from replyguard.clock import parse_datetime
from replyguard.config import RetryConfig
from replyguard.errors import (
    CredentialError,
    CursorInvalidError,
    ProviderError,
    PushUnavailableError,
    TransientProviderError,
)
from replyguard.matching import normalize_message_id, parse_references
from replyguard.models import ChangeSet, Provider, ProviderMessage, SearchQuery
from replyguard.providers.base import ChangeLogProvider
from replyguard.retry import call_with_retry

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = {429, 500, 502, 503, 504}


def build_gmail_service(credentials, timeout: float = 30.0):
    """Return a Gmail API service whose HTTP calls time out after ``timeout`` seconds."""
    import httplib2
    from google_auth_httplib2 import AuthorizedHttp
    from googleapiclient.discovery import build

    http = AuthorizedHttp(credentials, http=httplib2.Http(timeout=timeout))
    return build("gmail", "v1", http=http, cache_discovery=False)


def render_query(query: SearchQuery) -> str:
    """Render a SearchQuery in Gmail search syntax."""
    parts: list[str] = []
    if query.from_address:
        parts.append(f"from:{query.from_address}")
    if query.from_domain:
        parts.append(f"from:@{query.from_domain}")
    if query.from_name:
        parts.append(f'from:"{query.from_name.replace(chr(34), "")}"')
    if query.subject:
        parts.append(f'subject:"{query.subject.replace(chr(34), "")}"')
    if query.after:
        parts.append(f"after:{int(query.after.timestamp())}")
    parts.append("-from:me")
    return " ".join(parts)


def translate_http_error(exc: HttpError, description: str) -> ProviderError:
    """Map a Gmail API HttpError onto the provider error hierarchy."""
    status = getattr(exc.resp, "status", 0)
    detail = str(exc)
    message = f"Gmail {description} failed ({status}): {detail}"
    if status == 401 or "invalid_grant" in detail:
        return CredentialError(message, "gmail")
    if status in _TRANSIENT_STATUS or (status == 403 and "ratelimitexceeded" in detail.lower()):
        retry_after = exc.resp.get("retry-after") if hasattr(exc.resp, "get") else None
        try:
            retry_after = float(retry_after) if retry_after else None
        except ValueError:
            retry_after = None
        return TransientProviderError(message, "gmail", retry_after=retry_after)
    if status == 403:
        return CredentialError(message, "gmail")
    return ProviderError(message, "gmail")


class GmailAdapter(ChangeLogProvider):
    """Wraps the Gmail API with retry, error translation and message parsing.

    Each thread gets its own service object because the underlying httplib2
    transport is not thread-safe; credentials are shared.
    """

    provider = Provider.GMAIL

    def __init__(
        self,
        credentials,
        user_email: str = "",
        retry: RetryConfig | None = None,
        pubsub_topic: str = "",
        timeout: float = 30.0,
        service_builder=None,
    ):
        self.credentials = credentials
        self.user_email = user_email
        self.retry = retry or RetryConfig()
        self.pubsub_topic = pubsub_topic
        self.timeout = timeout
        self._service_builder = service_builder or (
            lambda creds: build_gmail_service(creds, timeout=self.timeout)
        )
        self._local = threading.local()

    def _service(self):
        service = getattr(self._local, "service", None)
        if service is None:
            service = self._service_builder(self.credentials)
            self._local.service = service
        return service

    def _execute(self, make_request, description: str):
        """Execute one API request with retry, translating library errors."""

        def attempt():
            try:
                return make_request(self._service()).execute()
            except HttpError as exc:
                raise translate_http_error(exc, description) from exc
            except RefreshError as exc:
                raise CredentialError(f"Gmail token refresh failed: {exc}", "gmail") from exc
            except (TransportError, socket.timeout, TimeoutError, ConnectionError) as exc:
                raise TransientProviderError(f"Gmail {description} failed: {exc}", "gmail") from exc

        return call_with_retry(attempt, self.retry, f"gmail {description}")

    # --- Identity & health ---

    def _profile(self) -> dict:
        return self._execute(lambda s: s.users().getProfile(userId="me"), "getProfile")

    def check_health(self) -> None:
        self._profile()

    def get_user_email(self) -> str:
        if not self.user_email:
            self.user_email = self._profile()["emailAddress"].lower()
        return self.user_email

    # --- Reads ---

    def get_message(self, message_id: str) -> ProviderMessage:
        raw = self._execute(
            lambda s: s.users().messages().get(userId="me", id=message_id, format="full"),
            "messages.get",
        )
        return self.parse_message(raw)

    def fetch_thread(self, thread_id: str) -> list[ProviderMessage]:
        raw = self._execute(
            lambda s: s.users().threads().get(userId="me", id=thread_id, format="full"),
            "threads.get",
        )
        return [self.parse_message(m) for m in raw.get("messages", [])]

    def search_messages(self, query: SearchQuery) -> list[ProviderMessage]:
        q = render_query(query)
        result = self._execute(
            lambda s: s.users().messages().list(userId="me", q=q, maxResults=query.max_results),
            "messages.list",
        )
        return [self.get_message(stub["id"]) for stub in result.get("messages", [])]

    # --- Change log ---

    def get_current_cursor(self) -> str:
        return str(self._profile()["historyId"])

    def list_changes(self, cursor: str, max_messages: int = 500) -> ChangeSet:
        """Collect messages added since ``cursor``.

        Stops early after ``max_messages`` new ids and returns the history id
        of the last consumed entry so the next run resumes from there.
        """
        message_ids: list[str] = []
        seen: set[str] = set()
        next_cursor = cursor
        page_token = None
        truncated = False

        while True:
            try:
                result = self._execute(
                    lambda s: s.users().history().list(
                        userId="me",
                        startHistoryId=cursor,
                        historyTypes=["messageAdded"],
                        pageToken=page_token,
                    ),
                    "history.list",
                )
            except ProviderError as exc:
                if isinstance(exc.__cause__, HttpError) and getattr(exc.__cause__.resp, "status", 0) == 404:
                    raise CursorInvalidError(f"Gmail history id {cursor} is no longer valid", "gmail") from exc
                raise

            for event in result.get("history", []):
                for added in event.get("messagesAdded", []):
                    msg = added.get("message", {})
                    msg_id = msg.get("id")
                    if not msg_id or msg_id in seen or "DRAFT" in msg.get("labelIds", []):
                        continue
                    seen.add(msg_id)
                    message_ids.append(msg_id)
                if len(message_ids) >= max_messages:
                    next_cursor = str(event["id"])
                    truncated = True
                    break
            if truncated:
                break
            if result.get("historyId"):
                next_cursor = str(result["historyId"])
            page_token = result.get("nextPageToken")
            if not page_token:
                break

        messages: list[ProviderMessage] = []
        for msg_id in message_ids:
            try:
                messages.append(self.get_message(msg_id))
            except ProviderError as exc:
                if isinstance(exc.__cause__, HttpError) and getattr(exc.__cause__.resp, "status", 0) == 404:
                    # Deleted between the history event and the fetch
                    logger.debug("Gmail message %s vanished before fetch", msg_id)
                    continue
                raise
        return ChangeSet(messages=messages, cursor=next_cursor)

    # --- Credentials ---

    def refresh_credentials(self) -> datetime | None:
        try:
            self.credentials.refresh(Request())
        except RefreshError as exc:
            raise CredentialError(f"Gmail token refresh failed: {exc}", "gmail") from exc
        except TransportError as exc:
            raise TransientProviderError(f"Gmail token refresh failed: {exc}", "gmail") from exc
        expiry = getattr(self.credentials, "expiry", None)
        if expiry is not None and expiry.tzinfo is None:
            # google-auth stores naive UTC expiries
            expiry = expiry.replace(tzinfo=timezone.utc)
        return expiry

    def export_credentials(self) -> dict:
        return json.loads(self.credentials.to_json())

    # --- Push ---

    @property
    def supports_push(self) -> bool:
        return bool(self.pubsub_topic)

    def watch(self) -> dict:
        """Register an INBOX watch on the configured Pub/Sub topic."""
        if not self.pubsub_topic:
            raise PushUnavailableError("No Gmail Pub/Sub topic configured", "gmail")
        body = {"topicName": self.pubsub_topic, "labelIds": ["INBOX"], "labelFilterBehavior": "include"}
        try:
            result = self._execute(lambda s: s.users().watch(userId="me", body=body), "watch")
        except (CredentialError, TransientProviderError):
            raise
        except ProviderError as exc:
            # 400/404: topic missing or Pub/Sub not set up for this project
            raise PushUnavailableError(str(exc), "gmail") from exc
        expiration = parse_datetime(result.get("expiration"))
        return {
            "history_id": str(result.get("historyId", "")),
            "expiration": expiration.isoformat() if expiration else None,
        }

    # --- Parsing ---

    def parse_message(self, raw_msg: dict) -> ProviderMessage:
        """Parse a raw Gmail API message into a ProviderMessage."""
        payload = raw_msg.get("payload", {})

        header_map: dict[str, str] = {}
        for h in payload.get("headers", []):
            key = h.get("name", "").lower()
            # Keep first occurrence for simple lookups
            if key and key not in header_map:
                header_map[key] = h.get("value", "")

        body_parts: dict[str, list] = {"html": [], "text": []}
        self._extract_parts(payload, body_parts)

        from_name, from_email = email.utils.parseaddr(header_map.get("from", ""))
        to_addresses = [
            e.strip().lower()
            for _, e in email.utils.getaddresses([header_map.get("to", ""), header_map.get("cc", "")])
            if e
        ]
        received_at = parse_datetime(raw_msg.get("internalDate")) or parse_datetime(header_map.get("date"))

        return ProviderMessage(
            id=raw_msg["id"],
            thread_id=raw_msg.get("threadId"),
            from_address=from_email.lower(),
            from_name=from_name.strip(),
            subject=header_map.get("subject", ""),
            received_at=received_at,
            to_addresses=to_addresses,
            snippet=raw_msg.get("snippet", ""),
            body="\n".join(body_parts["text"]) or "\n".join(body_parts["html"]),
            headers=header_map,
            rfc_message_id=normalize_message_id(header_map.get("message-id")) or None,
            in_reply_to=normalize_message_id(header_map.get("in-reply-to")) or None,
            references=parse_references(header_map.get("references")),
            content_type=payload.get("mimeType", "") or header_map.get("content-type", ""),
        )

    def _extract_parts(self, part: dict, body_parts: dict[str, list]) -> None:
        """Recursively collect text/html bodies, skipping attachments."""
        if part.get("filename"):
            return

        sub_parts = part.get("parts", [])
        if sub_parts:
            for sub in sub_parts:
                self._extract_parts(sub, body_parts)
            return

        body_data = part.get("body", {}).get("data", "")
        if not body_data:
            return

        try:
            decoded = base64.urlsafe_b64decode(body_data).decode("utf-8", errors="replace")
        except (ValueError, TypeError):
            return

        mime_type = part.get("mimeType", "")
        if mime_type == "text/html":
            body_parts["html"].append(decoded)
        elif mime_type == "text/plain":
            body_parts["text"].append(decoded)
