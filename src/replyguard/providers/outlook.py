"""Outlook adapter: Microsoft Graph search, conversations and delta queries over httpx."""

from __future__ import annotations

import logging
import secrets
import threading
from datetime import datetime, timedelta

import httpx

from replyguard.clock import parse_datetime, to_iso, utcnow
from replyguard.config import OutlookConfig, RetryConfig
from replyguard.errors import (
    CredentialError,
    CursorInvalidError,
    ProviderError,
    PushUnavailableError,
    TransientProviderError,
)
from replyguard.matching import normalize_message_id, parse_references
from replyguard.models import ChangeSet, Provider, ProviderMessage, SearchQuery
from replyguard.providers.base import DeltaQueryProvider
from replyguard.retry import call_with_retry

logger = logging.getLogger(__name__)

MESSAGE_FIELDS = (
    "id,conversationId,subject,from,toRecipients,receivedDateTime,"
    "bodyPreview,body,internetMessageId,internetMessageHeaders"
)
SCOPES = "offline_access https://graph.microsoft.com/Mail.Read"

_CURSOR_INVALID_CODES = ("syncstatenotfound", "resyncrequired", "syncstateinvalid")


def render_search(query: SearchQuery) -> str:
    """Render a SearchQuery as a Graph $search (KQL) expression."""
    parts: list[str] = []
    if query.from_address:
        parts.append(f"from:{query.from_address}")
    if query.from_domain:
        parts.append(f"from:{query.from_domain}")
    if query.from_name:
        parts.append(f"from:{query.from_name}")
    if query.subject:
        parts.append(f"subject:{query.subject}")
    text = " ".join(parts).replace('"', "")
    return f'"{text}"'


class OutlookAdapter(DeltaQueryProvider):
    """Microsoft Graph mailbox client with token refresh and error translation."""

    provider = Provider.OUTLOOK

    def __init__(
        self,
        credentials: dict,
        config: OutlookConfig | None = None,
        retry: RetryConfig | None = None,
        user_email: str = "",
        transport: httpx.BaseTransport | None = None,
    ):
        self.config = config or OutlookConfig()
        self.retry = retry or RetryConfig()
        self.user_email = user_email
        self.access_token = credentials.get("access_token", "")
        self.refresh_token = credentials.get("refresh_token", "")
        self.expires_at = parse_datetime(credentials.get("expires_at"))
        self._refresh_lock = threading.Lock()
        self.client = httpx.Client(
            base_url=self.config.graph_base_url,
            timeout=self.config.request_timeout,
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    # --- HTTP plumbing ---

    def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.access_token}"}
        headers.update(kwargs.pop("headers", {}))
        try:
            return self.client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientProviderError(f"Graph {method} {url} timed out", "outlook") from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(f"Graph {method} {url} failed: {exc}", "outlook") from exc

    def _check(self, response: httpx.Response, description: str) -> None:
        status = response.status_code
        if status < 400:
            return
        try:
            error = response.json().get("error", {})
        except ValueError:
            error = {}
        code = str(error.get("code", "")) if isinstance(error, dict) else str(error)
        message = f"Graph {description} failed ({status}): {code or response.text[:200]}"
        if status == 410 or code.lower() in _CURSOR_INVALID_CODES:
            raise CursorInvalidError(message, "outlook")
        if status in (401, 403):
            raise CredentialError(message, "outlook")
        if status == 429 or status >= 500:
            retry_after = response.headers.get("Retry-After")
            raise TransientProviderError(
                message, "outlook",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        raise ProviderError(message, "outlook")

    def _request(self, method: str, url: str, description: str, **kwargs) -> dict:
        def attempt():
            response = self._send(method, url, **kwargs)
            if response.status_code == 401 and self.refresh_token:
                # Access token expired mid-flight; refresh once and replay
                self.refresh_credentials()
                response = self._send(method, url, **kwargs)
            self._check(response, description)
            return response.json() if response.content else {}

        return call_with_retry(attempt, self.retry, f"outlook {description}")

    # --- Identity & health ---

    def check_health(self) -> None:
        self._request("GET", "/me", "me", params={"$select": "mail,userPrincipalName"})

    def get_user_email(self) -> str:
        if not self.user_email:
            me = self._request("GET", "/me", "me", params={"$select": "mail,userPrincipalName"})
            self.user_email = (me.get("mail") or me.get("userPrincipalName") or "").lower()
        return self.user_email

    # --- Reads ---

    def get_message(self, message_id: str) -> ProviderMessage:
        data = self._request(
            "GET", f"/me/messages/{message_id}", "messages.get",
            params={"$select": MESSAGE_FIELDS},
        )
        return self.parse_message(data)

    def fetch_thread(self, thread_id: str) -> list[ProviderMessage]:
        conversation = thread_id.replace("'", "''")
        data = self._request(
            "GET", "/me/messages", "conversation",
            params={
                "$filter": f"conversationId eq '{conversation}'",
                "$select": MESSAGE_FIELDS,
                "$top": "50",
            },
        )
        return [self.parse_message(m) for m in data.get("value", [])]

    def search_messages(self, query: SearchQuery) -> list[ProviderMessage]:
        data = self._request(
            "GET", "/me/messages", "search",
            params={
                "$search": render_search(query),
                "$select": MESSAGE_FIELDS,
                "$top": str(query.max_results),
            },
        )
        messages = [self.parse_message(m) for m in data.get("value", [])]
        # $search cannot be combined with a date $filter
        if query.after:
            messages = [m for m in messages if m.received_at is None or m.received_at >= query.after]
        return messages

    # --- Delta query ---

    def get_current_cursor(self) -> str:
        """Start a delta chain at "now" and return its deltaLink."""
        url = "/me/mailFolders/inbox/messages/delta"
        params: dict | None = {
            "$select": "id",
            "$filter": f"receivedDateTime ge {to_iso(utcnow()).replace('+00:00', 'Z')}",
        }
        while True:
            data = self._request("GET", url, "delta.init", params=params)
            if data.get("@odata.deltaLink"):
                return data["@odata.deltaLink"]
            url = data.get("@odata.nextLink")
            params = None
            if not url:
                raise ProviderError("Graph delta query returned neither nextLink nor deltaLink", "outlook")

    def list_changes(self, cursor: str, max_messages: int = 500) -> ChangeSet:
        """Follow the delta chain from ``cursor``.

        When more than ``max_messages`` ids arrive, the pending nextLink is
        returned as the cursor so the next run resumes mid-chain.
        """
        ids: list[str] = []
        url = cursor
        next_cursor = cursor
        while url:
            data = self._request("GET", url, "delta")
            for item in data.get("value", []):
                if "@removed" in item or not item.get("id"):
                    continue
                if item["id"] not in ids:
                    ids.append(item["id"])
            if data.get("@odata.deltaLink"):
                next_cursor = data["@odata.deltaLink"]
                break
            url = data.get("@odata.nextLink")
            if url and len(ids) >= max_messages:
                next_cursor = url
                break

        messages: list[ProviderMessage] = []
        for message_id in ids:
            try:
                messages.append(self.get_message(message_id))
            except CursorInvalidError:
                raise
            except CredentialError:
                raise
            except TransientProviderError:
                raise
            except ProviderError:
                # Deleted or moved between the delta page and the fetch
                logger.debug("Graph message %s vanished before fetch", message_id)
        return ChangeSet(messages=messages, cursor=next_cursor)

    # --- Credentials ---

    def refresh_credentials(self) -> datetime | None:
        if not self.refresh_token:
            raise CredentialError("No Outlook refresh token; reconnect the account", "outlook")
        with self._refresh_lock:
            try:
                response = self.client.post(
                    self.config.token_url,
                    data={
                        "client_id": self.config.client_id,
                        "client_secret": self.config.client_secret,
                        "grant_type": "refresh_token",
                        "refresh_token": self.refresh_token,
                        "scope": SCOPES,
                    },
                )
            except httpx.HTTPError as exc:
                raise TransientProviderError(f"Outlook token refresh failed: {exc}", "outlook") from exc
            if response.status_code >= 500 or response.status_code == 429:
                raise TransientProviderError(
                    f"Outlook token refresh failed ({response.status_code})", "outlook",
                )
            if response.status_code >= 400:
                raise CredentialError(
                    f"Outlook token refresh rejected ({response.status_code}): {response.text[:200]}",
                    "outlook",
                )
            payload = response.json()
            self.access_token = payload["access_token"]
            self.refresh_token = payload.get("refresh_token", self.refresh_token)
            self.expires_at = utcnow() + timedelta(seconds=int(payload.get("expires_in", 3600)))
        return self.expires_at

    def export_credentials(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": to_iso(self.expires_at),
        }

    # --- Push ---

    @property
    def supports_push(self) -> bool:
        return bool(self.config.notification_url)

    def watch(self) -> dict:
        """Create a Graph subscription for new inbox messages.

        Each subscription gets a fresh random clientState; notifications must
        echo it back to be trusted.
        """
        if not self.config.notification_url:
            raise PushUnavailableError("No Outlook notification URL configured", "outlook")
        expiration = utcnow() + timedelta(minutes=self.config.subscription_minutes)
        client_state = secrets.token_urlsafe(32)
        body = {
            "changeType": "created",
            "notificationUrl": self.config.notification_url,
            "resource": "me/mailFolders('Inbox')/messages",
            "expirationDateTime": to_iso(expiration).replace("+00:00", "Z"),
            "clientState": client_state,
        }
        try:
            data = self._request("POST", "/subscriptions", "subscriptions.create", json=body)
        except (CredentialError, TransientProviderError):
            raise
        except ProviderError as exc:
            raise PushUnavailableError(str(exc), "outlook") from exc
        return {
            "subscription_id": data.get("id"),
            "expiration": data.get("expirationDateTime"),
            "client_state": client_state,
        }

    # --- Parsing ---

    def parse_message(self, data: dict) -> ProviderMessage:
        sender = (data.get("from") or {}).get("emailAddress") or {}
        headers = {
            h.get("name", "").lower(): h.get("value", "")
            for h in data.get("internetMessageHeaders") or []
        }
        to_addresses = [
            (r.get("emailAddress") or {}).get("address", "").lower()
            for r in data.get("toRecipients") or []
        ]
        return ProviderMessage(
            id=data["id"],
            thread_id=data.get("conversationId"),
            from_address=(sender.get("address") or "").lower(),
            from_name=sender.get("name") or "",
            subject=data.get("subject") or "",
            received_at=parse_datetime(data.get("receivedDateTime")),
            to_addresses=[a for a in to_addresses if a],
            snippet=data.get("bodyPreview") or "",
            body=(data.get("body") or {}).get("content") or "",
            headers=headers,
            rfc_message_id=normalize_message_id(data.get("internetMessageId")) or None,
            in_reply_to=normalize_message_id(headers.get("in-reply-to")) or None,
            references=parse_references(headers.get("references")),
            content_type=headers.get("content-type", ""),
        )
