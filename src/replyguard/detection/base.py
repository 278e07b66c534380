"""Detection layer contract and the filters every layer applies."""

from __future__ import annotations

import logging
import time

from replyguard.classify import is_excluded
from replyguard.errors import ProviderError
from replyguard.matching import emails_match_loose
from replyguard.models import (
    DetectedReply,
    DetectionOptions,
    LayerResult,
    ProviderMessage,
    SearchMetadata,
    SearchQuery,
)

logger = logging.getLogger(__name__)


def is_candidate_reply(message: ProviderMessage, options: DetectionOptions) -> bool:
    """Filters shared by all layers.

    Rejects the user's own messages, the sent message itself, auto-replies,
    bounces and anything received before the message was sent.
    """
    if not message.from_address:
        return False
    if options.message_id and message.id == options.message_id:
        return False
    if options.user_email and emails_match_loose(message.from_address, options.user_email):
        return False
    if message.received_at is None or message.received_at < options.sent_at:
        return False
    return not is_excluded(message)


def describe_query(query: SearchQuery) -> str:
    """Provider-neutral rendering of a search for audit entries."""
    parts = []
    if query.from_address:
        parts.append(f"from:{query.from_address}")
    if query.from_domain:
        parts.append(f"from:@{query.from_domain}")
    if query.from_name:
        parts.append(f'from:"{query.from_name}"')
    if query.subject:
        parts.append(f'subject:"{query.subject}"')
    if query.after:
        parts.append(f"after:{query.after.isoformat()}")
    return " ".join(parts)


class DetectionLayer:
    """One independent reply detection strategy.

    Subclasses provide ``query_text`` (None skips the layer), ``fetch`` and
    ``accepts``. ``detect`` never touches the database; a ProviderError
    becomes an unhealthy result.
    """

    name: str = ""

    def __init__(self, adapter, max_results: int = 25):
        self.adapter = adapter
        self.max_results = max_results

    def query_text(self, options: DetectionOptions) -> str | None:
        raise NotImplementedError

    def fetch(self, options: DetectionOptions) -> list[ProviderMessage]:
        raise NotImplementedError

    def accepts(self, message: ProviderMessage, options: DetectionOptions) -> bool:
        raise NotImplementedError

    def detect(self, options: DetectionOptions) -> LayerResult:
        start = time.monotonic()
        query = self.query_text(options)
        if query is None:
            return LayerResult(
                layer=self.name,
                metadata=SearchMetadata(query="skipped: missing input", skipped=True),
            )

        try:
            messages = self.fetch(options)
        except ProviderError as exc:
            logger.warning("Layer %s failed for sent message %s: %s", self.name, options.sent_message_id, exc)
            return LayerResult(
                layer=self.name,
                healthy=False,
                error=str(exc),
                metadata=SearchMetadata(query=query, duration_ms=int((time.monotonic() - start) * 1000)),
            )

        hits = [m for m in messages if is_candidate_reply(m, options) and self.accepts(m, options)]
        hits.sort(key=lambda m: m.received_at)
        replies = [DetectedReply.from_message(m, self.name) for m in hits]
        return LayerResult(
            layer=self.name,
            found=bool(replies),
            replies=replies,
            metadata=SearchMetadata(
                query=query,
                duration_ms=int((time.monotonic() - start) * 1000),
                messages_scanned=len(messages),
            ),
        )


class SearchLayer(DetectionLayer):
    """Layer backed by the provider's message search."""

    def search_query(self, options: DetectionOptions) -> SearchQuery | None:
        raise NotImplementedError

    def query_text(self, options: DetectionOptions) -> str | None:
        query = self.search_query(options)
        return describe_query(query) if query else None

    def fetch(self, options: DetectionOptions) -> list[ProviderMessage]:
        return self.adapter.search_messages(self.search_query(options))
