"""Thread-based detection: scan the known conversation."""

from __future__ import annotations

from replyguard.detection.base import DetectionLayer
from replyguard.matching import domain_of, is_free_mail_domain, matches_contact
from replyguard.models import DetectionOptions, LayerName, ProviderMessage


class ThreadLayer(DetectionLayer):
    name = LayerName.THREAD.value

    def query_text(self, options: DetectionOptions) -> str | None:
        return f"thread:{options.thread_id}" if options.thread_id else None

    def fetch(self, options: DetectionOptions) -> list[ProviderMessage]:
        return self.adapter.fetch_thread(options.thread_id)

    def accepts(self, message: ProviderMessage, options: DetectionOptions) -> bool:
        if matches_contact(message.from_address, options.contact_email, options.contact_aliases):
            return True
        # A colleague answering in the same conversation
        domain = domain_of(options.contact_email)
        return bool(domain) and not is_free_mail_domain(domain) and domain_of(message.from_address) == domain
