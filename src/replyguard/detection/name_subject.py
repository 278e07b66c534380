"""Display-name and subject-correlation searches."""

from __future__ import annotations

from replyguard.detection.base import SearchLayer
from replyguard.matching import (
    domain_of,
    is_free_mail_domain,
    matches_contact,
    normalize_subject,
    subjects_correlate,
)
from replyguard.models import DetectionOptions, LayerName, ProviderMessage, SearchQuery


class DisplayNameLayer(SearchLayer):
    name = LayerName.DISPLAY_NAME.value

    def search_query(self, options: DetectionOptions) -> SearchQuery | None:
        name = (options.contact_name or "").strip()
        if not name:
            return None
        return SearchQuery(from_name=name, after=options.sent_at, max_results=self.max_results)

    def accepts(self, message: ProviderMessage, options: DetectionOptions) -> bool:
        domain = domain_of(options.contact_email)
        return bool(domain) and domain_of(message.from_address) == domain


class SubjectLayer(SearchLayer):
    name = LayerName.SUBJECT.value

    def search_query(self, options: DetectionOptions) -> SearchQuery | None:
        subject = normalize_subject(options.subject)
        if not subject:
            return None
        return SearchQuery(subject=subject, after=options.sent_at, max_results=self.max_results)

    def accepts(self, message: ProviderMessage, options: DetectionOptions) -> bool:
        if not subjects_correlate(message.subject, options.subject):
            return False
        if matches_contact(message.from_address, options.contact_email, options.contact_aliases):
            return True
        domain = domain_of(options.contact_email)
        return bool(domain) and not is_free_mail_domain(domain) and domain_of(message.from_address) == domain
