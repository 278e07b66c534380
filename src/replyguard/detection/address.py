"""Address based detection: exact contact address and contact domain searches."""

from __future__ import annotations

from replyguard.detection.base import SearchLayer
from replyguard.matching import domain_of, is_free_mail_domain, matches_contact, subjects_correlate
from replyguard.models import DetectionOptions, LayerName, ProviderMessage, SearchQuery


class ExactAddressLayer(SearchLayer):
    name = LayerName.EXACT_ADDRESS.value

    def search_query(self, options: DetectionOptions) -> SearchQuery | None:
        if not options.contact_email:
            return None
        return SearchQuery(
            from_address=options.contact_email,
            after=options.sent_at,
            max_results=self.max_results,
        )

    def accepts(self, message: ProviderMessage, options: DetectionOptions) -> bool:
        return matches_contact(message.from_address, options.contact_email, options.contact_aliases)


class DomainLayer(SearchLayer):
    """Anyone at the contact's domain, gated on subject correlation when a subject exists."""

    name = LayerName.DOMAIN.value

    def search_query(self, options: DetectionOptions) -> SearchQuery | None:
        domain = domain_of(options.contact_email)
        if not domain:
            return None
        if is_free_mail_domain(domain) and not options.subject:
            # Without a subject every sender at the provider would match
            return None
        return SearchQuery(from_domain=domain, after=options.sent_at, max_results=self.max_results)

    def accepts(self, message: ProviderMessage, options: DetectionOptions) -> bool:
        if domain_of(message.from_address) != domain_of(options.contact_email):
            return False
        if options.subject:
            return subjects_correlate(message.subject, options.subject)
        return True
