"""Exception hierarchy for provider, credential and review failures."""

from __future__ import annotations


class ReplyGuardError(Exception):
    """Base class for all errors raised by replyguard."""


class ProviderError(ReplyGuardError):
    """A mailbox provider call failed."""

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message)
        self.provider = provider


class TransientProviderError(ProviderError):
    """Rate limit, 5xx or timeout. Safe to retry with backoff."""

    def __init__(self, message: str, provider: str | None = None, retry_after: float | None = None):
        super().__init__(message, provider)
        self.retry_after = retry_after


class CredentialError(ProviderError):
    """Credentials are missing, revoked or cannot be refreshed."""


class CursorInvalidError(ProviderError):
    """The stored change-log cursor has expired or is no longer valid."""


class PushUnavailableError(ProviderError):
    """Push notifications are not configured or were refused by the provider."""


class AccountNotFoundError(ReplyGuardError):
    """No connected mailbox account exists for the user."""


class ReviewError(ReplyGuardError):
    """Base class for manual review failures."""


class ReviewNotFoundError(ReviewError):
    """The review item does not exist."""


class ReviewStateError(ReviewError):
    """The review item is no longer pending."""
