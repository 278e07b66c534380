"""Provider adapter factory."""

from __future__ import annotations

from replyguard.config import Config
from replyguard.models import Account, Provider
from replyguard.providers.base import (
    ChangeLogProvider,
    DeltaQueryProvider,
    PollingOnlyProvider,
    ProviderAdapter,
)

__all__ = [
    "ChangeLogProvider",
    "DeltaQueryProvider",
    "PollingOnlyProvider",
    "ProviderAdapter",
    "get_adapter",
]


def get_adapter(account: Account, config: Config) -> ProviderAdapter:
    """Build the adapter for an account's provider from its stored credentials.

    Raises CredentialError when the stored credentials cannot be used.
    """
    if account.provider == Provider.GMAIL:
        from replyguard.providers.gmail import GmailAdapter
        from replyguard.providers.gmail_auth import load_credentials

        return GmailAdapter(
            load_credentials(account.credentials),
            user_email=account.email,
            retry=config.retry,
            pubsub_topic=config.gmail.pubsub_topic,
            timeout=config.gmail.request_timeout,
        )
    elif account.provider == Provider.OUTLOOK:
        from replyguard.providers.outlook import OutlookAdapter

        return OutlookAdapter(
            account.credentials,
            config=config.outlook,
            retry=config.retry,
            user_email=account.email,
        )
    elif account.provider == Provider.YAHOO:
        from replyguard.providers.imap import ImapAdapter

        return ImapAdapter(account.credentials, config=config.imap, retry=config.retry)
    else:
        raise ValueError(f"Unknown provider: {account.provider!r}. Use 'gmail', 'outlook' or 'yahoo'.")
