"""OAuth2 credentials for Gmail accounts."""

from __future__ import annotations

import os
import sys

from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from replyguard.config import GmailConfig
from replyguard.errors import CredentialError

SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]


def authorize(config: GmailConfig) -> Credentials:
    """Run the installed-app consent flow and return fresh credentials."""
    credentials_file = config.credentials_file
    if not os.path.exists(credentials_file):
        print(f"ERROR: {credentials_file} not found.", file=sys.stderr)
        print(
            "Download your OAuth 2.0 credentials from Google Cloud Console.",
            file=sys.stderr,
        )
        raise FileNotFoundError(f"Gmail credentials file not found: {credentials_file}")
    flow = InstalledAppFlow.from_client_secrets_file(credentials_file, SCOPES)
    return flow.run_local_server(port=0)


def load_credentials(info: dict) -> Credentials:
    """Rebuild stored credentials; a missing refresh token means the user must reconnect."""
    if not info or not info.get("refresh_token"):
        raise CredentialError("No stored Gmail refresh token; reconnect the account", "gmail")
    return Credentials.from_authorized_user_info(info, SCOPES)
