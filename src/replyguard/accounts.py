"""Connected mailbox accounts: credentials, token health and re-auth flags."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta

from replyguard.clock import to_iso, utcnow
from replyguard.errors import AccountNotFoundError
from replyguard.models import Account, Provider


def add_account(
    db: sqlite3.Connection,
    user_id: str,
    provider: Provider | str,
    email: str = "",
    credentials: dict | None = None,
    token_expires_at: datetime | None = None,
) -> Account:
    """Create or replace the account for (user, provider).

    Reconnecting clears ``needs_reauth`` and reactivates the account.
    """
    provider = Provider(provider)
    db.execute(
        """INSERT INTO accounts
           (user_id, provider, email, credentials, token_expires_at, active, needs_reauth)
           VALUES (?, ?, ?, ?, ?, 1, 0)
           ON CONFLICT(user_id, provider) DO UPDATE SET
               email = excluded.email,
               credentials = excluded.credentials,
               token_expires_at = excluded.token_expires_at,
               active = 1,
               needs_reauth = 0""",
        (user_id, provider.value, email.lower(), json.dumps(credentials or {}), to_iso(token_expires_at)),
    )
    db.commit()
    return get_account(db, user_id, provider)


def get_account(db: sqlite3.Connection, user_id: str, provider: Provider | str | None = None) -> Account:
    """Return the user's account; with no provider, the first active one.

    Raises AccountNotFoundError when none exists.
    """
    if provider is not None:
        row = db.execute(
            "SELECT * FROM accounts WHERE user_id = ? AND provider = ?",
            (user_id, Provider(provider).value),
        ).fetchone()
    else:
        row = db.execute(
            "SELECT * FROM accounts WHERE user_id = ? ORDER BY active DESC, provider LIMIT 1",
            (user_id,),
        ).fetchone()
    if row is None:
        raise AccountNotFoundError(f"No mailbox account connected for user {user_id!r}")
    return Account.from_row(row)


def list_accounts(db: sqlite3.Connection) -> list[Account]:
    rows = db.execute("SELECT * FROM accounts ORDER BY user_id, provider").fetchall()
    return [Account.from_row(r) for r in rows]


def list_syncable_accounts(db: sqlite3.Connection) -> list[Account]:
    """Active accounts that do not wait for the user to reconnect."""
    rows = db.execute(
        """SELECT * FROM accounts
           WHERE active = 1 AND needs_reauth = 0
           ORDER BY user_id, provider"""
    ).fetchall()
    return [Account.from_row(r) for r in rows]


def find_account_by_email(db: sqlite3.Connection, email: str, provider: Provider | str | None = None) -> Account | None:
    """Look up an account by mailbox address (push notifications carry only the address)."""
    query = "SELECT * FROM accounts WHERE lower(email) = ?"
    params: list = [email.lower()]
    if provider is not None:
        query += " AND provider = ?"
        params.append(Provider(provider).value)
    row = db.execute(query + " LIMIT 1", params).fetchone()
    return Account.from_row(row) if row else None


def save_credentials(
    db: sqlite3.Connection,
    user_id: str,
    provider: Provider | str,
    credentials: dict,
    token_expires_at: datetime | None = None,
) -> None:
    db.execute(
        """UPDATE accounts SET credentials = ?, token_expires_at = ?
           WHERE user_id = ? AND provider = ?""",
        (json.dumps(credentials), to_iso(token_expires_at), user_id, Provider(provider).value),
    )
    db.commit()


def set_needs_reauth(
    db: sqlite3.Connection, user_id: str, provider: Provider | str, needs_reauth: bool = True,
) -> None:
    db.execute(
        "UPDATE accounts SET needs_reauth = ? WHERE user_id = ? AND provider = ?",
        (int(needs_reauth), user_id, Provider(provider).value),
    )
    db.commit()


def update_token_health(
    db: sqlite3.Connection,
    user_id: str,
    provider: Provider | str,
    healthy: bool,
    error: str | None = None,
) -> None:
    db.execute(
        """UPDATE accounts SET token_healthy = ?, token_last_checked = ?, token_last_error = ?
           WHERE user_id = ? AND provider = ?""",
        (int(healthy), to_iso(utcnow()), error, user_id, Provider(provider).value),
    )
    db.commit()


def accounts_expiring_within(db: sqlite3.Connection, hours: int) -> list[Account]:
    """Syncable accounts whose stored token expires within ``hours`` (or has no known expiry)."""
    cutoff = utcnow() + timedelta(hours=hours)
    return [
        account for account in list_syncable_accounts(db)
        if account.token_expires_at is None or account.token_expires_at <= cutoff
    ]
