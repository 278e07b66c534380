"""ReplyGuard CLI: Typer app with all subcommands."""

from __future__ import annotations

import json
from typing import Optional

import typer

app = typer.Typer(
    name="replyguard",
    help="Reply detection engine: find out whether your outbound mail was answered.",
    no_args_is_help=True,
)


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override the configured log level."),
):
    """Configure logging for every command."""
    from replyguard.config import load_config
    from replyguard.logconfig import configure_logging

    config = load_config()
    configure_logging(config.logging, level=log_level)


def _service():
    from replyguard.config import load_config
    from replyguard.service import build_service

    return build_service(load_config())


def _echo_json(data) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


# --- Database commands ---

db_app = typer.Typer(help="Database management commands.")
app.add_typer(db_app, name="db")


@db_app.callback(invoke_without_command=True)
def db_callback(
    ctx: typer.Context,
    reset: bool = typer.Option(False, "--reset", help="Wipe and recreate the database."),
    stats: bool = typer.Option(False, "--stats", help="Show row counts for all tables."),
    migrate: bool = typer.Option(False, "--migrate", help="Run pending schema migrations."),
):
    """Database management."""
    from replyguard.config import load_config
    from replyguard.database import db_stats, get_db, init_db, migrate_db, reset_db

    config = load_config()

    if reset:
        conn = reset_db(config)
        typer.echo("Database reset and initialized.")
        conn.close()
        return

    if stats:
        conn = get_db(config)
        init_db(conn)
        s = db_stats(conn)
        typer.echo("Table row counts:")
        for table, count in s.items():
            status = f"{count}" if count >= 0 else "missing"
            typer.echo(f"  {table:30s} {status}")
        conn.close()
        return

    if migrate:
        conn = get_db(config)
        actions = migrate_db(conn)
        for action in actions:
            typer.echo(f"  {action}")
        typer.echo(f"Schema migrations applied ({len(actions)} change(s)).")
        conn.close()
        return

    # No flags, show help
    typer.echo(ctx.get_help())


# --- Accounts, contacts and sent messages ---

account_app = typer.Typer(help="Connected mailbox accounts.")
app.add_typer(account_app, name="account")


@account_app.command("add")
def account_add(
    user_id: str = typer.Argument(..., help="User the mailbox belongs to."),
    provider: str = typer.Argument(..., help="gmail, outlook or yahoo."),
    email: str = typer.Option("", "--email", "-e", help="Mailbox address."),
    credentials_file: Optional[str] = typer.Option(
        None, "--credentials", "-c", help="JSON file with stored credentials (OAuth tokens or IMAP login).",
    ),
):
    """Connect a mailbox from stored credentials."""
    from replyguard import accounts
    from replyguard.models import Provider

    try:
        provider_enum = Provider(provider)
    except ValueError:
        typer.echo(f"Unknown provider: {provider}. Use: gmail, outlook, yahoo", err=True)
        raise typer.Exit(1)

    credentials: dict = {}
    if credentials_file:
        with open(credentials_file) as f:
            credentials = json.load(f)
    if provider_enum == Provider.YAHOO and not credentials:
        credentials = {
            "username": email or typer.prompt("IMAP username"),
            "password": typer.prompt("IMAP app password", hide_input=True),
        }

    with _service() as service:
        account = accounts.add_account(service.db, user_id, provider_enum, email=email, credentials=credentials)
        service.health.invalidate(user_id, provider_enum)
    typer.echo(f"Connected {account.provider.value} mailbox {account.email or '(unknown address)'} for {user_id}.")


@account_app.command("connect-gmail")
def account_connect_gmail(
    user_id: str = typer.Argument(..., help="User the mailbox belongs to."),
):
    """Run the Gmail consent flow in a browser and store the resulting tokens."""
    from replyguard import accounts
    from replyguard.clock import parse_datetime
    from replyguard.config import load_config
    from replyguard.models import Provider
    from replyguard.providers.gmail import GmailAdapter
    from replyguard.providers.gmail_auth import authorize

    config = load_config()
    typer.echo("Authenticating with Gmail...")
    credentials = authorize(config.gmail)
    adapter = GmailAdapter(credentials, retry=config.retry, timeout=config.gmail.request_timeout)
    email = adapter.get_user_email()
    typer.echo(f"Authenticated as: {email}")

    with _service() as service:
        accounts.add_account(
            service.db, user_id, Provider.GMAIL, email=email,
            credentials=json.loads(credentials.to_json()),
            token_expires_at=parse_datetime(getattr(credentials, "expiry", None)),
        )
        service.health.invalidate(user_id, Provider.GMAIL)
    typer.echo(f"Gmail mailbox {email} connected for {user_id}.")


@account_app.command("list")
def account_list():
    """List connected mailboxes."""
    from replyguard import accounts

    with _service() as service:
        items = accounts.list_accounts(service.db)
    if not items:
        typer.echo("No accounts connected.")
        return
    typer.echo(f"{'User':<20}  {'Provider':<8}  {'Email':<35}  {'Healthy':<8}  Flags")
    typer.echo("-" * 90)
    for a in items:
        flags = []
        if not a.active:
            flags.append("inactive")
        if a.needs_reauth:
            flags.append("needs-reauth")
        healthy = "?" if a.token_healthy is None else ("yes" if a.token_healthy else "no")
        typer.echo(f"{a.user_id:<20}  {a.provider.value:<8}  {a.email:<35}  {healthy:<8}  {' '.join(flags)}")


contact_app = typer.Typer(help="Contacts that outbound mail is sent to.")
app.add_typer(contact_app, name="contact")


@contact_app.command("add")
def contact_add(
    user_id: str = typer.Argument(...),
    email: str = typer.Argument(...),
    name: Optional[str] = typer.Option(None, "--name", "-n"),
    company: Optional[str] = typer.Option(None, "--company"),
):
    """Add or update a contact."""
    from replyguard import records

    with _service() as service:
        contact_id = records.add_contact(service.db, user_id, email, name=name, company=company)
    typer.echo(f"Contact #{contact_id} saved.")


@contact_app.command("list")
def contact_list(
    user_id: Optional[str] = typer.Option(None, "--user", "-u"),
):
    """List contacts."""
    from replyguard import records

    with _service() as service:
        items = records.list_contacts(service.db, user_id=user_id)
    if not items:
        typer.echo("No contacts found.")
        return
    for c in items:
        typer.echo(f"  #{c.id:<5} {c.user_id:<20} {c.email:<35} {c.name or ''}")


@contact_app.command("show")
def contact_show(contact_id: int = typer.Argument(...)):
    """Show a contact with every learned alias, expired ones included."""
    from replyguard import records

    with _service() as service:
        contact = records.get_contact(service.db, contact_id)
        if contact is None:
            typer.echo(f"Contact #{contact_id} not found.", err=True)
            raise typer.Exit(1)
        aliases = service.aliases.list_for_contact(contact_id, include_expired=True)
    typer.echo(f"#{contact.id} {contact.email} ({contact.name or 'no name'}, user {contact.user_id})")
    if not aliases:
        typer.echo("  No aliases.")
    for a in aliases:
        typer.echo(f"  {a.alias_email:<35} {a.alias_type.value:<14} last seen {a.last_seen}")


# --- Aliases ---

alias_app = typer.Typer(help="Learned alternate addresses for contacts.")
app.add_typer(alias_app, name="alias")


@alias_app.command("verify")
def alias_verify(
    contact_id: int = typer.Argument(...),
    email: str = typer.Argument(...),
):
    """Confirm an auto-detected alias so it never expires."""
    with _service() as service:
        verified = service.aliases.verify(contact_id, email)
    if not verified:
        typer.echo(f"No alias {email} for contact #{contact_id}.", err=True)
        raise typer.Exit(1)
    typer.echo(f"Alias {email} verified.")


@alias_app.command("invalidate")
def alias_invalidate(
    contact_id: int = typer.Argument(...),
    email: str = typer.Argument(...),
):
    """Forget an alias, e.g. after the contact changed employer."""
    with _service() as service:
        removed = service.aliases.invalidate(contact_id, email)
    if not removed:
        typer.echo(f"No alias {email} for contact #{contact_id}.", err=True)
        raise typer.Exit(1)
    typer.echo(f"Alias {email} removed.")


sent_app = typer.Typer(help="Outbound messages awaiting replies.")
app.add_typer(sent_app, name="sent")


@sent_app.command("add")
def sent_add(
    user_id: str = typer.Argument(...),
    contact_id: int = typer.Argument(...),
    subject: str = typer.Option("", "--subject", "-s"),
    sent_at: Optional[str] = typer.Option(None, "--sent-at", help="ISO-8601 send time. Default: now."),
    provider: Optional[str] = typer.Option(None, "--provider"),
    thread_id: Optional[str] = typer.Option(None, "--thread-id"),
    message_id: Optional[str] = typer.Option(None, "--message-id", help="Provider message id."),
    rfc_message_id: Optional[str] = typer.Option(None, "--rfc-message-id", help="Message-ID header."),
):
    """Record a sent message so replies to it are tracked."""
    from replyguard import records
    from replyguard.clock import parse_datetime, utcnow

    when = parse_datetime(sent_at) if sent_at else utcnow()
    if when is None:
        typer.echo(f"Unparseable --sent-at: {sent_at}", err=True)
        raise typer.Exit(1)
    with _service() as service:
        sent_id = records.add_sent_message(
            service.db, user_id, contact_id, subject, when,
            provider=provider, thread_id=thread_id, message_id=message_id, rfc_message_id=rfc_message_id,
        )
    typer.echo(f"Sent message #{sent_id} recorded.")


@sent_app.command("list")
def sent_list(
    user_id: Optional[str] = typer.Option(None, "--user", "-u"),
    unreplied: bool = typer.Option(False, "--unreplied", help="Only messages without a reply."),
    limit: int = typer.Option(50, "--limit", "-l"),
):
    """List sent messages and their reply status."""
    from replyguard import records

    with _service() as service:
        items = records.list_sent_messages(service.db, user_id=user_id, unreplied_only=unreplied, limit=limit)
    if not items:
        typer.echo("No sent messages found.")
        return
    for s in items:
        status = "replied" if s.reply_received else "waiting"
        typer.echo(f"  #{s.id:<5} {status:<8} {s.contact_email:<35} {s.subject}")


# --- Detection and sync ---

@app.command()
def detect(
    sent_message_id: int = typer.Argument(..., help="Sent message to check."),
    as_json: bool = typer.Option(False, "--json", help="Print the full detection result."),
):
    """Run every detection layer for one sent message and persist a confirmed reply."""
    with _service() as service:
        result = service.orchestrator.check_sent_message(sent_message_id)

    if as_json:
        _echo_json(result.to_dict())
        return
    if result.found:
        reply = result.replies[0]
        typer.echo(f"Reply found: {reply.from_address} at {reply.received_at} (layer {reply.layer}).")
    elif result.pending_review:
        reason = result.preflight.message if result.preflight and not result.preflight.ok else "quorum not met"
        typer.echo(f"Undecided, queued for manual review: {reason}")
    else:
        typer.echo("No reply found.")
    for layer in result.layer_results:
        state = "found" if layer.found else ("ok" if layer.healthy else f"FAILED ({layer.error})")
        typer.echo(f"  {layer.layer:<15} {state}")


@app.command()
def sync(
    user_id: str = typer.Argument(...),
    provider: Optional[str] = typer.Option(None, "--provider", "-p"),
    reset: bool = typer.Option(False, "--reset", help="Drop the stored cursor and start over from now."),
):
    """Incremental sync of one user's mailbox."""
    from replyguard import accounts
    from replyguard.errors import AccountNotFoundError

    with _service() as service:
        if reset:
            try:
                account = accounts.get_account(service.db, user_id, provider)
            except AccountNotFoundError as exc:
                typer.echo(str(exc), err=True)
                raise typer.Exit(1)
            service.sync.reset_checkpoint(user_id, account.provider)
            typer.echo(f"Checkpoint for {user_id}/{account.provider.value} reset.")
        result = service.sync.sync_user(user_id, provider)
    typer.echo(
        f"Sync {result.status}: {result.messages_processed} processed, {result.replies_found} replies, "
        f"{result.auto_replies_filtered} auto-replies, {result.bounces_filtered} bounces, "
        f"{result.duplicates_skipped} duplicates."
    )
    for error in result.errors:
        typer.echo(f"  error: {error}", err=True)
    if result.status == "error":
        raise typer.Exit(1)


@app.command()
def sweep():
    """Delta sync of every connected mailbox."""
    with _service() as service:
        results = service.sweep()
    for r in results:
        typer.echo(f"  {r.user_id:<20} {r.provider:<8} {r.status:<12} {r.replies_found} replies")
    typer.echo(f"Sweep complete: {len(results)} mailbox(es).")


@app.command()
def checkpoints(
    user_id: Optional[str] = typer.Option(None, "--user", "-u"),
):
    """Show stored sync cursors and their error state."""
    with _service() as service:
        rows = service.sync.get_sync_status(user_id)
    if not rows:
        typer.echo("No sync checkpoints.")
        return
    for r in rows:
        errors = f"{r['consecutive_errors']} error(s): {r['last_error']}" if r["consecutive_errors"] else ""
        typer.echo(f"  {r['user_id']:<20} {r['provider']:<8} {r['status']:<8} {r['cursor'] or '-':<20} {errors}")


@app.command()
def reconcile(
    nightly: bool = typer.Option(False, "--nightly", help="Full nightly run instead of the hourly window."),
):
    """Re-check unreplied sent messages."""
    with _service() as service:
        result = service.reconciliation.run_nightly() if nightly else service.reconciliation.run_hourly()
    typer.echo(
        f"Reconciliation run #{result.run_id} ({result.run_type}): {result.messages_checked} checked, "
        f"{result.replies_found} replies found, {result.anomalies} anomalies, {result.errors} errors."
    )


# --- Manual review ---

review_app = typer.Typer(help="Manual review queue.")
app.add_typer(review_app, name="review")


@review_app.command("list")
def review_list(
    status: str = typer.Option("pending", "--status"),
    user_id: Optional[str] = typer.Option(None, "--user", "-u"),
):
    """List review items."""
    with _service() as service:
        items = service.review.list_items(status, user_id=user_id)
    if not items:
        typer.echo("No review items.")
        return
    for item in items:
        candidate = item.potential_reply["from_address"] if item.potential_reply else "-"
        typer.echo(f"  #{item.id:<5} sent #{item.sent_message_id:<5} {item.status.value:<13} {candidate:<30} {item.reason}")


def _review_transition(action: str, item_id: int, reviewer: str, notes: str | None) -> None:
    from replyguard.errors import ReviewError

    with _service() as service:
        try:
            item = getattr(service.review, action)(item_id, reviewer, notes)
        except ReviewError as exc:
            typer.echo(str(exc), err=True)
            raise typer.Exit(1)
    typer.echo(f"Review #{item.id} {item.status.value} by {item.reviewed_by}.")


@review_app.command("accept")
def review_accept(
    item_id: int = typer.Argument(...),
    reviewer: str = typer.Option(..., "--by", help="Who made the decision."),
    notes: Optional[str] = typer.Option(None, "--notes"),
):
    """Confirm a reply was received."""
    _review_transition("accept", item_id, reviewer, notes)


@review_app.command("reject")
def review_reject(
    item_id: int = typer.Argument(...),
    reviewer: str = typer.Option(..., "--by", help="Who made the decision."),
    notes: Optional[str] = typer.Option(None, "--notes"),
):
    """Confirm no reply was received."""
    _review_transition("reject", item_id, reviewer, notes)


@review_app.command("stats")
def review_stats():
    """Counts per review status."""
    with _service() as service:
        counts = service.review.stats()
    for status, count in counts.items():
        typer.echo(f"  {status:<15} {count}")


# --- Inspection ---

@app.command()
def audit(
    sent_message_id: int = typer.Argument(...),
):
    """Show every detection attempt recorded for a sent message."""
    with _service() as service:
        entries = service.audit.list_for_sent_message(sent_message_id)
    if not entries:
        typer.echo("No audit entries.")
        return
    for e in entries:
        outcome = "found" if e["found"] else ("error" if e["error"] else "none")
        typer.echo(f"  {e['created_at']}  {e['layer']:<15} {outcome:<6} {e['duration_ms']:>6}ms  {e['query'] or ''}")


@app.command()
def anomalies(
    run_id: Optional[int] = typer.Option(None, "--run"),
    anomaly_type: Optional[str] = typer.Option(None, "--type", "-t"),
    needs_review: bool = typer.Option(False, "--review", help="Only anomalies that require review."),
    limit: int = typer.Option(50, "--limit", "-l"),
):
    """List reconciliation and scheduler anomalies."""
    with _service() as service:
        items = service.reconciliation.list_anomalies(
            run_id=run_id, anomaly_type=anomaly_type, requires_review=True if needs_review else None, limit=limit,
        )
    if not items:
        typer.echo("No anomalies.")
        return
    for a in items:
        typer.echo(
            f"  #{a['id']:<5} {a['anomaly_type']:<16} user={a['user_id'] or '-'} "
            f"sent={a['sent_message_id'] or '-'} {json.dumps(a['details'])}"
        )


@app.command()
def health(
    user_id: str = typer.Argument(...),
    provider: Optional[str] = typer.Option(None, "--provider", "-p"),
):
    """Check a user's mailbox health now."""
    from replyguard import accounts
    from replyguard.errors import AccountNotFoundError

    with _service() as service:
        try:
            account = accounts.get_account(service.db, user_id, provider)
        except AccountNotFoundError as exc:
            typer.echo(str(exc), err=True)
            raise typer.Exit(1)
        status = service.health.check_health(user_id, account.provider, force=True)
    if status.healthy:
        typer.echo(f"{account.provider.value}: healthy ({status.response_time_ms}ms)")
    else:
        typer.echo(f"{account.provider.value}: UNHEALTHY [{status.error_kind}] {status.error_message}")
        raise typer.Exit(1)


# --- Long-running processes ---

@app.command()
def scheduler(
    job: Optional[str] = typer.Option(None, "--job", "-j", help="Run a single job once and exit."),
):
    """Run the background scheduler (or one of its jobs)."""
    import time

    from replyguard.config import load_config
    from replyguard.scheduler import ReplyScheduler

    runner = ReplyScheduler(load_config())
    if job:
        try:
            result = runner.run_job(job)
        except ValueError as exc:
            typer.echo(str(exc), err=True)
            raise typer.Exit(1)
        _echo_json(result)
        return

    runner.start()
    typer.echo("Scheduler running. Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        runner.shutdown()


@app.command()
def web(
    host: str = typer.Option("0.0.0.0", "--host", "-h", help="Bind host."),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port."),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload for development."),
):
    """Start the admin API."""
    import uvicorn

    typer.echo(f"Starting ReplyGuard Admin at http://{host}:{port}/docs")
    uvicorn.run(
        "replyguard.web.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
    )
