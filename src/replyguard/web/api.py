"""REST API routes for review, reconciliation, audit, tasks, webhooks and SSE."""

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from replyguard import accounts, records
from replyguard.database import db_stats
from replyguard.errors import AccountNotFoundError, ReviewNotFoundError, ReviewStateError
from replyguard.models import Provider, ReviewStatus
from replyguard.push import parse_gmail_push, parse_graph_notifications
from replyguard.service import build_service
from replyguard.tasks import (
    TASK_DESCRIPTIONS,
    subscribe_events,
    task_manager,
    unsubscribe_events,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["api"])

# Replaced in tests
service_factory = build_service


class ReviewAction(BaseModel):
    reviewer: str
    notes: str | None = None


# --- Manual review ---

@router.get("/reviews")
async def list_reviews(status: str = "pending", user_id: str | None = None, limit: int = 100):
    """List review items by status."""
    try:
        review_status = ReviewStatus(status)
    except ValueError:
        raise HTTPException(400, f"Unknown status: {status}. Options: {[s.value for s in ReviewStatus]}")
    with service_factory() as service:
        items = service.review.list_items(review_status, user_id=user_id, limit=limit)
        return [item.to_dict() for item in items]


@router.get("/reviews/stats")
async def review_stats():
    with service_factory() as service:
        return service.review.stats()


@router.get("/reviews/{item_id}")
async def get_review(item_id: int):
    with service_factory() as service:
        item = service.review.get(item_id)
        if item is None:
            raise HTTPException(404, f"Review item {item_id} not found")
        return item.to_dict()


@router.post("/reviews/{item_id}/accept")
async def accept_review(item_id: int, action: ReviewAction):
    """Confirm the sent message was replied to."""
    with service_factory() as service:
        try:
            item = service.review.accept(item_id, action.reviewer, action.notes)
        except ReviewNotFoundError as exc:
            raise HTTPException(404, str(exc))
        except ReviewStateError as exc:
            raise HTTPException(409, str(exc))
        return item.to_dict()


@router.post("/reviews/{item_id}/reject")
async def reject_review(item_id: int, action: ReviewAction):
    """Confirm there was no reply."""
    with service_factory() as service:
        try:
            item = service.review.reject(item_id, action.reviewer, action.notes)
        except ReviewNotFoundError as exc:
            raise HTTPException(404, str(exc))
        except ReviewStateError as exc:
            raise HTTPException(409, str(exc))
        return item.to_dict()


# --- Reconciliation ---

@router.get("/reconciliation/runs")
async def reconciliation_runs(limit: int = 20):
    with service_factory() as service:
        return service.reconciliation.list_runs(limit)


@router.get("/reconciliation/anomalies")
async def reconciliation_anomalies(
    run_id: int | None = None,
    anomaly_type: str | None = None,
    requires_review: bool | None = None,
    limit: int = 100,
):
    with service_factory() as service:
        try:
            return service.reconciliation.list_anomalies(run_id, anomaly_type, requires_review, limit)
        except ValueError:
            raise HTTPException(400, f"Unknown anomaly type: {anomaly_type}")


# --- Sent messages and audit ---

@router.get("/sent/{sent_message_id}")
async def get_sent_message(sent_message_id: int):
    """A sent message with its learned aliases and detected replies."""
    with service_factory() as service:
        sent = records.get_sent_message(service.db, sent_message_id, service.aliases)
        if sent is None:
            raise HTTPException(404, f"Sent message {sent_message_id} not found")
        return {
            "id": sent.id,
            "user_id": sent.user_id,
            "contact_id": sent.contact_id,
            "contact_email": sent.contact_email,
            "contact_aliases": sent.contact_aliases,
            "subject": sent.subject,
            "sent_at": sent.sent_at,
            "provider": sent.provider.value if sent.provider else None,
            "thread_id": sent.thread_id,
            "reply_received": sent.reply_received,
            "last_reply_check": sent.last_reply_check,
            "replies": records.replies_for_sent_message(service.db, sent_message_id),
        }


@router.get("/sent/{sent_message_id}/audit")
async def sent_message_audit(sent_message_id: int):
    """Every detection attempt recorded for a sent message, oldest first."""
    with service_factory() as service:
        if records.get_sent_message(service.db, sent_message_id) is None:
            raise HTTPException(404, f"Sent message {sent_message_id} not found")
        return service.audit.list_for_sent_message(sent_message_id)


# --- Forced runs ---

@router.get("/tasks")
async def list_tasks(limit: int = 20):
    return task_manager.list_runs(limit)


@router.get("/tasks/types")
async def task_types():
    return [{"name": name, "description": desc} for name, desc in TASK_DESCRIPTIONS.items()]


@router.get("/tasks/{run_id}")
async def get_task_status(run_id: int):
    status = task_manager.get_status(run_id)
    if status is None:
        raise HTTPException(404, f"Run {run_id} not found")
    return status


@router.post("/sweep")
async def force_sweep():
    """Queue a delta sweep of every mailbox."""
    run_id = task_manager.run_task("sweep")
    return {"status": "submitted", "run_id": run_id, "task": "sweep"}


@router.post("/reconcile")
async def force_reconcile(run_type: str = "hourly"):
    if run_type not in ("hourly", "nightly"):
        raise HTTPException(400, f"Unknown run type: {run_type}. Options: ['hourly', 'nightly']")
    run_id = task_manager.run_task("reconcile", run_type=run_type)
    return {"status": "submitted", "run_id": run_id, "task": "reconcile", "run_type": run_type}


@router.post("/detect/{sent_message_id}")
async def force_detect(sent_message_id: int):
    """Queue a full multi-layer detection for one sent message."""
    with service_factory() as service:
        if records.get_sent_message(service.db, sent_message_id) is None:
            raise HTTPException(404, f"Sent message {sent_message_id} not found")
    run_id = task_manager.run_task("detect", sent_message_id=sent_message_id)
    return {"status": "submitted", "run_id": run_id, "task": "detect"}


# --- Health ---

@router.get("/health/{user_id}")
async def user_health(user_id: str, force: bool = False):
    """Health of every mailbox connected for a user."""
    with service_factory() as service:
        connected = [a for a in accounts.list_accounts(service.db) if a.user_id == user_id]
        if not connected:
            raise HTTPException(404, f"No mailbox connected for user {user_id}")
        result = []
        for account in connected:
            status = service.health.check_health(user_id, account.provider, force=force)
            checkpoint = service.sync.get_checkpoint(user_id, account.provider)
            result.append({
                "provider": account.provider.value,
                "email": account.email,
                "needs_reauth": account.needs_reauth,
                "health": status.to_dict(),
                "push": service.push.get_state(user_id, account.provider),
                "sync": {
                    "status": checkpoint.status.value,
                    "last_sync_at": checkpoint.last_sync_at,
                    "consecutive_errors": checkpoint.consecutive_errors,
                    "last_error": checkpoint.last_error,
                } if checkpoint else None,
            })
        return result


# --- Push webhooks ---

@router.post("/webhooks/gmail", status_code=202)
async def gmail_webhook(request: Request):
    """Pub/Sub push endpoint. Always acknowledges known and unknown mailboxes alike."""
    try:
        email, history_id = parse_gmail_push(await request.json())
    except (ValueError, json.JSONDecodeError) as exc:
        raise HTTPException(400, str(exc))

    with service_factory() as service:
        account = accounts.find_account_by_email(service.db, email, Provider.GMAIL)
        if account is None:
            logger.info("Gmail notification for unknown mailbox %s ignored", email)
            return {"status": "ignored"}
        service.push.record_success(account.user_id, account.provider)
    run_id = task_manager.run_task("sync", triggered_by="push", user_id=account.user_id, provider="gmail")
    return {"status": "queued", "run_id": run_id, "history_id": history_id}


@router.post("/webhooks/outlook", status_code=202)
async def outlook_webhook(request: Request, validation_token: str | None = Query(None, alias="validationToken")):
    """Graph change notification endpoint, including the subscription validation handshake."""
    if validation_token is not None:
        return PlainTextResponse(validation_token, status_code=200)
    try:
        body = await request.json()
    except json.JSONDecodeError as exc:
        raise HTTPException(400, f"Invalid notification body: {exc}")

    run_ids = []
    with service_factory() as service:
        user_ids = []
        for user_id in parse_graph_notifications(body, service.push.graph_subscriptions()):
            try:
                accounts.get_account(service.db, user_id, Provider.OUTLOOK)
            except AccountNotFoundError:
                logger.info("Graph notification for unknown user %s ignored", user_id)
                continue
            service.push.record_success(user_id, Provider.OUTLOOK)
            user_ids.append(user_id)
    for user_id in user_ids:
        run_ids.append(task_manager.run_task("sync", triggered_by="push", user_id=user_id, provider="outlook"))
    return {"status": "queued", "run_ids": run_ids}


# --- Events and stats ---

@router.get("/events")
async def event_stream():
    """SSE endpoint for live task updates."""
    queue = subscribe_events()

    async def event_generator():
        try:
            while True:
                if queue:
                    event = queue.pop(0)
                    yield {"event": event.get("type", "message"), "data": json.dumps(event, default=str)}
                else:
                    await asyncio.sleep(0.5)
        except asyncio.CancelledError:
            unsubscribe_events(queue)
            raise

    return EventSourceResponse(event_generator())


@router.get("/stats")
async def get_stats():
    """Row counts for every table."""
    with service_factory() as service:
        return db_stats(service.db)
