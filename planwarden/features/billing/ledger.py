"""
Webhook idempotency ledger.

One row per provider event id, for the lifetime of the system. The claim is
inserted in the same transaction as the entitlement change it guards: a
redelivery that races the first delivery hits the unique constraint instead
of running the handler a second time, and a crash before commit leaves no row
so the provider's redelivery is processed normally. A `failed` row is written
afterwards in its own transaction and is a signal for manual reconciliation;
nothing here retries it.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import select, insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from planwarden.core.database import get_db_session, webhook_events
from planwarden.models.webhook_event import WebhookEventRecord, WebhookEventStatus


logger = logging.getLogger(__name__)

ERROR_MESSAGE_LIMIT = 2000


def _row_to_record(row) -> WebhookEventRecord:
    return WebhookEventRecord(
        event_id=row.event_id,
        event_type=row.event_type,
        processed_at=row.processed_at,
        payload=row.payload,
        status=WebhookEventStatus(row.status),
        error_message=row.error_message,
    )


def has_processed(event_id: str) -> bool:
    """True if any delivery of this event id has already been recorded."""
    with get_db_session() as session:
        existing = session.execute(
            select(webhook_events.c.id).where(webhook_events.c.event_id == event_id)
        ).first()
        return existing is not None


def _insert_row(
    session: Session,
    event_id: str,
    event_type: str,
    payload: Optional[Dict[str, Any]],
    status: WebhookEventStatus,
    error_message: Optional[str] = None,
) -> None:
    session.execute(
        insert(webhook_events).values(
            event_id=event_id,
            event_type=event_type,
            payload=payload,
            status=status.value,
            error_message=error_message,
            processed_at=datetime.now(timezone.utc),
        )
    )


def record_tentative(
    event_id: str,
    event_type: str,
    payload: Optional[Dict[str, Any]],
    session: Optional[Session] = None,
) -> bool:
    """
    Claim the event id, optimistically marked `success`.

    Pass `session` to claim inside the caller's transaction, so the claim
    commits (or rolls back) together with the handler's writes. After a
    False return the caller's transaction is unusable and must be rolled back.

    Returns:
        True if this delivery owns the event, False if the unique constraint
        says another delivery already claimed it.
    """
    try:
        if session is not None:
            _insert_row(session, event_id, event_type, payload, WebhookEventStatus.SUCCESS)
        else:
            with get_db_session() as own_session:
                _insert_row(own_session, event_id, event_type, payload, WebhookEventStatus.SUCCESS)
    except IntegrityError:
        logger.info(
            "[ledger] event already claimed by another delivery",
            extra={"event_id": event_id, "event_type": event_type},
        )
        return False
    return True


def mark_failed(
    event_id: str,
    event_type: str,
    error_message: str,
    payload: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    Record the event as `failed` for manual reconciliation.

    Runs in its own transaction, after the handler's transaction rolled back.
    A row committed meanwhile by another delivery is left as it is.

    Returns:
        True if the failed row was written.
    """
    try:
        with get_db_session() as session:
            _insert_row(
                session,
                event_id,
                event_type,
                payload,
                WebhookEventStatus.FAILED,
                error_message=error_message[:ERROR_MESSAGE_LIMIT],
            )
    except IntegrityError:
        logger.warning(
            "[ledger] event already recorded, failure not stored",
            extra={"event_id": event_id, "event_type": event_type},
        )
        return False
    return True


def get_event(event_id: str) -> Optional[WebhookEventRecord]:
    with get_db_session() as session:
        row = session.execute(
            select(webhook_events).where(webhook_events.c.event_id == event_id)
        ).first()
        return _row_to_record(row) if row else None


def list_events(status: Optional[WebhookEventStatus] = None, limit: int = 50) -> List[WebhookEventRecord]:
    """Most recent ledger rows first, optionally filtered by status."""
    with get_db_session() as session:
        query = select(webhook_events)
        if status is not None:
            query = query.where(webhook_events.c.status == WebhookEventStatus(status).value)
        rows = session.execute(
            query.order_by(webhook_events.c.processed_at.desc(), webhook_events.c.id.desc()).limit(limit)
        ).all()
        return [_row_to_record(row) for row in rows]

