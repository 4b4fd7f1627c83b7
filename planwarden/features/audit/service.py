import logging
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone

from sqlalchemy import insert, select
from sqlalchemy.orm import Session

from planwarden.core.config import settings
from planwarden.core.database import audit_events, get_db_session
from planwarden.core.logging import get_request_id

logger = logging.getLogger(__name__)


def _safe_truncate(value: Any, limit: int = 500):
    if isinstance(value, (int, float, bool)) or value is None:
        return value
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def record_audit_event(
    *,
    action: str,
    user_id: Optional[str],
    event_id: Optional[str] = None,
    request_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    session: Optional[Session] = None,
) -> None:
    """Append an audit event.

    Pass `session` to write inside the caller's transaction, so the entry
    commits (or rolls back) together with the state change it describes.
    Metadata values are truncated; secrets must never be passed here.
    """

    if not settings.AUDIT_ENABLED:
        return

    safe_metadata = None
    if metadata:
        safe_metadata = {k: _safe_truncate(v) for k, v in metadata.items()}

    record = {
        "ts": datetime.now(timezone.utc),
        "request_id": request_id or get_request_id(),
        "user_id": user_id,
        "action": action,
        "event_id": event_id,
        "metadata": safe_metadata,
    }

    if session is not None:
        session.execute(insert(audit_events).values(**record))
    else:
        with get_db_session() as own_session:
            own_session.execute(insert(audit_events).values(**record))

    logger.info(
        f"[audit] {action}",
        extra={"user_id": user_id, "event_id": event_id},
    )


def list_audit_events(
    *,
    user_id: Optional[str] = None,
    event_id: Optional[str] = None,
    action: Optional[str] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    with get_db_session() as session:
        query = select(audit_events)
        if user_id is not None:
            query = query.where(audit_events.c.user_id == user_id)
        if event_id is not None:
            query = query.where(audit_events.c.event_id == event_id)
        if action is not None:
            query = query.where(audit_events.c.action == action)
        rows = session.execute(query.order_by(audit_events.c.id).limit(limit)).all()
        return [dict(row._mapping) for row in rows]
