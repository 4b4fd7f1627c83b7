"""
planwarden/features/usage/service.py

Usage accounting service.

Handles:
- Usage event emission (one event per quota-counted record)
- Usage counting for the plan policy engine
"""

from datetime import datetime, timezone
from typing import Dict, Optional, Any
from sqlalchemy import select, insert, delete, func

from planwarden.core.database import get_db_session, usage_events
from planwarden.models.usage_event import UsageEvent


ATTENDANCE = "attendance"


def emit_usage_event(
    user_id: str,
    usage_key: str = ATTENDANCE,
    occurred_at: Optional[datetime] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> UsageEvent:
    """
    Record one usage occurrence.

    Args:
        user_id: User performing the action
        usage_key: Resource kind (attendance, ...)
        occurred_at: Timestamp of usage (defaults to now)
        metadata: Optional metadata (record id, ...)
    """
    if occurred_at is None:
        occurred_at = datetime.now(timezone.utc)
    elif occurred_at.tzinfo is None:
        occurred_at = occurred_at.replace(tzinfo=timezone.utc)

    with get_db_session() as session:
        session.execute(
            insert(usage_events).values(
                user_id=user_id,
                usage_key=usage_key,
                occurred_at=occurred_at,
                metadata=metadata
            )
        )

    return UsageEvent(
        user_id=user_id,
        usage_key=usage_key,
        occurred_at=occurred_at,
        metadata=metadata
    )


def remove_usage_event(user_id: str, usage_key: str = ATTENDANCE) -> bool:
    """Drop the most recent usage event (record deleted). Returns False if none."""
    with get_db_session() as session:
        latest = session.execute(
            select(usage_events.c.id)
            .where(usage_events.c.user_id == user_id)
            .where(usage_events.c.usage_key == usage_key)
            .order_by(usage_events.c.occurred_at.desc(), usage_events.c.id.desc())
            .limit(1)
        ).scalar()
        if latest is None:
            return False
        session.execute(delete(usage_events).where(usage_events.c.id == latest))
        return True


def get_usage_count(user_id: str, usage_key: str = ATTENDANCE) -> int:
    """
    Count usage events for a resource kind.

    The count is lifetime: the free quota does not reset between seasons.
    """
    with get_db_session() as session:
        query = (
            select(func.count())
            .select_from(usage_events)
            .where(usage_events.c.user_id == user_id)
            .where(usage_events.c.usage_key == usage_key)
        )
        return int(session.execute(query).scalar() or 0)
